# ipc.py
import json
import socket
import time
from pathlib import Path
from typing import Any, Optional, Union

from logging_config import IpcError, PropertyUnavailable, get_logger

logger = get_logger("ipc")

DEFAULT_TIMEOUT = 0.1


class IpcChannel:
    """Synchronous client for a newline-delimited JSON command socket.

    One request is outstanding at a time; a reply is simply the next non-event
    line that arrives within ``timeout`` seconds.
    """

    def __init__(self, sock: socket.socket, timeout: float = DEFAULT_TIMEOUT):
        self._sock = sock
        self.timeout = timeout
        self._buffer = b""

    @classmethod
    def connect(cls, path: Union[str, Path], timeout: float = DEFAULT_TIMEOUT) -> "IpcChannel":
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(timeout)
        try:
            sock.connect(str(path))
        except OSError as e:
            sock.close()
            raise IpcError(f"Failed to connect to IPC socket {path}: {e}") from e
        return cls(sock, timeout)

    def close(self) -> None:
        try:
            self._sock.close()
        except OSError:
            pass

    def command(self, *args: Any) -> Optional[dict]:
        """Sends ``{"command": [...]}`` and returns the reply, or None if no
        well-formed reply arrived in time."""
        self._discard_pending()
        payload = json.dumps({"command": list(args)}) + "\n"
        try:
            self._sock.settimeout(self.timeout)
            self._sock.sendall(payload.encode("utf-8"))
        except OSError as e:
            raise IpcError(f"Failed to send {args[0]!r}: {e}") from e
        return self._read_reply()

    def get_property(self, name: str) -> Any:
        reply = self.command("get_property", name)
        if reply is None or reply.get("error") != "success":
            raise PropertyUnavailable(f"Property unavailable: {name}")
        return reply.get("data")

    def _read_reply(self) -> Optional[dict]:
        deadline = time.monotonic() + self.timeout
        while True:
            line = self._read_line(deadline)
            if line is None:
                return None
            try:
                message = json.loads(line)
            except ValueError:
                logger.debug(f"Malformed IPC reply: {line!r}")
                return None
            if not isinstance(message, dict):
                return None
            if "event" in message:
                continue
            return message

    def _read_line(self, deadline: float) -> Optional[str]:
        while b"\n" not in self._buffer:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            self._sock.settimeout(remaining)
            try:
                chunk = self._sock.recv(4096)
            except socket.timeout:
                return None
            except OSError as e:
                raise IpcError(f"IPC read failed: {e}") from e
            if not chunk:
                raise IpcError("IPC socket closed by peer")
            self._buffer += chunk
        line, _, self._buffer = self._buffer.partition(b"\n")
        return line.decode("utf-8", errors="replace")

    def _discard_pending(self) -> None:
        # Late replies to timed-out requests must not be read as the next reply.
        self._buffer = b""
        try:
            self._sock.setblocking(False)
            while self._sock.recv(4096):
                pass
        except (BlockingIOError, InterruptedError):
            pass
        except OSError as e:
            raise IpcError(f"IPC read failed: {e}") from e
