import json
import socket
import sys
import tempfile
import threading
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from models import SearchResult
from services import SearchBatchOutput


def make_result(i, title=None, duration="5:00"):
    return SearchResult(
        video_id=f"id{i}",
        title=title or f"Video {i}",
        duration=duration,
        channel="Test Channel",
        views="1K",
    )


def search_line(i, seconds=300, title=None):
    title = title or f"Video {i}"
    return f"{title}|{seconds // 60}:{seconds % 60:02d}|Channel {i}|{1000 * i}|id{i}|{seconds}"


class FakeSearchRunner:
    """Stands in for the yt-dlp search command.

    ``total`` raw items exist upstream; ``line_for(i)`` renders raw item ``i``.
    """

    def __init__(self, total=500, line_for=None, returncode=0, stderr="", fail_on_call=None):
        self.total = total
        self.line_for = line_for or (lambda i: search_line(i))
        self.returncode = returncode
        self.stderr = stderr
        self.fail_on_call = fail_on_call
        self.calls = []

    @property
    def ranges(self):
        return [f"{start}:{end}" for _, start, end, _ in self.calls]

    def __call__(self, query, start, end, ceiling, token=None):
        self.calls.append((query, start, end, ceiling))
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            return SearchBatchOutput(lines=[], returncode=1, stderr="HTTP Error 429")
        lines = [self.line_for(i) for i in range(start, min(end, self.total) + 1)]
        return SearchBatchOutput(lines=lines, returncode=self.returncode, stderr=self.stderr)


class FakeMpvServer:
    """A UNIX socket that answers mpv-style JSON IPC requests."""

    def __init__(self, path, properties=None, emit_events=False):
        self.path = str(path)
        self.properties = dict(properties or {})
        self.emit_events = emit_events
        self.commands = []
        self._server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self._server.bind(self.path)
        self._server.listen(1)
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self):
        try:
            conn, _ = self._server.accept()
        except OSError:
            return
        with conn:
            reader = conn.makefile("r", encoding="utf-8")
            for line in reader:
                command = json.loads(line)["command"]
                self.commands.append(command)
                if self.emit_events:
                    conn.sendall(b'{"event":"property-change"}\n')
                if command[0] == "get_property":
                    name = command[1]
                    if name in self.properties:
                        reply = {"error": "success", "data": self.properties[name]}
                    else:
                        reply = {"error": "property unavailable"}
                else:
                    reply = {"error": "success"}
                conn.sendall((json.dumps(reply) + "\n").encode("utf-8"))

    def close(self):
        self._server.close()


@pytest.fixture
def socket_dir():
    """A short directory path for UNIX sockets (they have a ~100 byte limit)."""
    with tempfile.TemporaryDirectory(dir="/tmp", prefix="ytq") as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def mpv_server(socket_dir):
    servers = []

    def start(path=None, **kwargs):
        server = FakeMpvServer(path or socket_dir / "mpv.sock", **kwargs)
        servers.append(server)
        return server

    yield start
    for server in servers:
        server.close()


class FakePopen:
    """Records the command line and pretends to be a running process."""

    instances = []

    def __init__(self, cmd, returncode=0, alive=True, **kwargs):
        self.cmd = cmd
        self.kwargs = kwargs
        self.pid = 4242
        self.returncode = returncode
        self.alive = alive
        self.killed = False
        FakePopen.instances.append(self)

    def poll(self):
        return None if self.alive else self.returncode

    def wait(self, timeout=None):
        self.alive = False
        return self.returncode

    def kill(self):
        self.killed = True
        self.alive = False


@pytest.fixture
def fake_popen():
    FakePopen.instances = []
    yield FakePopen
    FakePopen.instances = []


@pytest.fixture
def temp_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)
