# player.py
import itertools
import os
import shutil
import subprocess
import tempfile
import time
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from ipc import IpcChannel
from lifecycle import CancellationToken
from logging_config import (ConnectionTimeout, IpcError, OperationCancelled,
                            PlayerError, PropertyUnavailable, get_logger)
from models import PlaybackStatus, SearchResult
from services import Downloader

logger = get_logger("player")

CONNECT_TIMEOUT = 2.0
CONNECT_POLL_INTERVAL = 0.1
WAIT_POLL_INTERVAL = 0.25
RETURN_TO_MENU_CODE = 42

_endpoint_counter = itertools.count()


class PlayerCapability(Enum):
    BACKGROUND_CAPABLE = "background"
    FOREGROUND_ONLY = "foreground"


class PlayerKind(Enum):
    MPV = "mpv"
    VLC = "vlc"
    MPLAYER = "mplayer"

    @property
    def supports_background(self) -> bool:
        return self is PlayerKind.MPV


def detect_player(preferred: str = "") -> Optional[PlayerKind]:
    """Returns the preferred player if installed, else the first installed one."""
    candidates = list(PlayerKind)
    if preferred:
        try:
            candidates.insert(0, PlayerKind(preferred))
        except ValueError:
            logger.warning(f"Unknown player '{preferred}', auto-detecting")
    for kind in candidates:
        if shutil.which(kind.value):
            return kind
    return None


def resolve_capability(kind: PlayerKind, background_enabled: bool = True) -> PlayerCapability:
    if kind.supports_background and background_enabled:
        return PlayerCapability.BACKGROUND_CAPABLE
    return PlayerCapability.FOREGROUND_ONLY


class PlayerState(Enum):
    UNSTARTED = "unstarted"
    SPAWNED = "spawned"
    CONNECTED_IDLE = "connected"
    PLAYING = "playing"
    PAUSED = "paused"
    STOPPED = "stopped"
    TERMINATED = "terminated"


def make_endpoint_path(directory: Optional[Path] = None) -> Path:
    directory = Path(directory or tempfile.gettempdir())
    return directory / f"ytqueue-{os.getpid()}-{next(_endpoint_counter)}.sock"


class PlayerProcess:
    """Owns one idle mpv process and the IPC endpoint it listens on."""

    def __init__(self, executable: str = "mpv", ytdl_format: str = "bestaudio/best",
                 audio_only: bool = True, endpoint_dir: Optional[Path] = None,
                 popen: Callable[..., subprocess.Popen] = subprocess.Popen,
                 ipc_timeout: float = 0.1):
        self.executable = executable
        self.ytdl_format = ytdl_format
        self.audio_only = audio_only
        self.socket_path = make_endpoint_path(endpoint_dir)
        self.ipc_timeout = ipc_timeout
        self._popen = popen
        self.process: Optional[subprocess.Popen] = None
        self.channel: Optional[IpcChannel] = None

    def command_line(self) -> List[str]:
        cmd = [
            self.executable,
            "--idle=yes",
            "--keep-open=yes",
            f"--input-ipc-server={self.socket_path}",
            "--no-terminal",
            f"--ytdl-format={self.ytdl_format}",
        ]
        if self.audio_only:
            cmd.append("--no-video")
        return cmd

    def spawn(self) -> None:
        if self.socket_path.exists():
            self.socket_path.unlink()
        try:
            self.process = self._popen(
                self.command_line(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            raise PlayerError(f"Failed to spawn {self.executable}: {e}") from e
        logger.info(f"Spawned {self.executable} (pid {self.process.pid}) on {self.socket_path}")

    @property
    def is_connected(self) -> bool:
        return self.channel is not None

    def connect(self, timeout: float = CONNECT_TIMEOUT) -> None:
        deadline = time.monotonic() + timeout
        while not self.socket_path.exists():
            if time.monotonic() >= deadline:
                raise ConnectionTimeout(
                    f"{self.executable} socket not created after {timeout:g} seconds")
            time.sleep(CONNECT_POLL_INTERVAL)
        self.channel = IpcChannel.connect(self.socket_path, self.ipc_timeout)
        logger.debug(f"Connected to {self.socket_path}")

    def is_alive(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def terminate(self) -> None:
        """Kills the process and removes the endpoint. Never raises."""
        if self.channel is not None:
            self.channel.close()
            self.channel = None
        if self.process is not None:
            try:
                if self.process.poll() is None:
                    self.process.kill()
                    self.process.wait(timeout=1.0)
            except (OSError, subprocess.SubprocessError) as e:
                logger.warning(f"Could not kill player process: {e}")
            self.process = None
        try:
            self.socket_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove {self.socket_path}: {e}")

    def __enter__(self) -> "PlayerProcess":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.terminate()


class PlaybackEngine:
    """Control surface for a background player; tracks last known status."""

    def __init__(self, process: PlayerProcess, connect_timeout: float = CONNECT_TIMEOUT):
        self.process = process
        self.connect_timeout = connect_timeout
        self.status = PlaybackStatus()
        self.state = PlayerState.UNSTARTED

    def spawn(self) -> None:
        self.process.spawn()
        self.state = PlayerState.SPAWNED

    def connect(self) -> None:
        self.process.connect(self.connect_timeout)
        self.state = PlayerState.CONNECTED_IDLE

    def play(self, url: str, title: str, track_id: str = "") -> None:
        self._load(url, title, track_id)
        # keep-open leaves the player paused at the end of the previous file.
        self._send("set_property", "pause", False)
        self.state = PlayerState.PLAYING

    def load_paused(self, url: str, title: str, track_id: str = "") -> None:
        """Loads the track and pauses it straight away."""
        self._load(url, title, track_id)
        self._send("set_property", "pause", True)
        self.status.paused = True
        self.state = PlayerState.PAUSED

    def _load(self, url: str, title: str, track_id: str) -> None:
        if not self.process.is_connected:
            self.connect()
        self._send("loadfile", url)
        self.status.title = title
        self.status.track_id = track_id
        self.status.playing = True
        self.status.paused = False
        self.status.eof_reached = False
        self.status.time_position = 0.0
        self.status.duration = 0.0
        logger.info(f"Loaded '{title}'")

    def toggle_pause(self) -> None:
        if not self.process.is_connected:
            return
        self._send("cycle", "pause")
        # Optimistic; the next poll reconciles with the player.
        self.status.paused = not self.status.paused
        self._sync_state_from_status()

    def seek(self, delta_seconds: float) -> None:
        if self.process.is_connected:
            self._send("seek", str(delta_seconds), "relative")

    def set_volume(self, percent: int) -> None:
        percent = max(0, min(100, int(percent)))
        if self.process.is_connected:
            self._send("set_property", "volume", percent)
        self.status.volume = percent

    def stop(self) -> None:
        if self.process.is_connected:
            self._send("stop")
        self.status = PlaybackStatus()
        if self.state is not PlayerState.TERMINATED:
            self.state = PlayerState.STOPPED

    def poll_status(self) -> None:
        if not self.process.is_connected:
            return
        time_pos = self._read("time-pos")
        if isinstance(time_pos, (int, float)):
            self.status.time_position = float(time_pos)
        duration = self._read("duration")
        if isinstance(duration, (int, float)):
            self.status.duration = float(duration)
        paused = self._read("pause")
        if isinstance(paused, bool):
            self.status.paused = paused
        volume = self._read("volume")
        if isinstance(volume, (int, float)) and not isinstance(volume, bool):
            self.status.volume = max(0, min(100, int(round(volume))))
        eof = self._read("eof-reached")
        if isinstance(eof, bool):
            self.status.eof_reached = eof
        self._sync_state_from_status()

    def is_end_of_stream(self) -> bool:
        return self.status.eof_reached

    def is_alive(self) -> bool:
        return self.process.is_alive()

    def terminate(self) -> None:
        self.process.terminate()
        self.status = PlaybackStatus()
        self.state = PlayerState.TERMINATED

    def _read(self, name: str):
        try:
            return self.process.channel.get_property(name)
        except PropertyUnavailable:
            return None
        except IpcError as e:
            logger.debug(f"Reading {name} failed: {e}")
            return None

    def _send(self, *args) -> None:
        reply = self.process.channel.command(*args)
        if reply is not None and reply.get("error") not in (None, "success"):
            logger.warning(f"Player rejected {args[0]}: {reply.get('error')}")

    def _sync_state_from_status(self) -> None:
        if self.state in (PlayerState.PLAYING, PlayerState.PAUSED):
            self.state = PlayerState.PAUSED if self.status.paused else PlayerState.PLAYING

    def __enter__(self) -> "PlaybackEngine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.terminate()


class PlaybackOutcome(Enum):
    FINISHED = "finished"
    RETURN_TO_MENU = "return"
    FAILED = "failed"


class ForegroundPlayer:
    """Blocking playback that takes over the terminal until the player exits."""

    def __init__(self, kind: PlayerKind, ytdl_format: str, audio_only: bool,
                 downloader: Downloader, keep_temp: bool = False,
                 popen: Callable[..., subprocess.Popen] = subprocess.Popen):
        self.kind = kind
        self.ytdl_format = ytdl_format
        self.audio_only = audio_only
        self.downloader = downloader
        self.keep_temp = keep_temp
        self._popen = popen

    def play(self, track: SearchResult, temp_dir: Path,
             token: Optional[CancellationToken] = None) -> PlaybackOutcome:
        if self.kind is PlayerKind.MPV:
            return self._play_with_mpv(track, temp_dir, token)
        return self._play_downloaded(track, temp_dir, token)

    def _play_with_mpv(self, track: SearchResult, temp_dir: Path,
                       token: Optional[CancellationToken]) -> PlaybackOutcome:
        input_conf = temp_dir / "mpv-input.conf"
        input_conf.write_text(f"r quit {RETURN_TO_MENU_CODE}\n", encoding="utf-8")
        cmd = [self.kind.value]
        if self.audio_only:
            cmd.append("--no-video")
        cmd += [f"--ytdl-format={self.ytdl_format}", f"--input-conf={input_conf}", track.link]

        code = self._run(cmd, token)
        if code == RETURN_TO_MENU_CODE:
            return PlaybackOutcome.RETURN_TO_MENU
        if code == 0:
            return PlaybackOutcome.FINISHED
        logger.warning(f"{self.kind.value} exited with code {code}")
        return PlaybackOutcome.RETURN_TO_MENU

    def _play_downloaded(self, track: SearchResult, temp_dir: Path,
                         token: Optional[CancellationToken]) -> PlaybackOutcome:
        ext = "mp3" if self.audio_only else "mp4"
        output_path = temp_dir / f"{track.safe_title or track.video_id}.{ext}"
        success, message = self.downloader.run(
            track.link, track.title, self.ytdl_format, str(output_path), self.audio_only)
        if not success:
            logger.error(message)
            return PlaybackOutcome.FAILED

        media_file = output_path if output_path.exists() else find_downloaded_file(temp_dir)
        if media_file is None:
            logger.error(f"Downloaded file for '{track.title}' not found in {temp_dir}")
            return PlaybackOutcome.FAILED

        if self.kind is PlayerKind.VLC:
            cmd = ["vlc", "--play-and-exit", "--no-video-title-show", str(media_file)]
        else:
            cmd = ["mplayer", "-quiet", str(media_file)]
        try:
            self._run(cmd, token)
        finally:
            if not self.keep_temp:
                try:
                    media_file.unlink()
                except OSError:
                    pass
        return PlaybackOutcome.FINISHED

    def _run(self, cmd: List[str], token: Optional[CancellationToken]) -> int:
        try:
            process = self._popen(cmd)
        except OSError as e:
            raise PlayerError(f"Failed to run {cmd[0]}: {e}") from e
        while True:
            try:
                return process.wait(timeout=WAIT_POLL_INTERVAL)
            except subprocess.TimeoutExpired:
                if token is not None and token.aborted:
                    process.kill()
                    process.wait()
                    raise OperationCancelled(f"{cmd[0]} aborted")


def find_downloaded_file(directory: Path) -> Optional[Path]:
    for path in sorted(directory.iterdir()):
        if path.is_file() and path.suffix not in (".part", ".conf"):
            return path
    return None
