"""Capture loop, viewfinder reservation and timelapse compilation."""

from __future__ import annotations

import dataclasses
import logging
import subprocess
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, NamedTuple, Optional

from snapshoter.config import Config
from snapshoter.ffmpeg import (
    FFMPEG,
    HARDWARE_ENCODER,
    SOFTWARE_ENCODER,
    Capturer,
    compile_args,
    compile_args_hw,
)
from snapshoter.session import Session, SessionStore

log = logging.getLogger(__name__)

_MAX_ATTEMPTS = 4
_INITIAL_BACKOFF = 0.2
_CAPTURE_TIMEOUT = 30.0
_PERSIST_EVERY = 10
_MAX_PERSIST_INTERVAL = 30.0
_COMPILE_TIMEOUT = 3600.0
_LINK_POLL = 0.05


class ControllerError(RuntimeError):
    """Raised when a capture, viewfinder or compile request cannot proceed."""


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _now() -> datetime:
    return datetime.now().astimezone()


@dataclass
class CaptureStatus:
    """A snapshot of the capture loop's state."""

    running: bool = False
    session_id: str = ""
    started_at: Optional[datetime] = None
    frames_this_run: int = 0
    last_frame_number: int = 0
    last_frame_at: Optional[datetime] = None
    last_error: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"running": self.running}
        if self.session_id:
            data["session_id"] = self.session_id
        if self.started_at is not None:
            data["started_at"] = _iso(self.started_at)
        data["frames_this_run"] = self.frames_this_run
        data["last_frame_number"] = self.last_frame_number
        if self.last_frame_at is not None:
            data["last_frame_at"] = _iso(self.last_frame_at)
        if self.last_error:
            data["last_error"] = self.last_error
        return data


@dataclass
class CompileStatus:
    """The state of the most recent compile of one session."""

    running: bool = False
    started_at: Optional[datetime] = None
    output: str = ""
    last_error: str = ""
    warning: str = ""
    encoder: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"running": self.running}
        if self.started_at is not None:
            data["started_at"] = _iso(self.started_at)
        for key in ("output", "last_error", "warning", "encoder"):
            value = getattr(self, key)
            if value:
                data[key] = value
        return data


def is_device_busy_error(error: Optional[BaseException]) -> bool:
    """Whether ``error`` is the transient V4L2 "device busy" failure."""
    if error is None:
        return False
    text = str(error).lower()
    return (
        "device or resource busy" in text
        or "resource busy" in text
        or "ebusy" in text
    )


class _EncodeResult(NamedTuple):
    error: Optional[str]
    stderr: str
    timed_out: bool


def _run_encoder(args: list[str], deadline: float) -> _EncodeResult:
    remaining = max(0.0, deadline - time.monotonic())
    try:
        result = subprocess.run(
            [FFMPEG, *args],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            timeout=remaining,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        stderr = (exc.stderr or b"").decode("utf-8", errors="replace")
        return _EncodeResult("signal: killed", stderr, True)
    except OSError as exc:
        return _EncodeResult(str(exc), "", False)
    stderr = result.stderr.decode("utf-8", errors="replace")
    if result.returncode == 0:
        return _EncodeResult(None, stderr, False)
    if result.returncode < 0:
        return _EncodeResult(f"signal: {-result.returncode}", stderr, False)
    return _EncodeResult(f"exit status {result.returncode}", stderr, False)


def _remove(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError:
        pass


class Controller:
    """Runs at most one capture session, the viewfinder, and compiles."""

    def __init__(self, config: Config, store: SessionStore, capturer: Capturer) -> None:
        self._config = config
        self._store = store
        self._capturer = capturer
        self._lock = threading.Lock()

        self._running = False
        self._session_id = ""
        self._started_at: Optional[datetime] = None
        self._frames_this_run = 0
        self._last_frame_number = 0
        self._last_frame_at: Optional[datetime] = None
        self._last_error = ""
        self._cancel: Optional[threading.Event] = None
        self._done: Optional[threading.Event] = None

        self._viewfinder_running = False
        self._viewfinder_cancel: Optional[threading.Event] = None
        self._viewfinder_done: Optional[threading.Event] = None
        self._viewfinder_last_error = ""

        self._compile_lock = threading.Lock()
        self._compile_states: dict[str, CompileStatus] = {}

    # -- capture -----------------------------------------------------------

    def status(self) -> CaptureStatus:
        with self._lock:
            return CaptureStatus(
                running=self._running,
                session_id=self._session_id,
                started_at=self._started_at,
                frames_this_run=self._frames_this_run,
                last_frame_number=self._last_frame_number,
                last_frame_at=self._last_frame_at,
                last_error=self._last_error,
            )

    def active_session(self) -> tuple[str, bool]:
        """Return ``(session_id, running)``."""
        with self._lock:
            return self._session_id, self._running

    def start(self, session_id: str) -> None:
        """Start capturing ``session_id``, closing the viewfinder first."""
        with self._lock:
            viewfinder_cancel = self._viewfinder_cancel if self._viewfinder_running else None
            viewfinder_done = self._viewfinder_done if self._viewfinder_running else None
        # Wait for the viewfinder's ffmpeg to really release the camera.
        if viewfinder_cancel is not None:
            viewfinder_cancel.set()
        if viewfinder_done is not None:
            viewfinder_done.wait()

        with self._lock:
            if self._running:
                active = self._session_id
                if active == session_id:
                    raise ControllerError("this session is already capturing")
                raise ControllerError(f"another session ({active}) is already capturing")
            session = self._store.get(session_id)
            session.settings.validate()
            start_from = self._store.scan_last_frame_number(session_id)

            cancel = threading.Event()
            done = threading.Event()
            self._running = True
            self._session_id = session_id
            self._started_at = _now()
            self._frames_this_run = 0
            self._last_frame_number = start_from
            self._last_frame_at = None
            self._last_error = ""
            self._cancel = cancel
            self._done = done

        threading.Thread(
            target=self._run,
            args=(session_id, start_from, cancel, done),
            name=f"capture-{session_id}",
            daemon=True,
        ).start()

    def stop(self) -> None:
        """Stop the running capture and wait for the loop to finish."""
        with self._lock:
            if not self._running:
                raise ControllerError("no session is currently capturing")
            cancel, done = self._cancel, self._done
        if cancel is not None:
            cancel.set()
        if done is not None:
            done.wait()

    def _set_last_error(self, message: str) -> None:
        with self._lock:
            self._last_error = message

    def _run(
        self,
        session_id: str,
        start_from: int,
        cancel: threading.Event,
        done: threading.Event,
    ) -> None:
        try:
            self._capture_loop(session_id, start_from, cancel)
        except Exception as exc:
            self._set_last_error(str(exc))
        finally:
            with self._lock:
                self._running = False
                self._cancel = None
                self._done = None
            done.set()

    def _save_quietly(self, session: Session) -> None:
        try:
            self._store.save(session)
        except OSError as exc:
            log.warning("session save error: %s", exc)

    def _capture_loop(self, session_id: str, start_from: int, cancel: threading.Event) -> None:
        session = self._store.get(session_id)
        interval = float(max(session.settings.interval_sec, 1))
        frames_dir = self._store.frames_dir(session_id)
        frames_dir.mkdir(parents=True, exist_ok=True)

        current = start_from
        last_persist = time.monotonic()

        def tick() -> None:
            nonlocal current, last_persist
            current += 1
            frame_path = frames_dir / f"frame_{current:06d}.jpg"
            try:
                self._capture_with_retry(session, frame_path, cancel)
            except Exception as exc:
                current -= 1  # free the number; retry on the next tick
                self._set_last_error(str(exc))
                log.warning("capture error (session=%s): %s", session_id, exc)
                return
            now = _now()
            session.last_frame_number = current
            session.last_frame_at = now
            with self._lock:
                self._frames_this_run += 1
                self._last_frame_number = current
                self._last_frame_at = now
                frames = self._frames_this_run
            if (
                frames % _PERSIST_EVERY == 0
                or time.monotonic() - last_persist > _MAX_PERSIST_INTERVAL
            ):
                self._save_quietly(session)
                last_persist = time.monotonic()

        tick()
        next_tick = time.monotonic() + interval
        while not cancel.wait(max(0.0, next_tick - time.monotonic())):
            tick()
            next_tick += interval
            now = time.monotonic()
            if next_tick <= now:
                next_tick = now + interval
        self._save_quietly(session)

    def _capture_with_retry(
        self, session: Session, frame_path: Path, cancel: threading.Event
    ) -> None:
        """Capture, retrying only while the kernel still reports the device busy."""
        backoff = _INITIAL_BACKOFF
        for attempt in range(1, _MAX_ATTEMPTS + 1):
            try:
                self._capturer.capture(session, frame_path, cancel, _CAPTURE_TIMEOUT)
                return
            except Exception as exc:
                if (
                    cancel.is_set()
                    or attempt == _MAX_ATTEMPTS
                    or not is_device_busy_error(exc)
                ):
                    raise
                if cancel.wait(backoff):
                    raise
                backoff *= 2

    # -- viewfinder --------------------------------------------------------

    @contextmanager
    def viewfinder(self, parent: Optional[threading.Event] = None) -> Iterator[threading.Event]:
        """Reserve the camera for a viewfinder stream.

        Yields an event that is set when the stream must stop: when ``parent``
        is set, when :meth:`stop_viewfinder` is called or when a capture starts.
        """
        with self._lock:
            if self._running:
                raise ControllerError("cannot start viewfinder while a session is capturing")
            if self._viewfinder_running:
                raise ControllerError("viewfinder is already running")
            cancel = threading.Event()
            done = threading.Event()
            self._viewfinder_running = True
            self._viewfinder_cancel = cancel
            self._viewfinder_done = done
            self._viewfinder_last_error = ""

        released = threading.Event()
        if parent is not None:

            def link() -> None:
                while not released.is_set():
                    if parent.wait(_LINK_POLL):
                        cancel.set()
                        return

            threading.Thread(target=link, daemon=True).start()

        try:
            yield cancel
        finally:
            with self._lock:
                self._viewfinder_running = False
                self._viewfinder_cancel = None
                self._viewfinder_done = None
            cancel.set()
            released.set()
            done.set()

    def stop_viewfinder(self) -> None:
        with self._lock:
            cancel = self._viewfinder_cancel
        if cancel is not None:
            cancel.set()

    def set_viewfinder_error(self, message: str) -> None:
        with self._lock:
            self._viewfinder_last_error = message

    def viewfinder_status(self) -> tuple[bool, bool, str]:
        """Return ``(viewfinder_running, capturing, last_error)``."""
        with self._lock:
            return self._viewfinder_running, self._running, self._viewfinder_last_error

    # -- compile -----------------------------------------------------------

    def compile_status(self, session_id: str) -> CompileStatus:
        with self._compile_lock:
            state = self._compile_states.get(session_id)
            return dataclasses.replace(state) if state is not None else CompileStatus()

    def any_compile_running(self) -> Optional[str]:
        """The id of a session being compiled, or None."""
        with self._compile_lock:
            for session_id, state in self._compile_states.items():
                if state.running:
                    return session_id
        return None

    def compile(self, session_id: str) -> None:
        """Start encoding the session's frames into an MP4 in the background."""
        active, running = self.active_session()
        if running and active == session_id:
            raise ControllerError("cannot compile while this session is capturing")
        busy = self.any_compile_running()
        if busy is not None:
            raise ControllerError(f"another compile is already running (session {busy})")
        session = self._store.get(session_id)
        if session.last_frame_number == 0:
            # Double-check on disk in case the stored counter is out of sync.
            try:
                scanned = self._store.scan_last_frame_number(session_id)
            except OSError:
                scanned = 0
            if scanned == 0:
                raise ControllerError("no frames to compile")

        first = self._store.first_frame_number(session_id)
        if first == 0:
            raise ControllerError("no frames to compile")
        frames_dir = self._store.frames_dir(session_id)
        videos_dir = self._store.videos_dir(session_id)
        videos_dir.mkdir(parents=True, exist_ok=True)
        out_name = f"timelapse-{datetime.now():%Y%m%d-%H%M%S}.mp4"
        out_path = videos_dir / out_name

        with self._compile_lock:
            self._compile_states[session_id] = CompileStatus(running=True, started_at=_now())

        threading.Thread(
            target=self._run_compile,
            args=(session_id, frames_dir, out_path, out_name, session.settings.fps, first),
            name=f"compile-{session_id}",
            daemon=True,
        ).start()

    def _run_compile(
        self,
        session_id: str,
        frames_dir: Path,
        out_path: Path,
        out_name: str,
        fps: int,
        start_number: int,
    ) -> None:
        deadline = time.monotonic() + _COMPILE_TIMEOUT
        hw_enabled, hw_available, bitrate = self._config.encode_settings()

        encoder = SOFTWARE_ENCODER
        warning = ""
        if hw_enabled and hw_available:
            encoder = HARDWARE_ENCODER
            result = _run_encoder(
                compile_args_hw(frames_dir, out_path, fps, start_number, bitrate), deadline
            )
            if result.error is not None and not result.timed_out:
                warning = (
                    f"hardware encoder ({HARDWARE_ENCODER}) failed; falling back to "
                    f"{SOFTWARE_ENCODER}: {result.stderr.strip()}"
                )
                log.warning("compile (session=%s): %s", session_id, warning)
                _remove(out_path)
                encoder = SOFTWARE_ENCODER
                result = _run_encoder(
                    compile_args(frames_dir, out_path, fps, start_number), deadline
                )
        else:
            result = _run_encoder(compile_args(frames_dir, out_path, fps, start_number), deadline)

        if result.error is not None:
            _remove(out_path)
        with self._compile_lock:
            state = self._compile_states.setdefault(session_id, CompileStatus())
            state.running = False
            state.encoder = encoder
            state.warning = warning
            if result.error is not None:
                state.last_error = f"compile failed: {result.error}: {result.stderr}"
                state.output = ""
            else:
                state.last_error = ""
                state.output = out_name