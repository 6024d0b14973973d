"""Timelapse sessions and their on-disk store."""

from __future__ import annotations

import copy
import json
import os
import re
import secrets
import shutil
import threading
import time
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from snapshoter.config import Config


class SettingsError(ValueError):
    """Raised when session settings are out of range."""


class SessionNotFoundError(LookupError):
    """Raised when a session id is not known to the store."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f'session "{session_id}" not found')
        self.session_id = session_id


@dataclass(frozen=True)
class Settings:
    """Capture and compile parameters for one session."""

    interval_sec: int = 5
    width: int = 1280
    height: int = 720
    quality: int = 5
    fps: int = 30

    def validate(self) -> None:
        """Raise :class:`SettingsError` if any value is out of range."""
        if self.interval_sec < 1:
            raise SettingsError("interval must be at least 1 second")
        if self.width < 16 or self.height < 16:
            raise SettingsError("resolution too small")
        if self.width > 4096 or self.height > 4096:
            raise SettingsError("resolution too large")
        if not 1 <= self.quality <= 31:
            raise SettingsError("quality must be between 1 and 31")
        if not 1 <= self.fps <= 120:
            raise SettingsError("fps must be between 1 and 120")

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Settings":
        """Build settings from JSON data; missing values are zero."""
        return cls(**{f.name: int(data.get(f.name) or 0) for f in fields(cls)})


def default_settings() -> Settings:
    return Settings()


_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_FRACTION_RE = re.compile(r"\.(\d+)")


def _parse_time(value: str) -> datetime:
    text = value.strip()
    if text[-1:] in ("Z", "z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _now() -> datetime:
    return datetime.now().astimezone()


@dataclass
class Session:
    """A timelapse session as stored in ``session.json``."""

    id: str
    name: str = ""
    created_at: datetime = _ZERO_TIME
    settings: Settings = field(default_factory=Settings)
    last_frame_number: int = 0
    last_frame_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "created_at": self.created_at.isoformat(),
            "settings": self.settings.to_dict(),
            "last_frame_number": self.last_frame_number,
        }
        if self.last_frame_at is not None:
            data["last_frame_at"] = self.last_frame_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        created = data.get("created_at")
        last_at = data.get("last_frame_at")
        last_frame_at = _parse_time(last_at) if last_at else None
        if last_frame_at is not None and last_frame_at == _ZERO_TIME:
            last_frame_at = None
        return cls(
            id=data.get("id") or "",
            name=data.get("name") or "",
            created_at=_parse_time(created) if created else _ZERO_TIME,
            settings=Settings.from_dict(data.get("settings") or {}),
            last_frame_number=int(data.get("last_frame_number") or 0),
            last_frame_at=last_frame_at,
        )


_NAME_SANITIZE_RE = re.compile(r"[^a-zA-Z0-9_-]+")
_FRAME_RE = re.compile(r"frame_([0-9]{6})\.jpg")


def sanitize_name(name: str) -> str:
    """Turn a display name into a safe, short id prefix."""
    name = name.strip()
    if not name:
        return "session"
    return _NAME_SANITIZE_RE.sub("-", name)[:48]


def new_session_id(name: str) -> str:
    return f"{sanitize_name(name)}-{int(time.time())}-{secrets.token_hex(4)}"


class SessionStore:
    """Sessions under ``<data_dir>/sessions``, newest first."""

    def __init__(self, config: Config) -> None:
        self._config = config
        self._lock = threading.RLock()
        self._sessions: dict[str, Session] = {}
        self._order: list[str] = []
        self.reload()

    @property
    def sessions_dir(self) -> Path:
        data_dir, _ = self._config.snapshot()
        return Path(data_dir) / "sessions"

    def reload(self) -> None:
        """Re-read every session from the current data directory."""
        with self._lock:
            self._sessions = {}
            self._order = []
            root = self.sessions_dir
            root.mkdir(parents=True, exist_ok=True)
            with os.scandir(root) as entries:
                dirs = sorted(
                    (e.name for e in entries if e.is_dir(follow_symlinks=False))
                )
            for dirname in dirs:
                try:
                    raw = (root / dirname / "session.json").read_text(encoding="utf-8")
                    session = Session.from_dict(json.loads(raw))
                except (OSError, ValueError, TypeError, AttributeError):
                    continue
                if not session.id:
                    session.id = dirname
                try:
                    scanned = max(self._frame_numbers(session.id), default=0)
                except OSError:
                    scanned = 0
                if scanned > session.last_frame_number:
                    session.last_frame_number = scanned
                if session.id not in self._sessions:
                    self._order.append(session.id)
                self._sessions[session.id] = session
            self._order.sort(key=lambda sid: self._sessions[sid].created_at, reverse=True)

    def list_sessions(self) -> list[Session]:
        with self._lock:
            return [copy.copy(self._sessions[sid]) for sid in self._order]

    def _require(self, session_id: str) -> Session:
        with self._lock:
            try:
                return self._sessions[session_id]
            except KeyError:
                raise SessionNotFoundError(session_id) from None

    def get(self, session_id: str) -> Session:
        """Return a copy of the session or raise :class:`SessionNotFoundError`."""
        return copy.copy(self._require(session_id))

    def create(self, name: str, settings: Settings) -> Session:
        settings.validate()
        name = name.strip()
        if not name:
            raise ValueError("name is required")
        session = Session(
            id=new_session_id(name), name=name, created_at=_now(), settings=settings
        )
        self.frames_dir(session.id).mkdir(parents=True, exist_ok=True)
        self.videos_dir(session.id).mkdir(parents=True, exist_ok=True)
        self._write(session)
        with self._lock:
            self._sessions[session.id] = session
            self._order.insert(0, session.id)
        return copy.copy(session)

    def update_settings(self, session_id: str, settings: Settings) -> None:
        settings.validate()
        with self._lock:
            session = self._require(session_id)
            session.settings = settings
            self._write(session)

    def save(self, session: Session) -> None:
        """Store a copy of ``session``, adding it at the front if it is new."""
        with self._lock:
            stored = copy.copy(session)
            if session.id not in self._sessions:
                self._order.insert(0, session.id)
            self._sessions[session.id] = stored
            self._write(stored)

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._require(session_id)
            try:
                shutil.rmtree(self.sessions_dir / session_id)
            except FileNotFoundError:
                pass
            del self._sessions[session_id]
            self._order.remove(session_id)

    def _write(self, session: Session) -> None:
        directory = self.sessions_dir / session.id
        directory.mkdir(parents=True, exist_ok=True)
        tmp = directory / "session.json.tmp"
        tmp.write_text(json.dumps(session.to_dict(), indent=2), encoding="utf-8")
        os.replace(tmp, directory / "session.json")

    def frames_dir(self, session_id: str) -> Path:
        return self.sessions_dir / session_id / "frames"

    def videos_dir(self, session_id: str) -> Path:
        return self.sessions_dir / session_id / "videos"

    def _frame_numbers(self, session_id: str) -> list[int]:
        try:
            names = os.listdir(self.frames_dir(session_id))
        except FileNotFoundError:
            return []
        return [int(m.group(1)) for name in names if (m := _FRAME_RE.fullmatch(name))]

    def scan_last_frame_number(self, session_id: str) -> int:
        """Highest frame number on disk, or 0 when there are no frames."""
        self._require(session_id)
        return max(self._frame_numbers(session_id), default=0)

    def first_frame_number(self, session_id: str) -> int:
        """Lowest frame number on disk, or 0 when there are no frames."""
        self._require(session_id)
        return min(self._frame_numbers(session_id), default=0)

    def latest_frame_path(self, session_id: str) -> Path:
        number = self.scan_last_frame_number(session_id)
        if number == 0:
            raise FileNotFoundError(f"session {session_id!r} has no frames")
        return self.frames_dir(session_id) / f"frame_{number:06d}.jpg"

    def list_videos(self, session_id: str) -> list[str]:
        """Names of the session's MP4 files, newest name first."""
        try:
            with os.scandir(self.videos_dir(session_id)) as entries:
                names = [
                    e.name
                    for e in entries
                    if not e.is_dir(follow_symlinks=False) and e.name.lower().endswith(".mp4")
                ]
        except FileNotFoundError:
            return []
        return sorted(names, reverse=True)