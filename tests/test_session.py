import json
import re
from datetime import datetime, timezone

import pytest

from snapshoter.config import load_config
from snapshoter.session import (
    Session,
    SessionNotFoundError,
    SessionStore,
    Settings,
    SettingsError,
    default_settings,
    new_session_id,
    sanitize_name,
)


@pytest.fixture
def config(tmp_path):
    return load_config(tmp_path / "config.json", str(tmp_path / "data"), "/dev/video0")


@pytest.fixture
def store(config):
    return SessionStore(config)


def _touch_frames(store, session_id, *numbers):
    frames = store.frames_dir(session_id)
    frames.mkdir(parents=True, exist_ok=True)
    for n in numbers:
        (frames / f"frame_{n:06d}.jpg").write_bytes(b"jpeg")


def test_default_settings_are_valid():
    settings = default_settings()
    settings.validate()
    assert (settings.width, settings.height) == (1280, 720)
    assert settings == Settings()


@pytest.mark.parametrize(
    "changes, message",
    [
        ({"interval_sec": 0}, "interval must be at least 1 second"),
        ({"width": 15}, "resolution too small"),
        ({"height": 15}, "resolution too small"),
        ({"width": 4097}, "resolution too large"),
        ({"quality": 0}, "quality must be between 1 and 31"),
        ({"quality": 32}, "quality must be between 1 and 31"),
        ({"fps": 0}, "fps must be between 1 and 120"),
        ({"fps": 121}, "fps must be between 1 and 120"),
    ],
)
def test_validate_rejects(changes, message):
    base = default_settings().to_dict()
    base.update(changes)
    with pytest.raises(SettingsError, match=message):
        Settings(**base).validate()


def test_settings_round_trip():
    settings = Settings(interval_sec=2, width=640, height=480, quality=3, fps=24)
    assert Settings.from_dict(settings.to_dict()) == settings


def test_session_round_trip_without_last_frame():
    session = Session(
        id="abc",
        name="Garden",
        created_at=datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc),
        settings=default_settings(),
    )
    data = session.to_dict()
    assert "last_frame_at" not in data
    assert Session.from_dict(json.loads(json.dumps(data))) == session


def test_session_round_trip_with_last_frame():
    when = datetime(2024, 5, 1, 10, 0, 5, 250000, tzinfo=timezone.utc)
    session = Session(id="abc", name="Garden", created_at=when, last_frame_number=4, last_frame_at=when)
    assert Session.from_dict(session.to_dict()) == session


def test_session_parses_nanosecond_timestamps():
    session = Session.from_dict(
        {"id": "x", "created_at": "2024-05-01T10:00:00.123456789Z", "last_frame_at": "0001-01-01T00:00:00Z"}
    )
    assert session.created_at == datetime(2024, 5, 1, 10, 0, 0, 123456, tzinfo=timezone.utc)
    assert session.last_frame_at is None


def test_sanitize_name():
    assert sanitize_name("   ") == "session"
    assert sanitize_name("my cam!") == "my-cam-"
    long = sanitize_name("x" * 100)
    assert len(long) == 48
    assert re.fullmatch(r"[A-Za-z0-9_-]+", sanitize_name("a/b\\c d..e"))


def test_new_session_id_shape():
    session_id = new_session_id("My Garden")
    assert re.fullmatch(r"My-Garden-\d+-[0-9a-f]{8}", session_id)
    assert new_session_id("My Garden") != session_id


def test_create_and_get(store):
    created = store.create("  Garden  ", default_settings())
    assert created.name == "Garden"
    assert store.frames_dir(created.id).is_dir()
    assert store.videos_dir(created.id).is_dir()
    fetched = store.get(created.id)
    assert fetched == created
    fetched.name = "changed"
    assert store.get(created.id).name == "Garden"


def test_create_rejects_empty_name(store):
    with pytest.raises(ValueError, match="name is required"):
        store.create("   ", default_settings())


def test_create_rejects_invalid_settings(store):
    with pytest.raises(SettingsError):
        store.create("Garden", Settings(fps=0))


def test_list_is_newest_first(store):
    first = store.create("one", default_settings())
    second = store.create("two", default_settings())
    assert [s.id for s in store.list_sessions()] == [second.id, first.id]


def test_get_missing_raises(store):
    with pytest.raises(SessionNotFoundError, match='session "nope" not found'):
        store.get("nope")


def test_reload_reads_disk_and_repairs_counter(store):
    root = store.sessions_dir
    for sid, created in (("older", "2023-01-01T00:00:00Z"), ("newer", "2024-01-01T00:00:00Z")):
        (root / sid).mkdir(parents=True)
        (root / sid / "session.json").write_text(
            json.dumps({"id": sid, "name": sid, "created_at": created, "last_frame_number": 1})
        )
    (root / "broken").mkdir()
    (root / "broken" / "session.json").write_text("{oops")
    _touch_frames(store, "older", 1, 2, 9)

    store.reload()
    sessions = store.list_sessions()
    assert [s.id for s in sessions] == ["newer", "older"]
    assert store.get("older").last_frame_number == 9
    assert store.get("newer").last_frame_number == 1


def test_reload_uses_directory_name_when_id_missing(store):
    directory = store.sessions_dir / "anon"
    directory.mkdir(parents=True)
    (directory / "session.json").write_text(json.dumps({"name": "anon"}))
    store.reload()
    assert store.get("anon").name == "anon"


def test_frame_scanning(store):
    session = store.create("cam", default_settings())
    assert store.scan_last_frame_number(session.id) == 0
    assert store.first_frame_number(session.id) == 0
    with pytest.raises(FileNotFoundError):
        store.latest_frame_path(session.id)

    _touch_frames(store, session.id, 3, 7, 5)
    frames = store.frames_dir(session.id)
    (frames / "frame_12.jpg").write_bytes(b"")
    (frames / "frame_000099.png").write_bytes(b"")
    (frames / "notes.txt").write_text("x")

    assert store.scan_last_frame_number(session.id) == 7
    assert store.first_frame_number(session.id) == 3
    assert store.latest_frame_path(session.id) == frames / "frame_000007.jpg"


def test_frame_scanning_missing_session(store):
    with pytest.raises(SessionNotFoundError):
        store.scan_last_frame_number("nope")
    with pytest.raises(SessionNotFoundError):
        store.first_frame_number("nope")


def test_list_videos(store):
    session = store.create("cam", default_settings())
    videos = store.videos_dir(session.id)
    for name in ("timelapse-20240101-000000.mp4", "timelapse-20240301-000000.MP4", "notes.txt"):
        (videos / name).write_bytes(b"")
    (videos / "dir.mp4").mkdir()
    assert store.list_videos(session.id) == [
        "timelapse-20240301-000000.MP4",
        "timelapse-20240101-000000.mp4",
    ]
    assert store.list_videos("unknown") == []


def test_update_settings_persists(store, config):
    session = store.create("cam", default_settings())
    new = Settings(interval_sec=10, width=640, height=480, quality=2, fps=12)
    store.update_settings(session.id, new)
    assert SessionStore(config).get(session.id).settings == new
    with pytest.raises(SettingsError):
        store.update_settings(session.id, Settings(quality=99))
    with pytest.raises(SessionNotFoundError):
        store.update_settings("nope", new)


def test_save_existing_and_new(store, config):
    session = store.create("cam", default_settings())
    session.last_frame_number = 42
    store.save(session)
    assert store.get(session.id).last_frame_number == 42
    assert SessionStore(config).get(session.id).last_frame_number == 42

    fresh = Session(id="fresh", name="fresh", created_at=datetime(2000, 1, 1, tzinfo=timezone.utc))
    store.save(fresh)
    assert store.list_sessions()[0].id == "fresh"
    assert (store.sessions_dir / "fresh" / "session.json").is_file()


def test_delete(store):
    session = store.create("cam", default_settings())
    store.delete(session.id)
    assert not (store.sessions_dir / session.id).exists()
    assert store.list_sessions() == []
    with pytest.raises(SessionNotFoundError):
        store.delete(session.id)


def test_reload_follows_data_dir_change(store, config, tmp_path):
    store.create("cam", default_settings())
    config.update(str(tmp_path / "elsewhere"), "usb", "/dev/video0", "", False, "medium")
    store.reload()
    assert store.list_sessions() == []
    assert store.sessions_dir == tmp_path / "elsewhere" / "sessions"