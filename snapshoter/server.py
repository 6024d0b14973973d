"""HTTP front end: session pages, JSON status, downloads and the viewfinder."""

from __future__ import annotations

import json
import logging
import os
import queue
import re
import threading
from contextlib import ExitStack
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional, Union
from urllib.parse import quote_plus, unquote_plus

from flask import Flask, Request, Response, abort, redirect, render_template, request, send_file

from snapshoter.config import CameraType, Config, valid_bitrate, valid_camera_type
from snapshoter.controller import Controller, ControllerError
from snapshoter.ffmpeg import VIEWFINDER_BOUNDARY, Streamer
from snapshoter.session import SessionStore, Settings, SettingsError, default_settings

log = logging.getLogger(__name__)

FLASH_COOKIE = "flash"
_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_INT_RE = re.compile(r"[+-]?[0-9]+")
_STREAM_QUEUE_SIZE = 16
_STREAM_PUT_POLL = 0.1

# Failures a request handler reports to the user as a flash message.
_USER_ERRORS = (ControllerError, LookupError, ValueError, OSError)

PathArg = Union[str, "os.PathLike[str]"]


@dataclass(frozen=True)
class Flash:
    """A one-shot message carried to the next page in a cookie."""

    kind: str  # "info" or "error"
    message: str


def fmt_time(value: Optional[datetime]) -> str:
    """Format a timestamp in local time, or a dash when it is unset."""
    if value is None or value == _ZERO_TIME:
        return "—"
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def yesno(value: Any) -> str:
    return "yes" if value else "no"


def set_flash(response: Response, kind: str, message: str) -> None:
    """Attach a flash message to ``response``; it lives for 30 seconds."""
    response.set_cookie(
        FLASH_COOKIE,
        quote_plus(f"{kind}|{message}"),
        max_age=30,
        path="/",
        httponly=True,
        samesite="Lax",
    )


def pop_flash(request: Request, response: Response) -> Optional[Flash]:
    """Read the flash cookie from ``request`` and clear it on ``response``."""
    raw = request.cookies.get(FLASH_COOKIE)
    if raw is None:
        return None
    response.delete_cookie(FLASH_COOKIE, path="/")
    kind, sep, message = unquote_plus(raw).partition("|")
    if not sep:
        return None
    return Flash(kind=kind, message=message)


def _form_int(form: Mapping[str, Any], key: str, default: int) -> int:
    value = str(form.get(key) or "").strip()
    if not value:
        return default
    if not _INT_RE.fullmatch(value):
        raise SettingsError(f'invalid {key}: parsing "{value}": invalid syntax')
    return int(value)


def parse_settings_form(form: Mapping[str, Any]) -> Settings:
    """Build validated settings from a form; blank fields take the defaults."""
    defaults = default_settings()
    settings = Settings(
        interval_sec=_form_int(form, "interval_sec", defaults.interval_sec),
        width=_form_int(form, "width", defaults.width),
        height=_form_int(form, "height", defaults.height),
        quality=_form_int(form, "quality", defaults.quality),
        fps=_form_int(form, "fps", defaults.fps),
    )
    settings.validate()
    return settings


def _json_response(data: Any, status: int = 200) -> Response:
    return Response(json.dumps(data) + "\n", status=status, mimetype="application/json")


def _redirect_with_flash(location: str, kind: str, message: str) -> Response:
    response = redirect(location, code=303)
    set_flash(response, kind, message)
    return response


def _quote_filename(name: str) -> str:
    return '"' + name.replace("\\", "\\\\").replace('"', '\\"') + '"'


class _QueueWriter:
    """A file-like sink that hands each write to the response generator."""

    def __init__(self, chunks: "queue.Queue[Optional[bytes]]", cancel: threading.Event) -> None:
        self._chunks = chunks
        self._cancel = cancel

    def write(self, data: bytes) -> int:
        chunk = bytes(data)
        while True:
            if self._cancel.is_set():
                raise OSError("viewfinder closed")
            try:
                self._chunks.put(chunk, timeout=_STREAM_PUT_POLL)
                return len(chunk)
            except queue.Full:
                continue

    def flush(self) -> None:
        pass


class Server:
    """Wires the config, session store, controller and streamer to HTTP routes."""

    def __init__(
        self,
        config: Config,
        store: SessionStore,
        controller: Controller,
        streamer: Streamer,
        templates_dir: PathArg,
    ) -> None:
        templates = Path(templates_dir)
        if not templates.is_dir() or not any(templates.glob("*.html")):
            raise FileNotFoundError(f"no HTML templates found in {templates}")
        self._config = config
        self._store = store
        self._controller = controller
        self._streamer = streamer
        self._templates_dir = templates.resolve()

    def create_app(self, static_dir: Optional[PathArg] = None) -> Flask:
        """Build the Flask application; ``static_dir`` is served under /static/."""
        static_folder = str(Path(static_dir).resolve()) if static_dir is not None else None
        app = Flask(
            __name__,
            template_folder=str(self._templates_dir),
            static_folder=static_folder,
            static_url_path="/static" if static_folder is not None else None,
        )
        app.jinja_env.filters["fmt_time"] = fmt_time
        app.jinja_env.filters["yesno"] = yesno
        app.jinja_env.globals["fmt_time"] = fmt_time
        app.jinja_env.globals["yesno"] = yesno

        routes = [
            ("/", "index", self._index, ["GET"]),
            ("/sessions", "create_session", self._create_session, ["POST"]),
            ("/sessions/<session_id>", "session", self._session, ["GET"]),
            ("/sessions/<session_id>/settings", "update_settings", self._update_settings, ["POST"]),
            ("/sessions/<session_id>/start", "start", self._start, ["POST"]),
            ("/sessions/<session_id>/stop", "stop", self._stop, ["POST"]),
            ("/sessions/<session_id>/compile", "compile", self._compile, ["POST"]),
            ("/sessions/<session_id>/delete", "delete", self._delete, ["POST"]),
            ("/sessions/<session_id>/status.json", "status", self._status, ["GET"]),
            ("/sessions/<session_id>/latest.jpg", "latest_frame", self._latest_frame, ["GET"]),
            ("/sessions/<session_id>/videos/<file>", "video", self._video, ["GET"]),
            ("/settings", "settings", self._settings, ["GET"]),
            ("/settings", "save_settings", self._save_settings, ["POST"]),
            ("/viewfinder.mjpeg", "viewfinder_stream", self._viewfinder_stream, ["GET"]),
            ("/viewfinder/stop", "viewfinder_stop", self._viewfinder_stop, ["POST"]),
            ("/viewfinder/status.json", "viewfinder_status", self._viewfinder_status, ["GET"]),
        ]
        for rule, endpoint, view, methods in routes:
            app.add_url_rule(rule, endpoint, view, methods=methods)
        return app

    # -- helpers -----------------------------------------------------------

    @staticmethod
    def _render(name: str, response: Response, **context: Any) -> Response:
        try:
            body = render_template(name, **context)
        except Exception as exc:  # template lookup, syntax or rendering failure
            log.error("template error (%s): %s", name, exc)
            body = ""
        response.set_data(body)
        return response

    @staticmethod
    def _page() -> Response:
        return Response(content_type="text/html; charset=utf-8")

    def _is_capturing(self, session_id: str) -> bool:
        active, running = self._controller.active_session()
        return running and active == session_id

    # -- pages -------------------------------------------------------------

    def _index(self) -> Response:
        active_id, capturing = self._controller.active_session()
        status = self._controller.status()
        response = self._page()
        return self._render(
            "index.html",
            response,
            flash=pop_flash(request, response),
            sessions=self._store.list_sessions(),
            active_id=active_id,
            capturing=capturing,
            frames_this_run=status.frames_this_run,
            defaults=default_settings(),
        )

    def _create_session(self) -> Response:
        name = (request.form.get("name") or "").strip()
        try:
            settings = parse_settings_form(request.form)
            session = self._store.create(name, settings)
        except _USER_ERRORS as exc:
            return _redirect_with_flash("/", "error", str(exc))
        return _redirect_with_flash(f"/sessions/{session.id}", "info", "Session created.")

    def _session(self, session_id: str) -> Response:
        try:
            session = self._store.get(session_id)
        except LookupError:
            abort(404)
        active_id, capturing = self._controller.active_session()
        status = self._controller.status()
        try:
            videos = self._store.list_videos(session_id)
        except OSError:
            videos = []
        response = self._page()
        return self._render(
            "session.html",
            response,
            flash=pop_flash(request, response),
            session=session,
            capturing=capturing,
            is_active=capturing and active_id == session_id,
            frames_this_run=status.frames_this_run,
            last_error=status.last_error,
            compile=self._controller.compile_status(session_id),
            videos=videos,
            has_frames=session.last_frame_number > 0,
        )

    def _update_settings(self, session_id: str) -> Response:
        location = f"/sessions/{session_id}"
        if self._is_capturing(session_id):
            return _redirect_with_flash(
                location, "error", "stop the session before editing settings"
            )
        try:
            settings = parse_settings_form(request.form)
            self._store.update_settings(session_id, settings)
        except _USER_ERRORS as exc:
            return _redirect_with_flash(location, "error", str(exc))
        return _redirect_with_flash(location, "info", "Settings saved.")

    def _start(self, session_id: str) -> Response:
        location = f"/sessions/{session_id}"
        try:
            self._controller.start(session_id)
        except _USER_ERRORS as exc:
            return _redirect_with_flash(location, "error", str(exc))
        return _redirect_with_flash(location, "info", "Capture started.")

    def _stop(self, session_id: str) -> Response:
        location = f"/sessions/{session_id}"
        try:
            self._controller.stop()
        except _USER_ERRORS as exc:
            return _redirect_with_flash(location, "error", str(exc))
        return _redirect_with_flash(location, "info", "Capture stopped.")

    def _compile(self, session_id: str) -> Response:
        location = f"/sessions/{session_id}"
        try:
            self._controller.compile(session_id)
        except _USER_ERRORS as exc:
            return _redirect_with_flash(location, "error", str(exc))
        return _redirect_with_flash(location, "info", "Compile started — refresh in a moment.")

    def _delete(self, session_id: str) -> Response:
        location = f"/sessions/{session_id}"
        if self._is_capturing(session_id):
            return _redirect_with_flash(location, "error", "stop the session before deleting")
        try:
            self._store.delete(session_id)
        except _USER_ERRORS as exc:
            return _redirect_with_flash(location, "error", str(exc))
        return _redirect_with_flash("/", "info", "Session deleted.")

    def _status(self, session_id: str) -> Response:
        try:
            self._store.get(session_id)
        except LookupError:
            abort(404)
        status = self._controller.status()
        capturing = self._is_capturing(session_id)
        last_frame_number = status.last_frame_number
        last_frame_at = status.last_frame_at
        # Outside an active capture the stored session is the source of truth.
        if not capturing:
            try:
                session = self._store.get(session_id)
            except LookupError:
                pass
            else:
                last_frame_number = session.last_frame_number
                last_frame_at = session.last_frame_at
        data: dict[str, Any] = {
            "capturing": capturing,
            "frames_this_run": status.frames_this_run,
            "last_frame_number": last_frame_number,
        }
        if last_frame_at is not None and last_frame_at != _ZERO_TIME:
            data["last_frame_at"] = last_frame_at.isoformat()
        if status.last_error:
            data["last_error"] = status.last_error
        data["compile"] = self._controller.compile_status(session_id).to_dict()
        return _json_response(data)

    def _latest_frame(self, session_id: str) -> Response:
        try:
            path = self._store.latest_frame_path(session_id)
        except (LookupError, OSError):
            abort(404)
        if not path.is_file():
            abort(404)
        response = send_file(path, mimetype="image/jpeg", conditional=True)
        response.headers["Cache-Control"] = "no-store"
        return response

    def _video(self, session_id: str, file: str) -> Response:
        # Only plain base names: no path traversal.
        if not file or "/" in file or "\\" in file or os.path.basename(file) != file:
            abort(404)
        if not file.lower().endswith(".mp4"):
            abort(404)
        try:
            self._store.get(session_id)
        except LookupError:
            abort(404)
        full = self._store.videos_dir(session_id) / file
        if not full.is_file():
            abort(404)
        response = send_file(full, mimetype="video/mp4", conditional=True)
        if request.args.get("download") == "1":
            response.headers["Content-Disposition"] = (
                f"attachment; filename={_quote_filename(file)}"
            )
        return response

    def _settings(self) -> Response:
        data_dir, _ = self._config.snapshot()
        camera_type, camera, rtsp_url = self._config.camera_settings()
        hw_enabled, hw_available, bitrate = self._config.encode_settings()
        response = self._page()
        return self._render(
            "settings.html",
            response,
            flash=pop_flash(request, response),
            settings={
                "data_dir": data_dir,
                "camera_type": camera_type.value,
                "camera": camera,
                "rtsp_url": rtsp_url,
                "hardware_encode": hw_enabled,
                "hardware_bitrate": bitrate.value,
            },
            hardware_available=hw_available,
        )

    def _save_settings(self) -> Response:
        location = "/settings"
        _, running = self._controller.active_session()
        if running:
            return _redirect_with_flash(
                location, "error", "stop the active capture before changing settings"
            )
        form = request.form
        data_dir = (form.get("data_dir") or "").strip()
        camera_type = valid_camera_type(form.get("camera_type"))
        camera = (form.get("camera") or "").strip()
        rtsp_url = (form.get("rtsp_url") or "").strip()
        if not data_dir:
            return _redirect_with_flash(location, "error", "data dir is required")
        if camera_type == CameraType.USB and not camera:
            return _redirect_with_flash(
                location, "error", "camera device is required for USB cameras"
            )
        if camera_type == CameraType.RTSP:
            if not rtsp_url:
                return _redirect_with_flash(
                    location, "error", "RTSP URL is required for IP cameras"
                )
            if not rtsp_url.lower().startswith(("rtsp://", "rtsps://")):
                return _redirect_with_flash(
                    location, "error", "RTSP URL must start with rtsp:// or rtsps://"
                )
        hardware_encode = form.get("encoder") == "hardware" and self._config.hardware_available
        bitrate = valid_bitrate(form.get("hardware_bitrate"))
        try:
            self._config.update(data_dir, camera_type, camera, rtsp_url, hardware_encode, bitrate)
        except OSError as exc:
            return _redirect_with_flash(location, "error", str(exc))
        # Sessions may live in a different data directory now.
        try:
            self._store.reload()
        except OSError as exc:
            return _redirect_with_flash(
                location, "error", f"settings saved, but reload failed: {exc}"
            )
        return _redirect_with_flash(location, "info", "Settings saved.")

    # -- viewfinder --------------------------------------------------------

    def _viewfinder_stream(self) -> Response:
        stack = ExitStack()
        try:
            cancel = stack.enter_context(self._controller.viewfinder())
        except ControllerError as exc:
            return Response(f"{exc}\n", status=409, mimetype="text/plain")

        chunks: "queue.Queue[Optional[bytes]]" = queue.Queue(maxsize=_STREAM_QUEUE_SIZE)
        writer = _QueueWriter(chunks, cancel)

        def produce() -> None:
            try:
                self._streamer.stream(cancel, writer)
            except Exception as exc:
                self._controller.set_viewfinder_error(str(exc))
                log.warning("viewfinder error: %s", exc)
            finally:
                while True:
                    try:
                        chunks.put(None, timeout=_STREAM_PUT_POLL)
                        return
                    except queue.Full:
                        if cancel.is_set():
                            return

        def generate() -> Iterator[bytes]:
            producer = threading.Thread(target=produce, name="viewfinder", daemon=True)
            producer.start()
            try:
                while True:
                    try:
                        chunk = chunks.get(timeout=_STREAM_PUT_POLL)
                    except queue.Empty:
                        if not producer.is_alive():
                            return
                        continue
                    if chunk is None:
                        return
                    yield chunk
            finally:
                cancel.set()
                producer.join()
                stack.close()

        response = Response(
            generate(),
            status=200,
            content_type=f"multipart/x-mixed-replace; boundary={VIEWFINDER_BOUNDARY}",
        )
        response.headers["Cache-Control"] = "no-store"
        response.call_on_close(stack.close)
        return response

    def _viewfinder_stop(self) -> Response:
        self._controller.stop_viewfinder()
        return Response(status=204)

    def _viewfinder_status(self) -> Response:
        running, capturing, last_error = self._controller.viewfinder_status()
        data: dict[str, Any] = {"running": running, "capturing": capturing}
        if last_error:
            data["last_error"] = last_error
        return _json_response(data)