"""Command-line entry point: load configuration and serve the web interface."""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from pathlib import Path
from socketserver import ThreadingMixIn
from typing import NoReturn, Optional, Sequence
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from snapshoter.config import load_config
from snapshoter.controller import Controller
from snapshoter.ffmpeg import (
    Capturer,
    FakeCapturer,
    FakeStreamer,
    RealCapturer,
    RealStreamer,
    Streamer,
    probe_hardware_encoder,
)
from snapshoter.server import Server
from snapshoter.session import SessionStore

log = logging.getLogger("snapshoter")

_PACKAGE_DIR = Path(__file__).resolve().parent
_DEFAULT_TEMPLATES = _PACKAGE_DIR / "templates"
_DEFAULT_STATIC = _PACKAGE_DIR / "static"
_SIGNAL_POLL = 0.5


class _ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    """Handles each request on its own thread so streams do not block pages."""

    daemon_threads = True
    allow_reuse_address = True


class _RequestHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args: object) -> None:
        log.debug("%s - %s", self.address_string(), format % args)


def build_parser() -> argparse.ArgumentParser:
    """The argument parser for the ``snapshoter`` command."""
    parser = argparse.ArgumentParser(
        prog="snapshoter",
        description="Timelapse capture server with a web interface.",
    )
    parser.add_argument("--addr", default=":8080", help="listen address")
    parser.add_argument(
        "--data-dir",
        default="./data",
        help="default data directory (can be changed in UI)",
    )
    parser.add_argument(
        "--camera",
        default="/dev/video0",
        help="default camera device (can be changed in UI)",
    )
    parser.add_argument(
        "--fake-camera",
        action="store_true",
        help="generate synthetic frames instead of using ffmpeg (dev mode)",
    )
    parser.add_argument(
        "--templates-dir",
        default=str(_DEFAULT_TEMPLATES),
        help="directory holding the HTML templates",
    )
    parser.add_argument(
        "--static-dir",
        default=str(_DEFAULT_STATIC),
        help="directory served under /static/",
    )
    return parser


def _parse_address(addr: str) -> tuple[str, int]:
    """Split ``host:port`` (host may be empty or a bracketed IPv6 address)."""
    host, sep, port_text = addr.rpartition(":")
    if not sep:
        raise ValueError(f"address {addr!r} is missing a port")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    if not port_text.isdigit():
        raise ValueError(f"invalid port in address {addr!r}")
    port = int(port_text)
    if port > 65535:
        raise ValueError(f"port out of range in address {addr!r}")
    return host, port


def _fatal(what: str, exc: BaseException) -> NoReturn:
    log.critical("%s: %s", what, exc)
    raise SystemExit(1)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the server until interrupted; returns the exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(message)s")

    try:
        host, port = _parse_address(args.addr)
    except ValueError as exc:
        parser.error(str(exc))

    try:
        data_dir = Path(args.data_dir).resolve()
    except OSError as exc:
        _fatal("resolve data dir", exc)
    try:
        data_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        _fatal("create data dir", exc)

    try:
        config = load_config(data_dir / "config.json", str(data_dir), args.camera)
    except (OSError, ValueError) as exc:
        _fatal("load config", exc)

    try:
        store = SessionStore(config)
    except OSError as exc:
        _fatal("init session store", exc)

    capturer: Capturer = RealCapturer(config)
    streamer: Streamer = RealStreamer(config)
    if args.fake_camera:
        capturer = FakeCapturer()
        streamer = FakeStreamer()
        log.info("using fake camera — no ffmpeg/v4l2 needed")

    hardware_available = probe_hardware_encoder()
    config.hardware_available = hardware_available
    if hardware_available:
        log.info("hardware encoder h264_v4l2m2m available")
    else:
        log.info("hardware encoder h264_v4l2m2m not available — software encoding only")

    controller = Controller(config, store, capturer)

    try:
        server = Server(config, store, controller, streamer, args.templates_dir)
    except OSError as exc:
        _fatal("init server", exc)
    static_dir = Path(args.static_dir)
    app = server.create_app(static_dir if static_dir.is_dir() else None)

    try:
        httpd = make_server(
            host,
            port,
            app,
            server_class=_ThreadingWSGIServer,
            handler_class=_RequestHandler,
        )
    except OSError as exc:
        _fatal("http server", exc)

    stop = threading.Event()

    def on_signal(signum: int, frame: object) -> None:
        stop.set()

    previous = {
        sig: signal.signal(sig, on_signal) for sig in (signal.SIGINT, signal.SIGTERM)
    }

    def serve() -> None:
        try:
            httpd.serve_forever()
        except Exception as exc:  # keep the main thread informed
            log.critical("http server: %s", exc)
        finally:
            stop.set()

    serving = threading.Thread(target=serve, name="http", daemon=True)
    log.info("snapshoter listening on %s (data dir: %s)", args.addr, data_dir)
    serving.start()
    try:
        while not stop.wait(_SIGNAL_POLL):
            pass
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    log.info("shutting down…")
    _, running = controller.active_session()
    if running:
        log.info("stopping active capture…")
        try:
            controller.stop()
        except Exception as exc:
            log.warning("stop capture: %s", exc)

    httpd.shutdown()
    serving.join(timeout=5.0)
    httpd.server_close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())