"""Frame capture, viewfinder streaming and timelapse encoding through ffmpeg."""

from __future__ import annotations

import io
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from os import PathLike
from typing import BinaryIO, Optional, Union

from PIL import Image, ImageDraw

from snapshoter.config import BitratePreset, CameraSpec, CameraType, Config
from snapshoter.session import Session

FFMPEG = "ffmpeg"
HARDWARE_ENCODER = "h264_v4l2m2m"
SOFTWARE_ENCODER = "libx264"

# Multipart boundary used by ffmpeg's mpjpeg muxer and by the fake streamer.
# Must match the Content-Type header the viewfinder handler sets.
VIEWFINDER_BOUNDARY = "ffmpeg"

_POLL_SECONDS = 0.05
_CHUNK_SIZE = 64 * 1024

PathArg = Union[str, "PathLike[str]"]


class CaptureError(RuntimeError):
    """Raised when a frame cannot be captured or the viewfinder fails."""


@dataclass
class _RunResult:
    returncode: int
    stderr: str
    cancelled: bool
    timed_out: bool
    write_error: Optional[BaseException]

    def describe(self) -> str:
        if self.write_error is not None:
            return str(self.write_error)
        if self.timed_out:
            return "timed out"
        if self.cancelled:
            return "cancelled"
        if self.returncode < 0:
            return f"signal: {-self.returncode}"
        return f"exit status {self.returncode}"

    @property
    def failed(self) -> bool:
        return self.returncode != 0 or self.write_error is not None


def _run_ffmpeg(
    args: list[str],
    cancel: Optional[threading.Event] = None,
    timeout: Optional[float] = None,
    out: Optional[BinaryIO] = None,
) -> _RunResult:
    """Run ffmpeg, killing it on cancel or timeout; copy stdout to ``out``."""
    proc = subprocess.Popen(
        [FFMPEG, *args],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE if out is not None else subprocess.DEVNULL,
        stderr=subprocess.PIPE,
    )
    stderr_parts: list[bytes] = []
    finished = threading.Event()
    deadline = time.monotonic() + timeout if timeout is not None else None
    cancelled = False
    timed_out = False

    def read_stderr() -> None:
        assert proc.stderr is not None
        stderr_parts.append(proc.stderr.read())

    def watch() -> None:
        nonlocal cancelled, timed_out
        while True:
            if cancel is not None and cancel.is_set():
                cancelled = True
                proc.kill()
                return
            if deadline is not None and time.monotonic() >= deadline:
                timed_out = True
                proc.kill()
                return
            if finished.wait(_POLL_SECONDS):
                return

    stderr_thread = threading.Thread(target=read_stderr, daemon=True)
    watcher = threading.Thread(target=watch, daemon=True)
    stderr_thread.start()
    watcher.start()

    write_error: Optional[BaseException] = None
    try:
        if out is not None:
            assert proc.stdout is not None
            while chunk := proc.stdout.read1(_CHUNK_SIZE):
                try:
                    out.write(chunk)
                except (OSError, ValueError) as exc:
                    write_error = exc
                    proc.kill()
                    break
        proc.wait()
    finally:
        finished.set()
        watcher.join()
        stderr_thread.join()
        if proc.stdout is not None:
            proc.stdout.close()
        if proc.stderr is not None:
            proc.stderr.close()

    stderr = b"".join(stderr_parts).decode("utf-8", errors="replace")
    return _RunResult(proc.returncode, stderr, cancelled, timed_out, write_error)


class Capturer(ABC):
    """Writes one frame of a session to a JPEG file."""

    @abstractmethod
    def capture(
        self,
        session: Session,
        frame_path: PathArg,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """Capture a frame to ``frame_path``; raise :class:`CaptureError` on failure."""


class RealCapturer(Capturer):
    """Grabs a frame from the configured camera with ffmpeg."""

    def __init__(self, config: Config) -> None:
        self.config = config

    def capture(
        self,
        session: Session,
        frame_path: PathArg,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> None:
        args = capture_args(self.config.camera_spec(), session, frame_path)
        try:
            result = _run_ffmpeg(args, cancel=cancel, timeout=timeout)
        except OSError as exc:
            raise CaptureError(f"ffmpeg capture failed: {exc}") from exc
        if result.failed:
            raise CaptureError(f"ffmpeg capture failed: {result.describe()}: {result.stderr}")


def capture_args(spec: CameraSpec, session: Session, frame_path: PathArg) -> list[str]:
    """Build the ffmpeg arguments that grab a single frame."""
    settings = session.settings
    if spec.type == CameraType.RTSP:
        if not spec.rtsp_url.strip():
            raise CaptureError("RTSP URL is empty — set it on the Settings page")
        return [
            "-hide_banner", "-loglevel", "error", "-y",
            "-rtsp_transport", "tcp",
            "-i", spec.rtsp_url,
            "-frames:v", "1",
            "-vf", f"scale={settings.width}:{settings.height}",
            "-q:v", str(settings.quality),
            str(frame_path),
        ]
    if not spec.device.strip():
        raise CaptureError("camera device is empty — set it on the Settings page")
    return [
        "-hide_banner", "-loglevel", "error", "-y",
        "-f", "v4l2",
        "-video_size", f"{settings.width}x{settings.height}",
        "-i", spec.device,
        "-frames:v", "1",
        "-q:v", str(settings.quality),
        str(frame_path),
    ]


def _synthetic_frame(width: int, height: int, hue: int, offset: int) -> Image.Image:
    """A solid background with a diagonal band so consecutive frames differ."""
    background = (hue, 255 - hue, (hue + 128) % 256)
    band = (255 - hue, hue, 255)
    image = Image.new("RGB", (width, height), background)
    draw = ImageDraw.Draw(image)
    for y in range(height):
        x = (offset + y) % width
        draw.line([(x, y), (min(x + 15, width - 1), y)], fill=band)
    return image


def _jpeg_quality(ffmpeg_quality: int) -> int:
    """Map ffmpeg ``q:v`` 1..31 (lower is better) to JPEG 1..100 (higher is better)."""
    if 1 <= ffmpeg_quality <= 31:
        return int(100.0 - ((ffmpeg_quality - 1) / 30.0 * 70.0))
    return 90


class FakeCapturer(Capturer):
    """Writes synthetic frames; needs neither ffmpeg nor a camera."""

    def capture(
        self,
        session: Session,
        frame_path: PathArg,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> None:
        width, height = session.settings.width, session.settings.height
        if width <= 0 or height <= 0:
            width, height = 320, 240
        width = min(width, 1024)
        height = min(height, 768)
        now_ns = time.time_ns()
        hue = (now_ns // 1_000_000_000 * 13) % 256
        offset = now_ns // 1_000_000 // 50
        image = _synthetic_frame(width, height, hue, offset)
        with open(frame_path, "wb") as fh:
            image.save(fh, format="JPEG", quality=_jpeg_quality(session.settings.quality))


def compile_args(frames_dir: PathArg, output_path: PathArg, fps: int, start_number: int) -> list[str]:
    """ffmpeg arguments that turn the JPEG sequence into an MP4 with libx264."""
    return [
        "-hide_banner", "-loglevel", "error", "-y",
        "-framerate", str(fps),
        "-start_number", str(start_number),
        "-i", f"{frames_dir}/frame_%06d.jpg",
        "-c:v", SOFTWARE_ENCODER,
        "-preset", "veryfast",
        "-tune", "stillimage",
        "-pix_fmt", "yuv420p",
        "-crf", "23",
        str(output_path),
    ]


def compile_args_hw(
    frames_dir: PathArg,
    output_path: PathArg,
    fps: int,
    start_number: int,
    bitrate: BitratePreset,
) -> list[str]:
    """The same pipeline on the V4L2 M2M hardware encoder, tuned by bitrate only."""
    return [
        "-hide_banner", "-loglevel", "error", "-y",
        "-framerate", str(fps),
        "-start_number", str(start_number),
        "-i", f"{frames_dir}/frame_%06d.jpg",
        "-c:v", HARDWARE_ENCODER,
        "-b:v", BitratePreset(bitrate).ff_arg(),
        "-pix_fmt", "yuv420p",
        str(output_path),
    ]


class Streamer(ABC):
    """Produces an MJPEG byte stream until ``cancel`` is set."""

    @abstractmethod
    def stream(self, cancel: threading.Event, out: BinaryIO) -> None:
        """Write multipart MJPEG to ``out``; release the camera once ``cancel`` is set."""


class RealStreamer(Streamer):
    """Streams the configured camera through ffmpeg's mpjpeg muxer."""

    def __init__(self, config: Config) -> None:
        self.config = config

    def stream(self, cancel: threading.Event, out: BinaryIO) -> None:
        args = stream_args(self.config.camera_spec())
        try:
            result = _run_ffmpeg(args, cancel=cancel, out=out)
        except OSError as exc:
            if cancel.is_set():
                return
            raise CaptureError(f"ffmpeg viewfinder failed: {exc}") from exc
        if cancel.is_set():
            return
        if result.failed:
            raise CaptureError(
                f"ffmpeg viewfinder failed: {result.describe()}: {result.stderr.strip()}"
            )


def stream_args(spec: CameraSpec) -> list[str]:
    """Build the ffmpeg arguments for the MJPEG viewfinder stream."""
    if spec.type == CameraType.RTSP:
        if not spec.rtsp_url.strip():
            raise CaptureError("RTSP URL is empty — set it on the Settings page")
        return [
            "-hide_banner", "-loglevel", "error",
            "-rtsp_transport", "tcp",
            "-i", spec.rtsp_url,
            "-f", "mpjpeg",
            "-q:v", "5",
            "pipe:1",
        ]
    if not spec.device.strip():
        raise CaptureError("camera device is empty — set it on the Settings page")
    return [
        "-hide_banner", "-loglevel", "error",
        "-f", "v4l2",
        "-video_size", "1280x720",
        "-i", spec.device,
        "-f", "mpjpeg",
        "-q:v", "5",
        "pipe:1",
    ]


class FakeStreamer(Streamer):
    """Synthesises a 640x480 MJPEG stream at about ten frames a second."""

    width = 640
    height = 480

    def stream(self, cancel: threading.Event, out: BinaryIO) -> None:
        while not cancel.is_set():
            now_ms = time.time_ns() // 1_000_000
            hue = (now_ms // 50) % 256
            image = _synthetic_frame(self.width, self.height, hue, now_ms // 30)
            buffer = io.BytesIO()
            image.save(buffer, format="JPEG", quality=75)
            payload = buffer.getvalue()
            header = (
                f"--{VIEWFINDER_BOUNDARY}\r\n"
                "Content-Type: image/jpeg\r\n"
                f"Content-Length: {len(payload)}\r\n\r\n"
            ).encode("ascii")
            try:
                out.write(header)
                out.write(payload)
                out.write(b"\r\n")
            except (OSError, ValueError):
                return
            if cancel.wait(0.1):
                return


def probe_hardware_encoder(timeout: float = 5.0) -> bool:
    """Report whether ffmpeg offers the h264_v4l2m2m encoder; False if ffmpeg is missing."""
    try:
        result = subprocess.run(
            [FFMPEG, "-hide_banner", "-encoders"],
            stdin=subprocess.DEVNULL,
            capture_output=True,
            timeout=timeout,
            check=False,
        )
    except (OSError, subprocess.SubprocessError):
        return False
    if result.returncode != 0:
        return False
    return HARDWARE_ENCODER in result.stdout.decode("utf-8", errors="replace")