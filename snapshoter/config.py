"""Persistent application configuration: data directory, camera and encoder."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Union


class BitratePreset(str, Enum):
    """Bitrate preset for the hardware encoder; software encoding uses CRF."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    def ff_arg(self) -> str:
        """Return the value passed to ffmpeg's ``-b:v`` option."""
        return _FF_BITRATES[self]


_FF_BITRATES = {
    BitratePreset.LOW: "2M",
    BitratePreset.MEDIUM: "4M",
    BitratePreset.HIGH: "8M",
}


def valid_bitrate(value: Any) -> BitratePreset:
    """Coerce ``value`` to a preset, falling back to medium."""
    try:
        return BitratePreset(value)
    except ValueError:
        return BitratePreset.MEDIUM


class CameraType(str, Enum):
    """A V4L2 device (``usb``) or a network IP camera (``rtsp``)."""

    USB = "usb"
    RTSP = "rtsp"


def valid_camera_type(value: Any) -> CameraType:
    """Coerce ``value`` to a camera type; anything but ``rtsp`` means USB."""
    if value == CameraType.RTSP.value:
        return CameraType.RTSP
    return CameraType.USB


@dataclass(frozen=True)
class CameraSpec:
    """The resolved camera input handed to ffmpeg."""

    type: CameraType
    device: str
    rtsp_url: str


PathLike = Union[str, Path]


@dataclass(eq=False)
class Config:
    """Settings persisted as JSON, guarded by a lock for concurrent use."""

    path: Path
    data_dir: str
    camera: str
    camera_type: CameraType = CameraType.USB
    rtsp_url: str = ""
    hardware_encode: bool = False
    hardware_bitrate: BitratePreset = BitratePreset.MEDIUM
    _hardware_available: bool = field(default=False, init=False, repr=False)
    _lock: Any = field(default_factory=threading.RLock, init=False, repr=False)

    def __post_init__(self) -> None:
        self.path = Path(self.path)

    @property
    def hardware_available(self) -> bool:
        """Whether the startup probe found the hardware encoder (not persisted)."""
        with self._lock:
            return self._hardware_available

    @hardware_available.setter
    def hardware_available(self, value: bool) -> None:
        with self._lock:
            self._hardware_available = bool(value)

    def _payload(self) -> dict[str, Any]:
        return {
            "data_dir": self.data_dir,
            "camera_type": self.camera_type.value,
            "camera": self.camera,
            "rtsp_url": self.rtsp_url,
            "hardware_encode": self.hardware_encode,
            "hardware_bitrate": self.hardware_bitrate.value,
        }

    def save(self) -> None:
        """Write the persistent fields to the config file."""
        with self._lock:
            payload = self._payload()
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def snapshot(self) -> tuple[str, str]:
        """Return ``(data_dir, camera)``."""
        with self._lock:
            return self.data_dir, self.camera

    def camera_spec(self) -> CameraSpec:
        with self._lock:
            return CameraSpec(type=self.camera_type, device=self.camera, rtsp_url=self.rtsp_url)

    def camera_settings(self) -> tuple[CameraType, str, str]:
        """Return ``(camera_type, device, rtsp_url)``."""
        with self._lock:
            return self.camera_type, self.camera, self.rtsp_url

    def encode_settings(self) -> tuple[bool, bool, BitratePreset]:
        """Return ``(hardware_enabled, hardware_available, bitrate)``."""
        with self._lock:
            return self.hardware_encode, self._hardware_available, self.hardware_bitrate

    def update(
        self,
        data_dir: str,
        camera_type: Any,
        camera: str,
        rtsp_url: str,
        hardware_encode: bool,
        hardware_bitrate: Any,
    ) -> None:
        """Replace the persistent settings and save them."""
        with self._lock:
            self.data_dir = data_dir
            self.camera_type = valid_camera_type(camera_type)
            self.camera = camera
            self.rtsp_url = rtsp_url
            self.hardware_encode = bool(hardware_encode)
            self.hardware_bitrate = valid_bitrate(hardware_bitrate)
            self.save()


def load_config(path: PathLike, default_data_dir: str, default_camera: str) -> Config:
    """Load the config at ``path``, creating it with defaults if it is missing."""
    path = Path(path)
    config = Config(path=path, data_dir=default_data_dir, camera=default_camera)
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        config.save()
        return config

    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("config file must hold a JSON object")
    for key in ("data_dir", "camera", "rtsp_url"):
        value = data.get(key)
        if value is None:
            continue
        if not isinstance(value, str):
            raise ValueError(f"config field {key!r} must be a string")
        setattr(config, key, value)
    hardware_encode = data.get("hardware_encode")
    if hardware_encode is not None:
        if not isinstance(hardware_encode, bool):
            raise ValueError("config field 'hardware_encode' must be a boolean")
        config.hardware_encode = hardware_encode

    if not config.data_dir:
        config.data_dir = default_data_dir
    if not config.camera:
        config.camera = default_camera
    config.camera_type = valid_camera_type(data.get("camera_type"))
    config.hardware_bitrate = valid_bitrate(data.get("hardware_bitrate"))
    return config