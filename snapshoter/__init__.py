"""Timelapse capture from USB or RTSP cameras, with a Flask web interface and ffmpeg encoding."""

__version__ = "0.1.0"