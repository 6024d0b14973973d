[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "snapshoter"
version = "0.1.0"
description = "Web-controlled timelapse capture from USB or RTSP cameras, compiled to MP4 with ffmpeg"
requires-python = ">=3.10"
keywords = ["timelapse", "camera", "ffmpeg", "v4l2", "rtsp", "mjpeg", "raspberry-pi"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Web Environment",
    "Framework :: Flask",
    "Intended Audience :: End Users/Desktop",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Multimedia :: Graphics :: Capture :: Digital Camera",
    "Topic :: Multimedia :: Video",
]
dependencies = [
    "flask",
    "pillow",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
snapshoter = "snapshoter.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["snapshoter"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]
