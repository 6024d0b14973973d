# snapshoter

A small web application for shooting timelapses. It captures one JPEG frame at
a fixed interval from a USB (V4L2) camera or an RTSP network camera. It keeps
the frames of each session on disk and turns them into an MP4 video with
`ffmpeg`.

## Features

- Sessions that each have their own settings: interval, resolution, JPEG
  quality and output frame rate.
- Stopping and resuming a capture. Frame numbering carries on from the highest
  frame already on disk.
- A live MJPEG viewfinder (`/viewfinder.mjpeg`) for framing the shot. It
  releases the camera when a capture starts.
- Compiling a session to MP4 with `libx264`. If `ffmpeg` offers the hardware
  encoder `h264_v4l2m2m` (checked once at startup), it can be chosen on the
  Settings page instead, with `low`/`medium`/`high` bitrate presets (2M, 4M,
  8M). If the hardware encode fails, the compile falls back to `libx264` and
  records a warning.
- A fake-camera mode that produces synthetic frames. Capture and the viewfinder
  then work without a camera or `ffmpeg`.

Only one session can capture at a time, and only one compile can run at a time.

## Requirements

- Python 3.10 or later
- Flask and Pillow (installed as dependencies)
- `ffmpeg` on `PATH`. Fake-camera mode does not need it for capture or the
  viewfinder, but compiling videos still does.

## Installation

```
pip install .
```

## What is not included

The package contains no HTML templates and no static files. The web pages are
rendered from a templates directory that you supply. It must contain
`index.html`, `session.html` and `settings.html`. If the directory holds no
`*.html` files, `snapshoter` stops at startup with an `init server` error.
By default it looks for `templates/` and `static/` next to the `snapshoter`
package. Use `--templates-dir` and `--static-dir` to point elsewhere. If the
static directory does not exist, nothing is served under `/static/`.

The templates are rendered with Flask's Jinja2. The filters and globals
`fmt_time` (local time as `YYYY-MM-DD HH:MM:SS`, or `—` when unset) and
`yesno` are available. Each page gets these variables:

| Template        | Variables |
|-----------------|-----------|
| `index.html`    | `flash`, `sessions`, `active_id`, `capturing`, `frames_this_run`, `defaults` |
| `session.html`  | `flash`, `session`, `capturing`, `is_active`, `frames_this_run`, `last_error`, `compile`, `videos`, `has_frames` |
| `settings.html` | `flash`, `settings` (a dict: `data_dir`, `camera_type`, `camera`, `rtsp_url`, `hardware_encode`, `hardware_bitrate`), `hardware_available` |

`flash` is either `None` or a `Flash` with `kind` (`"info"` or `"error"`) and
`message`.

## Running

```
snapshoter --addr :8080 --data-dir ./data --camera /dev/video0 --templates-dir ./templates
```

Then open `http://localhost:8080/` in a browser. SIGINT or SIGTERM stops any
running capture and shuts the server down.

| Option            | Default                 | Meaning                                               |
|-------------------|-------------------------|-------------------------------------------------------|
| `--addr`          | `:8080`                 | Address to listen on, `host:port`. An empty host means all interfaces |
| `--data-dir`      | `./data`                | Default data directory (can be changed in the UI)     |
| `--camera`        | `/dev/video0`           | Default V4L2 device (can be changed in the UI)        |
| `--fake-camera`   | off                     | Generate synthetic frames instead of running `ffmpeg` |
| `--templates-dir` | `<package>/templates`   | Directory holding the HTML templates                  |
| `--static-dir`    | `<package>/static`      | Directory served under `/static/`                     |

## HTTP routes

| Method | Path                                   | Purpose |
|--------|----------------------------------------|---------|
| GET    | `/`                                    | Session list |
| POST   | `/sessions`                            | Create a session (`name`, `interval_sec`, `width`, `height`, `quality`, `fps`) |
| GET    | `/sessions/<id>`                       | Session page |
| POST   | `/sessions/<id>/settings`              | Change session settings (not while it is capturing) |
| POST   | `/sessions/<id>/start`, `/stop`        | Start or stop capturing |
| POST   | `/sessions/<id>/compile`               | Start compiling an MP4 in the background |
| POST   | `/sessions/<id>/delete`                | Delete the session and its files |
| GET    | `/sessions/<id>/status.json`           | Capture and compile status as JSON |
| GET    | `/sessions/<id>/latest.jpg`            | Most recent frame |
| GET    | `/sessions/<id>/videos/<file>`         | An MP4. Add `?download=1` to download it as an attachment |
| GET/POST | `/settings`                          | Show or save the camera and encoder settings |
| GET    | `/viewfinder.mjpeg`                    | Live MJPEG stream. Returns 409 if the viewfinder or a capture is already running |
| POST   | `/viewfinder/stop`                     | Close the viewfinder |
| GET    | `/viewfinder/status.json`              | Viewfinder status as JSON |

Form actions redirect back with a one-shot message in the `flash` cookie.

## Data layout

```
<data-dir>/
  config.json
  sessions/
    <session-id>/
      session.json
      frames/frame_000001.jpg ...
      videos/timelapse-YYYYMMDD-HHMMSS.mp4
```

`config.json` always lives in the `--data-dir` directory. It stores the
sessions directory (`data_dir`), the camera type (`usb` or `rtsp`), the device
path or RTSP URL, and the encoder preferences. When `data_dir` is changed on
the Settings page, the sessions are re-read from the new location.

## Session settings

| Field          | Default | Allowed range                        |
|----------------|---------|--------------------------------------|
| `interval_sec` | 5       | at least 1                           |
| `width`        | 1280    | 16–4096                              |
| `height`       | 720     | 16–4096                              |
| `quality`      | 5       | 1–31 (ffmpeg `-q:v`, lower = better) |
| `fps`          | 30      | 1–120                                |

## Using it as a library

The parts can be wired together in code:

- `snapshoter.config.load_config` reads or creates `config.json`.
- `snapshoter.session.SessionStore` manages sessions on disk.
- `snapshoter.controller.Controller` runs captures, the viewfinder and
  compiles.
- `snapshoter.server.Server(...).create_app(static_dir)` returns the Flask
  application.

## Development

```
pip install -e ".[test]"
pytest
```