#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = ["fastapi", "uvicorn[standard]", "jinja2", "python-multipart"]
# ///
"""DASH Transcode Server.

Usage:
    ./main.py [--port PORT] [--host HOST] [--debug]

Options:
    --port PORT     Port to listen on (default: $PORT or 3000)
    --host HOST     Interface to bind (default: 0.0.0.0)
    --debug         Enable debug logging

Upload a file with POST /upload (multipart field "file"), poll
GET /status/{id}, then play /dash/{id}/manifest.mpd.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import pathlib
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated
from typing import Any

from fastapi import Depends
from fastapi import FastAPI
from fastapi import File
from fastapi import HTTPException
from fastapi import Request
from fastapi import UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates

import transcoding
from jobs import InMemoryJobStore
from jobs import JobManager
from settings import check_encoders
from settings import ensure_dirs
from settings import load_server_settings


log = logging.getLogger()

_UPLOAD_CHUNK_BYTES = 1024 * 1024

_MEDIA_TYPES = {
    ".mpd": "application/dash+xml",
    ".webm": "video/webm",
    ".m4s": "video/iso.segment",
    ".mp4": "video/mp4",
}


# =============================================================================
# App Setup
# =============================================================================

APP_DIR = pathlib.Path(__file__).parent
TEMPLATES = Jinja2Templates(directory=APP_DIR / "templates")


def build_job_manager(settings: dict[str, Any]) -> JobManager:
    prober = functools.partial(
        transcoding.probe_media,
        ffprobe_path=settings["ffprobe_path"],
        timeout=settings["probe_timeout_secs"],
    )
    return JobManager(
        InMemoryJobStore(),
        settings["dash_dir"],
        prober,
        ffmpeg_path=settings["ffmpeg_path"],
        max_concurrent_jobs=int(settings["max_concurrent_jobs"]),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create data dirs and the job manager; kill ffmpeg on shutdown."""
    settings = load_server_settings()
    ensure_dirs(settings)
    app.state.settings = settings
    app.state.job_manager = build_job_manager(settings)
    log.info("Uploads: %s, DASH output: %s", settings["upload_dir"], settings["dash_dir"])
    await asyncio.to_thread(check_encoders, settings["ffmpeg_path"])

    yield

    app.state.job_manager.shutdown()


app = FastAPI(title="DASH Transcode Server", lifespan=lifespan)
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])


def get_settings(request: Request) -> dict[str, Any]:
    return request.app.state.settings


def get_job_manager(request: Request) -> JobManager:
    return request.app.state.job_manager


def _safe_name(name: str) -> str:
    """Reject anything that is not a plain file name."""
    safe = pathlib.Path(name).name
    if not safe or safe != name or ".." in name:
        raise HTTPException(400, "Invalid path")
    return safe


async def _save_upload(file: UploadFile, upload_dir: pathlib.Path, max_bytes: int) -> pathlib.Path:
    """Stream an upload to disk. Raises 413 past max_bytes."""
    suffix = pathlib.Path(file.filename or "").suffix[:16]
    dest = upload_dir / f"{uuid.uuid4().hex}{suffix}"
    written = 0
    try:
        with dest.open("wb") as out:
            while chunk := await file.read(_UPLOAD_CHUNK_BYTES):
                written += len(chunk)
                if written > max_bytes:
                    raise HTTPException(413, f"File too large (limit {max_bytes} bytes)")
                await asyncio.to_thread(out.write, chunk)
    except BaseException:
        dest.unlink(missing_ok=True)
        raise
    log.info("Received upload %s (%d bytes) -> %s", file.filename, written, dest.name)
    return dest


# =============================================================================
# Routes
# =============================================================================


@app.post("/upload")
async def upload(
    request: Request,
    settings: Annotated[dict, Depends(get_settings)],
    manager: Annotated[JobManager, Depends(get_job_manager)],
    file: Annotated[UploadFile | None, File()] = None,
):
    """Accept a media file and start transcoding it in the background."""
    if file is None or not file.filename:
        raise HTTPException(400, "No file uploaded (field name: file)")
    try:
        upload_dir = pathlib.Path(settings["upload_dir"])
        upload_dir.mkdir(parents=True, exist_ok=True)
        path = await _save_upload(file, upload_dir, int(settings["max_upload_bytes"]))
        job = manager.submit(str(path), file.filename)
    except HTTPException:
        raise
    except Exception as e:
        log.exception("Upload handler error")
        raise HTTPException(500, "Internal server error") from e
    finally:
        await file.close()

    base = str(request.base_url).rstrip("/")
    return {
        "id": job.id,
        "manifestUrl": f"{base}/dash/{job.id}/{transcoding.MANIFEST_NAME}",
        "statusUrl": f"{base}/status/{job.id}",
    }


@app.get("/status/{job_id}")
async def job_status(
    job_id: str,
    manager: Annotated[JobManager, Depends(get_job_manager)],
):
    """Get job status and percent complete."""
    job = manager.store.get(job_id)
    if job is None:
        raise HTTPException(404, "Job not found")
    return job.to_dict()


@app.get("/dash/{job_id}/{filename}")
async def dash_file(
    job_id: str,
    filename: str,
    manager: Annotated[JobManager, Depends(get_job_manager)],
):
    """Serve a DASH manifest or segment (no auth - job IDs are unguessable)."""
    file_path = manager.output_dir(_safe_name(job_id)) / _safe_name(filename)
    if not file_path.is_file():
        raise HTTPException(404, "File not found")

    headers = {"Access-Control-Allow-Origin": "*"}
    media_type = _MEDIA_TYPES.get(file_path.suffix.lower(), "application/octet-stream")
    if file_path.suffix.lower() == ".mpd":
        # Live-style manifest is rewritten while the job runs
        headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
    return FileResponse(file_path, media_type=media_type, headers=headers)


@app.get("/player/{job_id}", response_class=HTMLResponse)
async def player_page(request: Request, job_id: str):
    """Minimal dash.js page for checking a job's output in a browser."""
    _safe_name(job_id)
    base = str(request.base_url).rstrip("/")
    return TEMPLATES.TemplateResponse(
        request,
        "player.html",
        {
            "job_id": job_id,
            "manifest_url": f"{base}/dash/{job_id}/{transcoding.MANIFEST_NAME}",
            "status_url": f"{base}/status/{job_id}",
        },
    )


if __name__ == "__main__":
    import argparse

    import uvicorn  # pyright: ignore[reportMissingImports]

    parser = argparse.ArgumentParser(description="DASH Transcode Server")
    parser.add_argument("--port", type=int, default=None, help="Port to listen on")
    parser.add_argument("--host", default="0.0.0.0", help="Interface to bind")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    log_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
        force=True,
    )

    port = args.port or load_server_settings()["port"]
    log.info("Upload endpoint: POST /upload (field name \"file\") on port %d", port)
    uv_log = "debug" if args.debug else "info"
    uvicorn.run(
        app,
        host=args.host,
        port=port,
        access_log=args.debug,
        log_level=uv_log,
    )
