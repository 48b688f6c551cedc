from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import cast

from fastapi import FastAPI, HTTPException
from starlette.concurrency import run_in_threadpool
from starlette.staticfiles import StaticFiles
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from media_backend.config import LocalStorageConfig, settings
from media_backend.db import dispose_engine
from media_backend.error_handlers import register_error_handlers
from media_backend.fs_utils import sweep_stale_temp_files
from media_backend.routers import attachments


class RequestIdMiddleware:
    def __init__(self, app: ASGIApp) -> None:
        self.app: ASGIApp = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id_header: bytes | None = None
        inbound_headers = cast(list[tuple[bytes, bytes]], scope.get("headers") or [])
        for key, value in inbound_headers:
            if key.lower() == b"x-request-id":
                value = value.strip()
                if value:
                    request_id_header = value
                break

        if request_id_header is None:
            request_id = str(uuid.uuid4())
            request_id_header = request_id.encode("ascii")
        else:
            # latin-1 is a 1-1 mapping for bytes -> str.
            request_id = request_id_header.decode("latin-1")

        scope.setdefault("state", {})["request_id"] = request_id

        async def send_wrapper(message: Message) -> None:
            if message.get("type") == "http.response.start":
                headers = cast(list[tuple[bytes, bytes]], message.get("headers", []))
                headers = [(k, v) for (k, v) in headers if k.lower() != b"x-request-id"]
                headers.append((b"x-request-id", request_id_header))
                message["headers"] = headers
            await send(message)

        await self.app(scope, receive, send_wrapper)


logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    removed = await run_in_threadpool(
        sweep_stale_temp_files,
        settings.attachments_tmp_dir,
        max_age_seconds=settings.tmp_file_max_age_seconds,
    )
    logger.debug("startup temp sweep removed %d files", removed)
    yield
    # Ensure sqlite/aiosqlite worker threads don't keep the process alive.
    await dispose_engine()


app = FastAPI(title=settings.app_name, lifespan=_lifespan)

app.add_middleware(RequestIdMiddleware)
register_error_handlers(app)


@app.get("/health")
def health():
    return {"ok": True}


app.include_router(attachments.router, prefix=settings.api_prefix)


@app.api_route(
    f"{settings.api_prefix.rstrip('/')}/{{path:path}}",
    methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"],
    include_in_schema=False,
)
async def _v1_fallback_not_found(path: str) -> None:  # noqa: ARG001
    # Keep unknown API paths on the JSON error contract.
    raise HTTPException(status_code=404, detail="Not Found")


def _mount_local_media(_app: FastAPI) -> None:
    """Serve the local storage root under /media (S3 serves its own URLs)."""
    storage = settings.storage_config()
    if not isinstance(storage, LocalStorageConfig):
        return
    root = Path(storage.root_dir)
    root.mkdir(parents=True, exist_ok=True)
    logger.info("serving local media from %s", root)
    _app.mount("/media", StaticFiles(directory=str(root), check_dir=False), name="media")


_mount_local_media(app)
