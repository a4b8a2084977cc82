"""FastAPI server: live video ingest into transcode sessions."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import asyncio
import contextlib
import io
import logging
import os

from fastapi import FastAPI, HTTPException, Request, Response
from starlette.requests import ClientDisconnect

from config import TranscodeConfig, load_config
from session_registry import SessionRegistry
from transcode_command import IngestType
from transcode_session import (
    IngestRequest,
    SessionState,
    TranscodeError,
    TranscodeSession,
    TranscodeStartError,
    WrongMimetypeError,
)


log = logging.getLogger(__name__)

_CLEANUP_INTERVAL_SEC = 60.0


class RequestBody(io.RawIOBase):
    """Blocking reader over an async request stream.

    Only for use from a worker thread: each read that needs more data
    schedules the next chunk on the event loop and waits for it, so the
    body reaches the pipe as it arrives instead of being buffered whole.
    """

    def __init__(self, stream: AsyncIterator[bytes], loop: asyncio.AbstractEventLoop) -> None:
        super().__init__()
        self._stream = stream
        self._loop = loop
        self._buffer = b""
        self._eof = False

    def readable(self) -> bool:
        return True

    async def _next_chunk(self) -> bytes | None:
        try:
            return await anext(self._stream)
        except StopAsyncIteration:
            return None

    def read(self, size: int = -1) -> bytes:
        # Empty chunks (end-of-body markers) are skipped, not returned as EOF
        while not self._buffer and not self._eof:
            future = asyncio.run_coroutine_threadsafe(self._next_chunk(), self._loop)
            try:
                chunk = future.result()
            except ClientDisconnect as e:
                raise ConnectionResetError("Client disconnected mid-body") from e
            if chunk is None:
                self._eof = True
            else:
                self._buffer = chunk
        if size is None or size < 0:
            size = len(self._buffer)
        chunk, self._buffer = self._buffer[:size], self._buffer[size:]
        return chunk


def _ingest(session: TranscodeSession, ingest_type: IngestType, request: IngestRequest) -> None:
    """Open (if needed) and write. Blocking; runs in a worker thread."""
    try:
        session.open(ingest_type)
    except TranscodeStartError:
        request.body.close()
        raise
    session.write(request)


async def _cleanup_loop(registry: SessionRegistry) -> None:
    while True:
        await asyncio.sleep(_CLEANUP_INTERVAL_SEC)
        registry.cleanup_expired()


def create_app(
    config: TranscodeConfig | None = None,
    registry: SessionRegistry | None = None,
) -> FastAPI:
    """Build the application around a session registry."""
    if config is None:
        config = load_config()
    if registry is None:
        registry = SessionRegistry(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        cleanup_task = asyncio.create_task(_cleanup_loop(registry))
        log.info(
            "Video server ready (transcoder=%s, timeout=%.0fs)",
            config.command,
            config.session_timeout,
        )
        try:
            yield
        finally:
            cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await cleanup_task
            await asyncio.to_thread(registry.shutdown)

    app = FastAPI(title="videoserver", lifespan=lifespan)
    app.state.registry = registry
    app.state.config = config

    @app.post("/v1/ingest/{uid}/{ingest_type}")
    async def ingest(uid: int, ingest_type: IngestType, request: Request) -> Response:
        session = registry.get_or_create(uid)
        ingest_request = IngestRequest(
            content_type=request.headers.get("content-type"),
            body=RequestBody(request.stream(), asyncio.get_running_loop()),
        )
        try:
            await asyncio.to_thread(_ingest, session, ingest_type, ingest_request)
        except WrongMimetypeError as e:
            raise HTTPException(415, str(e)) from e
        except TranscodeStartError as e:
            raise HTTPException(500, "Transcoder start failed - check server logs") from e
        except TranscodeError as e:
            raise HTTPException(500, f"Transcode failed: {e}") from e

        if session.state is SessionState.EOS:
            # Producer ended the stream; don't keep the connection around
            return Response(status_code=200, headers={"Connection": "close"})
        return Response(status_code=200)

    # Plain def: FastAPI runs these in its threadpool, off the event loop
    @app.get("/v1/sessions")
    def list_sessions() -> list[dict[str, Any]]:
        return registry.list_status()

    @app.get("/v1/sessions/{uid}")
    def get_session(uid: int) -> dict[str, Any]:
        status = registry.status(uid)
        if status is None:
            raise HTTPException(404, "Session not found")
        return status

    @app.delete("/v1/sessions/{uid}")
    def close_session(uid: int) -> dict[str, Any]:
        if not registry.close(uid):
            raise HTTPException(404, "Session not found")
        return registry.status(uid) or {}

    return app


def configure_logging() -> None:
    level = os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        force=True,
    )


if __name__ == "__main__":
    import uvicorn

    configure_logging()
    uvicorn.run(
        "main:create_app",
        factory=True,
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8080")),
        log_config=None,
    )
