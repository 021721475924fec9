from __future__ import annotations

import asyncio
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse

from ..core.schemas import ErrorResponse, ExecuteRequest, ExecuteResponse
from ..core.settings import Settings, load_settings
from ..runners.python_runner import build_registry
from ..services.dispatcher import BatchDispatcher

DISCONNECT_POLL_S = 0.25


async def _watch_disconnect(request: Request, cancel_event: asyncio.Event) -> None:
    while not cancel_event.is_set():
        if await request.is_disconnected():
            cancel_event.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_S)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or load_settings()
    log = structlog.get_logger("evalbox")

    app = FastAPI(title="evalbox")
    semaphore = None
    if settings.concurrency_scope == "global":
        semaphore = asyncio.Semaphore(settings.max_concurrent_evaluations)
    app.state.settings = settings
    app.state.dispatcher = BatchDispatcher(
        build_registry(settings.runtimes),
        settings,
        logger=log,
        semaphore=semaphore,
    )

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError):
        problems = {
            ".".join(str(p) for p in err.get("loc", ())): err.get("msg", "invalid")
            for err in exc.errors()
        }
        body = ErrorResponse(error=f"invalid ExecuteRequest: {len(problems)} problems", problems=problems)
        return JSONResponse(status_code=400, content=body.model_dump(exclude_none=True))

    # --------- Endpoints ---------

    @app.get("/", response_class=PlainTextResponse)
    async def root():
        return "OK"

    @app.get("/health")
    def health():
        return {"ok": True}

    @app.post(
        "/v1/execute",
        response_model=ExecuteResponse,
        response_model_exclude_none=True,
    )
    async def execute(req: ExecuteRequest, request: Request):
        cancel_event = asyncio.Event()
        watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))
        try:
            results = await request.app.state.dispatcher.run_batch(
                req.programs, cancel_event=cancel_event
            )
        finally:
            watcher.cancel()
        if cancel_event.is_set():
            log.info("client_disconnected", batch_size=len(req.programs))
        return ExecuteResponse(results=results)

    return app
