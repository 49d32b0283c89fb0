import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import Settings, settings as default_settings
from .routers import generation
from .services.callback import CallbackNotifier
from .services.executor import TaskExecutor
from .services.images import ImageLoader
from .services.invoker import RetryingInvoker
from .services.monitor import ResourceMonitor, TaskCounters
from .storage.repo import TaskStore

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None,
               transport: Optional[httpx.AsyncBaseTransport] = None) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        limits = httpx.Limits(
            max_connections=settings.http_max_connections,
            max_keepalive_connections=settings.http_max_keepalive,
        )
        async with httpx.AsyncClient(limits=limits, transport=transport) as client:
            store = TaskStore(settings.task_ttl_seconds, settings.max_stored_tasks)
            invoker = RetryingInvoker(
                client,
                max_attempts=settings.max_attempts,
                attempt_timeout=settings.attempt_timeout_seconds,
                backoff_base=settings.backoff_base_ms / 1000,
                backoff_cap=settings.backoff_cap_ms / 1000,
            )
            monitor = ResourceMonitor(settings.memory_limit_mb, TaskCounters())
            app.state.store = store
            app.state.executor = TaskExecutor(
                store=store,
                invoker=invoker,
                notifier=CallbackNotifier(client, settings.callback_timeout_seconds),
                monitor=monitor,
                images=ImageLoader(client, settings.image_fetch_timeout_seconds),
                settings=settings,
            )
            sweeper = asyncio.create_task(store.run_sweeper(settings.sweep_interval_seconds))
            logger.info(
                "Image proxy ready | Memory limit: %dMB | Attempt timeout: %.0fs | Task TTL: %.0fs",
                settings.memory_limit_mb, settings.attempt_timeout_seconds, settings.task_ttl_seconds,
            )
            try:
                yield
            finally:
                sweeper.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await sweeper

    app = FastAPI(title="Image Generation Proxy", version="1.0.0", lifespan=lifespan)
    app.include_router(generation.router)

    @app.exception_handler(HTTPException)
    async def http_error(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.detail})

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        errors = "; ".join(
            f"{'.'.join(str(p) for p in e['loc'][1:]) or 'body'}: {e['msg']}" for e in exc.errors()
        )
        return JSONResponse(status_code=400, content={"success": False, "error": errors})

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=default_settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host="0.0.0.0", port=default_settings.port)
