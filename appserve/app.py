import asyncio
import contextlib
import importlib
import inspect
import logging
from collections.abc import Mapping
from typing import Any, Callable

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.httpsredirect import HTTPSRedirectMiddleware
from fastapi.responses import HTMLResponse
from fastapi.staticfiles import StaticFiles

from .core.config import ConfigError, ServerConfig
from .core.gate import StartupGate
from .core.middleware import (
    body_limit,
    clean_params,
    global_exception_handler,
    log_requests,
    not_found_handler,
    ping,
    preprocess_request,
    rate_limit,
    request_timeout,
    security_headers,
    startup_gate,
)
from .core.ratelimit import RateLimiter
from .services.startup import run_background_tasks
from .services.views import setup_views


logger = logging.getLogger(__name__)


def import_pages(target: str) -> Any:
    """Load pages from a ``"package.module:attribute"`` string."""
    module_name, _, attribute = target.partition(":")
    module = importlib.import_module(module_name)
    return getattr(module, attribute or "pages")


def page_endpoint(handler: Callable) -> Callable:
    """Wrap a ``handler(request)`` so it sees cleaned path params.

    Plain strings returned by the handler are sent as HTML.
    """
    async def endpoint(request: Request):
        clean_params(request)
        result = handler(request)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, str):
            return HTMLResponse(result)
        return result

    endpoint.__name__ = getattr(handler, "__name__", "page")
    return endpoint


def register_pages(app: FastAPI, pages: Any) -> None:
    if pages is None:
        return
    if isinstance(pages, str):
        pages = import_pages(pages)
    if isinstance(pages, Mapping):
        for path, handler in pages.items():
            app.add_api_route(path, page_endpoint(handler), methods=["GET", "POST"], include_in_schema=False)
    elif callable(pages):
        pages(app)
    else:
        raise ConfigError(f"Unsupported pages setting: {pages!r}")


def create_app(config: ServerConfig, gate: StartupGate, pages: Any = None) -> FastAPI:
    """Assemble the FastAPI application for ``config``.

    Startup work runs in the background once the app starts; ``gate`` holds
    requests back until it is done.
    """
    config.validate()

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        task = asyncio.create_task(run_background_tasks(config, gate))
        app.state.startup_task = task
        yield
        if not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    app = FastAPI(title="appserve", docs_url=None, redoc_url=None, openapi_url=None, lifespan=lifespan)
    app.state.config = config
    app.state.gate = gate
    app.state.rate_limiter = RateLimiter(config.rate_limit)

    # innermost first: the last middleware added runs first
    app.add_middleware(GZipMiddleware, minimum_size=500)
    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )
    app.middleware("http")(preprocess_request)
    app.middleware("http")(body_limit)
    app.middleware("http")(rate_limit)
    if config.is_production:
        app.add_middleware(HTTPSRedirectMiddleware)
    app.middleware("http")(security_headers)
    app.middleware("http")(log_requests)
    app.middleware("http")(ping)
    app.middleware("http")(request_timeout)
    app.middleware("http")(startup_gate)

    app.add_exception_handler(404, not_found_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    setup_views(app, config)
    register_pages(app, pages)

    if config.static is not None:
        app.mount(
            config.static_prefix or "/",
            StaticFiles(directory=str(config.static.directory), html=True, check_dir=False),
            name="static",
        )

    return app
