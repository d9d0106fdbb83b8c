import errno
import logging
import os
import socket
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Callable, Optional, Union

import uvicorn
from fastapi import FastAPI

from .app import create_app
from .core.config import MINIFY_TYPES, RateLimitOptions, ServerConfig, StaticMount, normalize_port, parse_size
from .core.gate import StartupGate
from .core.sanitize import clean
from .services.pwa import PWAOptions
from .services.views import resolve_view_options


logger = logging.getLogger(__name__)

STARTUP_STEPS = 2


class Server:
    """Declarative front end for building and running the web app.

    Every setter returns the server so calls can be chained::

        Server().static("/cdn", "public").engine("views").pages(routes).start(3000)
    """

    def __init__(self, config: Optional[ServerConfig] = None, **overrides: Any):
        self.config = config or ServerConfig.from_env(**overrides)
        self.gate: Optional[StartupGate] = None
        self.app: Optional[FastAPI] = None
        self._pages: Any = None
        self._static: Any = True
        self._view_engine: Any = None

    def _resolve(self, path: Union[str, Path]) -> Path:
        path = Path(path)
        if not path.is_absolute():
            path = Path(self.config.root) / path
        return path

    def set_root(self, path: Union[str, Path]) -> "Server":
        self.config.root = Path(path).resolve()
        return self

    def pages(self, handler: Any) -> "Server":
        """Route setup: a callable taking the app, a ``{path: handler}`` mapping or a ``"module:attr"`` string."""
        self._pages = handler
        return self

    def static(self, path: Any = True, directory: Optional[Union[str, Path]] = None) -> "Server":
        """Serve static files.

        ``static()`` serves ``<root>/public`` at ``/``, ``static("assets")``
        serves that directory at ``/`` and ``static("/cdn", "assets")`` mounts
        it under ``/cdn``. ``static(False)`` turns static serving off.
        """
        if directory is not None:
            self._static = (path, directory)
        else:
            self._static = path
        return self

    public = static

    def view_engine(self, engine: Any, options: Optional[Mapping] = None) -> "Server":
        if options is not None:
            self._view_engine = dict(options)
        else:
            self._view_engine = engine
        return self

    def engine(self, views: Union[str, Path]) -> "Server":
        return self.view_engine(views)

    def pwa(self, options: Optional[Mapping] = None, **other: Any) -> "Server":
        self.config.pwa = PWAOptions.from_mapping(options, **other)
        return self

    def data_limit(self, limit: Union[int, float, str]) -> "Server":
        self.config.data_limit = parse_size(limit)
        return self

    def rate_limit(self, window_seconds: float = 600, max_requests: int = 5000, message: str = "Too Many Requests!") -> "Server":
        self.config.rate_limit = RateLimitOptions(window_seconds=window_seconds, max_requests=max_requests, message=message)
        return self

    def minify(self, kinds: Any = None, **minifiers: Callable[[str], str]) -> "Server":
        if kinds is None:
            kinds = MINIFY_TYPES
        elif isinstance(kinds, str):
            kinds = (kinds,)
        self.config.minify = tuple(kinds)
        self.config.minifiers.update(minifiers)
        return self

    def _static_mount(self) -> Optional[StaticMount]:
        setting = self._static
        if setting is False or setting is None:
            return None
        if setting is True:
            return StaticMount(prefix="/", directory=self._resolve("public"))
        if isinstance(setting, tuple):
            prefix, directory = setting
            cleaned = clean(str(prefix))
            prefix = "/" + cleaned.strip("/\\") if isinstance(cleaned, str) else "/"
            return StaticMount(prefix=prefix, directory=self._resolve(directory))
        return StaticMount(prefix="/", directory=self._resolve(setting))

    def build(self, pages: Any = None) -> FastAPI:
        if pages is not None:
            self._pages = pages
        self.config.static = self._static_mount()
        self.config.views = resolve_view_options(self._view_engine, Path(self.config.root))
        self.gate = StartupGate(threshold=STARTUP_STEPS, wait_seconds=self.config.startup_wait)
        self.app = create_app(self.config, self.gate, self._pages)
        return self.app

    def _bind(self, port: Union[int, str]) -> socket.socket:
        if isinstance(port, str):
            label = f"Pipe {port}"
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            address: Any = port
        else:
            label = f"Port {port}"
            family = socket.AF_INET6 if ":" in self.config.host else socket.AF_INET
            sock = socket.socket(family, socket.SOCK_STREAM)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            address = (self.config.host, port)

        try:
            sock.bind(address)
        except OSError as e:
            sock.close()
            if self.gate is not None:
                self.gate.fail()
            if e.errno == errno.EACCES:
                logger.error(f"{label} requires elevated privileges")
            elif e.errno == errno.EADDRINUSE:
                logger.error(f"{label} is already in use")
            else:
                logger.error(f"Failed to bind {label}: {e}")
            raise SystemExit(1) from e
        return sock

    def start(self, port: Any = None, pages: Any = None) -> FastAPI:
        """Build the app, bind the listening socket and serve until stopped.

        ``start(pages)`` and ``start(pages, port)`` are accepted as well. A
        socket that cannot be bound fails the startup gate and exits with
        status 1.
        """
        if callable(port) or isinstance(port, Mapping):
            port, pages = pages, port
        app = self.app if self.app is not None and pages is None else self.build(pages)

        use_port = normalize_port(os.getenv("PORT") or port or self.config.port)
        if use_port is False:
            logger.error(f"Invalid port: {port!r}")
            raise SystemExit(1)
        sock = self._bind(use_port)
        logger.info(f"Listening on {'pipe' if isinstance(use_port, str) else 'port'} {use_port}")

        server = uvicorn.Server(uvicorn.Config(app, log_config=None, server_header=False, proxy_headers=self.config.trust_proxy))
        server.run(sockets=[sock])
        return app
