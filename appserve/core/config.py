import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from dotenv import load_dotenv


load_dotenv()

MB = 1024 * 1024

_SIZE_RE = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*(b|kb|mb|gb)?\s*$', re.IGNORECASE)
_SIZE_UNITS = {'b': 1, 'kb': 1024, 'mb': MB, 'gb': 1024 * MB}

MINIFY_TYPES = ('js', 'css')


class ConfigError(ValueError):
    """Raised once at startup when the server configuration is unusable."""


def parse_size(limit: Union[int, float, str]) -> int:
    """Convert a body size limit to bytes.

    Plain numbers are megabytes; strings take a unit suffix (``"512kb"``,
    ``"1mb"``). A string without a unit is a byte count.
    """
    if isinstance(limit, bool):
        raise ConfigError(f"Invalid size limit: {limit!r}")
    if isinstance(limit, (int, float)):
        return int(limit * MB)
    match = _SIZE_RE.match(str(limit))
    if not match:
        raise ConfigError(f"Invalid size limit: {limit!r}")
    amount, unit = match.groups()
    return int(float(amount) * _SIZE_UNITS[(unit or 'b').lower()])


def normalize_port(value: Any) -> Union[int, str, bool]:
    """Return an int port, a pipe path string, or False for a negative port."""
    try:
        port = int(str(value).strip(), 10)
    except ValueError:
        return str(value)
    if port >= 0:
        return port
    return False


def allowed_origins(extra_origins: Optional[List[str]] = None) -> List[str]:
    env_origins = [o.strip() for o in os.getenv("CORS_ALLOWED_ORIGINS", "").split(",") if o.strip()]
    merged = list(env_origins)
    if extra_origins:
        merged.extend(extra_origins)
    # Deduplicate while preserving order
    seen = set()
    result: List[str] = []
    for origin in merged:
        if origin not in seen:
            seen.add(origin)
            result.append(origin)
    return result


@dataclass(frozen=True)
class StaticMount:
    prefix: str
    directory: Path


@dataclass(frozen=True)
class RateLimitOptions:
    window_seconds: float = 10 * 60
    max_requests: int = 5000
    message: str = "Too Many Requests!"


@dataclass
class ServerConfig:
    """Server configuration, built once at startup and passed to the app.

    Values not given explicitly come from the environment (a ``.env`` file is
    loaded on import). Optional capabilities such as ``minifiers`` or
    ``icon_generator`` are plain callables/objects injected here; the server
    never imports them itself.
    """

    root: Path = field(default_factory=Path.cwd)
    environment: str = field(default_factory=lambda: os.getenv("ENVIRONMENT", "production"))
    port: Union[int, str] = field(default_factory=lambda: os.getenv("PORT", "3000"))
    host: str = field(default_factory=lambda: os.getenv("HOST", "0.0.0.0"))

    static: Optional[StaticMount] = None
    views: Any = None
    pwa: Any = None

    data_limit: int = MB
    rate_limit: RateLimitOptions = field(default_factory=RateLimitOptions)
    minify: Tuple[str, ...] = ()

    request_timeout: float = 5.0
    startup_wait: float = 5.0
    trust_proxy: bool = True
    watch: bool = field(default_factory=lambda: os.getenv("WATCH_STATIC", "true").lower() not in ("0", "false", "no"))
    cors_origins: List[str] = field(default_factory=allowed_origins)

    icon_generator: Any = None
    minifiers: Dict[str, Callable[[str], str]] = field(default_factory=dict)
    geo_lookup: Optional[Callable[[str], Any]] = None
    bot_detector: Optional[Callable[[str], bool]] = None

    @classmethod
    def from_env(cls, **overrides: Any) -> "ServerConfig":
        root = os.getenv("APP_ROOT")
        if root and "root" not in overrides:
            overrides["root"] = Path(root).resolve()
        if os.getenv("DATA_LIMIT") and "data_limit" not in overrides:
            overrides["data_limit"] = parse_size(os.getenv("DATA_LIMIT", ""))
        return cls(**overrides)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def static_prefix(self) -> str:
        """URL prefix of the static mount without a trailing slash."""
        if self.static is None:
            return ""
        return self.static.prefix.rstrip("/\\")

    def validate(self) -> None:
        if self.data_limit < 0:
            raise ConfigError("data_limit must not be negative")
        if self.rate_limit.max_requests < 1 or self.rate_limit.window_seconds <= 0:
            raise ConfigError("rate_limit needs a positive window and max_requests")
        if self.request_timeout <= 0 or self.startup_wait < 0:
            raise ConfigError("request_timeout must be positive and startup_wait not negative")
        if normalize_port(self.port) is False:
            raise ConfigError(f"Invalid port: {self.port!r}")
        for kind in self.minify:
            if kind not in MINIFY_TYPES:
                raise ConfigError(f"Unknown minify type {kind!r}. Allowed: {', '.join(MINIFY_TYPES)}")
            if not callable(self.minifiers.get(kind)):
                raise ConfigError(f"Minifying {kind} requires a '{kind}' minifier in ServerConfig.minifiers")
        if self.pwa is not None and self.static is None:
            raise ConfigError("PWA assets need a static directory")
