from .core.config import ConfigError, ServerConfig
from .core.sanitize import ABSENT, clean, compact
from .core.validation import rand_token, safe_join_path
from .server import Server
from .services.views import ViewOptions, render

__all__ = [
    "ABSENT",
    "ConfigError",
    "Server",
    "ServerConfig",
    "ViewOptions",
    "clean",
    "compact",
    "rand_token",
    "render",
    "safe_join_path",
]
