import logging
import shutil
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.templating import Jinja2Templates

from ..core.config import ConfigError, ServerConfig
from .pwa import TEMPLATES_DIR


logger = logging.getLogger(__name__)

LAYOUT_TEMPLATE = "layout.html"


@dataclass
class ViewOptions:
    directory: Path
    ext: str = "html"
    layout: Optional[str] = "layout"
    context: Dict[str, Any] = field(default_factory=dict)


def resolve_view_options(view_engine: Any, root: Path) -> Any:
    """Turn the ``view_engine`` setting into ``ViewOptions`` (or keep a callable).

    Accepts a callable that configures the app itself, ``ViewOptions``, a
    mapping with ``views``/``dir``, ``type`` and ``layout``/``template``
    keys, or a views directory.
    """
    if view_engine is None:
        return ViewOptions(directory=root / "views", layout=None)
    if isinstance(view_engine, ViewOptions) or callable(view_engine):
        return view_engine
    if isinstance(view_engine, Mapping):
        opts = dict(view_engine)
        views, directory = opts.pop("views", None), opts.pop("dir", None)
        layout, template = opts.pop("layout", None), opts.pop("template", None)
        ext = opts.pop("type", None) or "html"
        directory = views or directory or "views"
        layout = layout or template
        return ViewOptions(directory=root / directory, ext=ext, layout=layout, context=opts)
    if isinstance(view_engine, (str, Path)):
        return ViewOptions(directory=root / view_engine)
    raise ConfigError(f"Unsupported view engine setting: {view_engine!r}")


def view_globals(config: ServerConfig) -> Dict[str, Any]:
    pwa = config.pwa
    return {
        "static": config.static_prefix,
        "pwa": pwa is not None,
        "icon": pwa.icon if pwa is not None else None,
        "icon_type": pwa.mime_type if pwa is not None else None,
        "min": {
            "js": "min.js" if "js" in config.minify else "js",
            "css": "min.css" if "css" in config.minify else "css",
        },
    }


def prepare_views(options: ViewOptions) -> None:
    """Create the views directory and a starter layout template if missing."""
    options.directory.mkdir(parents=True, exist_ok=True)
    if options.layout:
        layout_path = options.directory / f"{options.layout}.{options.ext}"
        if not layout_path.exists():
            shutil.copyfile(TEMPLATES_DIR / LAYOUT_TEMPLATE, layout_path)
            logger.info(f"Created layout template {layout_path}")


def setup_views(app: FastAPI, config: ServerConfig) -> None:
    if callable(config.views) and not isinstance(config.views, ViewOptions):
        config.views(app)
        return
    options: ViewOptions = config.views
    templates = Jinja2Templates(directory=str(options.directory))
    templates.env.globals.update(view_globals(config))
    templates.env.globals.update(options.context)
    app.state.templates = templates
    app.state.view_ext = options.ext


def render(request: Request, name: str, context: Optional[Dict[str, Any]] = None, status_code: int = 200):
    """Render ``name`` (extension optional) with the request's cleaned data."""
    templates: Jinja2Templates = request.app.state.templates
    if "." not in Path(name).name:
        name = f"{name}.{request.app.state.view_ext}"
    values = {"data": getattr(request.state, "data", {})}
    values.update(context or {})
    return templates.TemplateResponse(request, name, values, status_code=status_code)
