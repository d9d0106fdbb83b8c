import asyncio
import logging
from pathlib import Path
from typing import Any, Iterable, List, Optional, Set, Tuple

from watchfiles import Change, awatch

from ..core.config import ServerConfig
from .minify import minified_name, minify_file
from .pwa import build_pwa_assets


logger = logging.getLogger(__name__)


def watch_enabled(config: ServerConfig) -> bool:
    """True when static files have derived outputs worth keeping in sync."""
    if not config.watch or config.static is None:
        return False
    icons = config.pwa is not None and config.pwa.icon and config.icon_generator is not None
    return bool(config.minify) or bool(icons)


def _sync_minified(path: Path, config: ServerConfig) -> Optional[Path]:
    kind = path.suffix.lstrip(".")
    if kind not in config.minify or path.name.endswith(f".min.{kind}"):
        return None
    target = minified_name(path)
    if not path.exists():
        target.unlink(missing_ok=True)
        logger.info(f"Removed {target}")
        return target
    try:
        minify_file(path, config.minifiers[kind])
    except Exception as e:
        logger.warning(f"Failed to minify {path}: {e}")
        return None
    return target


async def handle_changes(config: ServerConfig, changes: Iterable[Tuple[Change, str]]) -> List[Path]:
    """Bring minified copies and the PWA manifest in line with changed files.

    - A changed ``.js``/``.css`` source is minified again; a deleted one
      takes its ``.min`` copy with it
    - A changed source icon regenerates the icons and rewrites the manifest

    Returns the derived files that were written or removed.
    """
    static_dir = config.static.directory.resolve()
    icon_path = None
    if config.pwa is not None and config.pwa.icon and config.icon_generator is not None:
        icon_path = (static_dir / config.pwa.icon).resolve()
    touched: List[Path] = []
    seen: Set[Path] = set()
    rebuild_icons = False
    for _, name in changes:
        path = Path(name).resolve()
        if path in seen:
            continue
        seen.add(path)
        if path == icon_path:
            rebuild_icons = True
        elif path.parent == static_dir:
            target = await asyncio.to_thread(_sync_minified, path, config)
            if target is not None:
                touched.append(target)

    if rebuild_icons:
        try:
            touched.append(await build_pwa_assets(
                config.pwa,
                config.static.directory,
                static_prefix=config.static_prefix,
                icon_generator=config.icon_generator,
            ))
        except Exception as e:
            logger.error(f"Failed to rebuild PWA assets: {e}", exc_info=True)
    return touched


async def watch_static(config: ServerConfig, stop_event: Any = None, **options: Any) -> None:
    """Watch the static directory until cancelled or ``stop_event`` is set."""
    directory = config.static.directory
    logger.info(f"Watching {directory} for changes")
    async for changes in awatch(directory, stop_event=stop_event, **options):
        await handle_changes(config, changes)
