import asyncio
import logging

from ..core.config import ServerConfig
from ..core.gate import StartupGate
from .minify import minify_directory_async
from .pwa import build_pwa_assets
from .views import ViewOptions, prepare_views
from .watcher import watch_enabled, watch_static


logger = logging.getLogger(__name__)


def prepare_directories(config: ServerConfig) -> None:
    """Create the static and views directories the server will serve from."""
    if config.static is not None:
        config.static.directory.mkdir(parents=True, exist_ok=True)
    if isinstance(config.views, ViewOptions):
        prepare_views(config.views)


async def generate_assets(config: ServerConfig) -> None:
    if config.static is None:
        return
    if config.pwa is not None:
        await build_pwa_assets(
            config.pwa,
            config.static.directory,
            static_prefix=config.static_prefix,
            icon_generator=config.icon_generator,
        )
    if config.minify:
        written = await minify_directory_async(config.static.directory, config.minify, config.minifiers)
        logger.info(f"Minified {len(written)} static files")


async def run_startup_tasks(config: ServerConfig, gate: StartupGate) -> None:
    """Run the work the gate waits for, advancing it after each step.

    A directory that cannot be created fails the gate. Asset generation
    errors are logged and the server still opens.
    """
    try:
        await asyncio.to_thread(prepare_directories, config)
    except OSError as e:
        logger.error(f"Failed to create server directories: {e}")
        gate.fail()
        return
    gate.advance()

    try:
        await generate_assets(config)
    except Exception as e:
        logger.error(f"Failed to generate static assets: {e}", exc_info=True)
    gate.advance()


async def run_background_tasks(config: ServerConfig, gate: StartupGate) -> None:
    """Startup tasks, then the static file watcher for as long as the app runs."""
    await run_startup_tasks(config, gate)
    if not gate.is_ready or not watch_enabled(config):
        return
    try:
        await watch_static(config)
    except Exception as e:
        logger.error(f"Static file watcher stopped: {e}", exc_info=True)
