import asyncio
import json
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol


logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"

MANIFEST_FILE = "manifest.json"
WORKER_FILE = "service-worker.js"
INIT_FILE = "pwa.js"
ICON_DIR = "icon"


class IconGenerator(Protocol):
    """Renders app icons from a source image.

    Returns manifest icon entries (``src``, ``sizes``, ``type``...) whose
    ``src`` points at the generated files on disk.
    """

    async def generate(self, source: Path, output_dir: Path, *, background: str) -> List[Dict[str, Any]]:
        ...


@dataclass
class PWAOptions:
    name: str = "App Name"
    short_name: str = "App"
    start_url: str = "/?pwa=true"
    theme_color: str = "#000000"
    background_color: str = "#ffffff"
    display: str = "standalone"
    orientation: str = "any"
    icon: Optional[str] = "favicon.ico"
    icon_background: Optional[str] = None
    icon_type: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, options: Optional[Dict[str, Any]] = None, **other: Any) -> "PWAOptions":
        """Build options from a manifest-style mapping; unknown keys go to ``extra``."""
        values = dict(options or {})
        values.update(other)
        known = {name: values.pop(name) for name in list(values) if name in cls.__dataclass_fields__ and name != "extra"}
        # empty values fall back to the defaults
        known = {name: value for name, value in known.items() if value}
        return cls(**known, extra=values)

    @property
    def mime_type(self) -> Optional[str]:
        if not self.icon:
            return None
        kind = self.icon_type or self.icon.rsplit(".", 1)[-1]
        if kind == "ico":
            kind = "x-icon"
        return f"image/{kind}"

    def manifest(self, icons: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "short_name": self.short_name,
            "start_url": self.start_url,
            "theme_color": self.theme_color,
            "background_color": self.background_color,
            "display": self.display,
            "orientation": self.orientation,
        }
        if icons:
            data["icons"] = icons
        elif self.icon:
            data["icon"] = self.icon
        if self.icon_background:
            data["icon_background"] = self.icon_background
        data.update(self.extra)
        return data


def _rewrite_icon_urls(icons: List[Dict[str, Any]], static_dir: Path, static_prefix: str) -> List[Dict[str, Any]]:
    """Point generated icon paths at the static URL prefix."""
    result = []
    for icon in icons:
        src = str(icon.get("src", ""))
        try:
            relative = Path(src).resolve().relative_to(static_dir.resolve()).as_posix()
            src = f"{static_prefix}/{relative}"
        except ValueError:
            pass
        result.append({**icon, "src": src})
    return result


def _copy_if_missing(name: str, target: Path) -> None:
    if not target.exists():
        shutil.copyfile(TEMPLATES_DIR / name, target)


def write_manifest(options: PWAOptions, static_dir: Path, icons: Optional[List[Dict[str, Any]]] = None) -> Path:
    path = static_dir / MANIFEST_FILE
    path.write_text(json.dumps(options.manifest(icons), indent=2), encoding="utf-8")
    return path


async def build_pwa_assets(
    options: PWAOptions,
    static_dir: Path,
    static_prefix: str = "",
    icon_generator: Optional[IconGenerator] = None,
) -> Path:
    """Write the PWA manifest, service worker and bootstrap script.

    - Copies ``service-worker.js`` and ``pwa.js`` into the static directory
      unless the application already ships its own
    - Renders icons with ``icon_generator`` when one is configured and the
      source icon exists; a failing generator falls back to the plain icon
    - Writes ``manifest.json`` last
    """
    await asyncio.to_thread(_copy_if_missing, WORKER_FILE, static_dir / WORKER_FILE)
    await asyncio.to_thread(_copy_if_missing, INIT_FILE, static_dir / INIT_FILE)

    icons = None
    icon_path = static_dir / options.icon if options.icon else None
    if icon_generator is not None and icon_path is not None and icon_path.exists():
        background = options.icon_background or options.background_color or "#ffffff"
        try:
            generated = await icon_generator.generate(icon_path, static_dir / ICON_DIR, background=background)
            icons = _rewrite_icon_urls(list(generated or []), static_dir, static_prefix)
        except Exception as e:
            logger.error(f"Failed to generate PWA icons from {icon_path}: {e}")
            icons = None

    manifest_path = await asyncio.to_thread(write_manifest, options, static_dir, icons)
    logger.info(f"Wrote PWA manifest to {manifest_path}")
    return manifest_path
