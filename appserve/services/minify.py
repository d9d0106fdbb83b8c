import asyncio
import logging
from pathlib import Path
from typing import Callable, Dict, Iterable, List


logger = logging.getLogger(__name__)


def minified_name(path: Path) -> Path:
    return path.with_name(f"{path.stem}.min{path.suffix}")


def minify_file(path: Path, minifier: Callable[[str], str]) -> bool:
    """Write ``name.min.ext`` next to ``path``; drop a stale one if output is empty."""
    target = minified_name(path)
    code = minifier(path.read_text(encoding="utf-8"))
    if code:
        target.write_text(code, encoding="utf-8")
        return True
    if target.exists():
        target.unlink()
    return False


def minify_directory(directory: Path, kinds: Iterable[str], minifiers: Dict[str, Callable[[str], str]]) -> List[Path]:
    """Minify every ``.js``/``.css`` source directly inside ``directory``.

    Files already ending in ``.min.js``/``.min.css`` are skipped. A file the
    minifier chokes on is logged and left without a minified copy.
    """
    written: List[Path] = []
    if not directory.is_dir():
        return written
    for kind in kinds:
        minifier = minifiers[kind]
        for path in sorted(directory.glob(f"*.{kind}")):
            if path.name.endswith(f".min.{kind}"):
                continue
            try:
                if minify_file(path, minifier):
                    written.append(minified_name(path))
            except Exception as e:
                logger.warning(f"Failed to minify {path}: {e}")
    return written


async def minify_directory_async(directory: Path, kinds: Iterable[str], minifiers: Dict[str, Callable[[str], str]]) -> List[Path]:
    return await asyncio.to_thread(minify_directory, directory, list(kinds), minifiers)
