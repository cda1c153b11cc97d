"""Filesystem helpers shared by the installer."""

from __future__ import annotations

import logging
import os
import shutil
import time
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def ensure_dir(path: Path) -> None:
    Path(path).mkdir(parents=True, exist_ok=True)


def write_file_atomic(path: Path, content: str | bytes, mode: Optional[int] = None) -> None:
    """Write via a sibling temp file and rename over the target.

    Readers see either the old file or the new one, never a partial write.
    """
    target = Path(path)
    ensure_dir(target.parent)
    tmp_path = target.with_name(f"{target.name}.tmp.{os.getpid()}.{_now_ms()}")

    try:
        if isinstance(content, bytes):
            tmp_path.write_bytes(content)
        else:
            tmp_path.write_text(content, encoding="utf-8")
        if mode is not None:
            os.chmod(tmp_path, mode)
        os.replace(tmp_path, target)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def backup_file(path: Path) -> Optional[Path]:
    """Copy ``path`` to ``<path>.backup.<unix-ms>`` if it exists.

    Returns the backup path, or None when there was nothing to back up.
    """
    source = Path(path)
    if not source.is_file():
        return None

    stamp = _now_ms()
    backup_path = source.with_name(f"{source.name}.backup.{stamp}")
    # Two backups inside the same millisecond must not clobber each other.
    while backup_path.exists():
        stamp += 1
        backup_path = source.with_name(f"{source.name}.backup.{stamp}")

    shutil.copy2(source, backup_path)
    logger.debug("Backed up %s -> %s", source, backup_path)
    return backup_path


def find_file_recursive(root: Path, names: Iterable[str]) -> Optional[Path]:
    """Return the first regular file under ``root`` whose name is in ``names``."""
    wanted = set(names)
    for dirpath, _dirnames, filenames in os.walk(root):
        for filename in sorted(filenames):
            if filename in wanted:
                candidate = Path(dirpath) / filename
                if candidate.is_file():
                    return candidate
    return None


def remove_file(path: Path) -> bool:
    """Delete a file; absence is fine. Returns True if something was removed."""
    try:
        Path(path).unlink()
        return True
    except FileNotFoundError:
        return False


def remove_tree(path: Path) -> bool:
    """Delete a directory tree; absence is fine. Returns True if it existed."""
    target = Path(path)
    if not target.exists():
        return False
    if target.is_dir() and not target.is_symlink():
        shutil.rmtree(target)
    else:
        target.unlink()
    return True
