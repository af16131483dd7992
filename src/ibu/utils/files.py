"""File helpers shared by the gatherer and the restore."""

import json
import logging
import shutil
from pathlib import Path
from typing import Any


def marshal_to_file(data: Any, file_path: Path) -> None:
    """Write data as pretty JSON with sorted keys.

    Sorting keys makes repeated writes of the same content byte-identical.

    Args:
        data: JSON-serializable object
        file_path: Destination; parent directories are created

    Raises:
        IOError: If the file cannot be written
    """
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = file_path.parent / f"{file_path.name}.tmp"
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
            f.write("\n")
        tmp_path.replace(file_path)
    except Exception:
        tmp_path.unlink(missing_ok=True)
        raise


def copy_if_exists(src: Path, dst: Path) -> bool:
    """Copy a file or directory tree if the source exists.

    Returns:
        True if something was copied, False if the source was absent
    """
    logger = logging.getLogger("ibu.files")
    src, dst = Path(src), Path(dst)

    if not src.exists():
        logger.debug(f"Skipping copy, {src} does not exist")
        return False

    dst.parent.mkdir(parents=True, exist_ok=True)
    if src.is_dir():
        shutil.copytree(src, dst, dirs_exist_ok=True)
    else:
        shutil.copy2(src, dst)
    logger.debug(f"Copied {src} to {dst}")
    return True


def remove_path(path: Path) -> bool:
    """Remove a file, symlink or directory tree.

    Returns:
        True if something was removed
    """
    path = Path(path)
    if path.is_symlink() or path.is_file():
        path.unlink()
        return True
    if path.is_dir():
        shutil.rmtree(path)
        return True
    return False
