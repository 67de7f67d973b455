"""
source.py

Locate the source root handed to the image builder.

A source root is a directory that contains sce_sys/param.json.

  - Plain directory input: the marker must be directly inside it.
  - Mounted archive: the marker may be at the archive root or inside any
    subdirectory one level deep (dumps are often packed as
    "<archive>/<TITLE>/sce_sys/...").

Also provides list_entries(), an "ls -1shp --group-directories-first" style
listing used in the pre-build summary and in error messages.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Optional

from ufs2img.errors import SourceError
from ufs2img.param_json import PARAM_JSON_RELPATH

LOG = logging.getLogger("source")


def has_param_json(directory: Path) -> bool:
    return (directory / PARAM_JSON_RELPATH).is_file()


def _human_size(num_bytes: int) -> str:
    """Format a byte count like `ls -sh` (1024 based, one decimal below 10)."""
    if num_bytes < 1024:
        return str(num_bytes)
    value = float(num_bytes)
    for unit in ("K", "M", "G", "T", "P"):
        value /= 1024.0
        if value < 1024.0 or unit == "P":
            if value < 10:
                return f"{value:.1f}{unit}"
            return f"{value:.0f}{unit}"
    return str(num_bytes)


def _allocated_size(path: Path) -> int:
    try:
        st = path.lstat()
    except OSError:
        return 0
    blocks = getattr(st, "st_blocks", None)
    if blocks is not None:
        return blocks * 512
    return st.st_size


def list_entries(directory: Path) -> List[str]:
    """
    Return one line per entry of directory: directories first, then files,
    both sorted by name. Directories get a trailing "/".
    """
    try:
        children = list(directory.iterdir())
    except OSError as e:
        return [f"<cannot list {directory}: {e}>"]

    dirs = sorted((p for p in children if p.is_dir() and not p.is_symlink()), key=lambda p: p.name)
    others = sorted((p for p in children if p not in dirs), key=lambda p: p.name)

    lines: List[str] = []
    for p in dirs:
        lines.append(f"{_human_size(_allocated_size(p)):>6} {p.name}/")
    for p in others:
        lines.append(f"{_human_size(_allocated_size(p)):>6} {p.name}")
    return lines


def find_source_root_in_dir(directory: Path) -> Path:
    directory = Path(os.path.realpath(directory))
    LOG.info("Detected input as a directory: %s", directory)

    if has_param_json(directory):
        LOG.info("Found %s, using directory directly", PARAM_JSON_RELPATH)
        return directory

    listing = "\n".join(list_entries(directory)) or "<empty>"
    raise SourceError(
        f"{PARAM_JSON_RELPATH} not found in {directory}\n"
        "For archive files, provide the full path to the archive file with -i\n"
        f"Contents of {directory}:\n{listing}"
    )


def _first_level_subdirs(directory: Path) -> List[Path]:
    try:
        return sorted(p for p in directory.iterdir() if p.is_dir())
    except OSError as e:
        raise SourceError(f"Cannot list {directory}: {e}") from e


def find_source_root_in_archive(mount_dir: Path, archive: Optional[Path] = None) -> Path:
    if has_param_json(mount_dir):
        LOG.info("Found %s in %s", PARAM_JSON_RELPATH, mount_dir)
        return mount_dir

    LOG.info("%s not in root, checking subdirectories (one level deep)...", PARAM_JSON_RELPATH)
    for subdir in _first_level_subdirs(mount_dir):
        if has_param_json(subdir):
            LOG.info("Found %s in %s", PARAM_JSON_RELPATH, subdir)
            return subdir

    raise SourceError(
        f"{PARAM_JSON_RELPATH} file not found in the root of, or any subdirectory of "
        f"the archive: {archive or mount_dir}. Are you sure this is a valid PS5 dump?"
    )
