"""
makefs_runner.py

Everything that talks to the UFS2 image builder (makefs, or UFS2Tool.exe on
Windows).

This module provides:

  - find_builder(): locate the builder executable.
  - MakefsOptions: the "-o" option string (block/fragment size, UFS2, label).
  - probe_block_sizes(): run the builder once per candidate block size with a
    deliberately tiny maximum image size (-s). The builder then refuses and
    reports the size it would have needed, which is parsed from its output.
    The block size with the smallest image wins.
  - build_image(): the final, real invocation.

makefs parameters used throughout:
    -b 0            no free space added on top of the content
    m=0             minfree 0%
    v=2             UFS2
    o=space         optimise for space rather than time
    -Z              (final build only) write a sparse image
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path, PureWindowsPath
from typing import Dict, List, Optional, Sequence

from ufs2img.errors import BuildError, BuilderNotFoundError, ProbeError

LOG = logging.getLogger("makefs_runner")

BLOCK_SIZES = (4096, 8192, 16384, 32768, 65536)
FRAGMENTS_PER_BLOCK = 8

MAKEFS_NAMES = ("makefs",)
UFS2TOOL_NAMES = ("UFS2Tool.exe", "UFS2Tool")

# makefs reports e.g.
#   "makefs: `/src' size of 1234567168 is larger than the maxsize of 4096."
# Greedy prefix: the last "size of N" on the first matching line wins.
PROBE_SIZE_RE = re.compile(r".* size of (\d+) .*")

GIB = 1024 ** 3


def fragment_size_for(block_size: int) -> int:
    return block_size // FRAGMENTS_PER_BLOCK


@dataclass
class MakefsOptions:
    block_size: int
    fragment_size: int
    label: Optional[str] = None

    @classmethod
    def for_block_size(cls, block_size: int, label: Optional[str] = None) -> "MakefsOptions":
        return cls(block_size=block_size, fragment_size=fragment_size_for(block_size), label=label)

    def option_string(self) -> str:
        s = f"b={self.block_size},f={self.fragment_size},m=0,v=2,o=space"
        if self.label:
            s += f",l={self.label}"
        return s


@dataclass
class BuilderTool:
    """
    Resolved builder executable.

    prefix:
        argv to put in front of the makefs-style arguments. For makefs this
        is just the executable; UFS2Tool takes a "makefs" sub-command.
    """
    path: str
    prefix: List[str] = field(default_factory=list)

    @classmethod
    def from_path(cls, path: str) -> "BuilderTool":
        name = PureWindowsPath(path).name.lower()
        if name.startswith("ufs2tool"):
            return cls(path=path, prefix=[path, "makefs"])
        return cls(path=path, prefix=[path])

    def argv(self, args: Sequence[str]) -> List[str]:
        return list(self.prefix) + list(args)


def find_builder(explicit: Optional[str] = None) -> BuilderTool:
    """
    Locate the image builder.

    Order: explicit path (file path or a name looked up on PATH), then
    makefs on PATH, then UFS2Tool on PATH.
    """
    if explicit:
        if os.path.isfile(explicit):
            return BuilderTool.from_path(os.path.abspath(explicit))
        found = shutil.which(explicit)
        if found is not None:
            return BuilderTool.from_path(found)
        raise BuilderNotFoundError(f"Image builder not found: {explicit}")

    for name in MAKEFS_NAMES + UFS2TOOL_NAMES:
        found = shutil.which(name)
        if found is not None:
            LOG.debug("Using image builder: %s", found)
            return BuilderTool.from_path(found)

    raise BuilderNotFoundError(
        "Neither makefs nor UFS2Tool found in PATH. Install one of them or pass its path with --makefs."
    )


# ---------------------------------------------------------------------------
# Command lines
# ---------------------------------------------------------------------------

def probe_command(builder: BuilderTool, options: MakefsOptions, probe_image: Path, source: Path) -> List[str]:
    return builder.argv([
        "-b", "0",
        "-o", options.option_string(),
        "-s", str(options.block_size),
        str(probe_image),
        str(source),
    ])


def final_command(builder: BuilderTool, options: MakefsOptions, output: Path, source: Path) -> List[str]:
    return builder.argv([
        "-b", "0",
        "-Z",
        "-o", options.option_string(),
        str(output),
        str(source),
    ])


def format_command(cmd: Sequence[str]) -> str:
    """Render a command line the way a user would type it (quoting -o values and paths)."""
    parts = []
    for arg in cmd:
        if arg == "" or any(c in arg for c in ' "\',;$'):
            parts.append('"' + arg.replace('"', '\\"') + '"')
        else:
            parts.append(arg)
    return " ".join(parts)


# ---------------------------------------------------------------------------
# Block size probe
# ---------------------------------------------------------------------------

def parse_probe_size(output: str) -> Optional[int]:
    for line in output.splitlines():
        m = PROBE_SIZE_RE.match(line)
        if m:
            return int(m.group(1))
    return None


@dataclass
class ProbeResult:
    block_size: int
    fragment_size: int
    image_size: int
    trials: Dict[int, Optional[int]] = field(default_factory=dict)

    def size_gb_text(self) -> str:
        """Image size in GiB, truncated to one decimal ("~ 12.3 GB")."""
        whole = self.image_size // GIB
        tenth = (self.image_size % GIB) * 10 // GIB
        return f"~ {whole}.{tenth} GB"


def run_probe(builder: BuilderTool, block_size: int, source: Path, probe_image: Path) -> Optional[int]:
    """Run a single trial and return the reported image size, or None."""
    options = MakefsOptions.for_block_size(block_size)
    cmd = probe_command(builder, options, probe_image, source)

    if probe_image.exists():
        probe_image.unlink()

    LOG.debug("Probe: %s", " ".join(cmd))
    try:
        # The builder is expected to fail here; only its message matters.
        proc = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            check=False,
        )
    except FileNotFoundError as e:
        raise BuilderNotFoundError(f"Image builder not found: {builder.path}") from e
    except OSError as e:
        raise ProbeError(f"Failed to run {builder.path}: {e}") from e

    size = parse_probe_size(proc.stdout or "")
    if size is None:
        LOG.warning(
            "Block size %d: could not find the image size in builder output (exit code %d), skipping",
            block_size,
            proc.returncode,
        )
        LOG.debug("Builder output:\n%s", (proc.stdout or "").strip())
    else:
        LOG.info("Block size %6d, fragment size %5d: %d bytes", block_size, options.fragment_size, size)
    return size


def probe_block_sizes(
    builder: BuilderTool,
    source: Path,
    work_dir: Optional[Path] = None,
    block_sizes: Sequence[int] = BLOCK_SIZES,
) -> ProbeResult:
    """
    Try each candidate block size in order and return the one producing the
    smallest image. Ties keep the earlier (smaller) block size. Trials whose
    output cannot be parsed are skipped; ProbeError is raised only when no
    trial produced a size.
    """
    LOG.info("Probing block sizes for the smallest image...")
    trials: Dict[int, Optional[int]] = {}
    best: Optional[ProbeResult] = None

    try:
        tmp_dir = tempfile.mkdtemp(prefix="ufs2img_probe_", dir=str(work_dir) if work_dir else None)
    except OSError as e:
        raise ProbeError(f"Cannot create a work directory for the probe images: {e}") from e
    try:
        probe_image = Path(tmp_dir) / "test.out"
        for block_size in block_sizes:
            size = run_probe(builder, block_size, source, probe_image)
            trials[block_size] = size
            if size is None:
                continue
            if best is None or size < best.image_size:
                best = ProbeResult(
                    block_size=block_size,
                    fragment_size=fragment_size_for(block_size),
                    image_size=size,
                )
    finally:
        shutil.rmtree(tmp_dir, ignore_errors=True)

    if best is None:
        raise ProbeError(
            "Could not determine the image size for any block size; "
            "the builder output did not contain the expected 'size of <N>' message."
        )

    best.trials = trials
    return best


# ---------------------------------------------------------------------------
# Final build
# ---------------------------------------------------------------------------

def partial_output_path(output: Path) -> Path:
    """Name the builder writes to; renamed to output only after a successful build."""
    return output.with_name(f".{output.name}.partial")


def _remove_partial(partial: Path) -> None:
    try:
        partial.unlink()
        LOG.info("Removed partial output file: %s", partial)
    except FileNotFoundError:
        pass
    except OSError as e:
        LOG.warning("Could not remove partial output file %s: %s", partial, e)


def build_image(builder: BuilderTool, options: MakefsOptions, output: Path, source: Path) -> None:
    """
    Run the final build. Builder output is passed through to the terminal.

    The image is written next to output under a temporary name and moved
    into place when the builder succeeds, so an existing file at output is
    only replaced by a complete image. A non-zero exit raises BuildError;
    the temporary file is removed on any failure, including interruption.
    """
    partial = partial_output_path(output)
    cmd = final_command(builder, options, partial, source)
    LOG.info("Running: %s", format_command(cmd))

    completed = False
    try:
        _remove_partial(partial)
        try:
            proc = subprocess.run(cmd, check=False)
        except FileNotFoundError as e:
            raise BuilderNotFoundError(f"Image builder not found: {builder.path}") from e
        except OSError as e:
            raise BuildError(f"Failed to run {builder.path}: {e}") from e

        if proc.returncode != 0:
            raise BuildError(f"Image builder failed with exit code {proc.returncode}")
        if not partial.is_file():
            raise BuildError(f"Image builder reported success but did not write {partial}")

        try:
            os.replace(partial, output)
        except OSError as e:
            raise BuildError(f"Cannot move {partial} to {output}: {e}") from e
        completed = True
    finally:
        if not completed:
            _remove_partial(partial)

    LOG.info("Image written: %s", output)
