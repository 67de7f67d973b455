#!/usr/bin/env python3
"""
cli.py

Command-line entry point for ufs2img.

Steps:
  1. Validate arguments (label format, output directory, builder location).
  2. Resolve the source root: a directory containing sce_sys/param.json, or
     an archive mounted with fuse-archive and searched one level deep.
  3. Read title ID / title name from param.json.
  4. Probe block sizes with the builder and keep the smallest image.
  5. Derive the label (unless given), print a summary and ask for
     confirmation (unless -y).
  6. Run the builder for real. An archive stays mounted until this is done
     and is always unmounted afterwards.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import Callable, List, Optional

from ufs2img.archive_mount import ArchiveMount
from ufs2img.config import Config, default_config_path, is_valid_timeout, load_config
from ufs2img.errors import ConfigError, SourceError, Ufs2ImgError
from ufs2img.label import make_default_label, validate_label
from ufs2img.makefs_runner import (
    BuilderTool,
    MakefsOptions,
    build_image,
    final_command,
    find_builder,
    format_command,
    partial_output_path,
    probe_block_sizes,
)
from ufs2img.param_json import PARAM_JSON_RELPATH, TitleInfo, load_title_info
from ufs2img.source import find_source_root_in_archive, find_source_root_in_dir, list_entries

LOG = logging.getLogger("ufs2img")


# ---------------------------------------------------------------------------
# CLI helpers
# ---------------------------------------------------------------------------

def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="ufs2img",
        description=(
            "Build a UFS2 filesystem image from a PS5 game dump (directory or archive), "
            "picking the block size that gives the smallest image."
        ),
    )
    p.add_argument(
        "-i",
        "--input",
        required=True,
        metavar="INPUT_PATH",
        help="Input path: a dump directory or an archive file (mounted with fuse-archive).",
    )
    p.add_argument(
        "-o",
        "--output",
        required=True,
        metavar="OUTPUT_FILENAME",
        help="Output image filename, created inside the output directory.",
    )
    p.add_argument(
        "-l",
        "--label",
        help="UFS filesystem label (max 16 chars, default: auto-generated from title info).",
    )
    p.add_argument(
        "-y",
        "--yes",
        action="store_true",
        help="Skip confirmation prompt.",
    )
    p.add_argument(
        "--makefs",
        metavar="PATH",
        help="Path to makefs or UFS2Tool.exe (default: search PATH).",
    )
    p.add_argument(
        "--output-dir",
        metavar="DIR",
        help="Directory receiving the image (default: current directory, or output_dir from the config file).",
    )
    p.add_argument(
        "--mount-point",
        metavar="DIR",
        help="Where archives are mounted (default: a temporary directory).",
    )
    p.add_argument(
        "--mount-timeout",
        type=float,
        metavar="SECONDS",
        help="How long to wait for an archive mount to become available.",
    )
    p.add_argument(
        "--config",
        metavar="FILE",
        help="YAML or JSON config file with defaults (also read from $UFS2IMG_CONFIG).",
    )
    p.add_argument(
        "--dry-run",
        action="store_true",
        help="Probe and print the plan, but do not build the image.",
    )
    p.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging.",
    )
    return p


def _merge_config(args: argparse.Namespace, cfg: Config) -> Config:
    if args.makefs:
        cfg.makefs = args.makefs
    if args.output_dir:
        cfg.output_dir = args.output_dir
    if args.mount_point:
        cfg.mount_point = args.mount_point
    if args.mount_timeout is not None:
        if not is_valid_timeout(args.mount_timeout):
            raise ConfigError("--mount-timeout must be a positive number")
        cfg.mount_timeout = args.mount_timeout
    return cfg


def checked_output_name(name: str) -> str:
    """The output must be a plain filename so the image lands inside the output directory."""
    if not name or name in (".", "..") or Path(name).name != name or "\\" in name:
        raise ConfigError(
            f"Output filename must be a plain file name without directories: '{name}'. "
            "Use --output-dir to choose the directory."
        )
    return name


def confirm(input_func: Callable[[str], str] = input) -> bool:
    while True:
        try:
            reply = input_func("Please verify the above is correct. Continue? (y/n): ")
        except EOFError:
            print()
            return False
        reply = reply.strip()
        if reply in ("y", "Y"):
            return True
        if reply in ("n", "N"):
            return False
        print("Invalid input. Please enter Y or N.")


def print_summary(
    source: Path,
    info: TitleInfo,
    label: str,
    options: MakefsOptions,
    image_size: int,
    size_text: str,
    output: Path,
    cmd: List[str],
) -> None:
    print()
    print(f"Source directory for makefs will be: {source}")
    print("Content of source directory:")
    for line in list_entries(source):
        print(line)
    print(f"Detected game title: {info.title_name}, ID: {info.title_id}")
    if label:
        print(f"The filesystem label will be: {label}")
    else:
        print("The filesystem will have no label.")
    print(
        f"Detected optimal block size for smallest image: {options.block_size}, "
        f"fragment size: {options.fragment_size}"
    )
    print(f"Resulting UFS2 filesystem image size will be: {image_size} bytes ({size_text})")
    print(f"The output filename will be: {output}")
    print()
    print("Will run makefs with this command line:")
    print(format_command(cmd))
    print(f"The image is renamed to {output.name} once makefs succeeds.")
    print()


# ---------------------------------------------------------------------------
# Build steps
# ---------------------------------------------------------------------------

def build_from_source(
    source: Path,
    builder: BuilderTool,
    label: Optional[str],
    output: Path,
    assume_yes: bool,
    dry_run: bool,
    input_func: Callable[[str], str] = input,
) -> int:
    info = load_title_info(source / PARAM_JSON_RELPATH)

    probe = probe_block_sizes(builder, source)

    if not label:
        label = make_default_label(info.title_id, info.title_name)
        if not label:
            LOG.warning("Could not derive a label from title info; building without a label.")

    options = MakefsOptions(
        block_size=probe.block_size,
        fragment_size=probe.fragment_size,
        label=label or None,
    )
    cmd = final_command(builder, options, partial_output_path(output), source)

    print_summary(source, info, label, options, probe.image_size, probe.size_gb_text(), output, cmd)

    if dry_run:
        LOG.info("--dry-run is set, not building the image.")
        return 0

    if assume_yes:
        print("-y is set, skipping confirmation prompt.")
    elif not confirm(input_func):
        print("Aborted by user.")
        return 1

    if output.exists():
        LOG.warning("Output file already exists and will be replaced once the new image is complete: %s", output)

    build_image(builder, options, output, source)
    return 0


def run(args: argparse.Namespace, input_func: Callable[[str], str] = input) -> int:
    # Nothing external runs before the label has been checked.
    label = args.label or None
    if label is not None:
        validate_label(label)

    cfg = _merge_config(args, load_config(args.config or default_config_path()))

    output_dir = Path(cfg.output_dir)
    if not output_dir.is_dir():
        raise ConfigError(
            f"Output directory does not exist: {output_dir}. Please create or mount an output directory."
        )
    output = output_dir / checked_output_name(args.output)

    builder = find_builder(cfg.makefs)
    LOG.debug("Image builder: %s", " ".join(builder.prefix))

    input_path = Path(args.input)

    if input_path.is_file():
        LOG.info("Detected input as a file: %s", input_path)
        mount = ArchiveMount(
            input_path,
            mount_point=Path(cfg.mount_point) if cfg.mount_point else None,
            timeout=cfg.mount_timeout,
            fuse_device=cfg.fuse_device,
        )
        with mount as mount_dir:
            source = find_source_root_in_archive(mount_dir, input_path)
            return build_from_source(source, builder, label, output, args.yes, args.dry_run, input_func)

    if input_path.is_dir():
        source = find_source_root_in_dir(input_path)
        return build_from_source(source, builder, label, output, args.yes, args.dry_run, input_func)

    raise SourceError(f"Input path does not exist or is not accessible: {input_path}")


def _sigterm_handler(signum, frame):
    """Turn SIGTERM into a normal exit so mounts are released."""
    sys.exit(1)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> None:
    args = build_argparser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(message)s",
    )

    signal.signal(signal.SIGTERM, _sigterm_handler)

    try:
        rc = run(args)
    except Ufs2ImgError as e:
        LOG.error("%s", e)
        raise SystemExit(1)
    except KeyboardInterrupt:
        LOG.error("Interrupted.")
        raise SystemExit(130)

    raise SystemExit(rc)


if __name__ == "__main__":
    main()
