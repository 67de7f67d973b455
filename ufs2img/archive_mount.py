"""
archive_mount.py

Mount an archive (zip, 7z, rar, tar, ...) read-only with fuse-archive so the
image builder can read the dump without unpacking it first.

ArchiveMount is a context manager:

    with ArchiveMount(archive_path) as mount_dir:
        ...

On enter it starts fuse-archive in the foreground (-f) as a child process and
polls the mount point until it is mounted (or shows content). On exit, on
every path including errors raised while waiting, the child is terminated,
the mount point is unmounted if it is still mounted, and a temporary mount
directory is removed.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
import time
from pathlib import Path
from typing import List, Optional

from ufs2img.errors import MountError, MountTimeoutError

LOG = logging.getLogger("archive_mount")

FUSE_ARCHIVE_BIN = "fuse-archive"
FUSE_ARCHIVE_OPTIONS = (
    "nocache,nospecials,nosymlinks,nohardlinks,noxattrs,"
    "umask=0000,dmask=0000,fmask=0000,clone_fd"
)
DEFAULT_FUSE_DEVICE = "/dev/fuse"
DEFAULT_MOUNT_TIMEOUT = 120.0
DEFAULT_POLL_INTERVAL = 0.5
TERMINATE_GRACE = 10.0

# CAP_SYS_ADMIN is bit 21 of the capability sets in /proc/<pid>/status.
CAP_SYS_ADMIN_BIT = 1 << 21

DOCKER_HINT = (
    "When providing an archive file as input, make sure to use a format supported by "
    "fuse-archive, ensure that the file is not corrupted, and add "
    "--device /dev/fuse --cap-add SYS_ADMIN to the docker run command."
)


def has_sys_admin(status_path: str = "/proc/self/status") -> bool:
    """Return True if the effective capability set contains CAP_SYS_ADMIN."""
    try:
        with open(status_path, "r", encoding="utf-8") as f:
            for line in f:
                if line.startswith("CapEff:"):
                    cap_eff = int(line.split()[1], 16)
                    return bool(cap_eff & CAP_SYS_ADMIN_BIT)
    except (OSError, ValueError, IndexError):
        return False
    return False


def _get_fusermount_binary() -> str | None:
    """Return the name of the available fusermount binary, or None if not found."""
    for name in ("fusermount", "fusermount3"):
        if shutil.which(name) is not None:
            return name
    return None


def _unmount_command(mount_dir: Path) -> List[str]:
    fusermount_bin = _get_fusermount_binary()
    if fusermount_bin is not None:
        return [fusermount_bin, "-u", str(mount_dir)]
    return ["umount", str(mount_dir)]


def _unmount(mount_dir: Path) -> bool:
    cmd = _unmount_command(mount_dir)
    LOG.debug("Running: %s", " ".join(cmd))
    try:
        proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    except OSError as e:
        LOG.warning("Failed to run %s: %s", cmd[0], e)
        return False
    if proc.returncode != 0:
        LOG.warning("Unmounting %s failed: %s", mount_dir, proc.stderr.strip())
        return False
    return True


def _is_ready(mount_dir: Path) -> bool:
    if os.path.ismount(mount_dir):
        return True
    try:
        return any(mount_dir.iterdir())
    except OSError:
        return False


class ArchiveMount:
    """
    Scoped fuse-archive mount.

    mount_point:
        Directory to mount on. None creates a temporary directory which is
        removed again on exit.
    timeout:
        Seconds to wait for the mount to become ready before giving up with
        MountTimeoutError.
    """

    def __init__(
        self,
        archive: Path,
        mount_point: Optional[Path] = None,
        timeout: float = DEFAULT_MOUNT_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        fuse_device: str = DEFAULT_FUSE_DEVICE,
        binary: str = FUSE_ARCHIVE_BIN,
    ) -> None:
        self.archive = Path(archive)
        self.mount_point = Path(mount_point) if mount_point is not None else None
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.fuse_device = fuse_device
        self.binary = binary

        self.mount_dir: Optional[Path] = None
        self.proc: Optional[subprocess.Popen] = None
        self._temp_dir = False

    # -------------------------------------------------------------------
    # Context manager protocol
    # -------------------------------------------------------------------

    def __enter__(self) -> Path:
        self._check_requirements()
        try:
            self._prepare_mount_dir()
            self._start()
            self._wait_until_ready()
        except BaseException:
            self.cleanup()
            raise
        assert self.mount_dir is not None
        return self.mount_dir

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()

    # -------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------

    def command(self, mount_dir: Path) -> List[str]:
        return [
            self.binary,
            "-o",
            FUSE_ARCHIVE_OPTIONS,
            "-f",
            "-v",
            str(self.archive),
            str(mount_dir),
        ]

    def _check_requirements(self) -> None:
        if not os.path.exists(self.fuse_device):
            raise MountError(
                f"{self.fuse_device} not found. Add --device /dev/fuse to the docker run command."
            )
        if shutil.which(self.binary) is None:
            raise MountError(f"{self.binary} not found in PATH (required for archive input)")

    def _prepare_mount_dir(self) -> None:
        if self.mount_point is None:
            try:
                self.mount_dir = Path(tempfile.mkdtemp(prefix="ufs2img_archive_"))
            except OSError as e:
                raise MountError(f"Cannot create a temporary mount point: {e}") from e
            self._temp_dir = True
            return

        self.mount_dir = self.mount_point
        try:
            self.mount_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise MountError(f"Cannot create mount point {self.mount_dir}: {e}") from e

        # Leftover from a previous run that was killed hard.
        if os.path.ismount(self.mount_dir):
            LOG.warning("Existing mount detected at %s, attempting to unmount.", self.mount_dir)
            if not _unmount(self.mount_dir):
                raise MountError(f"Failed to unmount previous mount at {self.mount_dir}")

    def _start(self) -> None:
        assert self.mount_dir is not None
        cmd = self.command(self.mount_dir)
        LOG.info("Mounting %s with %s...", self.archive, self.binary)
        LOG.debug("Running: %s", " ".join(cmd))
        try:
            # fuse-archive output goes to our stdout
            self.proc = subprocess.Popen(cmd, stderr=subprocess.STDOUT)
        except OSError as e:
            raise MountError(f"Failed to start {self.binary}: {e}") from e

    def _wait_until_ready(self) -> None:
        assert self.proc is not None and self.mount_dir is not None
        LOG.info("Waiting for %s to become available...", self.mount_dir)

        deadline = time.monotonic() + self.timeout
        while True:
            if self.proc.poll() is not None:
                msg = f"{self.binary} process exited before {self.mount_dir} became available."
                if not has_sys_admin():
                    msg += (
                        "\nMost likely because the SYS_ADMIN capability has not been "
                        "granted to the container."
                    )
                raise MountError(f"{msg}\n{DOCKER_HINT}")

            if _is_ready(self.mount_dir):
                LOG.info("%s is now available", self.mount_dir)
                return

            if time.monotonic() >= deadline:
                raise MountTimeoutError(
                    f"Timed out after {self.timeout:g}s waiting for {self.archive} "
                    f"to be mounted on {self.mount_dir}"
                )
            time.sleep(self.poll_interval)

    def cleanup(self) -> None:
        """Stop fuse-archive, unmount and remove a temporary mount directory. Idempotent."""
        if self.proc is not None:
            if self.proc.poll() is None:
                LOG.info("Shutting down %s...", self.binary)
                self.proc.terminate()
                try:
                    self.proc.wait(timeout=TERMINATE_GRACE)
                except subprocess.TimeoutExpired:
                    LOG.warning("%s did not exit, killing it", self.binary)
                    self.proc.kill()
                    self.proc.wait()
            self.proc = None

        if self.mount_dir is not None:
            if os.path.ismount(self.mount_dir):
                _unmount(self.mount_dir)
            if self._temp_dir and not os.path.ismount(self.mount_dir):
                shutil.rmtree(self.mount_dir, ignore_errors=True)
            self.mount_dir = None
            self._temp_dir = False
