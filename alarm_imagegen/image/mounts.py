"""Mount table inspection and mount operations.

This module handles:
- Reading /proc/mounts to learn what is currently mounted
- Mounting partitions and bind mounts
- Unmounting, treating already-unmounted targets as done

State is always read from the live mount table rather than remembered, so
that an interrupted run can be inspected and cleaned up by a later one.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path

from alarm_imagegen.errors import CleanupError, CommandError, MountError
from alarm_imagegen.image.commands import run_command

logger = logging.getLogger(__name__)

PROC_MOUNTS = "/proc/mounts"

# /proc/mounts escapes space, tab, newline and backslash as \ooo
_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")


@dataclass(frozen=True)
class MountEntry:
    """One line of the kernel mount table."""

    source: str
    target: str
    fstype: str


@dataclass(frozen=True)
class MountPoint:
    """A directory with one device mounted on it.

    Attributes:
        path: Mount point directory.
        device: Partition device, or the source directory of a bind mount.
        fstype: Filesystem type ('vfat', 'ext4', or 'none' for bind mounts).
        bind: Whether this is a bind mount.
        created_dir: Whether the directory was created for this mount and
            should be removed when it is released.
    """

    path: Path
    device: str
    fstype: str
    bind: bool = False
    created_dir: bool = False


def _unescape(field: str) -> str:
    return _OCTAL_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), field)


def read_mount_table() -> list[MountEntry]:
    """Parse /proc/mounts.

    Returns:
        Mount entries in mount order (empty if the table cannot be read).
    """
    entries: list[MountEntry] = []
    try:
        with open(PROC_MOUNTS) as f:
            for line in f:
                parts = line.split()
                if len(parts) >= 3:
                    entries.append(
                        MountEntry(
                            source=_unescape(parts[0]),
                            target=_unescape(parts[1]),
                            fstype=parts[2],
                        )
                    )
    except OSError:
        logger.warning("Could not read %s, assuming nothing is mounted", PROC_MOUNTS)
    return entries


def _normalize(path: Path | str) -> str:
    return os.path.normpath(os.path.realpath(path))


def is_mounted(path: Path | str) -> bool:
    """Check whether something is mounted at ``path``."""
    target = _normalize(path)
    return any(entry.target == target for entry in read_mount_table())


def is_device_mounted(device: str) -> bool:
    """Check whether a block device is mounted anywhere."""
    return any(entry.source == device for entry in read_mount_table())


def mounts_under(path: Path | str) -> list[MountEntry]:
    """Return mounts at or below ``path``, in mount order.

    Args:
        path: Directory to look under.

    Returns:
        Matching mount table entries.
    """
    base = _normalize(path)
    prefix = base.rstrip("/") + "/"
    return [
        entry
        for entry in read_mount_table()
        if entry.target == base or entry.target.startswith(prefix)
    ]


def mount(device: str, target: Path, fstype: str) -> MountPoint:
    """Mount a partition, creating the mount point if needed.

    Args:
        device: Partition device path.
        target: Mount point directory.
        fstype: Filesystem type.

    Returns:
        The new MountPoint.

    Raises:
        MountError: If the mount command fails.
    """
    created = not target.exists()
    target.mkdir(parents=True, exist_ok=True)
    logger.info("Mounting %s (%s) at %s", device, fstype, target)
    try:
        run_command(["mount", "-v", "-t", fstype, device, target])
    except CommandError as e:
        if created:
            target.rmdir()
        raise MountError(f"Failed to mount {device} at {target}: {e}") from e
    return MountPoint(path=target, device=device, fstype=fstype, created_dir=created)


def bind_mount(source: Path, target: Path) -> MountPoint:
    """Bind-mount a host directory at ``target``.

    Raises:
        MountError: If the mount command fails.
    """
    source.mkdir(parents=True, exist_ok=True)
    created = not target.exists()
    target.mkdir(parents=True, exist_ok=True)
    logger.info("Bind mounting %s at %s", source, target)
    try:
        run_command(["mount", "--bind", source, target])
    except CommandError as e:
        if created:
            target.rmdir()
        raise MountError(f"Failed to bind mount {source} at {target}: {e}") from e
    return MountPoint(
        path=target, device=str(source), fstype="none", bind=True, created_dir=created
    )


def unmount(mount_point: MountPoint) -> None:
    """Unmount a mount point and remove its directory if it was created.

    An already unmounted target is not an error.

    Raises:
        CleanupError: If the target is still mounted after ``umount``.
    """
    path = mount_point.path
    if is_mounted(path):
        logger.info("Unmounting %s", path)
        try:
            run_command(["umount", path])
        except CommandError as e:
            logger.error("Failed to unmount %s: %s", path, e)
            raise CleanupError([(str(path), str(e))]) from e
    else:
        logger.debug("%s is not mounted", path)

    if mount_point.created_dir and path.is_dir():
        try:
            path.rmdir()
        except OSError as e:
            logger.warning("Could not remove mount point %s: %s", path, e)


__all__ = [
    "MountEntry",
    "MountPoint",
    "bind_mount",
    "is_device_mounted",
    "is_mounted",
    "mount",
    "mounts_under",
    "read_mount_table",
    "unmount",
]
