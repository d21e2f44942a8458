"""Image files, partition tables and loop devices.

This module handles:
- Creating the zero-filled image file
- Writing the two-partition DOS table (FAT boot + Linux root)
- Binding the image to a free loop device and exposing its partitions
- Looking up loop devices backed by an image file
- Forgetting partitions and detaching loop devices
"""

from __future__ import annotations

import json
import logging
import os
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from alarm_imagegen.errors import (
    CommandError,
    DeviceExhaustedError,
    PartitionTableError,
    ResourceAcquisitionError,
)
from alarm_imagegen.image.commands import run_command
from alarm_imagegen.image.mounts import MountPoint

logger = logging.getLogger(__name__)

MIB = 1024 * 1024

BOOT_PARTITION = 1
ROOT_PARTITION = 2

# MBR partition type ids: W95 FAT32 (LBA) and Linux
BOOT_PARTITION_TYPE = "c"
ROOT_PARTITION_TYPE = "83"

# Poll interval while waiting for partition nodes
_SETTLE_INTERVAL = 0.1

# Messages losetup prints when every loop device is taken
_NO_FREE_DEVICE = re.compile(r"(could not find any free|unused loop device)", re.I)

# "/dev/loop0: [2049]:1234 (/path/to/image.img)"
_LOSETUP_ASSOC = re.compile(r"^(/dev/loop\d+):.*\((.*)\)\s*$")


@dataclass
class LoopBinding:
    """Association between an image file and a loop block device.

    Attributes:
        image_path: Backing image file.
        device: Loop device (e.g. '/dev/loop0'), None until bound.
        partitions: Partition device paths, boot first.
        mounts: Mount points in acquisition order; released in reverse.
        formatted: Whether filesystems have been created.
    """

    image_path: Path
    device: str | None = None
    partitions: list[str] = field(default_factory=list)
    mounts: list[MountPoint] = field(default_factory=list)
    formatted: bool = False

    @property
    def is_bound(self) -> bool:
        """Whether the device and both partitions exist."""
        return self.device is not None and len(self.partitions) == 2

    @property
    def boot_partition(self) -> str:
        return partition_path(self._require_device(), BOOT_PARTITION)

    @property
    def root_partition(self) -> str:
        return partition_path(self._require_device(), ROOT_PARTITION)

    def _require_device(self) -> str:
        if self.device is None:
            raise RuntimeError(f"{self.image_path} is not bound to a loop device")
        return self.device


def partition_path(device: str, number: int) -> str:
    """Return the device node of partition ``number`` on a loop device."""
    return f"{device}p{number}"


def create_image_file(path: Path, size_bytes: int) -> None:
    """Create (or truncate) a zero-filled image file of exactly ``size_bytes``.

    The file is sparse: unwritten blocks read back as zeros without taking
    disk space.
    """
    logger.info("Creating %d MiB image %s", size_bytes // MIB, path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("wb") as f:
        f.truncate(size_bytes)


def partition_script(boot_size_mib: int) -> str:
    """Compose the sfdisk script for the boot + root layout."""
    return (
        "label: dos\n"
        f": size={boot_size_mib}MiB, type={BOOT_PARTITION_TYPE}\n"
        f": type={ROOT_PARTITION_TYPE}\n"
    )


def write_partition_table(path: Path, boot_size_mib: int) -> None:
    """Write the two-partition table to an image file.

    Raises:
        PartitionTableError: If sfdisk fails.
    """
    logger.info("Writing partition table to %s", path)
    try:
        run_command(["sfdisk", path], input=partition_script(boot_size_mib))
    except CommandError as e:
        raise PartitionTableError(
            f"Failed to partition {path}: {e.stderr.strip() or e}"
        ) from e


def attach_loop(path: Path) -> str:
    """Bind an image file to the first free loop device.

    Returns:
        The loop device path.

    Raises:
        DeviceExhaustedError: If no loop device is free.
        ResourceAcquisitionError: If losetup fails for another reason.
    """
    try:
        result = run_command(["losetup", "--find", "--show", path])
    except CommandError as e:
        if _NO_FREE_DEVICE.search(e.stderr):
            raise DeviceExhaustedError(str(path), e.stderr.strip()) from e
        raise ResourceAcquisitionError(
            f"Failed to bind {path} to a loop device: {e}",
            code="loop_attach_failed",
        ) from e

    device = result.stdout.strip()
    if not device:
        raise DeviceExhaustedError(str(path), "losetup returned no device")
    logger.info("Bound %s to %s", path, device)
    return device


def scan_partitions(device: str, settle_seconds: float) -> list[str]:
    """Ask the kernel to add partition nodes and wait for them to appear.

    ``partx -a`` fails harmlessly when the kernel already knows the
    partitions, so its exit code is ignored; the node check is what counts.

    Returns:
        Partition device paths, boot first.

    Raises:
        PartitionTableError: If the nodes do not appear in time.
    """
    run_command(["partx", "-a", device], check=False)

    expected = [partition_path(device, n) for n in (BOOT_PARTITION, ROOT_PARTITION)]
    deadline = time.monotonic() + settle_seconds
    while True:
        missing = [p for p in expected if not os.path.exists(p)]
        if not missing:
            return expected
        if time.monotonic() >= deadline:
            raise PartitionTableError(
                f"Partitions {', '.join(missing)} did not appear on {device}"
            )
        time.sleep(_SETTLE_INTERVAL)


def find_loop_devices(path: Path) -> list[str]:
    """Find loop devices backed by an image file.

    Returns:
        Loop device paths whose backing file is ``path`` (may be empty).
    """
    result = run_command(["losetup", "-j", path], check=False)
    if result.returncode != 0:
        logger.debug("losetup -j %s failed: %s", path, result.stderr.strip())
        return []

    wanted = os.path.realpath(path)
    devices: list[str] = []
    for line in result.stdout.splitlines():
        match = _LOSETUP_ASSOC.match(line.strip())
        if match and os.path.realpath(match.group(2)) == wanted:
            devices.append(match.group(1))
    return devices


def read_partition_layout(device: str) -> dict[str, Any]:
    """Read a device's partition table via ``sfdisk --json``.

    Returns:
        The ``partitiontable`` object (empty if it cannot be read).
    """
    result = run_command(["sfdisk", "--json", device], check=False)
    if result.returncode != 0:
        return {}
    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError:
        logger.warning("Unparseable sfdisk output for %s", device)
        return {}
    table = data.get("partitiontable", {})
    return table if isinstance(table, dict) else {}


def layout_is_sane(layout: dict[str, Any]) -> bool:
    """Check that a partition table matches the boot + root layout."""
    partitions = layout.get("partitions") or []
    if layout.get("label") != "dos" or len(partitions) != 2:
        return False
    types = [str(p.get("type", "")).lower() for p in partitions]
    return types == [BOOT_PARTITION_TYPE, ROOT_PARTITION_TYPE]


def forget_partitions(device: str) -> None:
    """Remove a loop device's partition nodes (tolerates none present)."""
    if not os.path.exists(partition_path(device, BOOT_PARTITION)):
        logger.debug("No partition nodes on %s", device)
        return
    run_command(["partx", "-d", device], check=False)


def detach_loop(device: str) -> None:
    """Release a loop device.

    Raises:
        CommandError: If losetup fails.
    """
    logger.info("Releasing loop device %s", device)
    run_command(["losetup", "-d", device])


def is_attached(device: str) -> bool:
    """Check whether a loop device still has a backing file."""
    name = Path(device).name
    return Path(f"/sys/block/{name}/loop/backing_file").exists()


__all__ = [
    "BOOT_PARTITION",
    "BOOT_PARTITION_TYPE",
    "LoopBinding",
    "MIB",
    "ROOT_PARTITION",
    "ROOT_PARTITION_TYPE",
    "attach_loop",
    "create_image_file",
    "detach_loop",
    "find_loop_devices",
    "forget_partitions",
    "is_attached",
    "layout_is_sane",
    "partition_path",
    "partition_script",
    "read_partition_layout",
    "scan_partitions",
    "write_partition_table",
]
