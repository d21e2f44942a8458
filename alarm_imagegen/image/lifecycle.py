"""Image resource lifecycle.

This module owns every host resource an image build acquires: the image
file's loop device, its partition nodes and all mounts on top of them.

Acquisition is all-or-nothing: if any step fails, whatever was acquired in
that step is released before the error propagates. Release is idempotent:
resources that are already gone are skipped, and only resources that remain
attached make it fail. Mounts are released in reverse acquisition order and
the loop device only after every mount is gone.
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path

from alarm_imagegen.errors import (
    CleanupError,
    CommandError,
    FormatError,
    ImageGenError,
    MountError,
    PartitionInUseError,
    PreconditionError,
    ResourceAcquisitionError,
    UnsafeRecoveryError,
)
from alarm_imagegen.image.commands import run_command
from alarm_imagegen.image.loop import (
    BOOT_PARTITION,
    MIB,
    ROOT_PARTITION,
    LoopBinding,
    attach_loop,
    create_image_file,
    detach_loop,
    find_loop_devices,
    forget_partitions,
    is_attached,
    layout_is_sane,
    partition_path,
    read_partition_layout,
    scan_partitions,
    write_partition_table,
)
from alarm_imagegen.image.mounts import (
    MountEntry,
    MountPoint,
    bind_mount,
    is_device_mounted,
    is_mounted,
    mount,
    mounts_under,
    unmount,
)

logger = logging.getLogger(__name__)

BOOT_FSTYPE = "vfat"
ROOT_FSTYPE = "ext4"

ROOT_DIR_NAME = "root"
BOOT_DIR_NAME = "boot"

# Bind mount targets inside the root tree that are created by the build
CREATED_BIND_TARGETS = ("mods",)


def create_image(path: Path, size_mib: int, boot_size_mib: int) -> None:
    """Create a zero-filled image file and write its partition table.

    Raises:
        PreconditionError: If the image is still bound to a loop device.
        PartitionTableError: If partitioning fails.
        ResourceAcquisitionError: If the file cannot be written.
    """
    devices = find_loop_devices(path)
    if devices:
        raise PreconditionError(
            f"{path} is still bound to {', '.join(devices)}; "
            "run the umount command first",
            code="image_in_use",
        )
    if boot_size_mib >= size_mib:
        raise PreconditionError(
            f"Boot partition ({boot_size_mib} MiB) does not fit in a "
            f"{size_mib} MiB image",
            code="invalid_layout",
        )
    try:
        create_image_file(path, size_mib * MIB)
    except OSError as e:
        raise ResourceAcquisitionError(
            f"Failed to create image {path}: {e}", code="image_create_failed"
        ) from e
    write_partition_table(path, boot_size_mib)


def bind_loop(path: Path, settle_seconds: float = 5.0) -> LoopBinding:
    """Bind an image to a loop device and expose both partitions.

    The returned binding is fully bound. On failure the loop device is
    released again before the error propagates.

    Raises:
        DeviceExhaustedError: If no loop device is free.
        PartitionTableError: If partition nodes do not appear.
    """
    binding = LoopBinding(image_path=path)
    try:
        binding.device = attach_loop(path)
        binding.partitions = scan_partitions(binding.device, settle_seconds)
    except ImageGenError:
        logger.warning("Rolling back loop binding for %s", path)
        release(binding)
        raise
    return binding


def acquire_image(
    path: Path,
    size_mib: int,
    boot_size_mib: int = 256,
    settle_seconds: float = 5.0,
) -> LoopBinding:
    """Create a partitioned image and bind it to a loop device."""
    create_image(path, size_mib, boot_size_mib)
    return bind_loop(path, settle_seconds)


def format_partitions(binding: LoopBinding) -> None:
    """Create a FAT filesystem on the boot and ext4 on the root partition.

    Raises:
        PartitionInUseError: If a partition is mounted or the binding was
            already formatted.
        FormatError: If mkfs fails.
    """
    if not binding.is_bound:
        raise PartitionInUseError(str(binding.image_path), "image is not bound")
    if binding.formatted:
        raise PartitionInUseError(binding.device or "", "already formatted")
    for part in binding.partitions:
        if is_device_mounted(part):
            raise PartitionInUseError(part, "partition is mounted")

    logger.info("Formatting partitions on %s", binding.device)
    for cmd in (
        ["mkfs.vfat", "-v", "-I", binding.boot_partition],
        ["mkfs.ext4", "-v", binding.root_partition],
    ):
        try:
            run_command(cmd)
        except CommandError as e:
            raise FormatError(f"Failed to format {cmd[-1]}: {e}") from e
    binding.formatted = True


def mount_partitions(binding: LoopBinding, work_dir: Path) -> dict[str, MountPoint]:
    """Mount root, then boot standalone, under ``work_dir``.

    Returns:
        Mapping with 'root' and 'boot' mount points.

    Raises:
        MountError: If either mount fails.
    """
    root = mount(binding.root_partition, work_dir / ROOT_DIR_NAME, ROOT_FSTYPE)
    binding.mounts.append(root)
    boot = mount(binding.boot_partition, work_dir / BOOT_DIR_NAME, BOOT_FSTYPE)
    binding.mounts.append(boot)
    return {"root": root, "boot": boot}


def relocate_boot(
    binding: LoopBinding, mounts: dict[str, MountPoint]
) -> dict[str, MountPoint]:
    """Move the extracted /boot onto the boot partition and remount it there.

    The tarball ships its boot files inside the root tree, so they are moved
    onto the standalone boot mount, which is then remounted over root/boot.

    Returns:
        Mapping with 'root' and the relocated 'boot' mount point.

    Raises:
        MountError: If root is not mounted or the remount fails.
    """
    root = mounts["root"]
    boot = mounts["boot"]
    if not is_mounted(root.path):
        raise MountError(f"Cannot mount boot before root: {root.path} is not mounted")

    boot_dir = root.path / "boot"
    logger.info("Moving %s onto the boot partition", boot_dir)
    try:
        if boot_dir.is_dir():
            for entry in sorted(boot_dir.iterdir()):
                shutil.move(str(entry), str(boot.path / entry.name))
        else:
            boot_dir.mkdir()
        os.sync()
    except OSError as e:
        raise ResourceAcquisitionError(
            f"Failed to move boot files to {boot.path}: {e}",
            code="boot_relocation_failed",
        ) from e

    unmount(boot)
    binding.mounts.remove(boot)

    relocated = mount(binding.boot_partition, boot_dir, BOOT_FSTYPE)
    binding.mounts.append(relocated)
    return {"root": root, "boot": relocated}


def bind_into_root(
    binding: LoopBinding, source: Path, root_dir: Path, relative: str
) -> MountPoint:
    """Bind-mount a host directory inside the mounted root tree."""
    mount_point = bind_mount(source, root_dir / relative)
    binding.mounts.append(mount_point)
    return mount_point


def release(binding: LoopBinding) -> None:
    """Release every resource recorded in a binding.

    Mounts are unmounted in reverse order. The partitions are forgotten and
    the loop device detached only if all mounts are gone. Safe to call on a
    binding with any subset of its resources acquired, and more than once.

    Raises:
        CleanupError: If any mount or the loop device is still attached,
            or a partition is still mounted somewhere outside the binding.
    """
    failures: list[tuple[str, str]] = []
    for mount_point in reversed(list(binding.mounts)):
        try:
            unmount(mount_point)
        except CleanupError as e:
            failures.extend(e.failures)
            continue
        binding.mounts.remove(mount_point)

    if failures:
        if binding.device:
            failures.append((binding.device, "left attached, mounts are still busy"))
        raise CleanupError(failures)

    device = binding.device
    if device is None:
        return

    partitions = binding.partitions or [
        partition_path(device, number) for number in (BOOT_PARTITION, ROOT_PARTITION)
    ]
    busy = [part for part in partitions if is_device_mounted(part)]
    if busy:
        logger.error("Not detaching %s, %s still mounted", device, ", ".join(busy))
        failures = [(part, "still mounted") for part in busy]
        failures.append((device, "left attached, partitions are still mounted"))
        raise CleanupError(failures)

    forget_partitions(device)
    if is_attached(device):
        try:
            detach_loop(device)
        except CommandError as e:
            logger.error("Failed to release %s: %s", device, e)
            raise CleanupError([(device, str(e))]) from e
    else:
        logger.debug("%s is already detached", device)

    binding.device = None
    binding.partitions = []


def _recover_mounts(work_dir: Path, partitions: list[str]) -> list[MountPoint]:
    """Rebuild mount points for a dangling binding from the mount table."""
    root_dir = work_dir / ROOT_DIR_NAME
    created = {work_dir / ROOT_DIR_NAME, work_dir / BOOT_DIR_NAME}
    created.update(root_dir / name for name in CREATED_BIND_TARGETS)

    entries: dict[str, MountEntry] = {}
    for entry in mounts_under(root_dir) + mounts_under(work_dir / BOOT_DIR_NAME):
        entries[entry.target] = entry
    for part in partitions:
        for entry in mounts_under("/"):
            if entry.source == part:
                entries.setdefault(entry.target, entry)

    # Shallow first, so releasing in reverse unmounts the deepest first
    ordered = sorted(entries.values(), key=lambda e: len(Path(e.target).parts))
    return [
        MountPoint(
            path=Path(entry.target),
            device=entry.source,
            fstype=entry.fstype,
            bind=entry.source not in partitions,
            created_dir=Path(entry.target) in created,
        )
        for entry in ordered
    ]


def recover_bindings(
    image_path: Path,
    work_dir: Path,
    verify_layout: bool = True,
    force: bool = False,
) -> list[LoopBinding]:
    """Re-derive the bindings of an image left behind by an earlier run.

    Loop devices are found by their backing file. Unless ``force`` is set,
    each device must carry the boot + root partition layout before anything
    is handed out for release; all devices are checked before any binding is
    returned.

    Raises:
        UnsafeRecoveryError: If a device's layout does not match.
    """
    devices = find_loop_devices(image_path)
    if not devices:
        logger.info("No loop device is bound to %s", image_path)
        return []

    if verify_layout and not force:
        for device in devices:
            if not layout_is_sane(read_partition_layout(device)):
                raise UnsafeRecoveryError(
                    device, "partition table does not match the boot + root layout"
                )

    bindings: list[LoopBinding] = []
    for device in devices:
        partitions = [
            partition_path(device, n)
            for n in (BOOT_PARTITION, ROOT_PARTITION)
            if os.path.exists(partition_path(device, n))
        ]
        bindings.append(
            LoopBinding(
                image_path=image_path,
                device=device,
                partitions=partitions,
                mounts=_recover_mounts(work_dir, partitions),
                formatted=True,
            )
        )
    return bindings


def release_image(
    image_path: Path,
    work_dir: Path,
    verify_layout: bool = True,
    force: bool = False,
) -> int:
    """Release every loop device and mount left behind for an image.

    Returns:
        Number of loop devices released.

    Raises:
        UnsafeRecoveryError: If a device fails the layout check.
        CleanupError: If anything stays attached.
    """
    bindings = recover_bindings(image_path, work_dir, verify_layout, force)
    failures: list[tuple[str, str]] = []
    for binding in bindings:
        logger.info(
            "Releasing %s (%d mounts)", binding.device, len(binding.mounts)
        )
        try:
            release(binding)
        except CleanupError as e:
            failures.extend(e.failures)
    if failures:
        raise CleanupError(failures)
    return len(bindings)


__all__ = [
    "BOOT_FSTYPE",
    "ROOT_FSTYPE",
    "acquire_image",
    "bind_into_root",
    "bind_loop",
    "create_image",
    "format_partitions",
    "mount_partitions",
    "recover_bindings",
    "relocate_boot",
    "release",
    "release_image",
]
