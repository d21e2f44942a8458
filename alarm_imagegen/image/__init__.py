"""Image resource lifecycle module.

This module handles:
- Creating and partitioning the raw image file
- Binding it to a loop device and exposing its partitions
- Formatting and mounting boot and root
- Releasing every mount and the loop device, including after a crash
"""

from alarm_imagegen.image.commands import run_command
from alarm_imagegen.image.lifecycle import (
    acquire_image,
    bind_into_root,
    bind_loop,
    create_image,
    format_partitions,
    mount_partitions,
    recover_bindings,
    release,
    release_image,
    relocate_boot,
)
from alarm_imagegen.image.loop import LoopBinding, find_loop_devices
from alarm_imagegen.image.mounts import MountPoint, is_mounted

__all__ = [
    "LoopBinding",
    "MountPoint",
    "acquire_image",
    "bind_into_root",
    "bind_loop",
    "create_image",
    "find_loop_devices",
    "format_partitions",
    "is_mounted",
    "mount_partitions",
    "recover_bindings",
    "release",
    "release_image",
    "relocate_boot",
    "run_command",
]
