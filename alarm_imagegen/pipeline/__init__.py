"""Image build pipeline module.

This module handles:
- Selecting profiles and deriving names for a build session
- Running the build stages strictly in order
- The in-chroot configuration step
- Guaranteed release, and recovery of interrupted builds
"""

from alarm_imagegen.pipeline.orchestrator import (
    REQUIRED_TOOLS,
    Pipeline,
    check_dependencies,
    clean_work_dir,
    require_root,
    unmount_image,
)
from alarm_imagegen.pipeline.session import BuildSession, image_name_for, new_session

__all__ = [
    "REQUIRED_TOOLS",
    "BuildSession",
    "Pipeline",
    "check_dependencies",
    "clean_work_dir",
    "image_name_for",
    "new_session",
    "require_root",
    "unmount_image",
]
