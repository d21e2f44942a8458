"""Shared type definitions for alarm_imagegen.

This module contains enums shared across subpackages to avoid circular
imports.
"""

from enum import Enum


class ProfileKind(str, Enum):
    """Kind of a profile.

    The value doubles as the prefix of the shell hook functions a profile
    defines (``platform_pre_chroot``, ``env_post_chroot``, ...).
    """

    PLATFORM = "platform"
    ENVIRONMENT = "env"

    @property
    def label(self) -> str:
        """Human readable name of the kind."""
        return "platform" if self is ProfileKind.PLATFORM else "environment"


class HookPoint(str, Enum):
    """Fixed pipeline extension points a profile may participate in."""

    PRE_CHROOT = "pre_chroot"
    CHROOT_SETUP = "chroot_setup"
    POST_CHROOT = "post_chroot"


class PipelineStage(str, Enum):
    """Stages of one image build, in execution order."""

    SELECT_PROFILES = "select-profiles"
    FETCH_ARCHIVE = "fetch-archive"
    VERIFY_ARCHIVE = "verify-archive"
    CREATE_IMAGE = "create-image"
    BIND_LOOP = "bind-loop"
    FORMAT = "format"
    MOUNT = "mount"
    EXTRACT_ARCHIVE = "extract-archive"
    RELOCATE_BOOT = "relocate-boot"
    BUILD_AUX_PACKAGES = "build-aux-packages"
    PRE_CHROOT_HOOKS = "pre-chroot-hooks"
    CHROOT_CONFIGURE = "chroot-configure"
    POST_CHROOT_HOOKS = "post-chroot-hooks"
    RELEASE = "release"


# Enum iteration order is definition order
PIPELINE_ORDER: tuple[PipelineStage, ...] = tuple(PipelineStage)


__all__ = [
    "HookPoint",
    "PIPELINE_ORDER",
    "PipelineStage",
    "ProfileKind",
]
