"""Profile and hook value objects.

A profile is a platform (hardware target) or an environment (software
stack). It has one explicit slot per extension point; an empty slot means the
profile does not take part in that point.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from alarm_imagegen.errors import ProfileDefinitionError
from alarm_imagegen.image.commands import run_command
from alarm_imagegen.types import HookPoint, ProfileKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HookContext:
    """What a hook gets to know about the running build.

    Attributes:
        work_dir: Directory holding the image and its mount points.
        root_dir: Mounted root filesystem.
        image_path: Image file being built.
        platform: Selected platform identifier.
        environment: Selected environment identifier.
        loop_device: Loop device the image is bound to.
    """

    work_dir: Path
    root_dir: Path
    image_path: Path
    platform: str
    environment: str
    loop_device: str | None = None

    def env(self) -> dict[str, str]:
        """Environment variables exported to shell hooks."""
        return {
            "ALARM_WORK_DIR": str(self.work_dir),
            "ALARM_ROOT_DIR": str(self.root_dir),
            "ALARM_BOOT_DIR": str(self.root_dir / "boot"),
            "ALARM_IMAGE": str(self.image_path),
            "ALARM_PLATFORM": self.platform,
            "ALARM_ENVIRONMENT": self.environment,
            "ALARM_LOOP_DEVICE": self.loop_device or "",
        }


Hook = Callable[[HookContext], None]


@dataclass(frozen=True)
class ShellHook:
    """A function defined in a profile's bash hook file.

    Calling it sources the file in a fresh bash on the host and runs the
    function from the build's working directory.
    """

    source: Path
    function: str

    def __call__(self, context: HookContext) -> None:
        logger.info("Executing %s from %s", self.function, self.source.name)
        run_command(
            ["bash", "-c", f'source "$1" && {self.function}', "bash", self.source],
            cwd=context.work_dir,
            env={**os.environ, **context.env()},
            capture=False,
        )

    def __str__(self) -> str:
        return self.function


@dataclass(frozen=True)
class Profile:
    """A resolved platform or environment.

    Attributes:
        profile_id: Identifier (hook file name without extension).
        kind: Platform or environment.
        source: Hook file copied into the image, if any.
        pre_chroot: Runs on the host before the chroot step.
        chroot_setup: Runs inside the chroot; must be a shell function.
        post_chroot: Runs on the host after the chroot step.
        archive_name_template: Tarball base name template ('{platform}' is
            replaced by the platform id). Platforms only.
        description: Free-form description.
    """

    profile_id: str
    kind: ProfileKind
    source: Path | None = None
    pre_chroot: Hook | None = None
    chroot_setup: ShellHook | None = None
    post_chroot: Hook | None = None
    archive_name_template: str | None = None
    description: str | None = None

    def __post_init__(self) -> None:
        if self.chroot_setup is not None and not isinstance(
            self.chroot_setup, ShellHook
        ):
            raise ProfileDefinitionError(
                f"{self.kind.label} '{self.profile_id}': the chroot setup hook "
                "runs inside the image and must be a shell function"
            )
        if self.archive_name_template and self.kind is not ProfileKind.PLATFORM:
            raise ProfileDefinitionError(
                f"environment '{self.profile_id}' cannot name the tarball"
            )

    def hook(self, point: HookPoint) -> Hook | None:
        """Return the implementation for an extension point, if any."""
        hook: Hook | None = getattr(self, point.value)
        return hook

    def archive_name(self, default_template: str) -> str:
        """Tarball base name for this platform."""
        template = self.archive_name_template or default_template
        return template.format(platform=self.profile_id)


__all__ = ["Hook", "HookContext", "Profile", "ShellHook"]
