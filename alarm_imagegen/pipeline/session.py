"""Build session state.

One BuildSession exists per build. It replaces ambient globals with explicit
fields that the orchestrator passes around, and it enforces that stages run
strictly in order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from alarm_imagegen.config import Settings
from alarm_imagegen.image.lifecycle import ROOT_DIR_NAME
from alarm_imagegen.image.loop import LoopBinding
from alarm_imagegen.image.mounts import MountPoint
from alarm_imagegen.profiles.hooks import HookSet
from alarm_imagegen.profiles.models import HookContext, Profile
from alarm_imagegen.profiles.registry import ProfileRegistry
from alarm_imagegen.types import PIPELINE_ORDER, PipelineStage

IMAGE_SUFFIX = ".img"


def image_name_for(platform_id: str, settings: Settings) -> str:
    """Image file base name for a platform."""
    return settings.image_name_template.format(platform=platform_id)


@dataclass
class BuildSession:
    """State of one image build.

    Attributes:
        hookset: Selected platform and environment.
        image_name: Image file base name (without '.img').
        archive_name: Tarball base name (without '.tar.gz').
        work_dir: Directory holding image, tarball and mount points.
        stage: Stage currently running (or last run).
        binding: Loop binding, set once BindLoop succeeded.
        mounts: Current 'root' and 'boot' mount points.
        archive_path: Tarball on disk, set by FetchArchive.
    """

    hookset: HookSet
    image_name: str
    archive_name: str
    work_dir: Path
    stage: PipelineStage = PipelineStage.SELECT_PROFILES
    binding: LoopBinding | None = None
    mounts: dict[str, MountPoint] = field(default_factory=dict)
    archive_path: Path | None = None

    @property
    def platform(self) -> Profile:
        return self.hookset.platform

    @property
    def environment(self) -> Profile:
        return self.hookset.environment

    @property
    def image_path(self) -> Path:
        return self.work_dir / f"{self.image_name}{IMAGE_SUFFIX}"

    @property
    def root_dir(self) -> Path:
        return self.work_dir / ROOT_DIR_NAME

    def advance(self, stage: PipelineStage) -> None:
        """Enter the next stage.

        Only the stage right after the current one may be entered, except
        Release, which may be entered from anywhere (and again).

        Raises:
            RuntimeError: If ``stage`` would skip or repeat a stage.
        """
        current = PIPELINE_ORDER.index(self.stage)
        if (
            stage is not PipelineStage.RELEASE
            and PIPELINE_ORDER.index(stage) != current + 1
        ):
            raise RuntimeError(
                f"Cannot enter stage '{stage.value}' after '{self.stage.value}'"
            )
        self.stage = stage

    def hook_context(self) -> HookContext:
        """Context handed to profile hooks."""
        return HookContext(
            work_dir=self.work_dir,
            root_dir=self.root_dir,
            image_path=self.image_path,
            platform=self.platform.profile_id,
            environment=self.environment.profile_id,
            loop_device=self.binding.device if self.binding else None,
        )


def new_session(
    registry: ProfileRegistry,
    settings: Settings,
    platform_id: str | None,
    environment_id: str | None = None,
) -> BuildSession:
    """Select the profiles for a build and derive its names.

    Touches nothing on disk besides reading the profile files.

    Raises:
        UnknownProfileError: If the platform is missing or either profile
            is unknown.
    """
    hookset = registry.resolve_hookset(platform_id, environment_id)
    platform = hookset.platform
    return BuildSession(
        hookset=hookset,
        image_name=image_name_for(platform.profile_id, settings),
        archive_name=platform.archive_name(settings.archive_name_template),
        work_dir=settings.work_dir,
    )


__all__ = ["IMAGE_SUFFIX", "BuildSession", "image_name_for", "new_session"]
