"""Image build pipeline.

This module provides the high-level build API:
- Pipeline.run(): every stage of one build, strictly in order
- unmount_image(): release what an interrupted build left behind
- clean_work_dir(): remove generated images and downloaded tarballs

Release is the single guaranteed finalizer: it runs after the last stage
and after a failure in any stage.
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import httpx

from alarm_imagegen.archive.fetch import (
    ARCHIVE_SUFFIX,
    ArchiveURLs,
    build_archive_urls,
    ensure_archive,
    extract_archive,
    verify_archive,
)
from alarm_imagegen.config import Settings
from alarm_imagegen.errors import (
    MissingPrivilegeError,
    MissingToolError,
    PreconditionError,
)
from alarm_imagegen.image import lifecycle
from alarm_imagegen.image.loop import LoopBinding, find_loop_devices
from alarm_imagegen.packages.builder import ensure_aux_package
from alarm_imagegen.pipeline.chroot import (
    MODS_TARGET,
    PACKAGE_CACHE_TARGET,
    SETUP_TEMPLATE,
    remove_staged_files,
    render_setup_script,
    run_chroot,
    stage_chroot_files,
)
from alarm_imagegen.pipeline.session import (
    IMAGE_SUFFIX,
    BuildSession,
    image_name_for,
)
from alarm_imagegen.types import HookPoint, PipelineStage

logger = logging.getLogger(__name__)

REQUIRED_TOOLS = (
    "sfdisk",
    "losetup",
    "partx",
    "mkfs.vfat",
    "mkfs.ext4",
    "mount",
    "umount",
    "tar",
    "arch-chroot",
    "git",
    "makepkg",
    "yay",
)


def require_root() -> None:
    """Raise MissingPrivilegeError unless running as root."""
    if os.geteuid() != 0:
        raise MissingPrivilegeError()


def check_dependencies(tools: tuple[str, ...] = REQUIRED_TOOLS) -> None:
    """Raise MissingToolError listing every tool not found on PATH."""
    missing = [tool for tool in tools if shutil.which(tool) is None]
    if missing:
        raise MissingToolError(missing)


class Pipeline:
    """Runs the stages of one BuildSession.

    Args:
        session: The session to build.
        settings: Effective settings.
        client: HTTP client to use (one is created per run if omitted).
    """

    def __init__(
        self,
        session: BuildSession,
        settings: Settings,
        client: httpx.Client | None = None,
    ) -> None:
        self.session = session
        self.settings = settings
        self._client = client
        self._urls: ArchiveURLs = build_archive_urls(
            session.archive_name, settings.mirror_url, settings.checksum_url
        )

    @contextmanager
    def _http_client(self) -> Iterator[httpx.Client]:
        if self._client is not None:
            yield self._client
            return
        with httpx.Client() as client:
            yield client

    def _enter(self, stage: PipelineStage) -> None:
        self.session.advance(stage)
        logger.info("Stage: %s", stage.value)

    def _binding(self) -> LoopBinding:
        if self.session.binding is None:
            raise RuntimeError("No loop binding; BindLoop has not run")
        return self.session.binding

    def _archive_path(self) -> Path:
        if self.session.archive_path is None:
            raise RuntimeError("No tarball; FetchArchive has not run")
        return self.session.archive_path

    def run(self) -> BuildSession:
        """Run every stage, then release.

        A failure in any stage still releases all resources. If releasing
        fails as well, the CleanupError propagates with the stage failure as
        its context.

        Returns:
            The finished session.
        """
        session = self.session
        logger.info(
            "Building %s for platform '%s' with environment '%s'",
            session.image_path.name,
            session.platform.profile_id,
            session.environment.profile_id,
        )
        try:
            with self._http_client() as client:
                self.fetch_archive(client)
                self.verify_archive(client)
            self.create_image()
            self.bind_loop()
            self.format_partitions()
            self.mount_partitions()
            self.extract_archive()
            self.relocate_boot()
            self.build_aux_packages()
            self.pre_chroot_hooks()
            self.chroot_configure()
            self.post_chroot_hooks()
        finally:
            self.release()
        logger.info("Done! Image written to %s", session.image_path)
        return session

    def fetch_archive(self, client: httpx.Client) -> None:
        self._enter(PipelineStage.FETCH_ARCHIVE)
        result = ensure_archive(
            client,
            self._urls,
            self.session.work_dir,
            timeout=self.settings.download_timeout,
        )
        self.session.archive_path = result.archive_path

    def verify_archive(self, client: httpx.Client) -> None:
        self._enter(PipelineStage.VERIFY_ARCHIVE)
        verify_archive(
            client,
            self._urls,
            self._archive_path(),
            timeout=self.settings.checksum_timeout,
        )

    def create_image(self) -> None:
        self._enter(PipelineStage.CREATE_IMAGE)
        lifecycle.create_image(
            self.session.image_path,
            self.settings.image_size_mib,
            self.settings.boot_size_mib,
        )

    def bind_loop(self) -> None:
        self._enter(PipelineStage.BIND_LOOP)
        self.session.binding = lifecycle.bind_loop(
            self.session.image_path, self.settings.partition_wait_seconds
        )

    def format_partitions(self) -> None:
        self._enter(PipelineStage.FORMAT)
        lifecycle.format_partitions(self._binding())

    def mount_partitions(self) -> None:
        self._enter(PipelineStage.MOUNT)
        self.session.mounts = lifecycle.mount_partitions(
            self._binding(), self.session.work_dir
        )

    def extract_archive(self) -> None:
        self._enter(PipelineStage.EXTRACT_ARCHIVE)
        extract_archive(self._archive_path(), self.session.root_dir)

    def relocate_boot(self) -> None:
        self._enter(PipelineStage.RELOCATE_BOOT)
        self.session.mounts = lifecycle.relocate_boot(
            self._binding(), self.session.mounts
        )

    def build_aux_packages(self) -> None:
        self._enter(PipelineStage.BUILD_AUX_PACKAGES)
        for name in self.settings.aux_packages:
            ensure_aux_package(name, self.settings)

    def pre_chroot_hooks(self) -> None:
        self._enter(PipelineStage.PRE_CHROOT_HOOKS)
        self._run_hooks(HookPoint.PRE_CHROOT)

    def chroot_configure(self) -> None:
        self._enter(PipelineStage.CHROOT_CONFIGURE)
        session = self.session
        script = render_setup_script(
            SETUP_TEMPLATE.read_text(encoding="utf-8"),
            session.hookset,
            self.settings.aux_packages,
        )
        staged = stage_chroot_files(session.root_dir, script, session.hookset)
        try:
            binding = self._binding()
            lifecycle.bind_into_root(
                binding,
                self.settings.resolve_path(self.settings.mods_dir),
                session.root_dir,
                MODS_TARGET,
            )
            lifecycle.bind_into_root(
                binding,
                self.settings.resolve_path(self.settings.package_cache_dir),
                session.root_dir,
                PACKAGE_CACHE_TARGET,
            )
            run_chroot(session.root_dir)
        finally:
            remove_staged_files(staged)

    def post_chroot_hooks(self) -> None:
        self._enter(PipelineStage.POST_CHROOT_HOOKS)
        self._run_hooks(HookPoint.POST_CHROOT)

    def _run_hooks(self, point: HookPoint) -> None:
        hookset = self.session.hookset
        if not hookset.has(point):
            logger.info("No %s hooks to run", point.value)
            return
        hookset.invoke(point, self.session.hook_context())

    def release(self) -> None:
        """Release every mount and the loop device of this session."""
        self._enter(PipelineStage.RELEASE)
        binding = self.session.binding
        if binding is None:
            logger.debug("Nothing to release")
            return
        logger.info("Unmounting image...")
        lifecycle.release(binding)
        self.session.mounts = {}


def unmount_image(settings: Settings, platform_id: str, force: bool = False) -> int:
    """Release the loop devices and mounts left behind for a platform's image.

    Returns:
        Number of loop devices released.

    Raises:
        UnsafeRecoveryError: If a loop device fails the layout check.
        CleanupError: If anything stays attached.
    """
    image_name = image_name_for(platform_id, settings)
    image_path = settings.work_dir / f"{image_name}{IMAGE_SUFFIX}"
    return lifecycle.release_image(
        image_path,
        settings.work_dir,
        verify_layout=settings.verify_recovered_layout,
        force=force,
    )


def clean_work_dir(work_dir: Path) -> list[Path]:
    """Remove generated images and downloaded tarballs.

    Nothing is removed while any image is still bound to a loop device,
    since the binding could then no longer be traced back to its image.

    Returns:
        The removed files.

    Raises:
        PreconditionError: If an image is still bound to a loop device.
    """
    for path in sorted(work_dir.glob(f"*{IMAGE_SUFFIX}")):
        devices = find_loop_devices(path)
        if devices:
            raise PreconditionError(
                f"{path} is still bound to {', '.join(devices)}; "
                "run the umount command first",
                code="image_in_use",
            )

    removed: list[Path] = []
    for pattern in (f"*{IMAGE_SUFFIX}", f"*{ARCHIVE_SUFFIX}"):
        for path in sorted(work_dir.glob(pattern)):
            if path.is_file():
                path.unlink()
                logger.info("Removed %s", path)
                removed.append(path)
    return removed


__all__ = [
    "REQUIRED_TOOLS",
    "Pipeline",
    "check_dependencies",
    "clean_work_dir",
    "require_root",
    "unmount_image",
]
