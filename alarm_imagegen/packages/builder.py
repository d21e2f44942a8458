"""Auxiliary package builder.

Some packages the image needs are not in the Arch Linux ARM repositories.
They are built on the host from a recipe repository and staged into
``<mods_dir>/packages``, which the chroot sees as ``/mods/packages``.

Every step checks for its result first, so repeated builds reuse the
checkout, the package sources and any package already built.
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path

from alarm_imagegen.config import Settings
from alarm_imagegen.errors import CommandError, PackageBuildError
from alarm_imagegen.image.commands import run_command

logger = logging.getLogger(__name__)

ARTIFACT_PATTERN = "*.pkg.tar.*"
STAGING_SUBDIR = "packages"


def _as_build_user(cmd: list[str | Path], user: str | None) -> list[str | Path]:
    """Prefix a command so it runs unprivileged.

    makepkg and yay refuse to run as root, so when the process is privileged
    the command is run as ``user`` via runuser.

    Raises:
        PackageBuildError: If running as root without a build user.
    """
    if os.geteuid() != 0:
        return cmd
    if not user:
        raise PackageBuildError(
            str(cmd[0]),
            "cannot build packages as root; set ALARM_IMG_BUILD_USER "
            "or run through sudo",
        )
    return ["runuser", "-u", user, "--", *cmd]


def ensure_recipes(repo_dir: Path, url: str, user: str | None = None) -> bool:
    """Clone the recipe repository unless it is already there.

    Returns:
        True if a clone happened.
    """
    if repo_dir.exists():
        logger.debug("Using existing recipes at %s", repo_dir)
        return False

    logger.info("Cloning package recipes from %s", url)
    repo_dir.parent.mkdir(parents=True, exist_ok=True)
    try:
        run_command(
            _as_build_user(["git", "clone", url, repo_dir], user),
            capture=False,
        )
    except CommandError as e:
        raise PackageBuildError(repo_dir.name, f"clone failed: {e}") from e
    return True


def ensure_package_source(repo_dir: Path, name: str, user: str | None = None) -> Path:
    """Fetch a package's build files from the AUR unless present.

    Returns:
        The package directory.
    """
    pkg_dir = repo_dir / name
    if pkg_dir.exists():
        return pkg_dir

    logger.info("Fetching build files for %s", name)
    try:
        run_command(
            _as_build_user(["yay", "-G", name], user), cwd=repo_dir, capture=False
        )
    except CommandError as e:
        raise PackageBuildError(name, f"could not fetch build files: {e}") from e
    if not pkg_dir.is_dir():
        raise PackageBuildError(name, f"no build files at {pkg_dir}")
    return pkg_dir


def find_artifacts(pkg_dir: Path) -> list[Path]:
    """Return built package files in a package directory, sorted by name."""
    return sorted(p for p in pkg_dir.glob(ARTIFACT_PATTERN) if p.is_file())


def build_package(pkg_dir: Path, user: str | None = None) -> list[Path]:
    """Build a package with makepkg.

    Returns:
        The built package files.

    Raises:
        PackageBuildError: If makepkg fails or produces nothing.
    """
    logger.info("Building package %s", pkg_dir.name)
    try:
        run_command(
            _as_build_user(["makepkg", "-CAs", "--noconfirm"], user),
            cwd=pkg_dir,
            capture=False,
        )
    except CommandError as e:
        raise PackageBuildError(pkg_dir.name, f"makepkg failed: {e}") from e

    artifacts = find_artifacts(pkg_dir)
    if not artifacts:
        raise PackageBuildError(pkg_dir.name, "makepkg produced no package")
    return artifacts


def stage_artifacts(artifacts: list[Path], dest_dir: Path) -> list[Path]:
    """Copy package files into the staging directory.

    Returns:
        Paths of the staged copies.
    """
    dest_dir.mkdir(parents=True, exist_ok=True)
    staged: list[Path] = []
    for artifact in artifacts:
        target = dest_dir / artifact.name
        shutil.copy2(artifact, target)
        staged.append(target)
    logger.debug("Staged %s in %s", [p.name for p in staged], dest_dir)
    return staged


def ensure_aux_package(name: str, settings: Settings) -> list[Path]:
    """Make an auxiliary package available to the chroot.

    Reuses a previously built package when one exists.

    Returns:
        Paths of the staged package files.

    Raises:
        PackageBuildError: If the package cannot be fetched or built.
    """
    repo_dir = settings.resolve_path(settings.packages_dir)
    user = settings.build_user

    ensure_recipes(repo_dir, settings.packages_repo_url, user)
    pkg_dir = ensure_package_source(repo_dir, name, user)

    artifacts = find_artifacts(pkg_dir)
    if artifacts:
        logger.info("Reusing built package %s", artifacts[-1].name)
    else:
        artifacts = build_package(pkg_dir, user)

    staging_dir = settings.resolve_path(settings.mods_dir) / STAGING_SUBDIR
    return stage_artifacts(artifacts, staging_dir)


__all__ = [
    "build_package",
    "ensure_aux_package",
    "ensure_package_source",
    "ensure_recipes",
    "find_artifacts",
    "stage_artifacts",
]
