"""In-chroot configuration step.

The host generates ``/setup.sh`` from the bundled template, copies it and the
selected hook files into the mounted root as ``/platform.sh`` and
``/env.sh``, runs it with arch-chroot and removes the copies again.
"""

from __future__ import annotations

import logging
import shlex
from pathlib import Path

from alarm_imagegen.config import DATA_DIR
from alarm_imagegen.errors import ChrootExecutionError, CommandError
from alarm_imagegen.image.commands import run_command
from alarm_imagegen.profiles.hooks import HookSet

logger = logging.getLogger(__name__)

SETUP_TEMPLATE = DATA_DIR / "setup.sh"

SETUP_SCRIPT = "setup.sh"
PLATFORM_SCRIPT = "platform.sh"
ENV_SCRIPT = "env.sh"

# Bind mount targets inside the root tree
MODS_TARGET = "mods"
PACKAGE_CACHE_TARGET = "var/cache/pacman/pkg"

SCRIPT_MODE = 0o755


def _bash_array(name: str, values: list[str]) -> str:
    return f"{name}=({' '.join(shlex.quote(v) for v in values)})"


def render_setup_script(
    template: str, hookset: HookSet, aux_packages: list[str]
) -> str:
    """Generate the configuration script run inside the chroot.

    The header declares the auxiliary packages to install and the resolved
    in-chroot hook functions, platform first; the body is the template.

    Args:
        template: Script template (its shebang line is replaced).
        hookset: Selected profiles.
        aux_packages: Auxiliary packages staged in /mods/packages.

    Returns:
        Complete script text.
    """
    body = template
    if body.startswith("#!"):
        body = body.split("\n", 1)[1] if "\n" in body else ""

    header = [
        "#!/bin/bash",
        "#",
        "# Generated by alarm-imagegen for "
        f"{hookset.platform.profile_id} / {hookset.environment.profile_id}",
        "#",
        _bash_array("AUX_PACKAGES", aux_packages),
        _bash_array("CHROOT_SETUP_HOOKS", hookset.chroot_functions()),
        "",
    ]
    return "\n".join(header) + body


def _install(path: Path, content: bytes) -> Path:
    path.write_bytes(content)
    path.chmod(SCRIPT_MODE)
    return path


def stage_chroot_files(root_dir: Path, script: str, hookset: HookSet) -> list[Path]:
    """Copy the setup script and hook files into the root filesystem.

    Returns:
        Paths of the copies, for removal after the chroot step.
    """
    staged: list[Path] = []
    try:
        for profile, name in (
            (hookset.platform, PLATFORM_SCRIPT),
            (hookset.environment, ENV_SCRIPT),
        ):
            if profile.source is not None and profile.source.is_file():
                staged.append(_install(root_dir / name, profile.source.read_bytes()))
        staged.append(_install(root_dir / SETUP_SCRIPT, script.encode("utf-8")))
    except OSError as e:
        remove_staged_files(staged)
        raise ChrootExecutionError(f"Failed to stage chroot scripts: {e}") from e
    return staged


def remove_staged_files(paths: list[Path]) -> None:
    """Remove the transient script copies."""
    for path in paths:
        path.unlink(missing_ok=True)


def run_chroot(root_dir: Path, script: str = SETUP_SCRIPT) -> None:
    """Run the configuration script inside the root filesystem.

    Raises:
        ChrootExecutionError: If the script fails.
    """
    logger.info("Starting environment setup in %s", root_dir)
    try:
        run_command(["arch-chroot", root_dir, f"/{script}"], capture=False)
    except CommandError as e:
        raise ChrootExecutionError(f"Configuration script failed: {e}") from e


__all__ = [
    "MODS_TARGET",
    "PACKAGE_CACHE_TARGET",
    "SETUP_TEMPLATE",
    "remove_staged_files",
    "render_setup_script",
    "run_chroot",
    "stage_chroot_files",
]
