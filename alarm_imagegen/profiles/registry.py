"""Profile discovery and selection.

Identifiers come from the hook files present on disk:
``<profiles_dir>/platform/<id>.sh`` and ``<profiles_dir>/env/<id>.sh``.
Nothing is cached; every call looks at the directory again.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator
from pathlib import Path

from alarm_imagegen.errors import ProfileDefinitionError, UnknownProfileError
from alarm_imagegen.profiles.hooks import HookSet
from alarm_imagegen.profiles.models import Profile, ShellHook
from alarm_imagegen.profiles.schema import load_profile_meta
from alarm_imagegen.types import HookPoint, ProfileKind

logger = logging.getLogger(__name__)

HOOK_SUFFIX = ".sh"
META_SUFFIX = ".yaml"

# "name() {", "name ()", "function name {", "function name() {"
_FUNCTION_DEF = re.compile(
    r"^\s*(?:function\s+([A-Za-z_][A-Za-z0-9_]*)\s*(?:\(\s*\))?"
    r"|([A-Za-z_][A-Za-z0-9_]*)\s*\(\s*\))",
    re.MULTILINE,
)


def defined_functions(script: str) -> set[str]:
    """Return the names of the bash functions a script defines."""
    names: set[str] = set()
    for match in _FUNCTION_DEF.finditer(script):
        names.add(match.group(1) or match.group(2))
    return names


def hook_function_name(kind: ProfileKind, point: HookPoint) -> str:
    """Name of the shell function implementing ``point`` for ``kind``."""
    return f"{kind.value}_{point.value}"


def load_shell_profile(path: Path, kind: ProfileKind) -> Profile:
    """Build a Profile from a hook file and its optional sidecar.

    Raises:
        ProfileDefinitionError: If the file or sidecar cannot be read.
    """
    try:
        script = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ProfileDefinitionError(f"Cannot read hook file {path}: {e}") from e

    functions = defined_functions(script)
    slots = {
        point.value: ShellHook(path, hook_function_name(kind, point))
        for point in HookPoint
        if hook_function_name(kind, point) in functions
    }
    meta = load_profile_meta(path.with_suffix(META_SUFFIX))

    return Profile(
        profile_id=path.stem,
        kind=kind,
        source=path,
        archive_name_template=meta.archive_name,
        description=meta.description,
        **slots,
    )


class ProfileRegistry:
    """Lists and resolves the profiles installed under a directory."""

    def __init__(self, profiles_dir: Path, default_environment: str = "xfce") -> None:
        self.profiles_dir = profiles_dir
        self.default_environment = default_environment

    def _kind_dir(self, kind: ProfileKind) -> Path:
        return self.profiles_dir / kind.value

    def _identifiers(self, kind: ProfileKind) -> Iterator[str]:
        directory = self._kind_dir(kind)
        if not directory.is_dir():
            logger.debug("No %s directory at %s", kind.label, directory)
            return
        found = {
            path.stem
            for path in directory.glob(f"*{HOOK_SUFFIX}")
            if path.is_file()
        }
        yield from sorted(found)

    def list_platforms(self) -> Iterator[str]:
        """Yield platform identifiers, sorted and unique."""
        return self._identifiers(ProfileKind.PLATFORM)

    def list_environments(self) -> Iterator[str]:
        """Yield environment identifiers, sorted and unique."""
        return self._identifiers(ProfileKind.ENVIRONMENT)

    def _resolve(self, kind: ProfileKind, profile_id: str | None) -> Profile:
        path = self._kind_dir(kind) / f"{profile_id}{HOOK_SUFFIX}"
        if (
            not profile_id
            or Path(profile_id).name != profile_id
            or not path.is_file()
        ):
            raise UnknownProfileError(
                kind.label, profile_id, list(self._identifiers(kind))
            )
        profile = load_shell_profile(path, kind)
        logger.debug(
            "Resolved %s '%s' (hooks: %s)",
            kind.label,
            profile_id,
            ", ".join(p.value for p in HookPoint if profile.hook(p)) or "none",
        )
        return profile

    def resolve_platform(self, profile_id: str | None) -> Profile:
        """Resolve a platform.

        Raises:
            UnknownProfileError: If no platform was given or it has no hook
                file.
        """
        return self._resolve(ProfileKind.PLATFORM, profile_id)

    def resolve_environment(self, profile_id: str | None = None) -> Profile:
        """Resolve an environment, falling back to the default one.

        Raises:
            UnknownProfileError: If the environment has no hook file.
        """
        return self._resolve(
            ProfileKind.ENVIRONMENT, profile_id or self.default_environment
        )

    def resolve_hookset(
        self, platform_id: str | None, environment_id: str | None = None
    ) -> HookSet:
        """Resolve both profiles and combine them into a HookSet."""
        return HookSet(
            platform=self.resolve_platform(platform_id),
            environment=self.resolve_environment(environment_id),
        )


__all__ = [
    "ProfileRegistry",
    "defined_functions",
    "hook_function_name",
    "load_shell_profile",
]
