"""Hook invocation for the selected platform and environment.

The platform's implementation of an extension point always runs before the
environment's, so environment customizations refine the platform baseline.
Each implementation runs independently: a failing platform hook does not
stop the environment hook, and all failures are reported together after
both had their turn. A profile without an implementation is skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from alarm_imagegen.errors import HookExecutionError
from alarm_imagegen.profiles.models import Hook, HookContext, Profile, ShellHook
from alarm_imagegen.types import HookPoint

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HookSet:
    """Hooks of one build's platform and environment."""

    platform: Profile
    environment: Profile

    @property
    def profiles(self) -> tuple[Profile, Profile]:
        """Profiles in invocation order."""
        return (self.platform, self.environment)

    def resolve(self, point: HookPoint) -> list[tuple[Profile, Hook]]:
        """Return the implementations present for ``point``, in order."""
        found: list[tuple[Profile, Hook]] = []
        for profile in self.profiles:
            hook = profile.hook(point)
            if hook is not None:
                found.append((profile, hook))
        return found

    def has(self, point: HookPoint) -> bool:
        """Whether any profile implements ``point``."""
        return bool(self.resolve(point))

    def invoke(self, point: HookPoint, context: HookContext) -> int:
        """Run every implementation of ``point``.

        Returns:
            Number of hooks that ran.

        Raises:
            HookExecutionError: After all hooks ran, if any of them failed.
        """
        failures: list[tuple[str, Exception]] = []
        hooks = self.resolve(point)
        for profile, hook in hooks:
            name = f"{profile.kind.label} '{profile.profile_id}'"
            logger.info("Executing %s %s hook...", name, point.value)
            try:
                hook(context)
            except Exception as e:
                logger.error("%s %s hook failed: %s", name, point.value, e)
                failures.append((name, e))
        if failures:
            raise HookExecutionError(point.value, failures)
        return len(hooks)

    def chroot_functions(self) -> list[str]:
        """Names of the in-chroot setup functions, in invocation order."""
        return [
            hook.function
            for _, hook in self.resolve(HookPoint.CHROOT_SETUP)
            if isinstance(hook, ShellHook)
        ]


__all__ = ["HookSet"]
