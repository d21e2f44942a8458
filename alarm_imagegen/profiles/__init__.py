"""Profile management module.

This module handles:
- Discovering platform and environment identifiers from hook files
- Resolving a selected pair into profiles with explicit hook slots
- Optional YAML metadata next to each hook file
- Invoking hooks at the fixed extension points, platform first
"""

from alarm_imagegen.profiles.hooks import HookSet
from alarm_imagegen.profiles.models import Hook, HookContext, Profile, ShellHook
from alarm_imagegen.profiles.registry import (
    ProfileRegistry,
    defined_functions,
    hook_function_name,
    load_shell_profile,
)
from alarm_imagegen.profiles.schema import ProfileMetaSchema, load_profile_meta

__all__ = [
    "Hook",
    "HookContext",
    "HookSet",
    "Profile",
    "ProfileMetaSchema",
    "ProfileRegistry",
    "ShellHook",
    "defined_functions",
    "hook_function_name",
    "load_profile_meta",
    "load_shell_profile",
]
