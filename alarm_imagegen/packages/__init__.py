"""Auxiliary package module.

This module handles:
- Fetching package recipes not available from upstream repositories
- Building them once and reusing the result
- Staging the packages for installation inside the chroot
"""

from alarm_imagegen.packages.builder import (
    build_package,
    ensure_aux_package,
    ensure_package_source,
    ensure_recipes,
    find_artifacts,
    stage_artifacts,
)

__all__ = [
    "build_package",
    "ensure_aux_package",
    "ensure_package_source",
    "ensure_recipes",
    "find_artifacts",
    "stage_artifacts",
]
