"""Pydantic models for profile metadata.

A hook file may have a YAML sidecar with the same stem (for example
``platform/odroid-xu4.yaml``) describing the profile. The sidecar is
optional and never introduces an identifier on its own.
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from alarm_imagegen.errors import ProfileDefinitionError


class ProfileMetaSchema(BaseModel):
    """Schema for a profile's metadata sidecar.

    Attributes:
        description: Free-form description shown in listings.
        archive_name: Tarball base name template, '{platform}' is replaced by
            the platform identifier.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    description: str | None = Field(default=None, description="Profile description")
    archive_name: str | None = Field(
        default=None,
        description="Tarball base name template (platforms only)",
    )

    @field_validator("archive_name")
    @classmethod
    def validate_archive_name(cls, v: str | None) -> str | None:
        """Validate the template is a plain file name."""
        if v is None:
            return v
        if "/" in v or not v.strip():
            raise ValueError("archive_name must be a plain file name")
        try:
            v.format(platform="x")
        except (KeyError, IndexError, ValueError) as e:
            raise ValueError(
                f"archive_name may only use the {{platform}} placeholder: {e}"
            ) from e
        return v


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Raises:
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_profile_meta(path: Path) -> ProfileMetaSchema:
    """Load the metadata sidecar for a hook file.

    Args:
        path: Path of the sidecar (need not exist).

    Returns:
        Parsed metadata; empty metadata when there is no sidecar.

    Raises:
        ProfileDefinitionError: If the sidecar is malformed.
    """
    if not path.exists():
        return ProfileMetaSchema()
    try:
        return ProfileMetaSchema.model_validate(load_yaml(path))
    except (yaml.YAMLError, ValueError, ValidationError) as e:
        raise ProfileDefinitionError(f"Invalid profile metadata {path}: {e}") from e


__all__ = ["ProfileMetaSchema", "load_profile_meta", "load_yaml"]
