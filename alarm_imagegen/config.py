"""Configuration settings for alarm_imagegen.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

import os
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Bundled platform/environment hook files and the in-chroot setup script
DATA_DIR = Path(__file__).resolve().parent / "data"


def _default_build_user() -> str | None:
    """Return the user that invoked sudo, if any."""
    return os.environ.get("SUDO_USER") or None


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the ALARM_IMG_ prefix.
    CLI flags can override these at runtime. Relative paths are resolved
    against ``work_dir``.
    """

    model_config = SettingsConfigDict(
        env_prefix="ALARM_IMG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    work_dir: Path = Field(
        default_factory=Path.cwd,
        description="Directory holding images, tarballs and mount points",
    )
    profiles_dir: Path | None = Field(
        default=None,
        description="Directory with platform/ and env/ hook files "
        "(uses the bundled profiles if not set)",
    )
    mods_dir: Path = Field(
        default=Path("mods"),
        description="Overlay directory bind-mounted at /mods inside the chroot",
    )
    package_cache_dir: Path = Field(
        default=Path("cache"),
        description="pacman package cache bind-mounted into the chroot",
    )
    packages_dir: Path = Field(
        default=Path("packages"),
        description="Checkout of package recipes for auxiliary packages",
    )

    # Download
    mirror_url: str = Field(
        default="http://os.archlinuxarm.org/os",
        description="Base URL root filesystem tarballs are downloaded from",
    )
    checksum_url: str = Field(
        default="http://archlinuxarm.org/os",
        description="Base URL published md5 checksums are fetched from",
    )
    archive_name_template: str = Field(
        default="ArchLinuxARM-{platform}-latest",
        description="Tarball base name for platforms without their own template",
    )
    image_name_template: str = Field(
        default="ArchLinuxARM-{platform}",
        description="Image file base name",
    )

    # Profiles
    default_environment: str = Field(
        default="xfce",
        description="Environment used when none is selected",
    )

    # Image layout
    image_size_mib: int = Field(
        default=7 * 1024,
        ge=1024,
        description="Total image size in MiB",
    )
    boot_size_mib: int = Field(
        default=256,
        ge=32,
        description="Size of the FAT boot partition in MiB",
    )
    partition_wait_seconds: float = Field(
        default=5.0,
        ge=0,
        description="How long to wait for partition device nodes to appear",
    )
    verify_recovered_layout: bool = Field(
        default=True,
        description="Check the partition layout of a loop device before "
        "releasing it with the umount command",
    )

    # Auxiliary packages
    aux_packages: list[str] = Field(
        default_factory=lambda: ["yay-bin"],
        description="Packages built on the host and installed in the chroot",
    )
    packages_repo_url: str = Field(
        default="https://github.com/jgmdev/archlinux-odroid",
        description="Git repository with package recipes",
    )
    build_user: str | None = Field(
        default_factory=_default_build_user,
        description="Unprivileged user that runs makepkg",
    )

    # Timeouts (in seconds)
    download_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for tarball downloads",
    )
    checksum_timeout: int = Field(
        default=30,
        ge=1,
        description="Timeout for fetching checksums",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    def resolve_path(self, path: Path) -> Path:
        """Resolve a configured path relative to ``work_dir``."""
        if path.is_absolute():
            return path
        return self.work_dir / path

    @property
    def effective_profiles_dir(self) -> Path:
        """Directory the profile registry reads hook files from."""
        if self.profiles_dir is None:
            return DATA_DIR / "profiles"
        return self.resolve_path(self.profiles_dir)


def get_settings() -> Settings:
    """Get the application settings.

    A fresh instance is built on every call so that each invocation sees the
    current environment.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["DATA_DIR", "Settings", "get_settings", "print_settings_json"]
