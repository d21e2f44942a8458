"""Tests for configuration module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from alarm_imagegen.config import DATA_DIR, Settings, get_settings, print_settings_json


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self) -> None:
        """Settings should have sensible defaults."""
        settings = Settings()

        assert settings.image_size_mib == 7168
        assert settings.boot_size_mib == 256
        assert settings.default_environment == "xfce"
        assert settings.aux_packages == ["yay-bin"]
        assert settings.mirror_url == "http://os.archlinuxarm.org/os"
        assert settings.checksum_url == "http://archlinuxarm.org/os"
        assert settings.verify_recovered_layout is True
        assert settings.log_level == "INFO"

    def test_settings_from_env(self) -> None:
        """Settings should be loadable from environment variables."""
        with patch.dict(
            os.environ,
            {
                "ALARM_IMG_IMAGE_SIZE_MIB": "2048",
                "ALARM_IMG_LOG_LEVEL": "DEBUG",
                "ALARM_IMG_DEFAULT_ENVIRONMENT": "cli",
            },
        ):
            settings = Settings()
            assert settings.image_size_mib == 2048
            assert settings.log_level == "DEBUG"
            assert settings.default_environment == "cli"

    def test_work_dir_from_env(self) -> None:
        """Work dir should be configurable via env."""
        with patch.dict(os.environ, {"ALARM_IMG_WORK_DIR": "/tmp/alarm-work"}):
            settings = Settings()
            assert settings.work_dir == Path("/tmp/alarm-work")

    def test_build_user_defaults_to_sudo_user(self) -> None:
        """The user that invoked sudo should build packages."""
        with patch.dict(os.environ, {"SUDO_USER": "alice"}):
            assert Settings().build_user == "alice"

    def test_build_user_without_sudo(self) -> None:
        """Without sudo there is no default build user."""
        env = {k: v for k, v in os.environ.items() if k != "SUDO_USER"}
        env.pop("ALARM_IMG_BUILD_USER", None)
        with patch.dict(os.environ, env, clear=True):
            assert Settings().build_user is None

    def test_image_too_small_rejected(self) -> None:
        """Image sizes below 1 GiB should be rejected."""
        with pytest.raises(ValidationError):
            Settings(image_size_mib=512)

    def test_invalid_log_level_rejected(self) -> None:
        """Unknown log levels should be rejected."""
        with pytest.raises(ValidationError):
            Settings(log_level="LOUD")


class TestPaths:
    """Test path resolution helpers."""

    def test_relative_path_resolved_against_work_dir(self, tmp_path: Path) -> None:
        """Relative paths should live under the work dir."""
        settings = Settings(work_dir=tmp_path)
        assert settings.resolve_path(settings.mods_dir) == tmp_path / "mods"

    def test_absolute_path_kept(self, tmp_path: Path) -> None:
        """Absolute paths should be returned unchanged."""
        settings = Settings(work_dir=tmp_path)
        assert settings.resolve_path(Path("/srv/cache")) == Path("/srv/cache")

    def test_bundled_profiles_by_default(self) -> None:
        """Without profiles_dir the bundled profiles should be used."""
        settings = Settings(profiles_dir=None)
        assert settings.effective_profiles_dir == DATA_DIR / "profiles"
        assert (DATA_DIR / "profiles" / "platform").is_dir()

    def test_custom_profiles_dir(self, tmp_path: Path) -> None:
        """A relative profiles_dir should resolve against the work dir."""
        settings = Settings(work_dir=tmp_path, profiles_dir=Path("my-profiles"))
        assert settings.effective_profiles_dir == tmp_path / "my-profiles"


class TestGetSettings:
    """Test get_settings function."""

    def test_returns_settings(self) -> None:
        """get_settings should return a Settings instance."""
        assert isinstance(get_settings(), Settings)

    def test_sees_current_environment(self) -> None:
        """Each call should reflect the current environment."""
        with patch.dict(os.environ, {"ALARM_IMG_BOOT_SIZE_MIB": "128"}):
            assert get_settings().boot_size_mib == 128
        with patch.dict(os.environ, {"ALARM_IMG_BOOT_SIZE_MIB": "512"}):
            assert get_settings().boot_size_mib == 512


class TestPrintSettingsJson:
    """Test print_settings_json function."""

    def test_returns_valid_json(self, tmp_path: Path) -> None:
        """Should return valid JSON string."""
        result = print_settings_json(Settings(work_dir=tmp_path))
        data = json.loads(result)

        assert data["work_dir"] == str(tmp_path)
        assert data["image_size_mib"] == 7168
        assert data["aux_packages"] == ["yay-bin"]
