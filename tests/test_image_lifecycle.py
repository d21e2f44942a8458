"""Tests for image/lifecycle.py - acquisition and release of image resources.

Host tools are never run: every loop, partition and mount operation is
patched in the lifecycle module and recorded in call order.
"""

from pathlib import Path
from unittest.mock import patch

import pytest

from alarm_imagegen.errors import (
    CleanupError,
    CommandError,
    DeviceExhaustedError,
    FormatError,
    MountError,
    PartitionInUseError,
    PartitionTableError,
    PreconditionError,
    UnsafeRecoveryError,
)
from alarm_imagegen.image import lifecycle
from alarm_imagegen.image.loop import MIB, LoopBinding
from alarm_imagegen.image.mounts import MountEntry, MountPoint

LIFECYCLE = "alarm_imagegen.image.lifecycle"

SANE_LAYOUT = {
    "label": "dos",
    "partitions": [{"type": "c"}, {"type": "83"}],
}


def bound(image_path: Path = Path("/work/a.img")) -> LoopBinding:
    return LoopBinding(
        image_path=image_path,
        device="/dev/loop0",
        partitions=["/dev/loop0p1", "/dev/loop0p2"],
    )


class FakeHost:
    """Records mount and loop operations in the order they happen."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.busy: set[Path] = set()

    def mount(self, device: str, target: Path, fstype: str) -> MountPoint:
        target.mkdir(parents=True, exist_ok=True)
        self.calls.append(("mount", str(target)))
        return MountPoint(target, device, fstype)

    def bind_mount(self, source: Path, target: Path) -> MountPoint:
        self.calls.append(("bind", str(target)))
        return MountPoint(target, str(source), "none", bind=True)

    def unmount(self, mount_point: MountPoint) -> None:
        if mount_point.path in self.busy:
            raise CleanupError([(str(mount_point.path), "target is busy")])
        self.calls.append(("umount", str(mount_point.path)))

    def forget_partitions(self, device: str) -> None:
        self.calls.append(("forget", device))

    def detach_loop(self, device: str) -> None:
        self.calls.append(("detach", device))


@pytest.fixture
def host():
    fake = FakeHost()
    with patch(f"{LIFECYCLE}.mount", side_effect=fake.mount), patch(
        f"{LIFECYCLE}.bind_mount", side_effect=fake.bind_mount
    ), patch(f"{LIFECYCLE}.unmount", side_effect=fake.unmount), patch(
        f"{LIFECYCLE}.forget_partitions", side_effect=fake.forget_partitions
    ), patch(f"{LIFECYCLE}.detach_loop", side_effect=fake.detach_loop), patch(
        f"{LIFECYCLE}.is_attached", return_value=True
    ), patch(f"{LIFECYCLE}.is_mounted", return_value=True), patch(
        f"{LIFECYCLE}.is_device_mounted", return_value=False
    ), patch(f"{LIFECYCLE}.os.sync"):
        yield fake


class TestCreateImage:
    """Tests for create_image."""

    def test_creates_and_partitions(self, tmp_path: Path) -> None:
        """Should create a file of the requested size and partition it."""
        image = tmp_path / "a.img"
        with patch(f"{LIFECYCLE}.find_loop_devices", return_value=[]), patch(
            f"{LIFECYCLE}.write_partition_table"
        ) as mock_write:
            lifecycle.create_image(image, 8, 2)

        assert image.stat().st_size == 8 * MIB
        mock_write.assert_called_once_with(image, 2)

    def test_refuses_bound_image(self, tmp_path: Path) -> None:
        """An image still bound to a loop device should not be recreated."""
        image = tmp_path / "a.img"
        with patch(
            f"{LIFECYCLE}.find_loop_devices", return_value=["/dev/loop3"]
        ), patch(f"{LIFECYCLE}.write_partition_table") as mock_write:
            with pytest.raises(PreconditionError) as exc_info:
                lifecycle.create_image(image, 8, 2)

        assert exc_info.value.code == "image_in_use"
        assert not image.exists()
        mock_write.assert_not_called()

    def test_boot_must_fit(self, tmp_path: Path) -> None:
        """A boot partition as large as the image is rejected."""
        with patch(f"{LIFECYCLE}.find_loop_devices", return_value=[]):
            with pytest.raises(PreconditionError) as exc_info:
                lifecycle.create_image(tmp_path / "a.img", 256, 256)
        assert exc_info.value.code == "invalid_layout"


class TestBindLoop:
    """Tests for bind_loop."""

    def test_binds_image(self, host: FakeHost) -> None:
        """Success yields a fully bound binding."""
        with patch(f"{LIFECYCLE}.attach_loop", return_value="/dev/loop0"), patch(
            f"{LIFECYCLE}.scan_partitions",
            return_value=["/dev/loop0p1", "/dev/loop0p2"],
        ):
            binding = lifecycle.bind_loop(Path("/work/a.img"), settle_seconds=1)

        assert binding.is_bound
        assert binding.device == "/dev/loop0"
        assert host.calls == []

    def test_rolls_back_when_partitions_missing(self, host: FakeHost) -> None:
        """The loop device is released if partitions never appear."""
        with patch(f"{LIFECYCLE}.attach_loop", return_value="/dev/loop0"), patch(
            f"{LIFECYCLE}.scan_partitions",
            side_effect=PartitionTableError("no partitions"),
        ):
            with pytest.raises(PartitionTableError):
                lifecycle.bind_loop(Path("/work/a.img"), settle_seconds=0)

        assert host.calls == [("forget", "/dev/loop0"), ("detach", "/dev/loop0")]

    def test_exhausted_pool_acquires_nothing(self, host: FakeHost) -> None:
        """Without a free device nothing needs releasing."""
        with patch(
            f"{LIFECYCLE}.attach_loop",
            side_effect=DeviceExhaustedError("/work/a.img"),
        ):
            with pytest.raises(DeviceExhaustedError):
                lifecycle.bind_loop(Path("/work/a.img"))

        assert host.calls == []


class TestAcquireImage:
    """Tests for acquire_image."""

    def test_creates_then_binds(self, host: FakeHost, tmp_path: Path) -> None:
        """The image is created and partitioned before it is bound."""
        image = tmp_path / "a.img"
        with patch(f"{LIFECYCLE}.find_loop_devices", return_value=[]), patch(
            f"{LIFECYCLE}.write_partition_table"
        ) as mock_write, patch(
            f"{LIFECYCLE}.attach_loop", return_value="/dev/loop0"
        ) as mock_attach, patch(
            f"{LIFECYCLE}.scan_partitions",
            return_value=["/dev/loop0p1", "/dev/loop0p2"],
        ):
            binding = lifecycle.acquire_image(image, 8, 2, settle_seconds=0)

        assert image.stat().st_size == 8 * MIB
        mock_write.assert_called_once_with(image, 2)
        mock_attach.assert_called_once_with(image)
        assert binding.is_bound
        assert binding.image_path == image

    def test_failed_bind_rolls_back(self, host: FakeHost, tmp_path: Path) -> None:
        """A bind failure after creation leaves no loop device attached."""
        with patch(f"{LIFECYCLE}.find_loop_devices", return_value=[]), patch(
            f"{LIFECYCLE}.write_partition_table"
        ), patch(f"{LIFECYCLE}.attach_loop", return_value="/dev/loop0"), patch(
            f"{LIFECYCLE}.scan_partitions",
            side_effect=PartitionTableError("no partitions"),
        ):
            with pytest.raises(PartitionTableError):
                lifecycle.acquire_image(tmp_path / "a.img", 8, 2, settle_seconds=0)

        assert host.calls == [("forget", "/dev/loop0"), ("detach", "/dev/loop0")]

    def test_failed_create_binds_nothing(self, host: FakeHost, tmp_path: Path) -> None:
        """An image that cannot be created is never bound."""
        with patch(f"{LIFECYCLE}.find_loop_devices", return_value=[]), patch(
            f"{LIFECYCLE}.write_partition_table",
            side_effect=PartitionTableError("sfdisk failed"),
        ), patch(f"{LIFECYCLE}.attach_loop") as mock_attach:
            with pytest.raises(PartitionTableError):
                lifecycle.acquire_image(tmp_path / "a.img", 8, 2)

        mock_attach.assert_not_called()
        assert host.calls == []


class TestFormatPartitions:
    """Tests for format_partitions."""

    def test_formats_boot_then_root(self) -> None:
        """FAT on the boot and ext4 on the root partition."""
        binding = bound()
        with patch(f"{LIFECYCLE}.is_device_mounted", return_value=False), patch(
            f"{LIFECYCLE}.run_command"
        ) as mock_run:
            lifecycle.format_partitions(binding)

        assert [c.args[0] for c in mock_run.call_args_list] == [
            ["mkfs.vfat", "-v", "-I", "/dev/loop0p1"],
            ["mkfs.ext4", "-v", "/dev/loop0p2"],
        ]
        assert binding.formatted is True

    def test_refuses_second_format(self) -> None:
        """Formatting twice is a caller error."""
        binding = bound()
        binding.formatted = True
        with patch(f"{LIFECYCLE}.run_command") as mock_run:
            with pytest.raises(PartitionInUseError):
                lifecycle.format_partitions(binding)
        mock_run.assert_not_called()

    def test_refuses_mounted_partition(self) -> None:
        """A mounted partition is never formatted."""
        with patch(f"{LIFECYCLE}.is_device_mounted", return_value=True), patch(
            f"{LIFECYCLE}.run_command"
        ) as mock_run:
            with pytest.raises(PartitionInUseError, match="mounted"):
                lifecycle.format_partitions(bound())
        mock_run.assert_not_called()

    def test_refuses_unbound(self) -> None:
        """An unbound image cannot be formatted."""
        with pytest.raises(PartitionInUseError):
            lifecycle.format_partitions(LoopBinding(image_path=Path("a.img")))

    def test_mkfs_failure(self) -> None:
        """mkfs failure should raise FormatError."""
        binding = bound()
        with patch(f"{LIFECYCLE}.is_device_mounted", return_value=False), patch(
            f"{LIFECYCLE}.run_command",
            side_effect=CommandError(["mkfs.vfat"], 1, "device busy"),
        ):
            with pytest.raises(FormatError, match="/dev/loop0p1"):
                lifecycle.format_partitions(binding)
        assert binding.formatted is False


class TestMountPartitions:
    """Tests for mount_partitions and relocate_boot."""

    def test_root_mounted_before_boot(self, host: FakeHost, tmp_path: Path) -> None:
        """Root is mounted first, then boot standalone."""
        binding = bound()
        mounts = lifecycle.mount_partitions(binding, tmp_path)

        assert host.calls == [
            ("mount", str(tmp_path / "root")),
            ("mount", str(tmp_path / "boot")),
        ]
        assert mounts["root"].device == "/dev/loop0p2"
        assert mounts["boot"].device == "/dev/loop0p1"
        assert binding.mounts == [mounts["root"], mounts["boot"]]

    def test_relocate_moves_boot_files(self, host: FakeHost, tmp_path: Path) -> None:
        """Boot files move onto the boot partition, remounted under root."""
        binding = bound()
        mounts = lifecycle.mount_partitions(binding, tmp_path)
        (tmp_path / "root" / "boot").mkdir()
        (tmp_path / "root" / "boot" / "zImage").write_text("kernel")
        (tmp_path / "root" / "boot" / "dtbs").mkdir()
        host.calls.clear()

        relocated = lifecycle.relocate_boot(binding, mounts)

        assert (tmp_path / "boot" / "zImage").read_text() == "kernel"
        assert (tmp_path / "boot" / "dtbs").is_dir()
        assert list((tmp_path / "root" / "boot").iterdir()) == []
        assert host.calls == [
            ("umount", str(tmp_path / "boot")),
            ("mount", str(tmp_path / "root" / "boot")),
        ]
        assert relocated["boot"].path == tmp_path / "root" / "boot"
        assert binding.mounts == [mounts["root"], relocated["boot"]]

    def test_relocate_requires_root(self, host: FakeHost, tmp_path: Path) -> None:
        """Boot is never mounted inside an unmounted root."""
        binding = bound()
        mounts = lifecycle.mount_partitions(binding, tmp_path)
        with patch(f"{LIFECYCLE}.is_mounted", return_value=False):
            with pytest.raises(MountError, match="before root"):
                lifecycle.relocate_boot(binding, mounts)


class TestRelease:
    """Tests for release."""

    def _fully_acquired(self, tmp_path: Path) -> LoopBinding:
        binding = bound()
        binding.mounts = [
            MountPoint(tmp_path / "root", "/dev/loop0p2", "ext4"),
            MountPoint(tmp_path / "root" / "boot", "/dev/loop0p1", "vfat"),
            MountPoint(tmp_path / "root" / "mods", "/mods", "none", bind=True),
        ]
        return binding

    def test_reverse_order_then_loop_device(
        self, host: FakeHost, tmp_path: Path
    ) -> None:
        """Mounts are released last-in first-out, then the loop device."""
        binding = self._fully_acquired(tmp_path)
        lifecycle.release(binding)

        assert host.calls == [
            ("umount", str(tmp_path / "root" / "mods")),
            ("umount", str(tmp_path / "root" / "boot")),
            ("umount", str(tmp_path / "root")),
            ("forget", "/dev/loop0"),
            ("detach", "/dev/loop0"),
        ]
        assert binding.mounts == []
        assert binding.device is None
        assert binding.partitions == []

    def test_idempotent(self, host: FakeHost, tmp_path: Path) -> None:
        """A second release is a no-op."""
        binding = self._fully_acquired(tmp_path)
        lifecycle.release(binding)
        host.calls.clear()

        lifecycle.release(binding)
        assert host.calls == []

    def test_nothing_acquired(self, host: FakeHost) -> None:
        """Releasing an empty binding does nothing."""
        lifecycle.release(LoopBinding(image_path=Path("/work/a.img")))
        assert host.calls == []

    def test_already_detached(self, host: FakeHost) -> None:
        """A device detached behind our back is skipped."""
        binding = bound()
        with patch(f"{LIFECYCLE}.is_attached", return_value=False):
            lifecycle.release(binding)

        assert ("detach", "/dev/loop0") not in host.calls
        assert binding.device is None

    def test_busy_mount_keeps_loop_device(
        self, host: FakeHost, tmp_path: Path
    ) -> None:
        """A busy mount is reported and the loop device stays attached."""
        binding = self._fully_acquired(tmp_path)
        host.busy.add(tmp_path / "root" / "boot")

        with pytest.raises(CleanupError) as exc_info:
            lifecycle.release(binding)

        resources = [resource for resource, _ in exc_info.value.failures]
        assert resources == [str(tmp_path / "root" / "boot"), "/dev/loop0"]
        # The other mounts were still released
        assert ("umount", str(tmp_path / "root" / "mods")) in host.calls
        assert ("umount", str(tmp_path / "root")) in host.calls
        assert ("detach", "/dev/loop0") not in host.calls
        assert [m.path for m in binding.mounts] == [tmp_path / "root" / "boot"]
        assert binding.device == "/dev/loop0"

    def test_detach_failure(self, host: FakeHost) -> None:
        """A device that cannot be detached is a cleanup failure."""
        binding = bound()
        with patch(
            f"{LIFECYCLE}.detach_loop",
            side_effect=CommandError(["losetup"], 1, "device busy"),
        ):
            with pytest.raises(CleanupError) as exc_info:
                lifecycle.release(binding)

        assert exc_info.value.failures[0][0] == "/dev/loop0"

    def test_mounted_partition_keeps_loop_device(self, host: FakeHost) -> None:
        """A partition mounted outside the binding blocks the detach."""
        binding = bound()
        with patch(
            f"{LIFECYCLE}.is_device_mounted",
            side_effect=lambda part: part == "/dev/loop0p2",
        ):
            with pytest.raises(CleanupError) as exc_info:
                lifecycle.release(binding)

        resources = [resource for resource, _ in exc_info.value.failures]
        assert resources == ["/dev/loop0p2", "/dev/loop0"]
        assert host.calls == []
        assert binding.device == "/dev/loop0"

    def test_mounted_partition_without_scan(self, host: FakeHost) -> None:
        """Partition nodes are checked even if the scan never recorded them."""
        binding = LoopBinding(image_path=Path("/work/a.img"), device="/dev/loop0")
        with patch(
            f"{LIFECYCLE}.is_device_mounted",
            side_effect=lambda part: part == "/dev/loop0p1",
        ):
            with pytest.raises(CleanupError, match="/dev/loop0p1"):
                lifecycle.release(binding)

        assert ("detach", "/dev/loop0") not in host.calls


class TestRecovery:
    """Tests for recover_bindings and release_image."""

    @pytest.fixture
    def leftover(self, tmp_path: Path):
        """Mount table of a build interrupted after the chroot bind mounts."""
        root = tmp_path / "root"
        table = [
            MountEntry("/dev/sda1", "/", "ext4"),
            MountEntry("/dev/loop7p2", str(root), "ext4"),
            MountEntry("/dev/loop7p1", str(root / "boot"), "vfat"),
            MountEntry(str(tmp_path / "mods"), str(root / "mods"), "ext4"),
            MountEntry(
                str(tmp_path / "cache"), str(root / "var/cache/pacman/pkg"), "ext4"
            ),
        ]
        with patch(
            "alarm_imagegen.image.mounts.read_mount_table", return_value=table
        ), patch(f"{LIFECYCLE}.find_loop_devices", return_value=["/dev/loop7"]), patch(
            f"{LIFECYCLE}.os.path.exists", return_value=True
        ):
            yield root

    def test_recovers_mounts_shallow_first(self, leftover: Path, tmp_path: Path) -> None:
        """Mounts are recovered so that reverse order unmounts deepest first."""
        with patch(f"{LIFECYCLE}.read_partition_layout", return_value=SANE_LAYOUT):
            bindings = lifecycle.recover_bindings(tmp_path / "a.img", tmp_path)

        assert len(bindings) == 1
        binding = bindings[0]
        assert binding.device == "/dev/loop7"
        assert binding.partitions == ["/dev/loop7p1", "/dev/loop7p2"]
        paths = [m.path for m in binding.mounts]
        assert paths[0] == leftover
        assert paths[-1] == leftover / "var/cache/pacman/pkg"
        assert set(paths) == {
            leftover,
            leftover / "boot",
            leftover / "mods",
            leftover / "var/cache/pacman/pkg",
        }

    def test_created_dirs(self, leftover: Path, tmp_path: Path) -> None:
        """Only directories the build creates are marked for removal."""
        with patch(f"{LIFECYCLE}.read_partition_layout", return_value=SANE_LAYOUT):
            (binding,) = lifecycle.recover_bindings(tmp_path / "a.img", tmp_path)

        created = {m.path: m.created_dir for m in binding.mounts}
        assert created[leftover] is True
        assert created[leftover / "mods"] is True
        assert created[leftover / "boot"] is False
        assert created[leftover / "var/cache/pacman/pkg"] is False

    def test_unsafe_layout_refused(self, leftover: Path, tmp_path: Path) -> None:
        """A device with a foreign layout is not touched."""
        with patch(
            f"{LIFECYCLE}.read_partition_layout", return_value={"label": "gpt"}
        ):
            with pytest.raises(UnsafeRecoveryError) as exc_info:
                lifecycle.recover_bindings(tmp_path / "a.img", tmp_path)
        assert exc_info.value.device == "/dev/loop7"

    def test_force_skips_layout_check(self, leftover: Path, tmp_path: Path) -> None:
        """force releases regardless of the layout."""
        with patch(f"{LIFECYCLE}.read_partition_layout") as mock_layout:
            bindings = lifecycle.recover_bindings(
                tmp_path / "a.img", tmp_path, force=True
            )
        mock_layout.assert_not_called()
        assert len(bindings) == 1

    def test_nothing_bound(self, tmp_path: Path) -> None:
        """No loop device means nothing to recover."""
        with patch(f"{LIFECYCLE}.find_loop_devices", return_value=[]):
            assert lifecycle.recover_bindings(tmp_path / "a.img", tmp_path) == []

    def test_release_image_after_interrupt(
        self, host: FakeHost, leftover: Path, tmp_path: Path
    ) -> None:
        """Everything an interrupted build left is released, deepest first."""
        with patch(f"{LIFECYCLE}.read_partition_layout", return_value=SANE_LAYOUT):
            released = lifecycle.release_image(tmp_path / "a.img", tmp_path)

        assert released == 1
        unmounted = [target for op, target in host.calls if op == "umount"]
        assert unmounted[-1] == str(leftover)
        assert unmounted.index(str(leftover / "boot")) < unmounted.index(
            str(leftover)
        )
        assert host.calls[-2:] == [("forget", "/dev/loop7"), ("detach", "/dev/loop7")]

    def test_release_image_reports_leaks(
        self, host: FakeHost, leftover: Path, tmp_path: Path
    ) -> None:
        """A busy mount surfaces as CleanupError."""
        host.busy.add(leftover / "mods")
        with patch(f"{LIFECYCLE}.read_partition_layout", return_value=SANE_LAYOUT):
            with pytest.raises(CleanupError):
                lifecycle.release_image(tmp_path / "a.img", tmp_path)
