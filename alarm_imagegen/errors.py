"""Error taxonomy for alarm_imagegen.

Errors fall into five classes that map to how the operator must react:

- PreconditionError: nothing was touched yet (privilege, profile, tools).
- IntegrityError: the downloaded tarball failed verification.
- ResourceAcquisitionError: a loop device, partition table, filesystem or
  mount could not be set up; whatever was acquired has been rolled back.
- ExecutionError: a command, hook or chroot step failed; resources are still
  released by the pipeline.
- CleanupError: a mount or loop device could not be released and is leaked
  on the host until the operator runs ``umount``.

Every error carries a human readable message and a machine readable code.
"""

from __future__ import annotations

from collections.abc import Sequence


class ImageGenError(Exception):
    """Base exception for all alarm_imagegen errors."""

    def __init__(self, message: str, code: str = "imagegen_error") -> None:
        super().__init__(message)
        self.message = message
        self.code = code


# --- Preconditions -----------------------------------------------------------


class PreconditionError(ImageGenError):
    """Raised before any resource is acquired."""

    def __init__(self, message: str, code: str = "precondition_failed") -> None:
        super().__init__(message, code=code)


class UnknownProfileError(PreconditionError):
    """Selected platform or environment has no hook file."""

    def __init__(
        self,
        kind: str,
        profile_id: str | None,
        available: Sequence[str] = (),
    ) -> None:
        if not profile_id:
            message = f"No {kind} defined"
        else:
            message = f"{kind.capitalize()} '{profile_id}' not yet supported"
        if available:
            message += f" (available: {', '.join(available)})"
        super().__init__(message, code="unknown_profile")
        self.kind = kind
        self.profile_id = profile_id
        self.available = list(available)


class ProfileDefinitionError(PreconditionError):
    """A profile file or its metadata is malformed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="invalid_profile")


class MissingPrivilegeError(PreconditionError):
    """The command needs to run as root."""

    def __init__(self) -> None:
        super().__init__(
            "You need to be root to execute this command.",
            code="not_root",
        )


class MissingToolError(PreconditionError):
    """Required host tools are not installed."""

    def __init__(self, tools: Sequence[str]) -> None:
        super().__init__(
            f"Please install '{' '.join(tools)}' to use this command.",
            code="missing_tools",
        )
        self.tools = list(tools)


class UnsafeRecoveryError(PreconditionError):
    """A loop device found for an image does not look like one of ours."""

    def __init__(self, device: str, reason: str) -> None:
        super().__init__(
            f"Refusing to release {device}: {reason}. "
            "Use --force if you are sure it belongs to this image.",
            code="unsafe_recovery",
        )
        self.device = device
        self.reason = reason


# --- Integrity ---------------------------------------------------------------


class IntegrityError(ImageGenError):
    """Downloaded archive does not match its published checksum."""

    def __init__(
        self,
        archive: str,
        expected: str | None,
        actual: str | None,
    ) -> None:
        super().__init__(
            f"Wrong md5sum checksum: '{archive}' "
            f"(expected {expected or 'unknown'}, got {actual or 'unknown'}). "
            "Manually delete the downloaded tarball and run the build again.",
            code="checksum_mismatch",
        )
        self.archive = archive
        self.expected = expected
        self.actual = actual


# --- Resource acquisition ----------------------------------------------------


class ResourceAcquisitionError(ImageGenError):
    """A host resource needed for the image could not be set up."""

    def __init__(self, message: str, code: str = "acquisition_failed") -> None:
        super().__init__(message, code=code)


class DeviceExhaustedError(ResourceAcquisitionError):
    """No free loop device is available on the host."""

    def __init__(self, image_path: str, detail: str = "") -> None:
        message = f"No free loop device available for {image_path}"
        if detail:
            message += f": {detail}"
        super().__init__(message, code="no_free_loop_device")
        self.image_path = image_path


class PartitionTableError(ResourceAcquisitionError):
    """Writing or scanning the partition table failed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="partition_table_error")


class FormatError(ResourceAcquisitionError):
    """Creating a filesystem on a partition failed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="format_error")


class MountError(ResourceAcquisitionError):
    """Mounting a partition or bind mount failed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="mount_error")


class PartitionInUseError(ImageGenError):
    """A partition was about to be formatted while mounted or formatted twice.

    This is a programming error in the caller and is never retried.
    """

    def __init__(self, device: str, reason: str) -> None:
        super().__init__(
            f"Refusing to format {device}: {reason}", code="partition_in_use"
        )
        self.device = device


# --- Execution ---------------------------------------------------------------


class ExecutionError(ImageGenError):
    """A build step failed after resources were acquired."""

    def __init__(self, message: str, code: str = "execution_error") -> None:
        super().__init__(message, code=code)


class CommandError(ExecutionError):
    """An external command exited non-zero or could not be started."""

    def __init__(
        self,
        cmd: Sequence[str],
        returncode: int | None,
        stderr: str = "",
    ) -> None:
        cmd_str = " ".join(cmd)
        if returncode is None:
            message = f"Failed to execute '{cmd_str}'"
        else:
            message = f"Command '{cmd_str}' failed with exit code {returncode}"
        if stderr:
            message += f": {stderr.strip()}"
        super().__init__(message, code="command_failed")
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = stderr


class DownloadError(ExecutionError):
    """Downloading the tarball or its checksum failed."""

    def __init__(self, message: str, code: str = "download_error") -> None:
        super().__init__(message, code=code)


class ExtractionError(ExecutionError):
    """Extracting the root filesystem tarball failed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="extraction_error")


class HookExecutionError(ExecutionError):
    """One or more profile hooks failed at an extension point."""

    def __init__(self, point: str, failures: Sequence[tuple[str, Exception]]) -> None:
        details = "; ".join(f"{name}: {exc}" for name, exc in failures)
        super().__init__(f"{point} hook failed ({details})", code="hook_failed")
        self.point = point
        self.failures = list(failures)


class ChrootExecutionError(ExecutionError):
    """The configuration script failed inside the chroot."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="chroot_failed")


class PackageBuildError(ExecutionError):
    """An auxiliary package could not be fetched or built."""

    def __init__(self, package: str, message: str) -> None:
        super().__init__(f"{package}: {message}", code="package_build_failed")
        self.package = package


# --- Cleanup -----------------------------------------------------------------


class CleanupError(ImageGenError):
    """Host resources could not be released and are leaked.

    Attributes:
        failures: (resource, reason) pairs for every resource still attached.
    """

    def __init__(self, failures: Sequence[tuple[str, str]]) -> None:
        details = "; ".join(f"{resource}: {reason}" for resource, reason in failures)
        super().__init__(
            f"Failed to release host resources ({details})", code="cleanup_failed"
        )
        self.failures = list(failures)


__all__ = [
    "ChrootExecutionError",
    "CleanupError",
    "CommandError",
    "DeviceExhaustedError",
    "DownloadError",
    "ExecutionError",
    "ExtractionError",
    "FormatError",
    "HookExecutionError",
    "ImageGenError",
    "IntegrityError",
    "MissingPrivilegeError",
    "MissingToolError",
    "MountError",
    "PackageBuildError",
    "PartitionInUseError",
    "PartitionTableError",
    "PreconditionError",
    "ProfileDefinitionError",
    "ResourceAcquisitionError",
    "UnknownProfileError",
    "UnsafeRecoveryError",
]
