"""External command execution.

All privileged host operations (losetup, sfdisk, mkfs, mount, tar, chroot)
go through ``run_command`` so they are logged the same way and their failures
surface as ``CommandError``. Commands are never run through a shell.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

from alarm_imagegen.errors import CommandError

logger = logging.getLogger(__name__)


def run_command(
    cmd: Sequence[str | Path],
    *,
    input: str | None = None,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    capture: bool = True,
    check: bool = True,
) -> subprocess.CompletedProcess[str]:
    """Run an external command.

    Args:
        cmd: Command and arguments.
        input: Text fed to the command's stdin.
        cwd: Working directory.
        env: Complete environment for the command (inherits if None).
        capture: Capture stdout/stderr instead of streaming to the terminal.
        check: Raise CommandError on non-zero exit.

    Returns:
        The completed process.

    Raises:
        CommandError: If the command could not be started, or exited
            non-zero and ``check`` is set.
    """
    args = [str(part) for part in cmd]
    logger.debug("Running: %s", shlex.join(args))

    try:
        result = subprocess.run(
            args,
            input=input,
            cwd=cwd,
            env=dict(env) if env is not None else None,
            capture_output=capture,
            text=True,
            check=False,
        )
    except OSError as e:
        logger.error("Failed to execute %s: %s", args[0], e)
        raise CommandError(args, None, str(e)) from e

    if check and result.returncode != 0:
        stderr = result.stderr if capture else ""
        logger.debug(
            "Command %s exited with %d: %s", args[0], result.returncode, stderr
        )
        raise CommandError(args, result.returncode, stderr or "")

    return result


__all__ = ["run_command"]
