"""External command execution for the filesystem and image tools."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Optional, Sequence

from wsa_arm.logging import LoggerFactory

from .exceptions import CommandError


log = LoggerFactory.for_command()


def run_command(
    command: Sequence[str],
    check: bool = True,
    log_output: bool = True,
    log_command: bool = True,
    input_text: Optional[str] = None,
    cwd: Optional[Path] = None,
) -> subprocess.CompletedProcess:
    """Run a command with captured output.

    With ``check=True`` a non-zero exit raises :class:`CommandError`; otherwise
    the completed process is returned for the caller to inspect ``returncode``.
    """
    command = [str(part) for part in command]
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            command,
            input=input_text,
            text=True,
            capture_output=True,
            cwd=cwd,
        )
    except FileNotFoundError as error:
        raise CommandError(command, 127, f"{command[0]} not found") from error
    output_log = log.bind(tags=["command", "output"])
    if result.stdout and (log_output or result.returncode != 0):
        output_log.trace(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        output_log.trace(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    if check and result.returncode != 0:
        stderr = (result.stderr or "").strip()
        stdout = (result.stdout or "").strip()
        raise CommandError(command, result.returncode, stderr or stdout)
    return result


def run_checked_command(command: Sequence[str], input_text: Optional[str] = None) -> str:
    """Run a command and raise CommandError if it fails."""
    return run_command(command, check=True, input_text=input_text).stdout


def require_tool(name: str) -> str:
    """Return the absolute path of a tool or raise CommandError."""
    path = shutil.which(name)
    if not path:
        raise CommandError([name], 127, f"{name} not found")
    return path
