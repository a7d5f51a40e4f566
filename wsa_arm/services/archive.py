"""7z packaging of a finished working directory."""

from __future__ import annotations

import shutil
from pathlib import Path

from wsa_arm.logging import LoggerFactory
from wsa_arm.storage.commands import require_tool, run_command


log = LoggerFactory.for_system()

SEVEN_ZIP_OPTIONS = ("-t7z", "-m0=lzma2", "-mx=9", "-mfb=64", "-md=32m", "-ms=on")


def create_archive(directory: Path, folder_name: str, archive_name: str) -> Path:
    """Pack ``directory/folder_name`` into ``directory/<archive_name>.7z``.

    The folder is removed once the archive has been written.

    Raises:
        CommandError: If 7z is missing or fails
    """
    seven_zip = require_tool("7z")
    archive = directory / f"{archive_name}.7z"
    log.info(f"Creating archive {archive}")
    archive.unlink(missing_ok=True)
    run_command(
        [seven_zip, "a", *SEVEN_ZIP_OPTIONS, archive.name, folder_name],
        log_output=False,
        cwd=directory,
    )
    shutil.rmtree(directory / folder_name)
    log.info(f"Archive created: {archive}")
    return archive
