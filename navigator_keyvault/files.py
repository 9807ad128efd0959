"""
File and clipboard capabilities.

Export hands its document to a ``FileSaver``; disclosure hands a revealed key
to a ``Clipboard``.  Only the directory saver is implemented here, clipboard
access belongs to the host application.
"""
import os
import logging
from pathlib import Path
from typing import Protocol, Union

logger = logging.getLogger("navigator.keyvault")


class FileSaver(Protocol):
    async def save_file(self, file_name: str, content: str) -> str:
        ...


class Clipboard(Protocol):
    async def write_text(self, text: str) -> bool:
        ...


class DirectoryFileSaver:
    """Writes exported files into a fixed directory (mode 0600)."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    async def save_file(self, file_name: str, content: str) -> str:
        name = Path(file_name).name
        if not name:
            raise ValueError(f"Invalid file name: {file_name!r}")
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / name
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fp:
            fp.write(content)
        logger.info("File saved: %s", path)
        return str(path)
