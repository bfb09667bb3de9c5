"""Base file-system interface."""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, BinaryIO


class FileSystem(ABC):
    """
    Abstract base class for URI-addressed file systems.

    Implementations are bound to a scheme by ``FileSystemRegistry`` and are
    constructed from the ``config`` mapping of a ``FileSystemSpec``.
    """

    scheme: str = ""

    def __init__(self, config: dict[str, Any] | None = None):
        self.config = dict(config or {})

    @abstractmethod
    def list(self, dir_uri: str, recursive: bool = True) -> list[str]:
        """
        List file URIs under a directory.

        Args:
            dir_uri: Directory URI
            recursive: Descend into subdirectories

        Returns:
            Sorted file URIs (directories excluded)

        Raises:
            FileNotFoundError: If the directory doesn't exist
        """
        ...

    @abstractmethod
    def copy(self, src_uri: str, dst_uri: str) -> None:
        """Copy a file within this file system, overwriting ``dst_uri``."""
        ...

    @abstractmethod
    def move(self, src_uri: str, dst_uri: str) -> None:
        """Move a file within this file system, overwriting ``dst_uri``."""
        ...

    @abstractmethod
    def exists(self, uri: str) -> bool:
        """Check if a file exists."""
        ...

    @abstractmethod
    def delete(self, uri: str) -> bool:
        """
        Delete a file.

        Returns:
            True if deleted, False if didn't exist
        """
        ...

    @abstractmethod
    def open_read(self, uri: str) -> BinaryIO:
        """Open a file for streaming reads. Caller closes it."""
        ...

    @abstractmethod
    def copy_to_local(self, uri: str, local_path: Path) -> Path:
        """Download a file to a local path."""
        ...

    @abstractmethod
    def copy_from_local(self, local_path: Path, uri: str) -> None:
        """Upload a local file to ``uri``."""
        ...

    def read_bytes(self, uri: str) -> bytes:
        """Read a whole file."""
        with self.open_read(uri) as stream:
            return stream.read()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(scheme={self.scheme!r})"
