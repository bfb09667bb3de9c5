"""Local filesystem backend."""

import shutil
from pathlib import Path
from typing import BinaryIO
from urllib.parse import unquote, urlsplit

import structlog

from segment_push.errors import InvalidRequestError
from segment_push.filesystem.base import FileSystem

logger = structlog.get_logger()


class LocalFileSystem(FileSystem):
    """
    ``file`` scheme backed by the local disk.

    Accepts ``file:///abs/path``, ``file:/abs/path`` and bare paths; always
    hands back ``file://`` URIs.
    """

    scheme = "file"

    def to_path(self, uri: str) -> Path:
        """Resolve a URI or bare path to a filesystem path."""
        parts = urlsplit(uri)
        if len(parts.scheme) <= 1:
            return Path(uri).expanduser()
        if parts.scheme.lower() != "file":
            raise InvalidRequestError(f"Not a local file URI: {uri}")
        if parts.netloc and parts.netloc != "localhost":
            raise InvalidRequestError(f"Remote host in local file URI: {uri}")
        return Path(unquote(parts.path))

    @staticmethod
    def to_uri(path: Path) -> str:
        # Symlinks are not resolved; listed URIs stay under the listed directory.
        return path.absolute().as_uri()

    def list(self, dir_uri: str, recursive: bool = True) -> list[str]:
        """List files under a local directory."""
        directory = self.to_path(dir_uri).absolute()
        if not directory.is_dir():
            raise FileNotFoundError(f"Directory not found: {dir_uri}")

        candidates = directory.rglob("*") if recursive else directory.iterdir()
        return sorted(self.to_uri(p) for p in candidates if p.is_file())

    def copy(self, src_uri: str, dst_uri: str) -> None:
        src = self.to_path(src_uri)
        dst = self.to_path(dst_uri)
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src, dst)
        logger.debug("file_copied", src=src_uri, dst=dst_uri)

    def move(self, src_uri: str, dst_uri: str) -> None:
        src = self.to_path(src_uri)
        dst = self.to_path(dst_uri)
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(src), str(dst))
        logger.debug("file_moved", src=src_uri, dst=dst_uri)

    def exists(self, uri: str) -> bool:
        return self.to_path(uri).is_file()

    def delete(self, uri: str) -> bool:
        path = self.to_path(uri)
        if not path.exists():
            return False
        path.unlink()
        logger.info("file_deleted", uri=uri)
        return True

    def open_read(self, uri: str) -> BinaryIO:
        return self.to_path(uri).open("rb")

    def copy_to_local(self, uri: str, local_path: Path) -> Path:
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(self.to_path(uri), local_path)
        return local_path

    def copy_from_local(self, local_path: Path, uri: str) -> None:
        dst = self.to_path(uri)
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(local_path, dst)
