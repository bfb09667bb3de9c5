"""Plugin and file-system registries.

Both registries are plain objects built once per process.  The driver
builds its own, and every distributed worker builds a fresh pair from the
job spec before it touches a URI, since workers share nothing with the
driver.
"""

import importlib
import tempfile
from importlib.metadata import entry_points
from pathlib import Path
from typing import Iterable, Type

import structlog

from segment_push.errors import ConfigError, UnknownSchemeError
from segment_push.filesystem.base import FileSystem
from segment_push.spec import FileSystemSpec
from segment_push.uris import scheme_of

logger = structlog.get_logger()

ENTRY_POINT_GROUP = "segment_push.filesystems"

BUILTIN_FILESYSTEMS = {
    "local": "segment_push.filesystem.local.LocalFileSystem",
    "s3": "segment_push.filesystem.s3.S3FileSystem",
}


class PluginRegistry:
    """
    Resolves file-system implementation names to classes.

    A name can be a short alias (``local``, ``s3``, or any entry point in
    the ``segment_push.filesystems`` group) or a dotted import path such as
    ``mypkg.fs.HdfsFileSystem``.
    """

    def __init__(self, load_entry_points: bool = True):
        self._aliases: dict[str, str] = dict(BUILTIN_FILESYSTEMS)
        self._classes: dict[str, Type[FileSystem]] = {}
        if load_entry_points:
            self._load_entry_points()

    def _load_entry_points(self) -> None:
        for ep in entry_points(group=ENTRY_POINT_GROUP):
            self._aliases[ep.name] = ep.value.replace(":", ".")
            logger.debug("filesystem_plugin_discovered", name=ep.name, target=ep.value)

    def register(self, name: str, target: str | Type[FileSystem]) -> None:
        """Register an alias for a dotted path or a class."""
        if isinstance(target, str):
            self._aliases[name] = target
        else:
            self._classes[name] = target

    def names(self) -> list[str]:
        return sorted(set(self._aliases) | set(self._classes))

    def resolve(self, name: str) -> Type[FileSystem]:
        """Import and return the class behind ``name``."""
        if name in self._classes:
            return self._classes[name]

        dotted = self._aliases.get(name, name)
        module_path, _, class_name = dotted.rpartition(".")
        if not module_path:
            raise ConfigError(f"Unknown file-system plugin '{name}'. Available: {self.names()}")

        try:
            module = importlib.import_module(module_path)
            cls = getattr(module, class_name)
        except (ImportError, AttributeError) as e:
            raise ConfigError(f"Cannot load file-system plugin '{name}' ({dotted}): {e}", cause=e) from e

        if not (isinstance(cls, type) and issubclass(cls, FileSystem)):
            raise ConfigError(f"File-system plugin '{name}' ({dotted}) is not a FileSystem")

        self._classes[name] = cls
        return cls


class FileSystemRegistry:
    """
    Scheme -> file-system bindings for one process.

    The ``file`` scheme is always bound so bare local paths resolve even
    when the job spec lists no file systems.
    """

    def __init__(self, plugins: PluginRegistry | None = None):
        self.plugins = plugins or PluginRegistry()
        self._bindings: dict[str, FileSystem] = {}

    @classmethod
    def from_specs(cls, specs: Iterable[FileSystemSpec], plugins: PluginRegistry | None = None) -> "FileSystemRegistry":
        """Bind every configured scheme."""
        registry = cls(plugins)
        for spec in specs:
            registry.register(spec.scheme, spec.class_name, spec.config)
        if "file" not in registry._bindings:
            registry.register("file", "local")
        return registry

    def register(self, scheme: str, class_name: str, config: dict | None = None) -> FileSystem:
        """Instantiate and bind a file system to ``scheme``."""
        fs_class = self.plugins.resolve(class_name)
        fs = fs_class(config or {})
        self.bind(scheme, fs)
        logger.debug("filesystem_registered", scheme=scheme, implementation=fs_class.__name__)
        return fs

    def bind(self, scheme: str, fs: FileSystem) -> None:
        """Bind an already-built file system (tests, custom wiring)."""
        self._bindings[scheme.lower()] = fs

    def schemes(self) -> list[str]:
        return sorted(self._bindings)

    def get(self, scheme: str) -> FileSystem:
        fs = self._bindings.get(scheme.lower())
        if fs is None:
            raise UnknownSchemeError(scheme, available=self.schemes())
        return fs

    def for_uri(self, uri: str) -> FileSystem:
        """File system responsible for ``uri``."""
        return self.get(scheme_of(uri))

    def transfer(self, src_uri: str, dst_uri: str, move: bool = False) -> None:
        """
        Copy or move a file, possibly between schemes.

        Within one scheme the file system does the work itself; across
        schemes the file is staged through a local temporary directory.
        """
        src_fs = self.for_uri(src_uri)
        dst_fs = self.for_uri(dst_uri)

        if src_fs is dst_fs:
            if move:
                src_fs.move(src_uri, dst_uri)
            else:
                src_fs.copy(src_uri, dst_uri)
            return

        with tempfile.TemporaryDirectory(prefix="segment-push-") as tmp:
            local_path = src_fs.copy_to_local(src_uri, Path(tmp) / "staged.tar.gz")
            dst_fs.copy_from_local(local_path, dst_uri)
        if move:
            src_fs.delete(src_uri)
        logger.debug("file_transferred", src=src_uri, dst=dst_uri, move=move)
