"""File-system capability keyed by URI scheme."""

from segment_push.filesystem.base import FileSystem
from segment_push.filesystem.local import LocalFileSystem
from segment_push.filesystem.registry import FileSystemRegistry, PluginRegistry

__all__ = ["FileSystem", "LocalFileSystem", "FileSystemRegistry", "PluginRegistry"]
