"""URI helpers for routing segment archives."""

from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

from segment_push.errors import InvalidRequestError


def scheme_of(uri: str) -> str:
    """URI scheme, ``file`` for bare paths (including Windows drive letters)."""
    scheme = urlsplit(uri).scheme
    if len(scheme) <= 1:
        return "file"
    return scheme.lower()


def normalize_dir_uri(uri: str) -> str:
    """Turn a bare local path into a ``file://`` URI; leave real URIs alone."""
    if not uri:
        raise InvalidRequestError("Empty directory URI")
    if len(urlsplit(uri).scheme) <= 1:
        return Path(uri).expanduser().resolve().as_uri()
    return uri


def join_uri(dir_uri: str, name: str) -> str:
    """Append a file name to a directory URI."""
    parts = urlsplit(dir_uri)
    path = parts.path.rstrip("/") + "/" + name.lstrip("/")
    return urlunsplit((parts.scheme, parts.netloc, path, "", ""))


def relativize(dir_uri: str, file_uri: str) -> str:
    """
    Path of ``file_uri`` relative to ``dir_uri``.

    Returns ``file_uri`` unchanged when it does not live under ``dir_uri``.
    """
    base = urlsplit(dir_uri)
    child = urlsplit(file_uri)
    if child.scheme.lower() != base.scheme.lower() or child.netloc != base.netloc:
        return file_uri

    base_path = base.path if base.path.endswith("/") else base.path + "/"
    if not child.path.startswith(base_path):
        return file_uri

    relative = child.path[len(base_path):]
    if child.query:
        relative = f"{relative}?{child.query}"
    return relative


def generate_segment_tar_uri(dir_uri: str, file_uri: str, prefix: str = "", suffix: str = "") -> str:
    """
    Publicly reachable URI for a segment archive.

    Without prefix/suffix the archive URI is kept, borrowing scheme and
    authority from the output directory when the file system returned a
    bare path.  Otherwise the archive path relative to the output directory
    is wrapped: ``file:/out`` + ``file:/out/a.tar.gz`` with prefix
    ``http://cdn/`` and suffix ``?tok=1`` gives ``http://cdn/a.tar.gz?tok=1``.
    With a prefix or suffix set, an archive outside the directory raises
    InvalidRequestError.
    """
    if not prefix and not suffix:
        child = urlsplit(file_uri)
        if child.scheme and child.netloc:
            return file_uri
        base = urlsplit(dir_uri)
        scheme = child.scheme or base.scheme
        netloc = child.netloc or base.netloc
        if not scheme:
            return file_uri
        if scheme == "file" and not netloc:
            return f"file://{child.path}" if child.path.startswith("/") else file_uri
        return urlunsplit((scheme, netloc, child.path, child.query, child.fragment))

    relative = relativize(dir_uri, file_uri)
    if relative == file_uri:
        raise InvalidRequestError(
            f"Segment archive {file_uri} is not under output directory {dir_uri}; cannot apply URI prefix/suffix"
        )
    return f"{prefix}{relative}{suffix}"
