from __future__ import annotations

from typing import List, Optional, Tuple

import urllib.parse

import pyarrow
import pyarrow as pa
from pyarrow.fs import (
    _resolve_filesystem_and_path,
    FileSelector,
    FileType,
    FileSystem,
)

# leading characters of names that are never metadata files
_HIDDEN_PREFIXES = (".", "_")


def resolve_path_and_filesystem(
    path: str,
    filesystem: Optional[pyarrow.fs.FileSystem] = None,
) -> Tuple[str, pyarrow.fs.FileSystem]:
    """
    Normalizes a table location, manifest path or metadata path and returns
    it with the filesystem it lives on. The filesystem is inferred from the
    path's URI scheme when none is given.

    Args:
        path: Local path or URI (e.g. "s3://bucket/table").
        filesystem: Filesystem to resolve the path against. If None, a
            filesystem will be inferred.
    """
    if filesystem is not None and not isinstance(filesystem, FileSystem):
        raise TypeError(
            f"The filesystem passed must conform to pyarrow.fs.FileSystem. "
            f"The provided filesystem was: {filesystem}"
        )
    try:
        resolved_filesystem, resolved_path = _resolve_filesystem_and_path(
            path, filesystem
        )
    except pa.lib.ArrowInvalid as e:
        if "Cannot parse URI" not in str(e):
            raise
        # paths with characters that are illegal in a URI
        resolved_filesystem, resolved_path = _resolve_filesystem_and_path(
            urllib.parse.quote(path, safe="/:"), filesystem
        )
        resolved_path = urllib.parse.unquote(resolved_path)
    if filesystem is None:
        filesystem = resolved_filesystem
    else:
        parsed = urllib.parse.urlparse(resolved_path, allow_fragments=False)
        query = "?" + parsed.query if parsed.query else ""
        resolved_path = parsed.netloc + parsed.path + query
    return filesystem.normalize_path(resolved_path), filesystem


def list_directory(
    path: str,
    filesystem: pyarrow.fs.FileSystem,
    ignore_missing_path: bool = False,
) -> List[str]:
    """
    Lists the files directly under a directory, skipping names that start
    with "." or "_" (e.g. in-progress metadata writes).

    Returns:
        A sorted list of file paths.
    """
    selector = FileSelector(
        base_dir=path,
        recursive=False,
        allow_not_found=ignore_missing_path,
    )
    base_path = selector.base_dir.rstrip("/") + "/"
    return sorted(
        file_info.path
        for file_info in filesystem.get_file_info(selector)
        if file_info.type == FileType.File
        and file_info.path.startswith(base_path)
        and not file_info.path[len(base_path) :].startswith(_HIDDEN_PREFIXES)
    )


def file_exists(path: str, filesystem: pyarrow.fs.FileSystem) -> bool:
    return filesystem.get_file_info(path).type != FileType.NotFound
