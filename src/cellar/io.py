"""🗄️ FileIO - Storage access for tables, on top of PyIceberg's FileIO.

Locations may be plain local paths, ``file://`` URIs or ``s3://bucket/key``
URIs; PyIceberg picks the filesystem from the scheme and the properties.

Recognized S3 properties (PyIceberg keys)::

    s3.endpoint                 http://localhost:9000
    s3.access-key-id            ...
    s3.secret-access-key        ...
    s3.session-token            ...
    s3.region                   us-east-1
    s3.force-virtual-addressing false   (path-style, as MinIO wants)
"""

from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Mapping

import pyarrow as pa
from pyarrow import fs as pafs
from pyiceberg.io import FileIO, load_file_io
from pyiceberg.io.pyarrow import PyArrowFileIO

from cellar.errors import IOInitializationError

logger = logging.getLogger(__name__)


def join_path(base: str, *parts: str) -> str:
    """Join path segments onto a location.

    Example:
        join_path("s3://warehouse/", "db", "sales")
        → "s3://warehouse/db/sales"
    """
    path = "/".join(str(p).strip("/") for p in parts if p)
    base = base.rstrip("/")
    return f"{base}/{path}" if path else base


def load_io(properties: Mapping[str, str], location: str) -> FileIO:
    """FileIO serving ``location``, with its filesystem built eagerly.

    Raises:
        IOInitializationError: If no filesystem can serve the location
    """
    try:
        io = load_file_io(dict(properties), location)
        if isinstance(io, PyArrowFileIO):
            _filesystem(io, location)
    except (pa.ArrowException, OSError, ValueError, ImportError) as exc:
        raise IOInitializationError(f"Cannot initialize storage for {location}: {exc}") from exc
    return io


def _filesystem(io: PyArrowFileIO, location: str) -> tuple[pafs.FileSystem, str]:
    scheme, netloc, path = io.parse_location(location, io.properties)
    return io.fs_by_scheme(scheme, netloc), path


def supports_atomic_create(io: FileIO, location: str) -> bool:
    """Whether a file can be created at ``location`` only if it is absent.

    Only local disk offers this; object stores check and then write.
    """
    if not isinstance(io, PyArrowFileIO):
        return False
    filesystem, _ = _filesystem(io, location)
    return isinstance(filesystem, pafs.LocalFileSystem)


def file_size(io: FileIO, location: str) -> int:
    return len(io.new_input(location))


def list_dirs(io: FileIO, location: str) -> list[str]:
    """Names of the directories directly under ``location``."""
    if not isinstance(io, PyArrowFileIO):
        raise IOInitializationError(f"Cannot list {location} with {type(io).__name__}")
    filesystem, path = _filesystem(io, location)
    selector = pafs.FileSelector(path, allow_not_found=True)
    return sorted(
        info.base_name
        for info in filesystem.get_file_info(selector)
        if info.type == pafs.FileType.Directory
    )


def delete_dir(io: FileIO, location: str) -> None:
    if not isinstance(io, PyArrowFileIO):
        raise IOInitializationError(f"Cannot delete {location} with {type(io).__name__}")
    filesystem, path = _filesystem(io, location)
    filesystem.delete_dir(path)


def publish_no_clobber(io: FileIO, location: str, data: bytes) -> None:
    """Make ``data`` visible at ``location`` only if nothing is there yet.

    The bytes go to a temporary sibling which is then hard-linked into
    place, so readers never see a partial file and two racing writers
    cannot both win.

    Raises:
        FileExistsError: If ``location`` already exists
        IOInitializationError: If the storage has no atomic create
    """
    if not supports_atomic_create(io, location):
        raise IOInitializationError(
            f"Storage for {location} has no atomic create; "
            "commit through a catalog instead of a direct path"
        )

    _, path = _filesystem(io, location)
    parent = os.path.dirname(path)
    os.makedirs(parent, exist_ok=True)
    tmp_path = os.path.join(parent, f".{uuid.uuid4().hex}.tmp")
    with open(tmp_path, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    try:
        os.link(tmp_path, path)
    finally:
        os.remove(tmp_path)
    logger.debug("Published %s", location)
