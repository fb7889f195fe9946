from __future__ import annotations

import logging
import posixpath
import threading
import uuid
from typing import Dict, Optional, Tuple

import pyarrow.fs

from ledgercat import logs
from ledgercat.constants import (
    METADATA_DIR_NAME,
    METAFILE_EXT,
    REVISION_DIR_NAME,
    REVISION_NUMBER_WIDTH,
)
from ledgercat.storage.codec import packb, unpackb
from ledgercat.storage.model.table_metadata import TableMetadata
from ledgercat.storage.model.types import CommitOutcome
from ledgercat.utils.filesystem import (
    file_exists,
    list_directory,
    resolve_path_and_filesystem,
)

logger = logs.configure_ledgercat_logger(logging.getLogger(__name__))


class MetadataStore:
    """
    Holds the current metadata of one table behind a version token. A new
    metadata value is published by comparing the caller's token against the
    current version and swapping in the new value only if they still match.
    """

    location: Optional[str] = None

    @property
    def filesystem(self) -> Optional[pyarrow.fs.FileSystem]:
        """
        The filesystem used for the table's manifests, or None to infer it
        from each manifest path.
        """
        return None

    def read(self) -> Tuple[Optional[TableMetadata], Optional[int]]:
        """
        Returns the current table metadata and its version token, or
        (None, None) if no table exists.
        """
        raise NotImplementedError("read not implemented")

    def swap(self, token: Optional[int], new_metadata: TableMetadata) -> CommitOutcome:
        """
        Publishes the new metadata if the token still matches the current
        version. A None token only matches a store with no table.
        """
        raise NotImplementedError("swap not implemented")

    def report_outcome(self, outcome: CommitOutcome) -> CommitOutcome:
        """
        Reports the outcome of a swap. Stores that can only determine an
        outcome after the fact may override this to confirm or replace it.
        """
        logger.debug(f"Metadata swap outcome for {self}: {outcome.value}")
        return outcome

    def compare_and_swap(
        self,
        token: Optional[int],
        new_metadata: TableMetadata,
    ) -> CommitOutcome:
        return self.report_outcome(self.swap(token, new_metadata))


class FileSystemMetadataStore(MetadataStore):
    """
    Stores every version of a table's metadata as a msgpack revision file
    under `<location>/metadata/rev/`, named by its zero-padded version
    number. The latest revision is the current table metadata.

    Swaps are serialized by a lock per table location, so this store only
    guarantees atomic swaps between writers of the same process.
    """

    _locks: Dict[str, threading.Lock] = {}
    _locks_lock = threading.Lock()

    def __init__(
        self,
        location: str,
        filesystem: Optional[pyarrow.fs.FileSystem] = None,
    ):
        self.location = location.rstrip("/") or location
        root, self._filesystem = resolve_path_and_filesystem(location, filesystem)
        self._revision_dir_path = posixpath.join(
            root,
            METADATA_DIR_NAME,
            REVISION_DIR_NAME,
        )
        with FileSystemMetadataStore._locks_lock:
            self._lock = FileSystemMetadataStore._locks.setdefault(
                self._revision_dir_path,
                threading.Lock(),
            )

    @property
    def filesystem(self) -> pyarrow.fs.FileSystem:
        return self._filesystem

    def read(self) -> Tuple[Optional[TableMetadata], Optional[int]]:
        version = self.latest_version()
        if version is None:
            return None, None
        with self._filesystem.open_input_stream(self._revision_path(version)) as file:
            binary = file.readall()
        return TableMetadata(unpackb(binary)).from_serializable(), version

    def swap(self, token: Optional[int], new_metadata: TableMetadata) -> CommitOutcome:
        with self._lock:
            latest = self.latest_version()
            if latest != token:
                logger.info(
                    f"Rejecting metadata swap from version {token} of "
                    f"{self.location}: latest version is {latest}."
                )
                return CommitOutcome.CONFLICT
            version = 1 if token is None else token + 1
            self._filesystem.create_dir(self._revision_dir_path, recursive=True)
            # ignored by revision listings until moved into place
            temp_path = posixpath.join(
                self._revision_dir_path,
                f"_{uuid.uuid4()}{METAFILE_EXT}",
            )
            with self._filesystem.open_output_stream(temp_path) as file:
                file.write(packb(new_metadata.to_serializable()))
            revision_path = self._revision_path(version)
            # a writer in another process may have published this version
            if file_exists(revision_path, self._filesystem):
                self._filesystem.delete_file(temp_path)
                logger.info(
                    f"Rejecting metadata swap from version {token} of "
                    f"{self.location}: version {version} already exists."
                )
                return CommitOutcome.CONFLICT
            self._filesystem.move(temp_path, revision_path)
        logger.info(f"Published version {version} of {self.location}.")
        return CommitOutcome.SUCCESS

    def latest_version(self) -> Optional[int]:
        revisions = list_directory(
            self._revision_dir_path,
            self._filesystem,
            ignore_missing_path=True,
        )
        versions = [
            int(posixpath.splitext(posixpath.basename(path))[0])
            for path in revisions
            if path.endswith(METAFILE_EXT)
        ]
        return max(versions) if versions else None

    def _revision_path(self, version: int) -> str:
        return posixpath.join(
            self._revision_dir_path,
            f"{version:0{REVISION_NUMBER_WIDTH}d}{METAFILE_EXT}",
        )

    def __repr__(self) -> str:
        return f"FileSystemMetadataStore({self.location})"


class InMemoryMetadataStore(MetadataStore):
    """
    Keeps the serialized form of the current table metadata in memory, so
    readers never share mutable state with writers.
    """

    def __init__(self, location: Optional[str] = None):
        self.location = location
        self._lock = threading.Lock()
        self._serialized: Optional[bytes] = None
        self._version: Optional[int] = None

    def read(self) -> Tuple[Optional[TableMetadata], Optional[int]]:
        with self._lock:
            serialized, version = self._serialized, self._version
        if serialized is None:
            return None, None
        return TableMetadata(unpackb(serialized)).from_serializable(), version

    def swap(self, token: Optional[int], new_metadata: TableMetadata) -> CommitOutcome:
        serialized = packb(new_metadata.to_serializable())
        with self._lock:
            if self._version != token:
                return CommitOutcome.CONFLICT
            self._serialized = serialized
            self._version = 1 if token is None else token + 1
        return CommitOutcome.SUCCESS

    def __repr__(self) -> str:
        return f"InMemoryMetadataStore(version={self._version})"
