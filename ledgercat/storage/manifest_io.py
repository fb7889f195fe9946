from __future__ import annotations

import logging
import math
import posixpath
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import pyarrow.fs

from ledgercat import logs
from ledgercat.constants import (
    FORMAT_VERSION_1,
    INITIAL_SEQUENCE_NUMBER,
    MANIFEST_FILE_SUFFIX,
)
from ledgercat.exceptions import ManifestReadError, ManifestWriteError
from ledgercat.storage.codec import new_packer, new_unpacker
from ledgercat.storage.model.manifest import (
    DataFile,
    ManifestEntry,
    ManifestFile,
    PartitionFieldSummary,
)
from ledgercat.storage.model.partition import PartitionSpec
from ledgercat.storage.model.types import FileContent, FileStatus, ManifestContent
from ledgercat.utils.filesystem import file_exists, resolve_path_and_filesystem

logger = logs.configure_ledgercat_logger(logging.getLogger(__name__))


def new_manifest_path(location: str, commit_uuid: str, index: int) -> str:
    return posixpath.join(
        location,
        f"{commit_uuid}{MANIFEST_FILE_SUFFIX.format(index)}",
    )


class _PartitionFieldSummaryBuilder:
    def __init__(self):
        self.contains_null = False
        self.contains_nan = False
        self.lower_bound = None
        self.upper_bound = None

    def update(self, value: Any) -> None:
        if value is None:
            self.contains_null = True
        elif isinstance(value, float) and math.isnan(value):
            self.contains_nan = True
        elif not isinstance(value, (list, tuple)):
            if self.lower_bound is None or value < self.lower_bound:
                self.lower_bound = value
            if self.upper_bound is None or value > self.upper_bound:
                self.upper_bound = value

    def build(self) -> PartitionFieldSummary:
        return PartitionFieldSummary.of(
            contains_null=self.contains_null,
            contains_nan=self.contains_nan,
            lower_bound=self.lower_bound,
            upper_bound=self.upper_bound,
        )


class ManifestWriter:
    """
    Writes the entries of one manifest file as a msgpack stream: a header map
    followed by one map per entry. Tracks the aggregate counts, partition
    summaries, and length of the manifest as entries are written.

    Entries written without a snapshot ID or sequence numbers inherit them
    from the manifest file when read back. Format version 1 manifests never
    persist sequence numbers.
    """

    def __init__(
        self,
        path: str,
        spec: PartitionSpec,
        format_version: int,
        snapshot_id: Optional[int] = None,
        content: ManifestContent = ManifestContent.DATA,
        filesystem: Optional[pyarrow.fs.FileSystem] = None,
    ):
        self._path = path
        self._spec = spec
        self._format_version = format_version
        self._snapshot_id = snapshot_id
        self._content = ManifestContent(content)
        self._resolved_path, self._filesystem = resolve_path_and_filesystem(
            path,
            filesystem,
        )
        self._packer = new_packer()
        self._stream = None
        self._closed = False
        self._length = 0
        self._counts = {status: 0 for status in FileStatus}
        self._rows = {status: 0 for status in FileStatus}
        self._summaries = [_PartitionFieldSummaryBuilder() for _ in spec.fields]
        self._min_sequence_number: Optional[int] = None

    @property
    def path(self) -> str:
        return self._path

    @property
    def length(self) -> int:
        return self._length

    @property
    def entry_count(self) -> int:
        return sum(self._counts.values())

    def add(
        self,
        data_file: DataFile,
        data_sequence_number: Optional[int] = None,
    ) -> None:
        """
        Adds a new file. Its snapshot ID and, unless given, its sequence
        numbers are inherited from the snapshot that commits this manifest.
        """
        self.write_entry(
            ManifestEntry.of(
                status=FileStatus.ADDED,
                data_file=data_file,
                snapshot_id=self._snapshot_id,
                data_sequence_number=data_sequence_number,
            )
        )

    def existing(self, entry: ManifestEntry) -> None:
        self.write_entry(entry.with_status(FileStatus.EXISTING))

    def delete(self, entry: ManifestEntry) -> None:
        """
        Marks a previously live file as deleted by the snapshot that commits
        this manifest, keeping its sequence numbers.
        """
        deleted = entry.with_status(FileStatus.DELETED)
        deleted["snapshotId"] = self._snapshot_id
        self.write_entry(deleted)

    def write_entry(self, entry: ManifestEntry) -> None:
        if self._closed:
            raise ManifestWriteError(f"Manifest writer for {self._path} is closed.")
        data_file = entry.data_file
        self._validate(data_file)
        record = ManifestEntry.of(
            status=entry.status,
            data_file=data_file,
            snapshot_id=entry.snapshot_id,
            data_sequence_number=entry.data_sequence_number,
            file_sequence_number=entry.file_sequence_number,
        )
        if self._format_version == FORMAT_VERSION_1:
            record["dataSequenceNumber"] = None
            record["fileSequenceNumber"] = None
        self._write(record)
        status = record.status
        self._counts[status] += 1
        self._rows[status] += data_file.record_count
        for summary, value in zip(self._summaries, data_file.partition):
            summary.update(value)
        data_sequence_number = record.data_sequence_number
        if record.is_live and data_sequence_number is not None:
            if (
                self._min_sequence_number is None
                or data_sequence_number < self._min_sequence_number
            ):
                self._min_sequence_number = data_sequence_number

    def close(self) -> None:
        if self._closed:
            return
        if self._stream is None:
            # empty manifests still carry a header
            self._open()
        try:
            self._stream.close()
        except OSError as e:
            raise ManifestWriteError(f"Failed to close manifest {self._path}") from e
        self._closed = True
        logger.debug(
            f"Wrote manifest {self._path} with {self.entry_count} entries "
            f"({self._length} bytes)."
        )

    def abort(self) -> None:
        """
        Closes this writer and deletes the manifest file it wrote, if any.
        """
        if self._stream is not None and not self._closed:
            self._stream.close()
        self._closed = True
        if self._stream is not None:
            delete_files([self._path], self._filesystem)

    def to_manifest_file(self) -> ManifestFile:
        if not self._closed:
            raise ManifestWriteError(
                f"Cannot describe manifest {self._path} before it is closed."
            )
        return ManifestFile.of(
            path=self._path,
            length=self._length,
            spec_id=self._spec.spec_id,
            content=self._content,
            sequence_number=None,
            min_sequence_number=self._min_sequence_number,
            added_snapshot_id=self._snapshot_id,
            added_files_count=self._counts[FileStatus.ADDED],
            existing_files_count=self._counts[FileStatus.EXISTING],
            deleted_files_count=self._counts[FileStatus.DELETED],
            added_rows_count=self._rows[FileStatus.ADDED],
            existing_rows_count=self._rows[FileStatus.EXISTING],
            deleted_rows_count=self._rows[FileStatus.DELETED],
            partitions=[summary.build() for summary in self._summaries],
        )

    def __enter__(self) -> ManifestWriter:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type is None:
            self.close()
        else:
            self.abort()

    def _validate(self, data_file: DataFile) -> None:
        if data_file.spec_id != self._spec.spec_id:
            raise ValueError(
                f"Cannot write file {data_file.file_path} of spec "
                f"{data_file.spec_id} to a manifest of spec {self._spec.spec_id}"
            )
        is_data_file = data_file.content == FileContent.DATA
        if is_data_file != (self._content == ManifestContent.DATA):
            raise ValueError(
                f"Cannot write {data_file.content.value} file "
                f"{data_file.file_path} to a {self._content.value} manifest"
            )
        if len(data_file.partition) != len(self._spec.fields):
            raise ValueError(
                f"Partition values {data_file.partition} of file "
                f"{data_file.file_path} do not match spec {self._spec}"
            )

    def _open(self) -> None:
        try:
            self._filesystem.create_dir(
                posixpath.dirname(self._resolved_path),
                recursive=True,
            )
            self._stream = self._filesystem.open_output_stream(self._resolved_path)
        except OSError as e:
            raise ManifestWriteError(f"Failed to open manifest {self._path}") from e
        self._write_packed(
            self._packer.pack(
                {
                    "formatVersion": self._format_version,
                    "specId": self._spec.spec_id,
                    "partitionSpec": self._spec,
                    "content": self._content,
                    "snapshotId": self._snapshot_id,
                }
            )
        )

    def _write(self, obj: Dict[str, Any]) -> None:
        if self._stream is None:
            self._open()
        try:
            packed = self._packer.pack(obj)
        except (TypeError, ValueError) as e:
            raise ManifestWriteError(
                f"Failed to serialize manifest entry for {self._path}"
            ) from e
        self._write_packed(packed)

    def _write_packed(self, packed: bytes) -> None:
        try:
            self._stream.write(packed)
        except OSError as e:
            raise ManifestWriteError(f"Failed to write manifest {self._path}") from e
        self._length += len(packed)


class ManifestWriterFactory:
    """
    Creates manifest writers for sequentially numbered manifest files under
    one output location.
    """

    def __init__(
        self,
        location: str,
        spec: PartitionSpec,
        format_version: int,
        snapshot_id: Optional[int] = None,
        content: ManifestContent = ManifestContent.DATA,
        filesystem: Optional[pyarrow.fs.FileSystem] = None,
        commit_uuid: Optional[str] = None,
    ):
        self.location = location
        self.spec = spec
        self.format_version = format_version
        self.snapshot_id = snapshot_id
        self.content = content
        self.filesystem = filesystem
        self.commit_uuid = commit_uuid or str(uuid.uuid4())
        self._next_index = 0

    def __call__(self) -> ManifestWriter:
        path = new_manifest_path(self.location, self.commit_uuid, self._next_index)
        self._next_index += 1
        return ManifestWriter(
            path=path,
            spec=self.spec,
            format_version=self.format_version,
            snapshot_id=self.snapshot_id,
            content=self.content,
            filesystem=self.filesystem,
        )


class RollingManifestWriter:
    """
    Writes entries to a sequence of manifest files, rolling over to a new
    file whenever the next entry would push the current file's estimated
    size past the target size. The size of a file is estimated as its entry
    count times the average entry size.
    """

    def __init__(
        self,
        writer_factory: Callable[[], ManifestWriter],
        target_size_bytes: int,
        avg_entry_size_bytes: float,
    ):
        self._writer_factory = writer_factory
        self._target_size_bytes = target_size_bytes
        self._avg_entry_size_bytes = avg_entry_size_bytes
        self._current: Optional[ManifestWriter] = None
        self._writers: List[ManifestWriter] = []
        self._closed = False

    def write_entry(self, entry: ManifestEntry) -> None:
        if self._current is None:
            self._roll()
        elif self._should_roll():
            self._current.close()
            self._roll()
        self._current.write_entry(entry)

    def close(self) -> List[ManifestFile]:
        if not self._closed:
            if self._current is not None:
                self._current.close()
            self._closed = True
        return self.manifest_files

    def abort(self) -> None:
        """
        Closes every manifest file written by this writer and deletes them.
        """
        self._closed = True
        for writer in self._writers:
            writer.abort()

    @property
    def manifest_files(self) -> List[ManifestFile]:
        return [writer.to_manifest_file() for writer in self._writers]

    @property
    def paths(self) -> List[str]:
        return [writer.path for writer in self._writers]

    def _should_roll(self) -> bool:
        count = self._current.entry_count
        estimated_size = (count + 1) * self._avg_entry_size_bytes
        return count > 0 and estimated_size > self._target_size_bytes

    def _roll(self) -> None:
        self._current = self._writer_factory()
        self._writers.append(self._current)


class ManifestEntryCache:
    """
    Caches the entries of manifests read during a single run, keyed by
    manifest path. Manifests are immutable, so cached entries never go stale.
    """

    def __init__(self):
        self._entries: Dict[str, List[ManifestEntry]] = {}

    def get(self, path: str) -> Optional[List[ManifestEntry]]:
        return self._entries.get(path)

    def put(self, path: str, entries: List[ManifestEntry]) -> None:
        self._entries[path] = entries

    def subset(self, paths: Iterable[str]) -> ManifestEntryCache:
        """
        Returns a cache holding only the cached entries of the given
        manifests. The entry lists are shared with this cache.
        """
        result = ManifestEntryCache()
        for path in paths:
            if path in self._entries:
                result._entries[path] = self._entries[path]
        return result

    def entry_counts(self) -> Dict[str, int]:
        return {path: len(entries) for path, entries in self._entries.items()}

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, path: str) -> bool:
        return path in self._entries

    def __len__(self) -> int:
        return len(self._entries)


def read_manifest_header(
    path: str,
    filesystem: Optional[pyarrow.fs.FileSystem] = None,
) -> Dict[str, Any]:
    header, _ = _read_manifest_file(path, filesystem)
    return header


def read_manifest(
    manifest_file: ManifestFile,
    filesystem: Optional[pyarrow.fs.FileSystem] = None,
    cache: Optional[ManifestEntryCache] = None,
) -> List[ManifestEntry]:
    """
    Reads the entries of a manifest file. Entries without a snapshot ID
    inherit the manifest's added snapshot ID, and added entries without
    sequence numbers inherit the manifest's sequence number. Entries of
    format version 1 manifests always have sequence number 0.
    """
    if cache is not None:
        cached = cache.get(manifest_file.path)
        if cached is not None:
            return list(cached)
    header, records = _read_manifest_file(manifest_file.path, filesystem)
    format_version = header.get("formatVersion")
    entries = []
    for record in records:
        entry = ManifestEntry(record)
        if entry.snapshot_id is None:
            entry["snapshotId"] = manifest_file.added_snapshot_id
        if format_version == FORMAT_VERSION_1:
            entry["dataSequenceNumber"] = INITIAL_SEQUENCE_NUMBER
            entry["fileSequenceNumber"] = INITIAL_SEQUENCE_NUMBER
        elif entry.status == FileStatus.ADDED:
            if entry.data_sequence_number is None:
                entry["dataSequenceNumber"] = manifest_file.sequence_number
            if entry.file_sequence_number is None:
                entry["fileSequenceNumber"] = manifest_file.sequence_number
        entries.append(entry)
    if cache is not None:
        cache.put(manifest_file.path, entries)
        return list(entries)
    return entries


def copy_manifest(
    manifest_file: ManifestFile,
    output_path: str,
    spec: PartitionSpec,
    format_version: int,
    snapshot_id: int,
    filesystem: Optional[pyarrow.fs.FileSystem] = None,
) -> ManifestFile:
    """
    Copies a manifest of added files to a new path, writing the given
    snapshot ID explicitly into every entry.
    """
    entries = read_manifest(manifest_file, filesystem)
    writer = ManifestWriter(
        path=output_path,
        spec=spec,
        format_version=format_version,
        snapshot_id=snapshot_id,
        content=manifest_file.content,
        filesystem=filesystem,
    )
    with writer:
        for entry in entries:
            if entry.status != FileStatus.ADDED:
                raise ValueError(
                    f"Cannot append manifest {manifest_file.path} with "
                    f"{entry.status.value} file {entry.data_file.file_path}"
                )
            writer.add(entry.data_file, entry.data_sequence_number)
    return writer.to_manifest_file()


def delete_files(
    paths: List[str],
    filesystem: Optional[pyarrow.fs.FileSystem] = None,
) -> None:
    for path in paths:
        resolved_path, resolved_filesystem = resolve_path_and_filesystem(
            path,
            filesystem,
        )
        if file_exists(resolved_path, resolved_filesystem):
            resolved_filesystem.delete_file(resolved_path)
            logger.debug(f"Deleted manifest {path}.")


def _read_manifest_file(
    path: str,
    filesystem: Optional[pyarrow.fs.FileSystem],
) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
    try:
        resolved_path, filesystem = resolve_path_and_filesystem(path, filesystem)
        with filesystem.open_input_stream(resolved_path) as file:
            unpacker = new_unpacker(file)
            header = next(unpacker, None)
            if not isinstance(header, dict):
                raise ManifestReadError(f"Manifest {path} has no header.")
            records = list(unpacker)
    except (OSError, ValueError) as e:
        raise ManifestReadError(f"Failed to read manifest {path}") from e
    return header, records
