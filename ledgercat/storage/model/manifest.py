from __future__ import annotations

from typing import Any, Dict, List, Optional

from ledgercat.storage.model.partition import PartitionValues
from ledgercat.storage.model.types import (
    FileContent,
    FileFormat,
    FileStatus,
    ManifestContent,
)


class DataFile(dict):
    """
    A data or delete file tracked by the table. Column statistics are keyed
    by schema field ID.
    """

    @staticmethod
    def of(
        file_path: str,
        partition: Optional[PartitionValues],
        record_count: int,
        file_size_in_bytes: int,
        spec_id: int = 0,
        content: FileContent = FileContent.DATA,
        file_format: FileFormat = FileFormat.PARQUET,
        column_sizes: Optional[Dict[int, int]] = None,
        value_counts: Optional[Dict[int, int]] = None,
        null_value_counts: Optional[Dict[int, int]] = None,
        lower_bounds: Optional[Dict[int, Any]] = None,
        upper_bounds: Optional[Dict[int, Any]] = None,
        equality_ids: Optional[List[int]] = None,
    ) -> DataFile:
        data_file = DataFile()
        data_file["filePath"] = file_path
        data_file["content"] = content
        data_file["fileFormat"] = file_format
        data_file["specId"] = spec_id
        data_file["partition"] = list(partition or [])
        data_file["recordCount"] = record_count
        data_file["fileSizeInBytes"] = file_size_in_bytes
        data_file["columnSizes"] = column_sizes
        data_file["valueCounts"] = value_counts
        data_file["nullValueCounts"] = null_value_counts
        data_file["lowerBounds"] = lower_bounds
        data_file["upperBounds"] = upper_bounds
        data_file["equalityIds"] = equality_ids
        return data_file

    @property
    def file_path(self) -> str:
        return self["filePath"]

    @property
    def content(self) -> FileContent:
        return FileContent(self["content"])

    @property
    def file_format(self) -> FileFormat:
        return FileFormat(self["fileFormat"])

    @property
    def spec_id(self) -> int:
        return self["specId"]

    @property
    def partition(self) -> PartitionValues:
        return self["partition"]

    @property
    def record_count(self) -> int:
        return self["recordCount"]

    @property
    def file_size_in_bytes(self) -> int:
        return self["fileSizeInBytes"]

    @property
    def column_sizes(self) -> Optional[Dict[int, int]]:
        return self.get("columnSizes")

    @property
    def value_counts(self) -> Optional[Dict[int, int]]:
        return self.get("valueCounts")

    @property
    def null_value_counts(self) -> Optional[Dict[int, int]]:
        return self.get("nullValueCounts")

    @property
    def lower_bounds(self) -> Optional[Dict[int, Any]]:
        return self.get("lowerBounds")

    @property
    def upper_bounds(self) -> Optional[Dict[int, Any]]:
        return self.get("upperBounds")

    @property
    def equality_ids(self) -> Optional[List[int]]:
        return self.get("equalityIds")


class ManifestEntry(dict):
    """
    A data file plus its status in the snapshot that wrote the manifest and
    its provenance: the snapshot that originally added it and the data and
    file sequence numbers assigned when it was added. Provenance never
    changes once assigned, even when the entry is rewritten into a new
    manifest.
    """

    @staticmethod
    def of(
        status: FileStatus,
        data_file: DataFile,
        snapshot_id: Optional[int] = None,
        data_sequence_number: Optional[int] = None,
        file_sequence_number: Optional[int] = None,
    ) -> ManifestEntry:
        entry = ManifestEntry()
        entry["status"] = status
        entry["snapshotId"] = snapshot_id
        entry["dataSequenceNumber"] = data_sequence_number
        entry["fileSequenceNumber"] = file_sequence_number
        entry["dataFile"] = data_file
        return entry

    @property
    def status(self) -> FileStatus:
        return FileStatus(self["status"])

    @property
    def snapshot_id(self) -> Optional[int]:
        return self.get("snapshotId")

    @property
    def data_sequence_number(self) -> Optional[int]:
        return self.get("dataSequenceNumber")

    @property
    def file_sequence_number(self) -> Optional[int]:
        return self.get("fileSequenceNumber")

    @property
    def data_file(self) -> DataFile:
        val: Dict[str, Any] = self["dataFile"]
        if not isinstance(val, DataFile):
            self["dataFile"] = val = DataFile(val)
        return val

    @property
    def is_live(self) -> bool:
        return self.status != FileStatus.DELETED

    def with_status(self, status: FileStatus) -> ManifestEntry:
        return ManifestEntry.of(
            status=status,
            data_file=self.data_file,
            snapshot_id=self.snapshot_id,
            data_sequence_number=self.data_sequence_number,
            file_sequence_number=self.file_sequence_number,
        )


class ManifestEntryList(List[ManifestEntry]):
    @staticmethod
    def of(items: List[ManifestEntry]) -> ManifestEntryList:
        typed_items = ManifestEntryList()
        for item in items:
            if item is not None and not isinstance(item, ManifestEntry):
                item = ManifestEntry(item)
            typed_items.append(item)
        return typed_items

    def __getitem__(self, item):
        val = super().__getitem__(item)
        if val is not None and not isinstance(val, ManifestEntry):
            self[item] = val = ManifestEntry(val)
        return val


class PartitionFieldSummary(dict):
    """
    Summary of the values of one partition field across every entry of a
    manifest.
    """

    @staticmethod
    def of(
        contains_null: bool = False,
        contains_nan: bool = False,
        lower_bound: Optional[Any] = None,
        upper_bound: Optional[Any] = None,
    ) -> PartitionFieldSummary:
        return PartitionFieldSummary(
            {
                "containsNull": contains_null,
                "containsNan": contains_nan,
                "lowerBound": lower_bound,
                "upperBound": upper_bound,
            }
        )

    @property
    def contains_null(self) -> bool:
        return self["containsNull"]

    @property
    def contains_nan(self) -> bool:
        return self["containsNan"]

    @property
    def lower_bound(self) -> Optional[Any]:
        return self.get("lowerBound")

    @property
    def upper_bound(self) -> Optional[Any]:
        return self.get("upperBound")


class ManifestFile(dict):
    """
    Descriptor of an immutable manifest file: where it lives, which
    partition spec its entries were written with, the sequence number and
    snapshot that added it, and aggregate counts of its entries.
    """

    @staticmethod
    def of(
        path: str,
        length: int,
        spec_id: int,
        content: ManifestContent = ManifestContent.DATA,
        sequence_number: Optional[int] = None,
        min_sequence_number: Optional[int] = None,
        added_snapshot_id: Optional[int] = None,
        added_files_count: int = 0,
        existing_files_count: int = 0,
        deleted_files_count: int = 0,
        added_rows_count: int = 0,
        existing_rows_count: int = 0,
        deleted_rows_count: int = 0,
        partitions: Optional[List[PartitionFieldSummary]] = None,
    ) -> ManifestFile:
        manifest_file = ManifestFile()
        manifest_file["path"] = path
        manifest_file["length"] = length
        manifest_file["specId"] = spec_id
        manifest_file["content"] = content
        manifest_file["sequenceNumber"] = sequence_number
        manifest_file["minSequenceNumber"] = min_sequence_number
        manifest_file["addedSnapshotId"] = added_snapshot_id
        manifest_file["addedFilesCount"] = added_files_count
        manifest_file["existingFilesCount"] = existing_files_count
        manifest_file["deletedFilesCount"] = deleted_files_count
        manifest_file["addedRowsCount"] = added_rows_count
        manifest_file["existingRowsCount"] = existing_rows_count
        manifest_file["deletedRowsCount"] = deleted_rows_count
        manifest_file["partitions"] = partitions or []
        return manifest_file

    @property
    def path(self) -> str:
        return self["path"]

    @property
    def length(self) -> int:
        return self["length"]

    @property
    def spec_id(self) -> int:
        return self["specId"]

    @property
    def content(self) -> ManifestContent:
        return ManifestContent(self["content"])

    @property
    def sequence_number(self) -> Optional[int]:
        return self.get("sequenceNumber")

    @property
    def min_sequence_number(self) -> Optional[int]:
        return self.get("minSequenceNumber")

    @property
    def added_snapshot_id(self) -> Optional[int]:
        return self.get("addedSnapshotId")

    @property
    def added_files_count(self) -> int:
        return self["addedFilesCount"]

    @property
    def existing_files_count(self) -> int:
        return self["existingFilesCount"]

    @property
    def deleted_files_count(self) -> int:
        return self["deletedFilesCount"]

    @property
    def added_rows_count(self) -> int:
        return self["addedRowsCount"]

    @property
    def existing_rows_count(self) -> int:
        return self["existingRowsCount"]

    @property
    def deleted_rows_count(self) -> int:
        return self["deletedRowsCount"]

    @property
    def partitions(self) -> List[PartitionFieldSummary]:
        val: List[Dict[str, Any]] = self["partitions"]
        if any(not isinstance(item, PartitionFieldSummary) for item in val):
            self["partitions"] = val = [PartitionFieldSummary(item) for item in val]
        return val

    @property
    def has_added_files(self) -> bool:
        return self.added_files_count > 0

    @property
    def has_existing_files(self) -> bool:
        return self.existing_files_count > 0

    @property
    def has_deleted_files(self) -> bool:
        return self.deleted_files_count > 0

    @property
    def entry_count(self) -> int:
        return (
            self.added_files_count
            + self.existing_files_count
            + self.deleted_files_count
        )

    def with_snapshot_info(
        self,
        sequence_number: int,
        added_snapshot_id: Optional[int] = None,
    ) -> ManifestFile:
        """
        Returns a copy of this manifest file descriptor with its sequence
        number assigned. The added snapshot ID and min sequence number are
        only assigned if they were not already known at write time.
        """
        manifest_file = ManifestFile(self)
        manifest_file["sequenceNumber"] = sequence_number
        if manifest_file.added_snapshot_id is None:
            manifest_file["addedSnapshotId"] = added_snapshot_id
        if manifest_file.min_sequence_number is None:
            manifest_file["minSequenceNumber"] = sequence_number
        return manifest_file

    def equivalent_to(self, other: Optional[ManifestFile]) -> bool:
        """
        Returns True if the other descriptor refers to the same manifest file
        with the same content summary.
        """
        if other is None:
            return False
        if not isinstance(other, ManifestFile):
            other = ManifestFile(other)
        return (
            self.path == other.path
            and self.length == other.length
            and self.spec_id == other.spec_id
            and self.content == other.content
            and self.sequence_number == other.sequence_number
            and self.added_snapshot_id == other.added_snapshot_id
            and self.entry_count == other.entry_count
        )


class ManifestFileList(List[ManifestFile]):
    @staticmethod
    def of(items: List[ManifestFile]) -> ManifestFileList:
        typed_items = ManifestFileList()
        for item in items:
            if item is not None and not isinstance(item, ManifestFile):
                item = ManifestFile(item)
            typed_items.append(item)
        return typed_items

    def __getitem__(self, item):
        val = super().__getitem__(item)
        if val is not None and not isinstance(val, ManifestFile):
            self[item] = val = ManifestFile(val)
        return val
