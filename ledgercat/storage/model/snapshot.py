from __future__ import annotations

from typing import Any, Dict, List, Optional

from ledgercat.storage.model.manifest import ManifestFile, ManifestFileList
from ledgercat.storage.model.types import ManifestContent, SnapshotOperation


class Snapshot(dict):
    """
    An immutable view of the table's live files at one point in its commit
    history. The manifest list of a snapshot completely describes its live
    files.
    """

    @staticmethod
    def of(
        snapshot_id: int,
        parent_snapshot_id: Optional[int],
        sequence_number: int,
        timestamp_ms: int,
        operation: SnapshotOperation,
        manifests: List[ManifestFile],
        summary: Optional[Dict[str, str]] = None,
        schema_id: Optional[int] = None,
    ) -> Snapshot:
        snapshot = Snapshot()
        snapshot["snapshotId"] = snapshot_id
        snapshot["parentSnapshotId"] = parent_snapshot_id
        snapshot["sequenceNumber"] = sequence_number
        snapshot["timestampMs"] = timestamp_ms
        snapshot["operation"] = operation
        snapshot["manifests"] = ManifestFileList.of(manifests)
        snapshot["summary"] = summary or {}
        snapshot["schemaId"] = schema_id
        return snapshot

    @property
    def snapshot_id(self) -> int:
        return self["snapshotId"]

    @property
    def parent_snapshot_id(self) -> Optional[int]:
        return self.get("parentSnapshotId")

    @property
    def sequence_number(self) -> int:
        return self["sequenceNumber"]

    @property
    def timestamp_ms(self) -> int:
        return self["timestampMs"]

    @property
    def operation(self) -> SnapshotOperation:
        return SnapshotOperation(self["operation"])

    @property
    def manifests(self) -> ManifestFileList:
        val: List[Dict[str, Any]] = self["manifests"]
        if not isinstance(val, ManifestFileList):
            self["manifests"] = val = ManifestFileList.of(val)
        return val

    @property
    def summary(self) -> Dict[str, str]:
        return self["summary"]

    @property
    def schema_id(self) -> Optional[int]:
        return self.get("schemaId")

    def data_manifests(self) -> List[ManifestFile]:
        return [m for m in self.manifests if m.content == ManifestContent.DATA]

    def delete_manifests(self) -> List[ManifestFile]:
        return [m for m in self.manifests if m.content == ManifestContent.DELETES]

    def manifest(self, path: str) -> Optional[ManifestFile]:
        for manifest_file in self.manifests:
            if manifest_file.path == path:
                return manifest_file
        return None


class SnapshotList(List[Snapshot]):
    @staticmethod
    def of(items: List[Snapshot]) -> SnapshotList:
        typed_items = SnapshotList()
        for item in items:
            if item is not None and not isinstance(item, Snapshot):
                item = Snapshot(item)
            typed_items.append(item)
        return typed_items

    def __getitem__(self, item):
        val = super().__getitem__(item)
        if val is not None and not isinstance(val, Snapshot):
            self[item] = val = Snapshot(val)
        return val


class SnapshotLogEntry(dict):
    @staticmethod
    def of(snapshot_id: int, timestamp_ms: int) -> SnapshotLogEntry:
        return SnapshotLogEntry(
            {
                "snapshotId": snapshot_id,
                "timestampMs": timestamp_ms,
            }
        )

    @property
    def snapshot_id(self) -> int:
        return self["snapshotId"]

    @property
    def timestamp_ms(self) -> int:
        return self["timestampMs"]
