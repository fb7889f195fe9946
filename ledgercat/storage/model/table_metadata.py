# Allow classes to use self-referencing Type hints in Python 3.7.
from __future__ import annotations

import posixpath
import uuid
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import pyarrow as pa

from ledgercat.constants import (
    DEFAULT_COMMIT_MAX_RETRY_WAIT_MS,
    DEFAULT_COMMIT_MIN_RETRY_WAIT_MS,
    DEFAULT_COMMIT_NUM_RETRIES,
    DEFAULT_FORMAT_VERSION,
    DEFAULT_SNAPSHOT_ID_INHERITANCE_ENABLED,
    DEFAULT_TARGET_MANIFEST_SIZE_BYTES,
    FORMAT_VERSION_1,
    INITIAL_SEQUENCE_NUMBER,
    METADATA_DIR_NAME,
    PARTITION_DATA_ID_START,
    SUPPORTED_FORMAT_VERSIONS,
)
from ledgercat.exceptions import ValidationError
from ledgercat.storage.model.partition import PartitionSpec, PartitionSpecList
from ledgercat.storage.model.schema import Schema, SchemaList
from ledgercat.storage.model.snapshot import Snapshot, SnapshotList, SnapshotLogEntry
from ledgercat.utils.common import current_time_ms, parse_bool


class TableProperty(str, Enum):
    TARGET_MANIFEST_SIZE_BYTES = "commit.manifest.target-size-bytes"
    SNAPSHOT_ID_INHERITANCE_ENABLED = "compatibility.snapshot-id-inheritance.enabled"
    # only read when the table is created
    FORMAT_VERSION = "format-version"
    COMMIT_NUM_RETRIES = "commit.retry.num-retries"
    COMMIT_MIN_RETRY_WAIT_MS = "commit.retry.min-wait-ms"
    COMMIT_MAX_RETRY_WAIT_MS = "commit.retry.max-wait-ms"


TABLE_PROPERTY_DEFAULTS: Dict[TableProperty, Any] = {
    TableProperty.TARGET_MANIFEST_SIZE_BYTES: DEFAULT_TARGET_MANIFEST_SIZE_BYTES,
    TableProperty.SNAPSHOT_ID_INHERITANCE_ENABLED: DEFAULT_SNAPSHOT_ID_INHERITANCE_ENABLED,
    TableProperty.FORMAT_VERSION: DEFAULT_FORMAT_VERSION,
    TableProperty.COMMIT_NUM_RETRIES: DEFAULT_COMMIT_NUM_RETRIES,
    TableProperty.COMMIT_MIN_RETRY_WAIT_MS: DEFAULT_COMMIT_MIN_RETRY_WAIT_MS,
    TableProperty.COMMIT_MAX_RETRY_WAIT_MS: DEFAULT_COMMIT_MAX_RETRY_WAIT_MS,
}


class TableMetadata(dict):
    """
    The complete metadata of a table at one version: its schemas, partition
    spec history, properties, and snapshot history. Table metadata is never
    modified in place. Every `with_*` method returns a new value, and every
    commit publishes a new value in place of the old one.
    """

    @staticmethod
    def of(
        location: str,
        schema: Schema,
        partition_spec: Optional[PartitionSpec] = None,
        properties: Optional[Dict[str, str]] = None,
        table_uuid: Optional[str] = None,
    ) -> TableMetadata:
        """
        Creates the metadata of a new table with no snapshots. The format
        version is read from the "format-version" property.
        """
        properties = dict(properties or {})
        format_version = int(
            properties.pop(
                TableProperty.FORMAT_VERSION.value,
                TABLE_PROPERTY_DEFAULTS[TableProperty.FORMAT_VERSION],
            )
        )
        if format_version not in SUPPORTED_FORMAT_VERSIONS:
            raise ValidationError(
                f"Unsupported format version: {format_version}. Expected one "
                f"of {SUPPORTED_FORMAT_VERSIONS}."
            )
        if partition_spec is None:
            partition_spec = PartitionSpec.unpartitioned(schema.id)
        partition_spec.validate(schema)
        table_metadata = TableMetadata()
        table_metadata["formatVersion"] = format_version
        table_metadata["tableUuid"] = table_uuid or str(uuid.uuid4())
        table_metadata["location"] = TableMetadata._normalize_location(location)
        table_metadata["lastSequenceNumber"] = INITIAL_SEQUENCE_NUMBER
        table_metadata["lastUpdatedMs"] = current_time_ms()
        table_metadata["lastColumnId"] = schema.max_field_id
        table_metadata["schemas"] = SchemaList.of([schema])
        table_metadata["currentSchemaId"] = schema.id
        table_metadata["partitionSpecs"] = PartitionSpecList.of([partition_spec])
        table_metadata["defaultSpecId"] = partition_spec.spec_id
        table_metadata["lastPartitionId"] = partition_spec.last_assigned_field_id
        table_metadata["properties"] = properties
        table_metadata["currentSnapshotId"] = None
        table_metadata["snapshots"] = SnapshotList()
        table_metadata["snapshotLog"] = []
        return table_metadata

    @property
    def format_version(self) -> int:
        return self["formatVersion"]

    @property
    def table_uuid(self) -> str:
        return self["tableUuid"]

    @property
    def location(self) -> str:
        return self["location"]

    @property
    def metadata_location(self) -> str:
        return posixpath.join(self.location, METADATA_DIR_NAME)

    @property
    def last_sequence_number(self) -> int:
        return self["lastSequenceNumber"]

    @property
    def last_updated_ms(self) -> int:
        return self["lastUpdatedMs"]

    @property
    def last_column_id(self) -> int:
        return self["lastColumnId"]

    @property
    def schemas(self) -> SchemaList:
        val: List[Schema] = self["schemas"]
        if not isinstance(val, SchemaList):
            self["schemas"] = val = SchemaList.of(val)
        return val

    @property
    def current_schema_id(self) -> int:
        return self["currentSchemaId"]

    @property
    def current_schema(self) -> Schema:
        return self.schema(self.current_schema_id)

    @property
    def partition_specs(self) -> PartitionSpecList:
        val: List[PartitionSpec] = self["partitionSpecs"]
        if not isinstance(val, PartitionSpecList):
            self["partitionSpecs"] = val = PartitionSpecList.of(val)
        return val

    @property
    def default_spec_id(self) -> int:
        return self["defaultSpecId"]

    @property
    def default_spec(self) -> PartitionSpec:
        return self.spec(self.default_spec_id)

    @property
    def last_partition_id(self) -> int:
        return self["lastPartitionId"]

    @property
    def properties(self) -> Dict[str, str]:
        return self["properties"]

    @property
    def current_snapshot_id(self) -> Optional[int]:
        return self.get("currentSnapshotId")

    @property
    def current_snapshot(self) -> Optional[Snapshot]:
        if self.current_snapshot_id is None:
            return None
        return self.snapshot(self.current_snapshot_id)

    @property
    def snapshots(self) -> SnapshotList:
        val: List[Snapshot] = self["snapshots"]
        if not isinstance(val, SnapshotList):
            self["snapshots"] = val = SnapshotList.of(val)
        return val

    @property
    def snapshot_log(self) -> List[SnapshotLogEntry]:
        val: List[Dict[str, Any]] = self["snapshotLog"]
        if any(not isinstance(item, SnapshotLogEntry) for item in val):
            self["snapshotLog"] = val = [SnapshotLogEntry(item) for item in val]
        return val

    @property
    def target_manifest_size_bytes(self) -> int:
        return int(self.get_property(TableProperty.TARGET_MANIFEST_SIZE_BYTES))

    @property
    def snapshot_id_inheritance_enabled(self) -> bool:
        return parse_bool(
            self.get_property(TableProperty.SNAPSHOT_ID_INHERITANCE_ENABLED)
        )

    @property
    def staging_required(self) -> bool:
        """
        True if new manifests cannot inherit the ID of the snapshot that
        commits them, so the snapshot ID must be written into the manifest
        explicitly at commit time.
        """
        return (
            self.format_version == FORMAT_VERSION_1
            and not self.snapshot_id_inheritance_enabled
        )

    @property
    def commit_num_retries(self) -> int:
        return int(self.get_property(TableProperty.COMMIT_NUM_RETRIES))

    @property
    def commit_min_retry_wait_ms(self) -> int:
        return int(self.get_property(TableProperty.COMMIT_MIN_RETRY_WAIT_MS))

    @property
    def commit_max_retry_wait_ms(self) -> int:
        return int(self.get_property(TableProperty.COMMIT_MAX_RETRY_WAIT_MS))

    def get_property(self, table_property: TableProperty) -> Any:
        return self.properties.get(
            table_property.value,
            TABLE_PROPERTY_DEFAULTS[table_property],
        )

    def schema(self, schema_id: int) -> Schema:
        for schema in self.schemas:
            if schema.id == schema_id:
                return schema
        raise KeyError(f"Schema {schema_id} not found.")

    def spec(self, spec_id: int) -> PartitionSpec:
        for spec in self.partition_specs:
            if spec.spec_id == spec_id:
                return spec
        raise KeyError(f"Partition spec {spec_id} not found.")

    @property
    def specs_by_id(self) -> Dict[int, PartitionSpec]:
        return {spec.spec_id: spec for spec in self.partition_specs}

    def snapshot(self, snapshot_id: int) -> Optional[Snapshot]:
        for snapshot in self.snapshots:
            if snapshot.snapshot_id == snapshot_id:
                return snapshot
        return None

    def next_sequence_number(self) -> int:
        if self.format_version == FORMAT_VERSION_1:
            return INITIAL_SEQUENCE_NUMBER
        return self.last_sequence_number + 1

    def with_properties(
        self,
        updates: Optional[Dict[str, str]] = None,
        removals: Optional[Iterable[str]] = None,
    ) -> TableMetadata:
        updates = updates or {}
        if TableProperty.FORMAT_VERSION.value in updates:
            raise ValidationError(
                f"Cannot update the `{TableProperty.FORMAT_VERSION.value}` "
                f"property of an existing table."
            )
        table_metadata = self._copy()
        properties = dict(self.properties)
        for key in removals or []:
            properties.pop(key, None)
        properties.update({k: str(v) for k, v in updates.items()})
        table_metadata["properties"] = properties
        return table_metadata

    def with_schema(self, schema: Schema, set_current: bool = True) -> TableMetadata:
        if any(s.id == schema.id for s in self.schemas):
            raise ValidationError(f"Schema {schema.id} already exists.")
        table_metadata = self._copy()
        table_metadata["schemas"] = SchemaList.of(list(self.schemas) + [schema])
        table_metadata["lastColumnId"] = max(self.last_column_id, schema.max_field_id)
        if set_current:
            table_metadata["currentSchemaId"] = schema.id
        return table_metadata

    def with_partition_spec(
        self,
        partition_spec: PartitionSpec,
        set_default: bool = True,
    ) -> TableMetadata:
        if partition_spec.spec_id in self.specs_by_id:
            raise ValidationError(
                f"Partition spec {partition_spec.spec_id} already exists."
            )
        partition_spec.validate(self.schema(partition_spec.schema_id))
        table_metadata = self._copy()
        table_metadata["partitionSpecs"] = PartitionSpecList.of(
            list(self.partition_specs) + [partition_spec]
        )
        table_metadata["lastPartitionId"] = max(
            self.last_partition_id,
            partition_spec.last_assigned_field_id,
            PARTITION_DATA_ID_START - 1,
        )
        if set_default:
            table_metadata["defaultSpecId"] = partition_spec.spec_id
        return table_metadata

    def with_snapshot(self, snapshot: Snapshot) -> TableMetadata:
        """
        Returns new table metadata with the given snapshot added and made
        current.
        """
        if self.snapshot(snapshot.snapshot_id) is not None:
            raise ValidationError(f"Snapshot {snapshot.snapshot_id} already exists.")
        table_metadata = self._copy()
        table_metadata["snapshots"] = SnapshotList.of(list(self.snapshots) + [snapshot])
        table_metadata["currentSnapshotId"] = snapshot.snapshot_id
        table_metadata["lastSequenceNumber"] = max(
            self.last_sequence_number,
            snapshot.sequence_number,
        )
        table_metadata["lastUpdatedMs"] = snapshot.timestamp_ms
        table_metadata["snapshotLog"] = list(self.snapshot_log) + [
            SnapshotLogEntry.of(snapshot.snapshot_id, snapshot.timestamp_ms)
        ]
        return table_metadata

    def to_serializable(self) -> TableMetadata:
        serializable = self._copy()
        serializable["schemas"] = [
            schema.serialize().to_pybytes() for schema in self.schemas
        ]
        return serializable

    def from_serializable(self) -> TableMetadata:
        self["schemas"] = SchemaList.of(
            [
                Schema.deserialize(pa.py_buffer(schema))
                for schema in self["schemas"]
            ]
        )
        return self

    def _copy(self) -> TableMetadata:
        table_metadata = TableMetadata(self)
        table_metadata["lastUpdatedMs"] = current_time_ms()
        return table_metadata

    @staticmethod
    def _normalize_location(location: str) -> str:
        return location.rstrip("/") if location not in ("/", "") else location
