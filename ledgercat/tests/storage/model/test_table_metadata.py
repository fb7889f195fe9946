import pytest

from ledgercat.exceptions import ValidationError
from ledgercat.storage.codec import packb, unpackb
from ledgercat.storage.model.manifest import ManifestFile
from ledgercat.storage.model.partition import PartitionSpec
from ledgercat.storage.model.snapshot import Snapshot
from ledgercat.storage.model.table_metadata import TableMetadata, TableProperty
from ledgercat.storage.model.types import SnapshotOperation
from ledgercat.tests.test_utils.storage import create_test_schema


@pytest.fixture
def table_metadata() -> TableMetadata:
    return TableMetadata.of("/tmp/table/", create_test_schema())


def _snapshot(snapshot_id: int, sequence_number: int, parent=None) -> Snapshot:
    return Snapshot.of(
        snapshot_id=snapshot_id,
        parent_snapshot_id=parent,
        sequence_number=sequence_number,
        timestamp_ms=1000 + snapshot_id,
        operation=SnapshotOperation.APPEND,
        manifests=[
            ManifestFile.of(
                path=f"/tmp/table/metadata/{snapshot_id}-m0.mpk",
                length=100,
                spec_id=0,
                sequence_number=sequence_number,
                added_snapshot_id=snapshot_id,
                added_files_count=1,
            )
        ],
    )


class TestTableMetadata:
    def test_new_table_defaults(self, table_metadata):
        assert table_metadata.format_version == 2
        assert table_metadata.location == "/tmp/table"
        assert table_metadata.metadata_location == "/tmp/table/metadata"
        assert table_metadata.current_snapshot is None
        assert table_metadata.last_sequence_number == 0
        assert table_metadata.default_spec.is_unpartitioned
        assert table_metadata.last_partition_id == 999
        assert table_metadata.last_column_id == 3
        assert table_metadata.target_manifest_size_bytes == 8 * 1024 * 1024
        assert table_metadata.commit_num_retries == 4
        assert not table_metadata.staging_required

    def test_get_property(self, table_metadata):
        assert (
            table_metadata.get_property(TableProperty.COMMIT_MIN_RETRY_WAIT_MS) == 100
        )
        updated = table_metadata.with_properties(
            {TableProperty.TARGET_MANIFEST_SIZE_BYTES.value: "1024"}
        )
        assert updated.get_property(TableProperty.TARGET_MANIFEST_SIZE_BYTES) == "1024"
        assert updated.target_manifest_size_bytes == 1024

    def test_format_version_property(self):
        table_metadata = TableMetadata.of(
            "/tmp/table",
            create_test_schema(),
            properties={TableProperty.FORMAT_VERSION.value: "1"},
        )
        assert table_metadata.format_version == 1
        assert TableProperty.FORMAT_VERSION.value not in table_metadata.properties
        assert table_metadata.staging_required
        assert table_metadata.next_sequence_number() == 0

    def test_unsupported_format_version(self):
        with pytest.raises(ValidationError):
            TableMetadata.of(
                "/tmp/table",
                create_test_schema(),
                properties={TableProperty.FORMAT_VERSION.value: "3"},
            )

    def test_snapshot_id_inheritance_lifts_staging(self):
        table_metadata = TableMetadata.of(
            "/tmp/table",
            create_test_schema(),
            properties={
                TableProperty.FORMAT_VERSION.value: "1",
                TableProperty.SNAPSHOT_ID_INHERITANCE_ENABLED.value: "true",
            },
        )
        assert not table_metadata.staging_required

    def test_with_properties(self, table_metadata):
        updated = table_metadata.with_properties(
            {TableProperty.TARGET_MANIFEST_SIZE_BYTES.value: 1024, "a": "b"}
        )
        assert updated.target_manifest_size_bytes == 1024
        assert updated.properties["a"] == "b"
        assert "a" not in table_metadata.properties
        removed = updated.with_properties(removals=["a"])
        assert "a" not in removed.properties
        with pytest.raises(ValidationError):
            table_metadata.with_properties({TableProperty.FORMAT_VERSION.value: "1"})

    def test_with_snapshot(self, table_metadata):
        first = table_metadata.with_snapshot(_snapshot(1, 1))
        second = first.with_snapshot(_snapshot(2, 2, parent=1))
        assert second.current_snapshot_id == 2
        assert second.current_snapshot.parent_snapshot_id == 1
        assert second.last_sequence_number == 2
        assert second.next_sequence_number() == 3
        assert [e.snapshot_id for e in second.snapshot_log] == [1, 2]
        assert second.snapshot(1).snapshot_id == 1
        assert second.snapshot(3) is None
        assert table_metadata.current_snapshot is None
        with pytest.raises(ValidationError):
            second.with_snapshot(_snapshot(2, 3))

    def test_with_partition_spec(self, table_metadata):
        spec = PartitionSpec.builder_for(
            table_metadata.current_schema,
            spec_id=1,
        ).bucket("id", 4).build()
        evolved = table_metadata.with_partition_spec(spec)
        assert evolved.default_spec_id == 1
        assert evolved.last_partition_id == 1000
        assert set(evolved.specs_by_id) == {0, 1}
        kept_default = table_metadata.with_partition_spec(spec, set_default=False)
        assert kept_default.default_spec_id == 0
        with pytest.raises(ValidationError):
            evolved.with_partition_spec(spec)

    def test_with_schema(self, table_metadata):
        with pytest.raises(ValidationError):
            table_metadata.with_schema(create_test_schema())
        with pytest.raises(KeyError):
            table_metadata.schema(5)

    def test_serializable_round_trip(self, table_metadata):
        with_snapshot = table_metadata.with_snapshot(_snapshot(1, 1))
        restored = TableMetadata(
            unpackb(packb(with_snapshot.to_serializable()))
        ).from_serializable()
        assert restored.current_schema.equivalent_to(with_snapshot.current_schema)
        assert restored.current_snapshot.operation == SnapshotOperation.APPEND
        assert restored.current_snapshot.manifests[0].equivalent_to(
            with_snapshot.current_snapshot.manifests[0]
        )
        assert restored.default_spec.spec_id == 0
        assert restored.table_uuid == with_snapshot.table_uuid
