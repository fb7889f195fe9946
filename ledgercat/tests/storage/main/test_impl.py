import os

import pyarrow as pa
import pytest

import ledgercat.storage.main.impl as table_ops
from ledgercat.compute.rewriter.rewrite_session import RewriteManifests
from ledgercat.exceptions import (
    CommitFailedError,
    TableAlreadyExistsError,
    TableNotFoundError,
)
from ledgercat.storage.manifest_io import ManifestWriter, read_manifest
from ledgercat.storage.metastore import (
    FileSystemMetadataStore,
    InMemoryMetadataStore,
)
from ledgercat.storage.model.manifest import DataFile
from ledgercat.storage.model.partition import PartitionSpecUpdate
from ledgercat.storage.model.table_metadata import TableProperty
from ledgercat.storage.model.transform import BucketTransform
from ledgercat.storage.model.types import (
    FileContent,
    FileStatus,
    ManifestContent,
    SnapshotOperation,
)
from ledgercat.tests.test_utils.storage import (
    create_test_table,
    data_file,
    live_file_provenance,
    manifest_paths_in,
)


@pytest.fixture
def store(temp_dir) -> FileSystemMetadataStore:
    store = FileSystemMetadataStore(temp_dir)
    create_test_table(store)
    return store


class TestCreateTable:
    def test_create_and_load(self, temp_dir):
        store = InMemoryMetadataStore(temp_dir)
        created = table_ops.create_table(
            store,
            pa.schema([pa.field("id", pa.int64()), pa.field("v", pa.string())]),
            partition_spec=lambda builder: builder.bucket("id", 4),
            properties={"owner": "ledger"},
        )
        loaded = table_ops.load_table(store)
        assert loaded.table_uuid == created.table_uuid
        assert loaded.location == temp_dir
        assert loaded.properties == {"owner": "ledger"}
        assert loaded.default_spec.fields[0].transform == BucketTransform.of(4)
        assert loaded.current_snapshot is None

    def test_create_existing_table(self, store):
        with pytest.raises(TableAlreadyExistsError):
            create_test_table(store)

    def test_location_is_required(self):
        with pytest.raises(ValueError):
            create_test_table(InMemoryMetadataStore())

    def test_load_missing_table(self, temp_dir):
        with pytest.raises(TableNotFoundError):
            table_ops.load_table(InMemoryMetadataStore(temp_dir))


class TestAppendFiles:
    def test_append_data_and_delete_files(self, store, temp_dir):
        delete_file = DataFile.of(
            "/data/deletes-000000.parquet",
            [],
            2,
            64,
            content=FileContent.POSITION_DELETES,
        )
        table_metadata = table_ops.append_files(
            store,
            [data_file(0), data_file(1), delete_file],
        )

        snapshot = table_metadata.current_snapshot
        assert snapshot.operation == SnapshotOperation.APPEND
        assert snapshot.sequence_number == 1
        assert snapshot.summary["added-data-files"] == "2"
        assert snapshot.summary["added-delete-files"] == "1"
        assert snapshot.summary["added-records"] == "20"
        assert [m.content for m in snapshot.manifests] == [
            ManifestContent.DATA,
            ManifestContent.DELETES,
        ]
        for manifest_file in snapshot.manifests:
            assert manifest_file.added_snapshot_id == snapshot.snapshot_id
            assert manifest_file.path.startswith(
                os.path.join(temp_dir, "metadata")
            )

        live = table_ops.list_live_files(store)
        assert len(live) == 3
        for entry in live:
            assert entry.status == FileStatus.ADDED
            assert entry.snapshot_id == snapshot.snapshot_id
            assert entry.data_sequence_number == 1

    def test_append_requires_files(self, store):
        with pytest.raises(ValueError):
            table_ops.append_files(store, [])

    def test_append_to_missing_table(self, temp_dir):
        with pytest.raises(TableNotFoundError):
            table_ops.append_files(InMemoryMetadataStore(temp_dir), [data_file(0)])

    def test_invalid_file_leaves_no_manifests(self, store, temp_dir):
        with pytest.raises(ValueError):
            table_ops.append_files(store, [data_file(0), data_file(1, [5])])
        assert manifest_paths_in(os.path.join(temp_dir, "metadata")) == []


class TestAppendManifest:
    def _staged_manifest(self, temp_dir, table_metadata):
        writer = ManifestWriter(
            os.path.join(temp_dir, "staging", "staged.mpk"),
            table_metadata.default_spec,
            table_metadata.format_version,
        )
        with writer:
            writer.add(data_file(0))
            writer.add(data_file(1))
        return writer.to_manifest_file()

    def test_v2_manifest_is_committed_in_place(self, store, temp_dir):
        staged = self._staged_manifest(temp_dir, table_ops.load_table(store))
        table_metadata = table_ops.append_manifest(store, staged)

        snapshot = table_metadata.current_snapshot
        assert [m.path for m in snapshot.manifests] == [staged.path]
        assert snapshot.manifests[0].added_snapshot_id == snapshot.snapshot_id
        assert snapshot.summary["added-manifests"] == "1"
        for entry in table_ops.list_live_files(store):
            assert entry.snapshot_id == snapshot.snapshot_id
            assert entry.data_sequence_number == snapshot.sequence_number

    def test_v1_manifest_is_copied_with_snapshot_id(self, temp_dir):
        store = FileSystemMetadataStore(temp_dir)
        create_test_table(store, {TableProperty.FORMAT_VERSION.value: "1"})
        staged = self._staged_manifest(temp_dir, table_ops.load_table(store))

        table_metadata = table_ops.append_manifest(store, staged)

        snapshot = table_metadata.current_snapshot
        committed = snapshot.manifests[0]
        assert committed.path != staged.path
        assert committed.path.startswith(os.path.join(temp_dir, "metadata"))
        for entry in read_manifest(committed):
            assert entry.snapshot_id == snapshot.snapshot_id
            assert entry.data_sequence_number == 0

    def test_rejects_manifests_with_existing_files(self, store, temp_dir):
        staged = self._staged_manifest(temp_dir, table_ops.load_table(store))
        staged["existingFilesCount"] = 1
        with pytest.raises(ValueError):
            table_ops.append_manifest(store, staged)

    def test_rejects_committed_manifests(self, store, temp_dir):
        staged = self._staged_manifest(temp_dir, table_ops.load_table(store))
        table_metadata = table_ops.append_manifest(store, staged)
        with pytest.raises(ValueError):
            table_ops.append_manifest(
                store,
                table_metadata.current_snapshot.manifests[0],
            )

    def test_rejects_unknown_spec(self, store, temp_dir):
        staged = self._staged_manifest(temp_dir, table_ops.load_table(store))
        staged["specId"] = 9
        with pytest.raises(ValueError):
            table_ops.append_manifest(store, staged)


class TestDeleteFiles:
    def test_delete_rewrites_affected_manifests(self, store):
        table_ops.append_files(store, [data_file(0), data_file(1)])
        before = table_ops.append_files(store, [data_file(2)])
        untouched = before.current_snapshot.manifests[0]
        provenance = live_file_provenance(store)

        table_metadata = table_ops.delete_files(store, [data_file(0).file_path])

        snapshot = table_metadata.current_snapshot
        assert snapshot.operation == SnapshotOperation.DELETE
        assert snapshot.summary["deleted-data-files"] == "1"
        assert snapshot.summary["deleted-records"] == "10"
        assert snapshot.manifests[0] == untouched
        rewritten = snapshot.manifests[1]
        assert rewritten.deleted_files_count == 1
        assert rewritten.existing_files_count == 1

        remaining = live_file_provenance(store)
        assert set(remaining) == {data_file(1).file_path, data_file(2).file_path}
        for path, value in remaining.items():
            assert value == provenance[path]

        deleted = [
            e for e in read_manifest(rewritten) if e.status == FileStatus.DELETED
        ]
        assert deleted[0].snapshot_id == snapshot.snapshot_id

    def test_delete_missing_file(self, store):
        table_ops.append_files(store, [data_file(0)])
        with pytest.raises(ValueError):
            table_ops.delete_files(store, ["/data/missing.parquet"])
        with pytest.raises(ValueError):
            table_ops.delete_files(store, [])

    def test_deleted_file_cannot_be_deleted_again(self, store):
        table_ops.append_files(store, [data_file(0), data_file(1)])
        table_ops.delete_files(store, [data_file(0).file_path])
        with pytest.raises(ValueError):
            table_ops.delete_files(store, [data_file(0).file_path])

    def test_later_delete_drops_earlier_deleted_entries(self, store):
        table_ops.append_files(store, [data_file(0), data_file(1), data_file(2)])
        table_ops.delete_files(store, [data_file(0).file_path])
        table_metadata = table_ops.delete_files(store, [data_file(1).file_path])
        manifest_file = table_metadata.current_snapshot.manifests[0]
        assert manifest_file.deleted_files_count == 1
        assert manifest_file.existing_files_count == 1


class TestTableUpdates:
    def test_update_properties(self, store):
        table_ops.update_table_properties(store, {"a": "1", "b": "2"})
        table_metadata = table_ops.update_table_properties(store, removals=["a"])
        assert table_metadata.properties["b"] == "2"
        assert "a" not in table_metadata.properties

    def test_update_partition_spec(self, store):
        base = table_ops.load_table(store)
        table_metadata = table_ops.update_partition_spec(
            store,
            PartitionSpecUpdate.of(base).add_field("category"),
        )
        assert table_metadata.default_spec_id == 1
        assert table_metadata.last_partition_id == 1000

        table_ops.append_files(store, [data_file(0, [3], spec_id=1)])
        live = table_ops.list_live_files(store)
        assert live[0].data_file.partition == [3]

    def test_concurrent_partition_spec_update_fails(self, store):
        base = table_ops.load_table(store)
        first = PartitionSpecUpdate.of(base).add_field("category")
        second = PartitionSpecUpdate.of(base).add_field("data")
        table_ops.update_partition_spec(store, first)
        with pytest.raises(CommitFailedError):
            table_ops.update_partition_spec(store, second)


class TestListLiveFiles:
    def test_empty_table(self, store):
        assert table_ops.list_live_files(store) == []

    def test_historical_snapshot(self, store):
        first = table_ops.append_files(store, [data_file(0)])
        table_ops.append_files(store, [data_file(1)])
        live = table_ops.list_live_files(
            store,
            snapshot_id=first.current_snapshot_id,
        )
        assert [e.data_file.file_path for e in live] == [data_file(0).file_path]
        with pytest.raises(ValueError):
            table_ops.list_live_files(store, snapshot_id=-1)

    def test_rewrite_manifests_action(self, store):
        assert isinstance(table_ops.rewrite_manifests(store), RewriteManifests)
