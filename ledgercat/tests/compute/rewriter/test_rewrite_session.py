import os

import pytest

import ledgercat.storage.main.impl as table_ops
import ledgercat.storage.manifest_io as manifest_io
from ledgercat.compute.rewriter.constants import (
    ENTRIES_PROCESSED,
    MANIFESTS_CREATED,
    MANIFESTS_REPLACED,
)
from ledgercat.compute.rewriter.rewrite_session import RewriteManifests
from ledgercat.compute.rewriter.steps.plan import average_entry_size
from ledgercat.constants import MANIFESTS_KEPT
from ledgercat.exceptions import (
    CommitFailedError,
    CommitStateUnknownError,
    LedgerCatTransientError,
    TableNotFoundError,
)
from ledgercat.storage.manifest_io import ManifestWriter, read_manifest
from ledgercat.storage.metastore import FileSystemMetadataStore
from ledgercat.storage.model.manifest import DataFile
from ledgercat.storage.model.table_metadata import TableProperty
from ledgercat.storage.model.types import (
    FileContent,
    FileStatus,
    ManifestContent,
    SnapshotOperation,
)
from ledgercat.tests.test_utils.storage import (
    append_manifests,
    create_test_table,
    data_file,
    live_file_provenance,
    manifest_paths_in,
    normalized_entries,
)

pytestmark = pytest.mark.usefixtures("local_rewrite")


class ArmedStore(FileSystemMetadataStore):
    """
    Store that runs a concurrent change, or fails to report the outcome of
    the swap, on the next commit after being armed.
    """

    def __init__(self, location: str):
        super().__init__(location)
        self.before_next_swap = None
        self.fail_next_report = False

    def swap(self, token, new_metadata):
        concurrent_change, self.before_next_swap = self.before_next_swap, None
        if concurrent_change is not None:
            concurrent_change(self)
        return super().swap(token, new_metadata)

    def report_outcome(self, outcome):
        if self.fail_next_report:
            self.fail_next_report = False
            raise TimeoutError("Timed out waiting for the swap to be acknowledged.")
        return super().report_outcome(outcome)


@pytest.fixture
def store(temp_dir) -> ArmedStore:
    store = ArmedStore(temp_dir)
    create_test_table(store)
    return store


@pytest.fixture
def partitioned_store(temp_dir) -> ArmedStore:
    store = ArmedStore(temp_dir)
    create_test_table(store, partition_spec=lambda builder: builder.identity("category"))
    return store


def _metadata_dir(store) -> str:
    return os.path.join(store.location, "metadata")


def _current_manifests(store):
    return list(table_ops.load_table(store).current_snapshot.manifests)


class TestRewriteScenarios:
    def test_small_manifests_are_combined(self, store):
        append_manifests(store, manifest_count=2, files_per_manifest=2)

        result = table_ops.rewrite_manifests(store).execute()

        assert len(result.rewritten_manifests) == 2
        assert len(result.added_manifests) == 1
        added = result.added_manifests[0]
        assert added.existing_files_count == 4
        assert not added.has_added_files
        assert not added.has_deleted_files

        table_metadata = table_ops.load_table(store)
        snapshot = table_metadata.current_snapshot
        assert snapshot.operation == SnapshotOperation.REPLACE
        assert [m.path for m in snapshot.manifests] == [added.path]
        assert added.added_snapshot_id == snapshot.snapshot_id
        assert added.sequence_number == snapshot.sequence_number
        assert snapshot.summary[MANIFESTS_CREATED] == "1"
        assert snapshot.summary[MANIFESTS_REPLACED] == "2"
        assert snapshot.summary[MANIFESTS_KEPT] == "0"
        assert snapshot.summary[ENTRIES_PROCESSED] == "4"

    def test_partitioned_manifests_are_clustered_by_target_size(
        self,
        partitioned_store,
    ):
        manifests = append_manifests(
            partitioned_store,
            manifest_count=4,
            files_per_manifest=2,
            partition_provider=lambda index: [index % 3],
        )
        target_size = int(1.05 * 4 * average_entry_size(manifests))

        result = (
            table_ops.rewrite_manifests(partitioned_store)
            .option("target-size-bytes", target_size)
            .execute()
        )

        assert len(result.rewritten_manifests) == 4
        assert len(result.added_manifests) == 2
        for added in result.added_manifests:
            assert added.existing_files_count == 4
            assert added.spec_id == 0
            assert len(added.partitions) == 1

    def test_only_selected_manifests_are_rewritten(self, store):
        manifests = append_manifests(store, manifest_count=3, files_per_manifest=2)
        kept = manifests[1]
        with open(kept.path, "rb") as f:
            kept_bytes = f.read()

        result = (
            table_ops.rewrite_manifests(store)
            .rewrite_if(lambda m: m.path != kept.path)
            .execute()
        )

        assert len(result.rewritten_manifests) == 2
        assert len(result.added_manifests) == 1
        current = _current_manifests(store)
        assert len(current) == 2
        assert current[1] == kept
        with open(kept.path, "rb") as f:
            assert f.read() == kept_bytes

    def test_unknown_commit_outcome_keeps_new_manifests(self, store):
        append_manifests(store, manifest_count=2, files_per_manifest=2)
        store.fail_next_report = True

        with pytest.raises(CommitStateUnknownError):
            table_ops.rewrite_manifests(store).execute()

        snapshot = table_ops.load_table(store).current_snapshot
        assert snapshot.operation == SnapshotOperation.REPLACE
        assert len(snapshot.manifests) == 1
        assert snapshot.manifests[0].existing_files_count == 4
        assert os.path.exists(snapshot.manifests[0].path)

    def test_oversized_manifest_is_split(self, store):
        table_metadata = table_ops.append_files(
            store,
            [data_file(i) for i in range(1000)],
        )
        manifest_file = table_metadata.current_snapshot.manifests[0]
        before = live_file_provenance(store)

        result = (
            table_ops.rewrite_manifests(store)
            .option("target-size-bytes", manifest_file.length // 2)
            .execute()
        )

        assert len(result.rewritten_manifests) == 1
        assert len(result.added_manifests) >= 2
        assert sum(m.entry_count for m in result.added_manifests) == 1000
        assert live_file_provenance(store) == before


class TestRewriteNoOps:
    def test_table_without_snapshot(self, store):
        result = table_ops.rewrite_manifests(store).execute()
        assert result.rewritten_manifests == []
        assert result.added_manifests == []
        assert table_ops.load_table(store).current_snapshot is None

    def test_nothing_selected(self, store):
        append_manifests(store, manifest_count=2, files_per_manifest=2)
        before = table_ops.load_table(store).current_snapshot_id

        result = table_ops.rewrite_manifests(store).rewrite_if(lambda m: False).execute()

        assert result.rewritten_manifests == []
        assert result.added_manifests == []
        assert table_ops.load_table(store).current_snapshot_id == before

    def test_right_sized_manifest_is_kept(self, store):
        append_manifests(store, manifest_count=1, files_per_manifest=5)
        before = table_ops.load_table(store).current_snapshot_id

        result = table_ops.rewrite_manifests(store).execute()

        assert result.added_manifests == []
        assert table_ops.load_table(store).current_snapshot_id == before

    def test_missing_table(self, temp_dir):
        with pytest.raises(TableNotFoundError):
            table_ops.rewrite_manifests(FileSystemMetadataStore(temp_dir)).execute()


class TestRewritePreservesFiles:
    def test_entries_and_provenance_are_preserved(self, store):
        append_manifests(store, manifest_count=3, files_per_manifest=2)
        table_ops.delete_files(store, [data_file(0).file_path])
        manifests = _current_manifests(store)
        entries_before = normalized_entries(manifests)
        provenance_before = live_file_provenance(store)

        result = table_ops.rewrite_manifests(store).option("use-caching", True).execute()

        assert len(result.rewritten_manifests) == 3
        current = _current_manifests(store)
        assert normalized_entries(current) == entries_before
        assert live_file_provenance(store) == provenance_before
        # files added by different snapshots keep their own sequence numbers
        assert len({seq for _, seq, _ in provenance_before.values()}) == 3

        deleted = [
            entry
            for manifest_file in current
            for entry in read_manifest(manifest_file)
            if entry.status == FileStatus.DELETED
        ]
        assert [e.data_file.file_path for e in deleted] == [data_file(0).file_path]
        assert sum(m.deleted_files_count for m in current) == 1

    def test_delete_manifests_are_not_rewritten_by_default(self, store):
        append_manifests(store, manifest_count=2, files_per_manifest=2)
        delete_file = DataFile.of(
            "/data/deletes-000000.parquet",
            [],
            1,
            64,
            content=FileContent.POSITION_DELETES,
        )
        table_ops.append_files(store, [delete_file])
        delete_manifest = _current_manifests(store)[0]

        result = table_ops.rewrite_manifests(store).execute()

        assert len(result.rewritten_manifests) == 2
        current = _current_manifests(store)
        assert current[0] == delete_manifest
        assert current[1].content == ManifestContent.DATA

    def test_delete_manifests_can_be_selected(self, store):
        delete_files = [
            DataFile.of(
                f"/data/deletes-{i:06d}.parquet",
                [],
                1,
                64,
                content=FileContent.EQUALITY_DELETES,
                equality_ids=[0],
            )
            for i in range(4)
        ]
        table_ops.append_files(store, delete_files[:2])
        table_ops.append_files(store, delete_files[2:])

        result = (
            table_ops.rewrite_manifests(store)
            .rewrite_if(lambda m: m.content == ManifestContent.DELETES)
            .execute()
        )

        assert len(result.added_manifests) == 1
        assert result.added_manifests[0].content == ManifestContent.DELETES
        assert result.added_manifests[0].existing_files_count == 4


class TestRewriteStaging:
    def test_v1_table_writes_snapshot_id_into_manifests(self, temp_dir):
        store = ArmedStore(temp_dir)
        create_test_table(store, {TableProperty.FORMAT_VERSION.value: "1"})
        append_manifests(store, manifest_count=2, files_per_manifest=2)
        provenance_before = live_file_provenance(store)

        result = table_ops.rewrite_manifests(store).execute()

        snapshot = table_ops.load_table(store).current_snapshot
        added = result.added_manifests[0]
        assert added.added_snapshot_id == snapshot.snapshot_id
        assert snapshot.sequence_number == 0
        assert os.path.dirname(added.path) == _metadata_dir(store)
        assert live_file_provenance(store) == provenance_before

    def test_v1_table_stages_manifests(self, temp_dir):
        store = ArmedStore(temp_dir)
        create_test_table(store, {TableProperty.FORMAT_VERSION.value: "1"})
        append_manifests(store, manifest_count=2, files_per_manifest=2)
        provenance_before = live_file_provenance(store)
        staging = os.path.join(temp_dir, "staging")

        result = table_ops.rewrite_manifests(store).staging_location(staging).execute()

        snapshot = table_ops.load_table(store).current_snapshot
        added = result.added_manifests[0]
        assert os.path.dirname(added.path) == staging
        assert added.added_snapshot_id == snapshot.snapshot_id
        assert live_file_provenance(store) == provenance_before

    def test_v2_table_ignores_staging_location_for_output(self, store, temp_dir):
        append_manifests(store, manifest_count=1, files_per_manifest=2)
        staging = os.path.join(temp_dir, "staging")

        result = table_ops.rewrite_manifests(store).staging_location(staging).execute()

        # right-sized manifests are still rewritten when a staging location is set
        assert len(result.rewritten_manifests) == 1
        assert len(result.added_manifests) == 1
        assert os.path.dirname(result.added_manifests[0].path) == _metadata_dir(store)
        assert not os.path.exists(staging)


class TestRewriteConcurrency:
    def test_concurrent_append_is_retried(self, store):
        append_manifests(store, manifest_count=2, files_per_manifest=2)

        def concurrent_append(armed_store):
            table_ops.append_files(armed_store, [data_file(100)])

        store.before_next_swap = concurrent_append

        result = table_ops.rewrite_manifests(store).execute()

        current = _current_manifests(store)
        assert len(current) == 2
        assert current[0].added_files_count == 1
        assert current[1].path == result.added_manifests[0].path
        assert len(table_ops.list_live_files(store)) == 5

    def test_concurrently_replaced_manifest_fails_and_cleans_up(self, store):
        append_manifests(store, manifest_count=2, files_per_manifest=2)
        before = set(manifest_paths_in(_metadata_dir(store)))
        base_snapshot_id = table_ops.load_table(store).current_snapshot_id

        def concurrent_delete(armed_store):
            table_ops.delete_files(armed_store, [data_file(0).file_path])

        store.before_next_swap = concurrent_delete

        with pytest.raises(CommitFailedError) as exc_info:
            table_ops.rewrite_manifests(store).execute()

        assert len(exc_info.value.stale_manifests) == 1
        table_metadata = table_ops.load_table(store)
        snapshot = table_metadata.current_snapshot
        assert snapshot.operation == SnapshotOperation.DELETE
        assert snapshot.parent_snapshot_id == base_snapshot_id
        referenced = {m.path for m in snapshot.manifests}
        for path in manifest_paths_in(_metadata_dir(store)):
            assert path in before or path in referenced

    def test_failed_cluster_write_cleans_up(
        self,
        partitioned_store,
        monkeypatch,
    ):
        manifests = append_manifests(
            partitioned_store,
            manifest_count=4,
            files_per_manifest=2,
            partition_provider=lambda index: [index % 3],
        )
        target_size = int(1.05 * 4 * average_entry_size(manifests))
        before = manifest_paths_in(_metadata_dir(partitioned_store))
        base_snapshot_id = table_ops.load_table(partitioned_store).current_snapshot_id

        write_entry = ManifestWriter.write_entry
        calls = []

        def failing_write_entry(writer, entry):
            calls.append(entry)
            if len(calls) > 5:
                raise OSError("No space left on device")
            write_entry(writer, entry)

        monkeypatch.setattr(ManifestWriter, "write_entry", failing_write_entry)

        with pytest.raises(LedgerCatTransientError):
            (
                table_ops.rewrite_manifests(partitioned_store)
                .option("target-size-bytes", target_size)
                .execute()
            )

        assert manifest_paths_in(_metadata_dir(partitioned_store)) == before
        assert (
            table_ops.load_table(partitioned_store).current_snapshot_id
            == base_snapshot_id
        )


class TestRewriteCaching:
    @pytest.fixture
    def manifest_reads(self, monkeypatch):
        reads = []
        read_manifest_file = manifest_io._read_manifest_file

        def counting_read_manifest_file(path, filesystem):
            reads.append(path)
            return read_manifest_file(path, filesystem)

        monkeypatch.setattr(
            manifest_io,
            "_read_manifest_file",
            counting_read_manifest_file,
        )
        return reads

    @pytest.fixture
    def cluster_results(self, monkeypatch):
        results = []
        rewrite_local = RewriteManifests._rewrite_local

        def capturing_rewrite_local(action, cluster_inputs):
            cluster_results = rewrite_local(action, cluster_inputs)
            results.extend(cluster_results)
            return cluster_results

        monkeypatch.setattr(RewriteManifests, "_rewrite_local", capturing_rewrite_local)
        return results

    def test_clusters_are_rewritten_from_cached_entries(
        self,
        store,
        manifest_reads,
        cluster_results,
    ):
        manifests = append_manifests(store, manifest_count=3, files_per_manifest=2)
        provenance_before = live_file_provenance(store)
        manifest_reads.clear()

        result = table_ops.rewrite_manifests(store).option("use-caching", True).execute()

        # each selected manifest is read from storage once, before planning
        assert sorted(manifest_reads) == sorted(m.path for m in manifests)
        assert len(result.added_manifests) == 1
        assert sum(r.cache_hits for r in cluster_results) == 3
        assert sum(r.entries_processed for r in cluster_results) == 6
        assert live_file_provenance(store) == provenance_before

    def test_clusters_are_read_from_storage_without_caching(
        self,
        store,
        manifest_reads,
        cluster_results,
    ):
        manifests = append_manifests(store, manifest_count=3, files_per_manifest=2)

        table_ops.rewrite_manifests(store).execute()

        assert sorted(manifest_reads) == sorted(m.path for m in manifests)
        assert sum(r.cache_hits for r in cluster_results) == 0

