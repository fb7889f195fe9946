from typing import List, Optional

import pytest

from ledgercat.constants import MANIFESTS_KEPT
from ledgercat.exceptions import (
    CommitFailedError,
    CommitStateUnknownError,
    TableNotFoundError,
)
from ledgercat.storage.metastore import InMemoryMetadataStore
from ledgercat.storage.model.manifest import ManifestFile
from ledgercat.storage.model.partition import PartitionSpecUpdate
from ledgercat.storage.model.table_metadata import TableMetadata, TableProperty
from ledgercat.storage.model.transaction import (
    ManifestReplacement,
    Transaction,
    TransactionOperation,
)
from ledgercat.storage.model.types import (
    CommitOutcome,
    SnapshotOperation,
    TransactionType,
)
from ledgercat.tests.test_utils.storage import create_test_table


class ScriptedStore(InMemoryMetadataStore):
    """
    In-memory store whose next swaps can be made to conflict, report an
    unknown outcome, or fail after publishing the new metadata.
    """

    def __init__(self, location: str):
        super().__init__(location)
        self.conflicts = 0
        self.unknown_outcomes = 0
        self.fail_after_swap = False
        self.swap_count = 0

    def swap(self, token: Optional[int], new_metadata: TableMetadata) -> CommitOutcome:
        self.swap_count += 1
        if self.conflicts > 0:
            self.conflicts -= 1
            return CommitOutcome.CONFLICT
        if self.unknown_outcomes > 0:
            self.unknown_outcomes -= 1
            return CommitOutcome.UNKNOWN
        return super().swap(token, new_metadata)

    def report_outcome(self, outcome: CommitOutcome) -> CommitOutcome:
        if self.fail_after_swap:
            self.fail_after_swap = False
            raise ConnectionError("Lost connection before the outcome was known.")
        return super().report_outcome(outcome)


def _manifest(name: str, files: int = 1) -> ManifestFile:
    return ManifestFile.of(
        path=f"/tmp/table/metadata/{name}.mpk",
        length=100 * files,
        spec_id=0,
        added_files_count=files,
        added_rows_count=10 * files,
    )


def _append(manifests: List[ManifestFile], snapshot_id: Optional[int] = None):
    return Transaction.of(
        txn_type=TransactionType.APPEND,
        txn_operations=[
            TransactionOperation.replace_manifests(
                replacements=[ManifestReplacement.of(added=manifests)],
                snapshot_operation=SnapshotOperation.APPEND,
                snapshot_id=snapshot_id,
            )
        ],
    )


def _replace(removed: List[ManifestFile], added: List[ManifestFile]):
    return Transaction.of(
        txn_type=TransactionType.RESTATE,
        txn_operations=[
            TransactionOperation.replace_manifests(
                replacements=[ManifestReplacement.of(removed=removed, added=added)],
                snapshot_operation=SnapshotOperation.REPLACE,
            )
        ],
    )


@pytest.fixture
def store(temp_dir) -> ScriptedStore:
    store = ScriptedStore(temp_dir)
    create_test_table(
        store,
        properties={TableProperty.COMMIT_NUM_RETRIES.value: "2"},
    )
    return store


class TestTransactionValidation:
    def test_requires_operations(self):
        with pytest.raises(ValueError):
            Transaction.of(TransactionType.APPEND, [])

    def test_rejects_operations_not_allowed_by_type(self):
        with pytest.raises(ValueError):
            Transaction.of(
                TransactionType.APPEND,
                [TransactionOperation.update_properties({"a": "b"})],
            )
        with pytest.raises(ValueError):
            Transaction.of(
                TransactionType.ALTER,
                [
                    TransactionOperation.replace_manifests(
                        [ManifestReplacement.of(added=[_manifest("m0")])],
                        SnapshotOperation.APPEND,
                    )
                ],
            )

    def test_rejects_mismatched_snapshot_operation(self):
        with pytest.raises(ValueError):
            Transaction.of(
                TransactionType.RESTATE,
                [
                    TransactionOperation.replace_manifests(
                        [ManifestReplacement.of(added=[_manifest("m0")])],
                        SnapshotOperation.APPEND,
                    )
                ],
            )

    def test_append_cannot_remove_manifests(self):
        with pytest.raises(ValueError):
            Transaction.of(
                TransactionType.APPEND,
                [
                    TransactionOperation.replace_manifests(
                        [
                            ManifestReplacement.of(
                                removed=[_manifest("m0")],
                                added=[_manifest("m1")],
                            )
                        ],
                        SnapshotOperation.APPEND,
                    )
                ],
            )

    def test_at_most_one_snapshot(self):
        replace = TransactionOperation.replace_manifests(
            [ManifestReplacement.of(added=[_manifest("m0")])],
            SnapshotOperation.APPEND,
        )
        with pytest.raises(ValueError):
            Transaction.of(TransactionType.APPEND, [replace, replace])

    def test_snapshot_id_is_reserved_when_built(self):
        op = TransactionOperation.replace_manifests(
            [ManifestReplacement.of(added=[_manifest("m0")])],
            SnapshotOperation.APPEND,
        )
        assert op.snapshot_id is not None
        assert op.snapshot_id > 0


class TestTransactionCommit:
    def test_append_prepends_manifests(self, store):
        first = _append([_manifest("m0")]).commit(store)
        second = _append([_manifest("m1"), _manifest("m2")]).commit(store)

        paths = [m.path for m in second.current_snapshot.manifests]
        assert paths == [
            "/tmp/table/metadata/m1.mpk",
            "/tmp/table/metadata/m2.mpk",
            "/tmp/table/metadata/m0.mpk",
        ]
        assert second.current_snapshot.sequence_number == 2
        assert second.current_snapshot.parent_snapshot_id == (
            first.current_snapshot.snapshot_id
        )
        assert second.current_snapshot.summary["total-manifests"] == "3"
        assert second.current_snapshot.summary["total-data-files"] == "3"
        assert second.current_snapshot.summary["total-records"] == "30"

    def test_added_manifests_get_snapshot_info(self, store):
        table_metadata = _append([_manifest("m0")], snapshot_id=1234).commit(store)
        manifest_file = table_metadata.current_snapshot.manifests[0]
        assert table_metadata.current_snapshot_id == 1234
        assert manifest_file.added_snapshot_id == 1234
        assert manifest_file.sequence_number == 1
        assert manifest_file.min_sequence_number == 1

    def test_replace_inserts_at_first_removed_position(self, store):
        _append([_manifest("m3")]).commit(store)
        _append([_manifest("m2")]).commit(store)
        table_metadata = _append([_manifest("m1")]).commit(store)
        m1, m2, m3 = table_metadata.current_snapshot.manifests

        replaced = _replace([m2, m3], [_manifest("r0")]).commit(store)

        snapshot = replaced.current_snapshot
        assert [m.path for m in snapshot.manifests] == [
            m1.path,
            "/tmp/table/metadata/r0.mpk",
        ]
        assert snapshot.operation == SnapshotOperation.REPLACE
        assert snapshot.summary[MANIFESTS_KEPT] == "1"
        # kept manifests are untouched
        assert snapshot.manifests[0] == m1

    def test_stale_manifests_fail_without_retry(self, store):
        table_metadata = _append([_manifest("m0")]).commit(store)
        m0 = table_metadata.current_snapshot.manifests[0]
        _replace([m0], [_manifest("r0")]).commit(store)
        swaps = store.swap_count

        with pytest.raises(CommitFailedError) as exc_info:
            _replace([m0], [_manifest("r1")]).commit(store)

        assert exc_info.value.stale_manifests == [m0.path]
        assert store.swap_count == swaps

    def test_changed_manifest_is_stale(self, store):
        table_metadata = _append([_manifest("m0")]).commit(store)
        m0 = ManifestFile(table_metadata.current_snapshot.manifests[0])
        m0["length"] = 1
        with pytest.raises(CommitFailedError):
            _replace([m0], [_manifest("r0")]).commit(store)

    def test_conflicts_are_retried_with_same_snapshot_id(self, store):
        store.conflicts = 2
        txn = _append([_manifest("m0")])
        reserved_id = txn.operations[0].snapshot_id

        table_metadata = txn.commit(store)

        assert store.swap_count == 4
        assert table_metadata.current_snapshot_id == reserved_id
        committed, _ = store.read()
        assert committed.current_snapshot_id == reserved_id

    def test_conflict_retries_are_exhausted(self, store):
        store.conflicts = 3
        with pytest.raises(CommitFailedError):
            _append([_manifest("m0")]).commit(store)
        committed, _ = store.read()
        assert committed.current_snapshot is None

    def test_retry_rebuilds_against_concurrent_commit(self, store):
        class InterleavingStore(ScriptedStore):
            interleaved = False

            def swap(self, token, new_metadata):
                if not self.interleaved:
                    self.interleaved = True
                    _append([_manifest("concurrent")]).commit(self)
                return super().swap(token, new_metadata)

        interleaving = InterleavingStore(store.location)
        interleaving._serialized, interleaving._version = (
            store._serialized,
            store._version,
        )

        table_metadata = _append([_manifest("m0")]).commit(interleaving)

        assert [m.path for m in table_metadata.current_snapshot.manifests] == [
            "/tmp/table/metadata/m0.mpk",
            "/tmp/table/metadata/concurrent.mpk",
        ]
        assert table_metadata.current_snapshot.sequence_number == 2

    def test_unknown_outcome(self, store):
        store.unknown_outcomes = 1
        with pytest.raises(CommitStateUnknownError):
            _append([_manifest("m0")]).commit(store)

    def test_failure_after_swap_is_unknown_outcome(self, store):
        store.fail_after_swap = True
        txn = _append([_manifest("m0")])

        with pytest.raises(CommitStateUnknownError):
            txn.commit(store)

        committed, _ = store.read()
        assert committed.current_snapshot_id == txn.operations[0].snapshot_id

    def test_missing_table(self, temp_dir):
        with pytest.raises(TableNotFoundError):
            _append([_manifest("m0")]).commit(InMemoryMetadataStore(temp_dir))

    def test_update_properties(self, store):
        txn = Transaction.of(
            TransactionType.ALTER,
            [TransactionOperation.update_properties({"owner": "ledger"})],
        )
        table_metadata = txn.commit(store)
        assert table_metadata.properties["owner"] == "ledger"
        assert table_metadata.current_snapshot is None

    def test_partition_spec_built_on_stale_base_fails(self, store):
        base, _ = store.read()
        first = PartitionSpecUpdate.of(base).add_field("category")
        second = PartitionSpecUpdate.of(base).add_field("data")
        Transaction.of(
            TransactionType.ALTER,
            [
                TransactionOperation.add_partition_spec(
                    first.apply(),
                    base_last_partition_id=first.base_last_partition_id,
                )
            ],
        ).commit(store)

        with pytest.raises(CommitFailedError):
            Transaction.of(
                TransactionType.ALTER,
                [
                    TransactionOperation.add_partition_spec(
                        second.apply(),
                        base_last_partition_id=second.base_last_partition_id,
                    )
                ],
            ).commit(store)
