from __future__ import annotations

import copy
import logging
from typing import Any, Dict, Iterable, List, Optional, TYPE_CHECKING

from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ledgercat import logs
from ledgercat.constants import MANIFESTS_KEPT, MILLIS_PER_SEC
from ledgercat.exceptions import (
    CommitConflictError,
    CommitFailedError,
    CommitStateUnknownError,
    TableNotFoundError,
)
from ledgercat.storage.model.manifest import ManifestFile, ManifestFileList
from ledgercat.storage.model.partition import PartitionSpec
from ledgercat.storage.model.schema import Schema
from ledgercat.storage.model.snapshot import Snapshot
from ledgercat.storage.model.table_metadata import TableMetadata
from ledgercat.storage.model.types import (
    CommitOutcome,
    ManifestContent,
    SnapshotOperation,
    TransactionOperationType,
    TransactionType,
)
from ledgercat.utils.common import current_time_ms, new_snapshot_id

if TYPE_CHECKING:
    from ledgercat.storage.metastore import MetadataStore

logger = logs.configure_ledgercat_logger(logging.getLogger(__name__))

_ALLOWED_OPERATION_TYPES = {
    TransactionType.APPEND: {TransactionOperationType.REPLACE_MANIFESTS},
    TransactionType.ALTER: {
        TransactionOperationType.UPDATE_PROPERTIES,
        TransactionOperationType.ADD_SCHEMA,
        TransactionOperationType.ADD_PARTITION_SPEC,
    },
    TransactionType.RESTATE: {TransactionOperationType.REPLACE_MANIFESTS},
    TransactionType.DELETE: {TransactionOperationType.REPLACE_MANIFESTS},
    TransactionType.OVERWRITE: {TransactionOperationType.REPLACE_MANIFESTS},
}

_SNAPSHOT_OPERATIONS = {
    TransactionType.APPEND: {SnapshotOperation.APPEND},
    TransactionType.RESTATE: {SnapshotOperation.REPLACE},
    TransactionType.DELETE: {SnapshotOperation.DELETE},
    TransactionType.OVERWRITE: {
        SnapshotOperation.OVERWRITE,
        SnapshotOperation.DELETE,
    },
}


class ManifestReplacement(dict):
    """
    A group of manifests to remove from the current snapshot's manifest list
    together with the manifests that take their place. Added manifests are
    inserted at the position of the first removed manifest, or at the head
    of the manifest list if nothing is removed.
    """

    @staticmethod
    def of(
        removed: Optional[List[ManifestFile]] = None,
        added: Optional[List[ManifestFile]] = None,
    ) -> ManifestReplacement:
        return ManifestReplacement(
            {
                "removed": ManifestFileList.of(removed or []),
                "added": ManifestFileList.of(added or []),
            }
        )

    @property
    def removed(self) -> ManifestFileList:
        return self["removed"]

    @property
    def added(self) -> ManifestFileList:
        return self["added"]


class TransactionOperation(dict):
    """
    A single change to apply to a table's metadata as part of a transaction.
    """

    @staticmethod
    def of(
        operation_type: TransactionOperationType,
        **params: Any,
    ) -> TransactionOperation:
        txn_op = TransactionOperation()
        txn_op.type = operation_type
        txn_op.update(params)
        return txn_op

    @staticmethod
    def update_properties(
        updates: Optional[Dict[str, str]] = None,
        removals: Optional[Iterable[str]] = None,
    ) -> TransactionOperation:
        return TransactionOperation.of(
            TransactionOperationType.UPDATE_PROPERTIES,
            updates=dict(updates or {}),
            removals=list(removals or []),
        )

    @staticmethod
    def add_schema(schema: Schema) -> TransactionOperation:
        return TransactionOperation.of(
            TransactionOperationType.ADD_SCHEMA,
            schema=schema,
        )

    @staticmethod
    def add_partition_spec(
        partition_spec: PartitionSpec,
        base_last_partition_id: Optional[int] = None,
        set_default: bool = True,
    ) -> TransactionOperation:
        """
        Adds a partition spec. If `base_last_partition_id` is given, the
        commit fails if the table's last assigned partition field ID changed
        after the spec was built, since the spec's new field IDs may collide
        with field IDs assigned by the concurrent change.
        """
        return TransactionOperation.of(
            TransactionOperationType.ADD_PARTITION_SPEC,
            partitionSpec=partition_spec,
            baseLastPartitionId=base_last_partition_id,
            setDefault=set_default,
        )

    @staticmethod
    def replace_manifests(
        replacements: List[ManifestReplacement],
        snapshot_operation: SnapshotOperation,
        snapshot_id: Optional[int] = None,
        summary: Optional[Dict[str, str]] = None,
    ) -> TransactionOperation:
        """
        Produces a new snapshot whose manifest list is the current manifest
        list with each replacement applied. The snapshot ID is reserved here
        so that it stays stable across commit retries.
        """
        return TransactionOperation.of(
            TransactionOperationType.REPLACE_MANIFESTS,
            replacements=[ManifestReplacement(r) for r in replacements],
            snapshotOperation=snapshot_operation,
            snapshotId=snapshot_id if snapshot_id is not None else new_snapshot_id(),
            summary=dict(summary or {}),
        )

    @property
    def type(self) -> TransactionOperationType:
        return TransactionOperationType(self["type"])

    @type.setter
    def type(self, txn_op_type: TransactionOperationType):
        self["type"] = txn_op_type

    @property
    def updates(self) -> Dict[str, str]:
        return self.get("updates") or {}

    @property
    def removals(self) -> List[str]:
        return self.get("removals") or []

    @property
    def schema(self) -> Optional[Schema]:
        return self.get("schema")

    @property
    def partition_spec(self) -> Optional[PartitionSpec]:
        return self.get("partitionSpec")

    @property
    def base_last_partition_id(self) -> Optional[int]:
        return self.get("baseLastPartitionId")

    @property
    def set_default(self) -> bool:
        return self.get("setDefault", True)

    @property
    def replacements(self) -> List[ManifestReplacement]:
        return self.get("replacements") or []

    @property
    def snapshot_operation(self) -> Optional[SnapshotOperation]:
        val = self.get("snapshotOperation")
        return SnapshotOperation(val) if val is not None else None

    @property
    def snapshot_id(self) -> Optional[int]:
        return self.get("snapshotId")

    @property
    def summary(self) -> Dict[str, str]:
        return self.get("summary") or {}

    def apply(self, base: TableMetadata) -> TableMetadata:
        """
        Applies this operation to the given base table metadata, returning
        the new table metadata.
        """
        if self.type == TransactionOperationType.UPDATE_PROPERTIES:
            return base.with_properties(self.updates, self.removals)
        if self.type == TransactionOperationType.ADD_SCHEMA:
            return base.with_schema(self.schema)
        if self.type == TransactionOperationType.ADD_PARTITION_SPEC:
            return self._apply_add_partition_spec(base)
        if self.type == TransactionOperationType.REPLACE_MANIFESTS:
            return self._apply_replace_manifests(base)
        raise ValueError(f"Unsupported transaction operation type: {self.type}")

    def _apply_add_partition_spec(self, base: TableMetadata) -> TableMetadata:
        expected = self.base_last_partition_id
        if expected is not None and base.last_partition_id != expected:
            raise CommitFailedError(
                f"Cannot commit partition spec {self.partition_spec.spec_id}: "
                f"the table's last partition ID changed from {expected} to "
                f"{base.last_partition_id} after the spec was built."
            )
        return base.with_partition_spec(self.partition_spec, self.set_default)

    def _apply_replace_manifests(self, base: TableMetadata) -> TableMetadata:
        current_snapshot = base.current_snapshot
        current_manifests = list(current_snapshot.manifests) if current_snapshot else []
        positions = {m.path: i for i, m in enumerate(current_manifests)}

        # every manifest to remove must still be present and unchanged
        stale_manifests = []
        for replacement in self.replacements:
            for removed in replacement.removed:
                position = positions.get(removed.path)
                if position is None or not current_manifests[position].equivalent_to(
                    removed
                ):
                    stale_manifests.append(removed.path)
        if stale_manifests:
            raise CommitFailedError(
                f"Cannot commit snapshot {self.snapshot_id}: manifests were "
                f"removed or changed by a concurrent commit: {stale_manifests}",
                stale_manifests=stale_manifests,
            )

        sequence_number = base.next_sequence_number()
        prepended: List[ManifestFile] = []
        inserted: Dict[int, List[ManifestFile]] = {}
        removed_paths = set()
        added_count = 0
        for replacement in self.replacements:
            added = [
                manifest.with_snapshot_info(sequence_number, self.snapshot_id)
                for manifest in replacement.added
            ]
            added_count += len(added)
            if not replacement.removed:
                prepended.extend(added)
                continue
            removed_paths.update(m.path for m in replacement.removed)
            first_position = min(positions[m.path] for m in replacement.removed)
            inserted.setdefault(first_position, []).extend(added)

        manifests = list(prepended)
        for position, manifest in enumerate(current_manifests):
            manifests.extend(inserted.get(position, []))
            if manifest.path not in removed_paths:
                manifests.append(manifest)

        summary = dict(self.summary)
        summary.update(_snapshot_totals(manifests))
        summary[MANIFESTS_KEPT] = str(len(manifests) - added_count)
        snapshot = Snapshot.of(
            snapshot_id=self.snapshot_id,
            parent_snapshot_id=base.current_snapshot_id,
            sequence_number=sequence_number,
            timestamp_ms=current_time_ms(),
            operation=self.snapshot_operation,
            manifests=manifests,
            summary=summary,
            schema_id=base.current_schema_id,
        )
        return base.with_snapshot(snapshot)


class TransactionOperationList(List[TransactionOperation]):
    @staticmethod
    def of(items: List[TransactionOperation]) -> TransactionOperationList:
        typed_items = TransactionOperationList()
        for item in items:
            if item is not None and not isinstance(item, TransactionOperation):
                item = TransactionOperation(item)
            typed_items.append(item)
        return typed_items

    def __getitem__(self, item):
        val = super().__getitem__(item)
        if val is not None and not isinstance(val, TransactionOperation):
            self[item] = val = TransactionOperation(val)
        return val


class Transaction(dict):
    """
    An atomic change to a single table's metadata, committed through a
    metadata store's compare-and-swap with bounded optimistic retry.
    """

    @staticmethod
    def of(
        txn_type: TransactionType,
        txn_operations: Optional[TransactionOperationList],
    ) -> Transaction:
        txn_type = TransactionType(txn_type)
        txn_operations = TransactionOperationList.of(txn_operations or [])
        if not txn_operations:
            raise ValueError("Transactions must have at least one operation.")
        allowed = _ALLOWED_OPERATION_TYPES[txn_type]
        for operation in txn_operations:
            if operation.type not in allowed:
                raise ValueError(
                    f"{operation.type.value} operations cannot be specified as "
                    f"part of a {txn_type.value} transaction."
                )
        replace_ops = [
            op
            for op in txn_operations
            if op.type == TransactionOperationType.REPLACE_MANIFESTS
        ]
        if len(replace_ops) > 1:
            raise ValueError(
                "Transactions can produce at most one snapshot, but "
                f"{len(replace_ops)} manifest replacements were given."
            )
        for op in replace_ops:
            if op.snapshot_operation not in _SNAPSHOT_OPERATIONS[txn_type]:
                raise ValueError(
                    f"Snapshot operation `{op.snapshot_operation}` cannot be "
                    f"committed by a {txn_type.value} transaction."
                )
            if txn_type == TransactionType.APPEND and any(
                r.removed for r in op.replacements
            ):
                raise ValueError(
                    "APPEND transactions cannot remove manifests."
                )
        transaction = Transaction()
        transaction.type = txn_type
        transaction.operations = txn_operations
        return transaction

    @property
    def type(self) -> TransactionType:
        return TransactionType(self["type"])

    @type.setter
    def type(self, txn_type: TransactionType):
        self["type"] = txn_type

    @property
    def operations(self) -> TransactionOperationList:
        val: List[TransactionOperation] = self["operations"]
        if not isinstance(val, TransactionOperationList):
            self["operations"] = val = TransactionOperationList.of(val)
        return val

    @operations.setter
    def operations(self, operations: TransactionOperationList):
        self["operations"] = operations

    def build(self, base: TableMetadata) -> TableMetadata:
        """
        Applies every operation of this transaction to the base table
        metadata in order, returning the new table metadata.
        """
        table_metadata = base
        for operation in self.operations:
            table_metadata = operation.apply(table_metadata)
        return table_metadata

    def commit(self, store: MetadataStore) -> TableMetadata:
        """
        Commits this transaction to the table behind the given store, and
        returns the committed table metadata. Concurrent commits are retried
        using the table's commit retry properties.

        Raises:
            CommitFailedError: if retries were exhausted or the manifests
            replaced by this transaction were changed by a concurrent commit.
            CommitStateUnknownError: if the store could not report whether
            the commit succeeded. The table must be re-read to find out.
        """
        # guard against external modification and dirty state across retries
        txn = copy.copy(self)
        base, _ = store.read()
        if base is None:
            raise TableNotFoundError(f"No table metadata found in {store}.")
        retrying = Retrying(
            wait=wait_exponential(
                multiplier=base.commit_min_retry_wait_ms / MILLIS_PER_SEC,
                min=base.commit_min_retry_wait_ms / MILLIS_PER_SEC,
                max=base.commit_max_retry_wait_ms / MILLIS_PER_SEC,
            ),
            stop=stop_after_attempt(base.commit_num_retries + 1),
            retry=retry_if_exception_type(CommitConflictError),
        )
        try:
            return retrying(txn._commit_attempt, store)
        except RetryError as e:
            raise CommitFailedError(
                f"Failed to commit {txn.type.value} transaction after "
                f"{base.commit_num_retries} retries."
            ) from e.last_attempt.exception()

    def _commit_attempt(self, store: MetadataStore) -> TableMetadata:
        base, token = store.read()
        if base is None:
            raise TableNotFoundError(f"No table metadata found in {store}.")
        new_metadata = self.build(base)
        try:
            outcome = store.compare_and_swap(token, new_metadata)
        except CommitStateUnknownError:
            raise
        except Exception as e:
            raise CommitStateUnknownError(
                f"Failed to determine the outcome of the {self.type.value} "
                f"commit against version {token}."
            ) from e
        if outcome == CommitOutcome.SUCCESS:
            logger.info(
                f"Committed {self.type.value} transaction against version {token}."
            )
            return new_metadata
        if outcome == CommitOutcome.CONFLICT:
            logger.info(
                f"Commit of {self.type.value} transaction conflicted with a "
                f"concurrent commit against version {token}."
            )
            raise CommitConflictError(
                f"Table metadata version {token} is no longer current."
            )
        raise CommitStateUnknownError(
            f"Store reported an unknown outcome for the {self.type.value} "
            f"commit against version {token}."
        )


def _snapshot_totals(manifests: List[ManifestFile]) -> Dict[str, str]:
    data_manifests = [m for m in manifests if m.content == ManifestContent.DATA]
    delete_manifests = [m for m in manifests if m.content == ManifestContent.DELETES]
    return {
        "total-manifests": str(len(manifests)),
        "total-data-files": str(
            sum(m.added_files_count + m.existing_files_count for m in data_manifests)
        ),
        "total-delete-files": str(
            sum(m.added_files_count + m.existing_files_count for m in delete_manifests)
        ),
        "total-records": str(
            sum(m.added_rows_count + m.existing_rows_count for m in data_manifests)
        ),
    }
