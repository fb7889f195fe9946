import logging
import uuid
from typing import Callable, Dict, Iterable, List, Optional, Set, Union

import pyarrow as pa

from ledgercat import logs
from ledgercat.compute.rewriter.rewrite_session import RewriteManifests
from ledgercat.exceptions import (
    CommitStateUnknownError,
    TableAlreadyExistsError,
    TableNotFoundError,
)
from ledgercat.storage.manifest_io import (
    ManifestWriter,
    copy_manifest,
    delete_files as delete_manifest_files,
    new_manifest_path,
    read_manifest,
)
from ledgercat.storage.metastore import MetadataStore
from ledgercat.storage.model.manifest import DataFile, ManifestEntry, ManifestFile
from ledgercat.storage.model.partition import (
    PartitionSpec,
    PartitionSpecBuilder,
    PartitionSpecUpdate,
)
from ledgercat.storage.model.schema import Schema
from ledgercat.storage.model.table_metadata import TableMetadata
from ledgercat.storage.model.transaction import (
    ManifestReplacement,
    Transaction,
    TransactionOperation,
)
from ledgercat.storage.model.types import (
    CommitOutcome,
    FileContent,
    ManifestContent,
    SnapshotOperation,
    TransactionType,
)
from ledgercat.utils.common import new_snapshot_id

logger = logs.configure_ledgercat_logger(logging.getLogger(__name__))


def create_table(
    store: MetadataStore,
    schema: Union[Schema, pa.Schema],
    partition_spec: Optional[
        Union[PartitionSpec, Callable[[PartitionSpecBuilder], None]]
    ] = None,
    properties: Optional[Dict[str, str]] = None,
    location: Optional[str] = None,
) -> TableMetadata:
    """
    Creates a new table with no snapshots behind the given metadata store.
    The partition spec may be given directly or as a callable that adds
    fields to a builder for the table's schema. The table's format version
    is read from the "format-version" property. Returns the created table's
    metadata.
    """
    if not isinstance(schema, Schema):
        schema = Schema.of(schema)
    location = location or store.location
    if not location:
        raise ValueError(f"No table location given for {store}.")
    if callable(partition_spec):
        builder = PartitionSpec.builder_for(schema)
        partition_spec(builder)
        partition_spec = builder.build()
    existing, _ = store.read()
    if existing is not None:
        raise TableAlreadyExistsError(f"Table already exists in {store}.")
    table_metadata = TableMetadata.of(
        location=location,
        schema=schema,
        partition_spec=partition_spec,
        properties=properties,
    )
    outcome = store.compare_and_swap(None, table_metadata)
    if outcome == CommitOutcome.CONFLICT:
        raise TableAlreadyExistsError(f"Table already exists in {store}.")
    if outcome != CommitOutcome.SUCCESS:
        raise CommitStateUnknownError(
            f"Failed to determine whether the table in {store} was created."
        )
    logger.info(
        f"Created format version {table_metadata.format_version} table at "
        f"{table_metadata.location} with spec {table_metadata.default_spec}."
    )
    return table_metadata


def load_table(store: MetadataStore) -> TableMetadata:
    """
    Returns the current metadata of the table behind the given store.
    """
    table_metadata, _ = store.read()
    if table_metadata is None:
        raise TableNotFoundError(f"No table found in {store}.")
    return table_metadata


def append_files(
    store: MetadataStore,
    data_files: List[DataFile],
    spec_id: Optional[int] = None,
) -> TableMetadata:
    """
    Appends new data and delete files to the table in a single snapshot.
    The files are written to new manifests placed at the head of the
    manifest list. Every file must have been written with the given
    partition spec, or the table's default spec if none is given.
    """
    if not data_files:
        raise ValueError("At least one file is required to append.")
    table_metadata = load_table(store)
    spec = (
        table_metadata.spec(spec_id)
        if spec_id is not None
        else table_metadata.default_spec
    )
    snapshot_id = new_snapshot_id()
    commit_uuid = str(uuid.uuid4())
    files_by_content = {
        ManifestContent.DATA: [
            f for f in data_files if f.content == FileContent.DATA
        ],
        ManifestContent.DELETES: [
            f for f in data_files if f.content != FileContent.DATA
        ],
    }
    manifests: List[ManifestFile] = []
    for content, files in files_by_content.items():
        if not files:
            continue
        writer = ManifestWriter(
            path=new_manifest_path(
                table_metadata.metadata_location,
                commit_uuid,
                len(manifests),
            ),
            spec=spec,
            format_version=table_metadata.format_version,
            snapshot_id=snapshot_id,
            content=content,
            filesystem=store.filesystem,
        )
        try:
            with writer:
                for data_file in files:
                    writer.add(data_file)
        except Exception:
            _delete_written_manifests(store, manifests)
            raise
        manifests.append(writer.to_manifest_file())

    data_count = len(files_by_content[ManifestContent.DATA])
    summary = {
        "added-data-files": str(data_count),
        "added-delete-files": str(len(data_files) - data_count),
        "added-records": str(
            sum(f.record_count for f in files_by_content[ManifestContent.DATA])
        ),
    }
    transaction = Transaction.of(
        txn_type=TransactionType.APPEND,
        txn_operations=[
            TransactionOperation.replace_manifests(
                replacements=[ManifestReplacement.of(added=manifests)],
                snapshot_operation=SnapshotOperation.APPEND,
                snapshot_id=snapshot_id,
                summary=summary,
            )
        ],
    )
    return _commit(store, transaction, manifests)


def append_manifest(
    store: MetadataStore,
    manifest_file: ManifestFile,
) -> TableMetadata:
    """
    Appends a manifest of added files written outside of this table's
    commit path. If the table cannot inherit snapshot IDs, the manifest is
    copied into the table's metadata location with the new snapshot's ID
    written into every entry. Otherwise, the manifest is committed as is and
    its entries inherit the ID of the snapshot that commits it.
    """
    if manifest_file.has_existing_files or manifest_file.has_deleted_files:
        raise ValueError(
            f"Cannot append manifest {manifest_file.path} with existing or "
            f"deleted files."
        )
    if manifest_file.added_snapshot_id is not None:
        raise ValueError(
            f"Cannot append manifest {manifest_file.path} already added by "
            f"snapshot {manifest_file.added_snapshot_id}."
        )
    table_metadata = load_table(store)
    specs_by_id = table_metadata.specs_by_id
    if manifest_file.spec_id not in specs_by_id:
        raise ValueError(
            f"Cannot append manifest {manifest_file.path} with unknown "
            f"partition spec {manifest_file.spec_id}."
        )
    snapshot_id = new_snapshot_id()
    written: List[ManifestFile] = []
    if table_metadata.staging_required:
        output_path = new_manifest_path(
            table_metadata.metadata_location,
            str(uuid.uuid4()),
            0,
        )
        logger.info(
            f"Copying manifest {manifest_file.path} to {output_path} to assign "
            f"snapshot ID {snapshot_id}."
        )
        manifest_file = copy_manifest(
            manifest_file,
            output_path=output_path,
            spec=specs_by_id[manifest_file.spec_id],
            format_version=table_metadata.format_version,
            snapshot_id=snapshot_id,
            filesystem=store.filesystem,
        )
        written.append(manifest_file)
    summary = {
        "added-manifests": "1",
        "added-data-files": str(manifest_file.added_files_count),
        "added-records": str(manifest_file.added_rows_count),
    }
    transaction = Transaction.of(
        txn_type=TransactionType.APPEND,
        txn_operations=[
            TransactionOperation.replace_manifests(
                replacements=[ManifestReplacement.of(added=[manifest_file])],
                snapshot_operation=SnapshotOperation.APPEND,
                snapshot_id=snapshot_id,
                summary=summary,
            )
        ],
    )
    return _commit(store, transaction, written)


def delete_files(
    store: MetadataStore,
    file_paths: Iterable[str],
) -> TableMetadata:
    """
    Deletes the given data files from the table. Every manifest holding one
    of the files is rewritten with the file marked as deleted. Raises
    ValueError if any of the files is not live in the current snapshot.
    """
    to_delete: Set[str] = set(file_paths)
    if not to_delete:
        raise ValueError("At least one file path is required to delete.")
    table_metadata = load_table(store)
    snapshot = table_metadata.current_snapshot
    manifests = snapshot.manifests if snapshot else []

    affected = []
    found: Set[str] = set()
    for manifest_file in manifests:
        entries = read_manifest(manifest_file, store.filesystem)
        matches = {
            entry.data_file.file_path
            for entry in entries
            if entry.is_live and entry.data_file.file_path in to_delete
        }
        if matches:
            found.update(matches)
            affected.append((manifest_file, entries))
    missing = to_delete - found
    if missing:
        raise ValueError(f"Cannot delete files that are not live: {sorted(missing)}")

    snapshot_id = new_snapshot_id()
    commit_uuid = str(uuid.uuid4())
    specs_by_id = table_metadata.specs_by_id
    replacements = []
    written: List[ManifestFile] = []
    deleted_records = 0
    for manifest_file, entries in affected:
        writer = ManifestWriter(
            path=new_manifest_path(
                table_metadata.metadata_location,
                commit_uuid,
                len(written),
            ),
            spec=specs_by_id[manifest_file.spec_id],
            format_version=table_metadata.format_version,
            snapshot_id=snapshot_id,
            content=manifest_file.content,
            filesystem=store.filesystem,
        )
        try:
            with writer:
                for entry in entries:
                    # deletes recorded by earlier snapshots are not carried over
                    if not entry.is_live:
                        continue
                    if entry.data_file.file_path in to_delete:
                        writer.delete(entry)
                        deleted_records += entry.data_file.record_count
                    else:
                        writer.existing(entry)
        except Exception:
            _delete_written_manifests(store, written)
            raise
        new_manifest = writer.to_manifest_file()
        written.append(new_manifest)
        replacements.append(
            ManifestReplacement.of(removed=[manifest_file], added=[new_manifest])
        )

    transaction = Transaction.of(
        txn_type=TransactionType.DELETE,
        txn_operations=[
            TransactionOperation.replace_manifests(
                replacements=replacements,
                snapshot_operation=SnapshotOperation.DELETE,
                snapshot_id=snapshot_id,
                summary={
                    "deleted-data-files": str(len(to_delete)),
                    "deleted-records": str(deleted_records),
                },
            )
        ],
    )
    return _commit(store, transaction, written)


def update_table_properties(
    store: MetadataStore,
    updates: Optional[Dict[str, str]] = None,
    removals: Optional[Iterable[str]] = None,
) -> TableMetadata:
    transaction = Transaction.of(
        txn_type=TransactionType.ALTER,
        txn_operations=[
            TransactionOperation.update_properties(updates, removals),
        ],
    )
    return transaction.commit(store)


def update_partition_spec(
    store: MetadataStore,
    spec_update: PartitionSpecUpdate,
) -> TableMetadata:
    """
    Commits the partition spec produced by the given update and makes it the
    table's default spec. Fails if another spec was committed after the
    update was created.
    """
    new_spec = spec_update.apply()
    transaction = Transaction.of(
        txn_type=TransactionType.ALTER,
        txn_operations=[
            TransactionOperation.add_partition_spec(
                new_spec,
                base_last_partition_id=spec_update.base_last_partition_id,
                set_default=True,
            ),
        ],
    )
    table_metadata = transaction.commit(store)
    logger.info(f"Committed partition spec {new_spec.spec_id}: {new_spec}")
    return table_metadata


def list_live_files(
    store: MetadataStore,
    snapshot_id: Optional[int] = None,
) -> List[ManifestEntry]:
    """
    Returns the manifest entries of every live file of the current snapshot,
    or of the given snapshot.
    """
    table_metadata = load_table(store)
    if snapshot_id is None:
        snapshot = table_metadata.current_snapshot
    else:
        snapshot = table_metadata.snapshot(snapshot_id)
        if snapshot is None:
            raise ValueError(f"Snapshot {snapshot_id} not found.")
    if snapshot is None:
        return []
    return [
        entry
        for manifest_file in snapshot.manifests
        for entry in read_manifest(manifest_file, store.filesystem)
        if entry.is_live
    ]


def rewrite_manifests(store: MetadataStore) -> RewriteManifests:
    """
    Returns an action that rewrites the manifests of the table's current
    snapshot to reach the table's target manifest size.
    """
    return RewriteManifests(store)


def _commit(
    store: MetadataStore,
    transaction: Transaction,
    written: List[ManifestFile],
) -> TableMetadata:
    try:
        return transaction.commit(store)
    except CommitStateUnknownError:
        logger.warning(
            f"Commit outcome unknown. Keeping {len(written)} written manifests."
        )
        raise
    except Exception:
        _delete_written_manifests(store, written)
        raise


def _delete_written_manifests(
    store: MetadataStore,
    written: List[ManifestFile],
) -> None:
    if written:
        logger.info(f"Deleting {len(written)} uncommitted manifests.")
        delete_manifest_files([m.path for m in written], store.filesystem)
