from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

import ray

from ledgercat import logs
from ledgercat.compute.rewriter.constants import (
    ENTRIES_PROCESSED,
    MANIFESTS_CREATED,
    MANIFESTS_REPLACED,
    OPTION_TO_PARAM_NAME,
)
from ledgercat.compute.rewriter.model.rewrite_cluster_input import RewriteClusterInput
from ledgercat.compute.rewriter.model.rewrite_manifests_params import (
    RewriteManifestsParams,
)
from ledgercat.compute.rewriter.model.rewrite_result import (
    RewriteClusterResult,
    RewriteManifestsResult,
)
from ledgercat.compute.rewriter.steps.plan import plan_clusters
from ledgercat.compute.rewriter.steps.rewrite import (
    rewrite_cluster,
    rewrite_cluster_task,
)
from ledgercat.exceptions import (
    CommitStateUnknownError,
    TableNotFoundError,
    categorize_errors,
)
from ledgercat.storage.manifest_io import (
    ManifestEntryCache,
    delete_files,
    read_manifest,
)
from ledgercat.storage.metastore import MetadataStore
from ledgercat.storage.model.manifest import ManifestFile
from ledgercat.storage.model.transaction import (
    ManifestReplacement,
    Transaction,
    TransactionOperation,
)
from ledgercat.storage.model.types import (
    ManifestContent,
    SnapshotOperation,
    TransactionType,
)
from ledgercat.utils.common import new_snapshot_id
from ledgercat.utils.ray_utils.concurrency import invoke_parallel
from ledgercat.utils.ray_utils.runtime import cluster_cpus, log_cluster_resources

logger = logs.configure_ledgercat_logger(logging.getLogger(__name__))


def _is_data_manifest(manifest_file: ManifestFile) -> bool:
    return manifest_file.content == ManifestContent.DATA


class RewriteManifests:
    """
    Rewrites the manifests of a table's current snapshot so that each
    manifest is close to the target manifest size, committing the result as
    a single `replace` snapshot. The set of live and deleted files tracked by
    the table is unchanged, as are the snapshot IDs and sequence numbers of
    every file.

    Clusters of manifests are rewritten as Ray tasks if Ray is initialized,
    or one after another in the current process otherwise.
    """

    def __init__(self, store: MetadataStore):
        self._store = store
        self._predicate: Optional[Callable[[ManifestFile], bool]] = None
        self._params = RewriteManifestsParams.of({})

    def rewrite_if(self, predicate: Callable[[ManifestFile], bool]) -> RewriteManifests:
        """
        Only rewrites manifests of the current snapshot for which the given
        predicate returns True. By default, every data manifest is selected.
        """
        self._predicate = predicate
        return self

    select = rewrite_if

    def option(self, key: str, value: Any) -> RewriteManifests:
        param_name = OPTION_TO_PARAM_NAME.get(key, key)
        if param_name not in OPTION_TO_PARAM_NAME.values():
            raise ValueError(
                f"Unknown rewrite option `{key}`. Expected one of "
                f"{sorted(OPTION_TO_PARAM_NAME)}."
            )
        setattr(self._params, param_name, value)
        return self

    def options(self, options: Dict[str, Any]) -> RewriteManifests:
        for key, value in options.items():
            self.option(key, value)
        return self

    def staging_location(self, location: str) -> RewriteManifests:
        """
        Writes new manifests to the given location if the table requires new
        manifests to be staged before their snapshot ID is assigned at commit
        time. Also rewrites right-sized manifests that would otherwise be
        kept as is.
        """
        self._params.staging_location = location
        return self

    @property
    def params(self) -> RewriteManifestsParams:
        return self._params

    @categorize_errors
    def execute(self) -> RewriteManifestsResult:
        start = time.monotonic()
        params = self._params
        table_metadata, _ = self._store.read()
        if table_metadata is None:
            raise TableNotFoundError(f"No table found in {self._store}.")
        snapshot = table_metadata.current_snapshot
        if snapshot is None:
            logger.info(f"No snapshot to rewrite in {self._store}.")
            return RewriteManifestsResult.empty()

        predicate = self._predicate or _is_data_manifest
        selected = [m for m in snapshot.manifests if predicate(m)]
        if not selected:
            logger.info(
                f"No manifests of snapshot {snapshot.snapshot_id} selected "
                f"for rewrite."
            )
            return RewriteManifestsResult.empty()

        target_size_bytes = (
            params.target_manifest_size_bytes
            or table_metadata.target_manifest_size_bytes
        )
        cache = None
        entry_counts = None
        if params.use_caching:
            cache = self._read_into_cache(selected)
            entry_counts = cache.entry_counts()
        clusters = plan_clusters(
            selected,
            target_size_bytes,
            rewrite_single_manifests=params.staging_location is not None,
            entry_counts=entry_counts,
        )
        if not clusters:
            logger.info("All selected manifests are already right-sized.")
            return RewriteManifestsResult.empty()

        staged = (
            table_metadata.staging_required and params.staging_location is not None
        )
        output_location = (
            params.staging_location if staged else table_metadata.metadata_location
        )
        snapshot_id = new_snapshot_id()
        run_id = str(uuid.uuid4())
        specs_by_id = table_metadata.specs_by_id
        cluster_inputs = [
            RewriteClusterInput.of(
                cluster=cluster,
                spec=specs_by_id[cluster.spec_id],
                format_version=table_metadata.format_version,
                output_location=output_location,
                run_id=run_id,
                target_manifest_size_bytes=target_size_bytes,
                snapshot_id=None if staged else snapshot_id,
                filesystem=self._store.filesystem,
                cache=(
                    cache.subset(m.path for m in cluster.manifests)
                    if cache is not None
                    else None
                ),
            )
            for cluster in clusters
        ]
        logger.info(
            f"Rewriting {len(clusters)} clusters of snapshot "
            f"{snapshot.snapshot_id} to {output_location}..."
        )
        if ray.is_initialized():
            results = self._rewrite_distributed(cluster_inputs, params.max_parallelism)
        else:
            results = self._rewrite_local(cluster_inputs)

        replacements = []
        rewritten: List[ManifestFile] = []
        added: List[ManifestFile] = []
        for cluster, result in zip(clusters, results):
            replacements.append(
                ManifestReplacement.of(
                    removed=cluster.manifests,
                    added=result.manifests,
                )
            )
            rewritten.extend(cluster.manifests)
            added.extend(result.manifests)
        if cache is not None:
            logger.info(
                f"Read {sum(r.cache_hits for r in results)} of "
                f"{sum(len(c.manifests) for c in clusters)} rewritten manifests "
                f"from the manifest entry cache."
            )
        summary = {
            MANIFESTS_CREATED: str(len(added)),
            MANIFESTS_REPLACED: str(len(rewritten)),
            ENTRIES_PROCESSED: str(sum(r.entries_processed for r in results)),
        }
        transaction = Transaction.of(
            txn_type=TransactionType.RESTATE,
            txn_operations=[
                TransactionOperation.replace_manifests(
                    replacements=replacements,
                    snapshot_operation=SnapshotOperation.REPLACE,
                    snapshot_id=snapshot_id,
                    summary=summary,
                )
            ],
        )
        try:
            committed = transaction.commit(self._store)
        except CommitStateUnknownError:
            logger.warning(
                f"Outcome of the commit of snapshot {snapshot_id} is unknown. "
                f"Keeping its {len(added)} new manifests."
            )
            raise
        except Exception:
            logger.error(
                f"Failed to commit snapshot {snapshot_id}. Deleting its "
                f"{len(added)} new manifests."
            )
            delete_files([m.path for m in added], self._store.filesystem)
            raise

        committed_snapshot = committed.current_snapshot
        logger.info(
            f"Committed snapshot {snapshot_id} replacing {len(rewritten)} "
            f"manifests with {len(added)} manifests in "
            f"{time.monotonic() - start:.3f}s."
        )
        return RewriteManifestsResult.of(
            rewritten_manifests=rewritten,
            added_manifests=[committed_snapshot.manifest(m.path) for m in added],
        )

    def _rewrite_local(
        self,
        cluster_inputs: List[RewriteClusterInput],
    ) -> List[RewriteClusterResult]:
        results: List[RewriteClusterResult] = []
        try:
            for cluster_input in cluster_inputs:
                results.append(rewrite_cluster(cluster_input))
        except Exception:
            self._delete_results(results)
            raise
        return results

    def _rewrite_distributed(
        self,
        cluster_inputs: List[RewriteClusterInput],
        max_parallelism: int,
    ) -> List[RewriteClusterResult]:
        log_cluster_resources()
        logger.info(
            f"Submitting {len(cluster_inputs)} rewrite tasks to a Ray cluster "
            f"with {cluster_cpus()} CPUs..."
        )
        pending = invoke_parallel(
            items=cluster_inputs,
            ray_task=rewrite_cluster_task,
            max_parallelism=max_parallelism,
            kwargs_provider=lambda index, item: {"input": item},
        )
        # all tasks must finish before any of their output can be cleaned up
        ray.wait(pending, num_returns=len(pending), fetch_local=False)
        results: List[RewriteClusterResult] = []
        errors: List[Exception] = []
        for ref in pending:
            try:
                results.append(ray.get(ref))
            except Exception as e:
                errors.append(e)
        if errors:
            logger.error(f"{len(errors)} of {len(pending)} rewrite tasks failed.")
            self._delete_results(results)
            raise errors[0]
        logger.info(f"Got {len(results)} rewrite results.")
        return sorted(results, key=lambda r: r.cluster_index)

    def _read_into_cache(self, manifests: List[ManifestFile]) -> ManifestEntryCache:
        cache = ManifestEntryCache()
        for manifest_file in manifests:
            read_manifest(manifest_file, self._store.filesystem, cache)
        logger.info(f"Cached the entries of {len(cache)} selected manifests.")
        return cache

    def _delete_results(self, results: List[RewriteClusterResult]) -> None:
        paths = [m.path for result in results for m in result.manifests]
        if paths:
            logger.info(f"Deleting {len(paths)} manifests of completed clusters.")
            delete_files(paths, self._store.filesystem)
