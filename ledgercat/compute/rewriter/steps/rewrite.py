import logging
import time

import ray

from ledgercat import logs
from ledgercat.compute.rewriter.model.rewrite_cluster_input import RewriteClusterInput
from ledgercat.compute.rewriter.model.rewrite_result import RewriteClusterResult
from ledgercat.exceptions import categorize_errors
from ledgercat.storage.manifest_io import (
    ManifestWriterFactory,
    RollingManifestWriter,
    read_manifest,
)
from ledgercat.storage.model.manifest import ManifestEntry
from ledgercat.storage.model.types import FileStatus
from ledgercat.utils.ray_utils.runtime import (
    get_current_ray_task_id,
    get_current_ray_worker_id,
)

logger = logs.configure_ledgercat_logger(logging.getLogger(__name__))


def _normalize(entry: ManifestEntry) -> ManifestEntry:
    # live files are never re-promoted to added by a rewrite
    if entry.status == FileStatus.ADDED:
        return entry.with_status(FileStatus.EXISTING)
    return entry


@categorize_errors
def rewrite_cluster(input: RewriteClusterInput) -> RewriteClusterResult:
    """
    Streams the entries of every manifest of a cluster into new manifests
    of the cluster's partition spec, rolling over to a new manifest whenever
    the current one would exceed the target size. Entries keep their
    snapshot IDs and sequence numbers. If any manifest fails to be read or
    written, every manifest written for the cluster is deleted.
    """
    cluster = input.cluster
    writer_factory = ManifestWriterFactory(
        location=input.output_location,
        spec=input.spec,
        format_version=input.format_version,
        snapshot_id=input.snapshot_id,
        content=cluster.content,
        filesystem=input.filesystem,
        commit_uuid=input.manifest_name_prefix,
    )
    writer = RollingManifestWriter(
        writer_factory=writer_factory,
        target_size_bytes=input.target_manifest_size_bytes,
        avg_entry_size_bytes=cluster.avg_entry_size_bytes,
    )
    entries_processed = 0
    cache_hits = 0
    try:
        for manifest_file in cluster.manifests:
            if input.cache is not None and manifest_file.path in input.cache:
                cache_hits += 1
            for entry in read_manifest(manifest_file, input.filesystem, input.cache):
                writer.write_entry(_normalize(entry))
                entries_processed += 1
        manifests = writer.close()
    except Exception:
        logger.error(
            f"Failed to rewrite cluster {cluster.cluster_index}. Deleting "
            f"{len(writer.paths)} partially written manifests."
        )
        writer.abort()
        raise
    logger.info(
        f"Rewrote {len(cluster.manifests)} manifests of cluster "
        f"{cluster.cluster_index} into {len(manifests)} manifests "
        f"({entries_processed} entries, {cache_hits} manifests read from cache)."
    )
    return RewriteClusterResult(
        cluster.cluster_index,
        manifests,
        entries_processed,
        cache_hits,
        time.time(),
    )


@ray.remote
def rewrite_cluster_task(input: RewriteClusterInput) -> RewriteClusterResult:
    task_id = get_current_ray_task_id()
    worker_id = get_current_ray_worker_id()
    logger.info(
        f"Starting rewrite task for cluster {input.cluster.cluster_index} "
        f"(task: {task_id}, worker: {worker_id})..."
    )
    result = rewrite_cluster(input)
    logger.info(f"Finished rewrite task for cluster {input.cluster.cluster_index}.")
    return result
