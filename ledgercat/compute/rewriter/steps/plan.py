import logging
from typing import Dict, List, Optional, Tuple

from ledgercat import logs
from ledgercat.compute.rewriter.model.manifest_cluster import ManifestCluster
from ledgercat.storage.model.manifest import ManifestFile
from ledgercat.storage.model.types import ManifestContent

logger = logs.configure_ledgercat_logger(logging.getLogger(__name__))


def group_manifests(
    manifests: List[ManifestFile],
) -> Dict[Tuple[int, ManifestContent], List[ManifestFile]]:
    """
    Groups manifests by partition spec ID and content, keeping the manifest
    list order within each group. Entries of different groups can never be
    written to the same manifest.
    """
    groups: Dict[Tuple[int, ManifestContent], List[ManifestFile]] = {}
    for manifest_file in manifests:
        key = (manifest_file.spec_id, manifest_file.content)
        groups.setdefault(key, []).append(manifest_file)
    return groups


def _entry_count(
    manifest_file: ManifestFile,
    entry_counts: Optional[Dict[str, int]],
) -> int:
    if entry_counts is not None and manifest_file.path in entry_counts:
        return entry_counts[manifest_file.path]
    return manifest_file.entry_count


def average_entry_size(
    manifests: List[ManifestFile],
    entry_counts: Optional[Dict[str, int]] = None,
) -> float:
    total_length = sum(m.length for m in manifests)
    total_entries = sum(_entry_count(m, entry_counts) for m in manifests)
    return total_length / max(total_entries, 1)


def plan_clusters(
    manifests: List[ManifestFile],
    target_size_bytes: int,
    rewrite_single_manifests: bool = False,
    entry_counts: Optional[Dict[str, int]] = None,
) -> List[ManifestCluster]:
    """
    Plans the clusters of manifests to rewrite together. Within each group
    of manifests with the same spec ID and content, manifests are greedily
    accumulated in manifest list order, starting a new cluster whenever the
    next manifest would push the cluster's estimated size past the target
    size. The estimated size of a cluster is its entry count times the
    group's average entry size.

    A cluster of exactly one manifest that is already within the target size
    is dropped, since rewriting it would neither reduce the manifest count
    nor split it, unless `rewrite_single_manifests` is True.

    Entry counts are taken from `entry_counts` where given, keyed by manifest
    path, and from the manifest file's counts otherwise.
    """
    clusters: List[ManifestCluster] = []
    for (spec_id, content), group in group_manifests(manifests).items():
        avg_entry_size_bytes = average_entry_size(group, entry_counts)
        current: List[ManifestFile] = []
        current_entries = 0
        group_clusters: List[List[ManifestFile]] = []
        for manifest_file in group:
            entry_count = _entry_count(manifest_file, entry_counts)
            next_entries = current_entries + entry_count
            if current and next_entries * avg_entry_size_bytes > target_size_bytes:
                group_clusters.append(current)
                current = []
                next_entries = entry_count
            current.append(manifest_file)
            current_entries = next_entries
        if current:
            group_clusters.append(current)

        for cluster_manifests in group_clusters:
            if (
                len(cluster_manifests) == 1
                and cluster_manifests[0].length <= target_size_bytes
                and not rewrite_single_manifests
            ):
                logger.debug(
                    f"Keeping right-sized manifest {cluster_manifests[0].path}."
                )
                continue
            clusters.append(
                ManifestCluster.of(
                    cluster_index=len(clusters),
                    spec_id=spec_id,
                    content=content,
                    manifests=cluster_manifests,
                    avg_entry_size_bytes=avg_entry_size_bytes,
                )
            )
    logger.info(
        f"Planned {len(clusters)} clusters covering "
        f"{sum(len(c.manifests) for c in clusters)} of {len(manifests)} "
        f"selected manifests with target size {target_size_bytes} bytes."
    )
    return clusters
