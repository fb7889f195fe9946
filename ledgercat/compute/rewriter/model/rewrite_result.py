from __future__ import annotations

from typing import List, NamedTuple

from ledgercat.storage.model.manifest import ManifestFile, ManifestFileList


class RewriteClusterResult(NamedTuple):
    cluster_index: int
    manifests: List[ManifestFile]
    entries_processed: int
    cache_hits: int
    task_completed_at: float


class RewriteManifestsResult(dict):
    """
    The manifests replaced by a manifest rewrite and the committed manifests
    that replaced them.
    """

    @staticmethod
    def of(
        rewritten_manifests: List[ManifestFile],
        added_manifests: List[ManifestFile],
    ) -> RewriteManifestsResult:
        result = RewriteManifestsResult()
        result["rewritten_manifests"] = ManifestFileList.of(rewritten_manifests)
        result["added_manifests"] = ManifestFileList.of(added_manifests)
        return result

    @staticmethod
    def empty() -> RewriteManifestsResult:
        return RewriteManifestsResult.of([], [])

    @property
    def rewritten_manifests(self) -> ManifestFileList:
        return self["rewritten_manifests"]

    @property
    def added_manifests(self) -> ManifestFileList:
        return self["added_manifests"]
