from __future__ import annotations

from typing import Optional

import pyarrow.fs

from ledgercat.compute.rewriter.model.manifest_cluster import ManifestCluster
from ledgercat.storage.manifest_io import ManifestEntryCache
from ledgercat.storage.model.partition import PartitionSpec


class RewriteClusterInput(dict):
    @staticmethod
    def of(
        cluster: ManifestCluster,
        spec: PartitionSpec,
        format_version: int,
        output_location: str,
        run_id: str,
        target_manifest_size_bytes: int,
        snapshot_id: Optional[int] = None,
        filesystem: Optional[pyarrow.fs.FileSystem] = None,
        cache: Optional[ManifestEntryCache] = None,
    ) -> RewriteClusterInput:

        result = RewriteClusterInput()
        result["cluster"] = cluster
        result["spec"] = spec
        result["format_version"] = format_version
        result["output_location"] = output_location
        result["run_id"] = run_id
        result["target_manifest_size_bytes"] = target_manifest_size_bytes
        result["snapshot_id"] = snapshot_id
        result["filesystem"] = filesystem
        result["cache"] = cache

        return result

    @property
    def cluster(self) -> ManifestCluster:
        return self["cluster"]

    @property
    def spec(self) -> PartitionSpec:
        return self["spec"]

    @property
    def format_version(self) -> int:
        return self["format_version"]

    @property
    def output_location(self) -> str:
        return self["output_location"]

    @property
    def run_id(self) -> str:
        return self["run_id"]

    @property
    def target_manifest_size_bytes(self) -> int:
        return self["target_manifest_size_bytes"]

    @property
    def snapshot_id(self) -> Optional[int]:
        """
        Snapshot ID written into each output manifest, or None if it is
        assigned when the rewrite is committed.
        """
        return self.get("snapshot_id")

    @property
    def filesystem(self) -> Optional[pyarrow.fs.FileSystem]:
        return self.get("filesystem")

    @property
    def cache(self) -> Optional[ManifestEntryCache]:
        return self.get("cache")

    @property
    def manifest_name_prefix(self) -> str:
        return f"{self.run_id}-c{self.cluster.cluster_index}"
