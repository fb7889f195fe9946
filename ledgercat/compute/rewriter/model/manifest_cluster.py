from __future__ import annotations

from typing import List

from ledgercat.storage.model.manifest import ManifestFile, ManifestFileList
from ledgercat.storage.model.types import ManifestContent


class ManifestCluster(dict):
    """
    A group of manifests sharing one partition spec and content type whose
    entries are rewritten together into new manifests.
    """

    @staticmethod
    def of(
        cluster_index: int,
        spec_id: int,
        content: ManifestContent,
        manifests: List[ManifestFile],
        avg_entry_size_bytes: float,
    ) -> ManifestCluster:
        result = ManifestCluster()
        result["cluster_index"] = cluster_index
        result["spec_id"] = spec_id
        result["content"] = content
        result["manifests"] = ManifestFileList.of(manifests)
        result["avg_entry_size_bytes"] = avg_entry_size_bytes
        return result

    @property
    def cluster_index(self) -> int:
        return self["cluster_index"]

    @property
    def spec_id(self) -> int:
        return self["spec_id"]

    @property
    def content(self) -> ManifestContent:
        return self["content"]

    @property
    def manifests(self) -> ManifestFileList:
        return self["manifests"]

    @property
    def avg_entry_size_bytes(self) -> float:
        return self["avg_entry_size_bytes"]

    @property
    def entry_count(self) -> int:
        return sum(m.entry_count for m in self.manifests)

    @property
    def length(self) -> int:
        return sum(m.length for m in self.manifests)
