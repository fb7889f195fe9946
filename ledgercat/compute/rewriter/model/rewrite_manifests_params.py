from __future__ import annotations

from typing import Any, Dict, Optional

from ledgercat.compute.rewriter.constants import (
    DEFAULT_USE_CACHING,
    TASK_MAX_PARALLELISM,
)
from ledgercat.utils.common import parse_bool


class RewriteManifestsParams(dict):
    """
    This class represents the options of a manifest rewrite
    (ledgercat/compute/rewriter/rewrite_session.py)
    """

    @staticmethod
    def of(params: Optional[Dict[str, Any]]) -> RewriteManifestsParams:
        params = {} if params is None else params
        result = RewriteManifestsParams()
        result.target_manifest_size_bytes = params.get("target_manifest_size_bytes")
        result.use_caching = params.get("use_caching", DEFAULT_USE_CACHING)
        result.staging_location = params.get("staging_location")
        result.max_parallelism = params.get("max_parallelism", TASK_MAX_PARALLELISM)
        return result

    @property
    def target_manifest_size_bytes(self) -> Optional[int]:
        """
        Target size of each rewritten manifest. Defaults to the table's
        "commit.manifest.target-size-bytes" property if None.
        """
        return self.get("target_manifest_size_bytes")

    @target_manifest_size_bytes.setter
    def target_manifest_size_bytes(self, target_size: Optional[Any]) -> None:
        if target_size is not None:
            target_size = int(target_size)
            if target_size <= 0:
                raise ValueError(
                    f"Target manifest size ({target_size}) must be > 0."
                )
        self["target_manifest_size_bytes"] = target_size

    @property
    def use_caching(self) -> bool:
        """
        If True, the entries of every selected manifest are read once before
        planning, clusters are planned from the actual entry counts, and each
        cluster is rewritten from the cached entries of its manifests.
        """
        return self["use_caching"]

    @use_caching.setter
    def use_caching(self, use_caching: Any) -> None:
        self["use_caching"] = parse_bool(use_caching)

    @property
    def staging_location(self) -> Optional[str]:
        return self.get("staging_location")

    @staging_location.setter
    def staging_location(self, staging_location: Optional[str]) -> None:
        self["staging_location"] = staging_location

    @property
    def max_parallelism(self) -> int:
        return self["max_parallelism"]

    @max_parallelism.setter
    def max_parallelism(self, max_parallelism: Any) -> None:
        max_parallelism = int(max_parallelism)
        if max_parallelism <= 0:
            raise ValueError(f"Max parallelism ({max_parallelism}) must be > 0.")
        self["max_parallelism"] = max_parallelism
