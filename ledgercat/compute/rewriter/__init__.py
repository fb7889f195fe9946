from ledgercat.compute.rewriter.model.rewrite_manifests_params import (
    RewriteManifestsParams,
)
from ledgercat.compute.rewriter.model.rewrite_result import RewriteManifestsResult
from ledgercat.compute.rewriter.rewrite_session import RewriteManifests

__all__ = [
    "RewriteManifests",
    "RewriteManifestsParams",
    "RewriteManifestsResult",
]
