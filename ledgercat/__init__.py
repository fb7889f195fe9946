import logging

import ledgercat.logs  # noqa: F401
from ledgercat.compute.rewriter import (
    RewriteManifests,
    RewriteManifestsResult,
)
from ledgercat.storage import (
    DataFile,
    FileSystemMetadataStore,
    InMemoryMetadataStore,
    ManifestFile,
    PartitionSpec,
    PartitionSpecUpdate,
    Schema,
    TableMetadata,
)
from ledgercat.storage.main.impl import (
    append_files,
    append_manifest,
    create_table,
    delete_files,
    list_live_files,
    load_table,
    rewrite_manifests,
    update_partition_spec,
    update_table_properties,
)

ledgercat.logs.configure_ledgercat_logger(logging.getLogger(__name__))

__version__ = "0.1.0"


__all__ = [
    "__version__",
    "append_files",
    "append_manifest",
    "create_table",
    "delete_files",
    "list_live_files",
    "load_table",
    "rewrite_manifests",
    "update_partition_spec",
    "update_table_properties",
    "DataFile",
    "FileSystemMetadataStore",
    "InMemoryMetadataStore",
    "ManifestFile",
    "PartitionSpec",
    "PartitionSpecUpdate",
    "RewriteManifests",
    "RewriteManifestsResult",
    "Schema",
    "TableMetadata",
]
