from ledgercat.storage.manifest_io import (
    ManifestEntryCache,
    ManifestWriter,
    ManifestWriterFactory,
    RollingManifestWriter,
    read_manifest,
)
from ledgercat.storage.metastore import (
    FileSystemMetadataStore,
    InMemoryMetadataStore,
    MetadataStore,
)
from ledgercat.storage.model.manifest import (
    DataFile,
    ManifestEntry,
    ManifestEntryList,
    ManifestFile,
    ManifestFileList,
    PartitionFieldSummary,
)
from ledgercat.storage.model.partition import (
    PartitionField,
    PartitionSpec,
    PartitionSpecBuilder,
    PartitionSpecUpdate,
    PartitionValues,
)
from ledgercat.storage.model.schema import Schema
from ledgercat.storage.model.snapshot import Snapshot
from ledgercat.storage.model.table_metadata import TableMetadata, TableProperty
from ledgercat.storage.model.transaction import (
    ManifestReplacement,
    Transaction,
    TransactionOperation,
)
from ledgercat.storage.model.transform import (
    BucketTransform,
    DayTransform,
    HourTransform,
    IdentityTransform,
    MonthTransform,
    Transform,
    TruncateTransform,
    VoidTransform,
    YearTransform,
)
from ledgercat.storage.model.types import (
    CommitOutcome,
    FileContent,
    FileFormat,
    FileStatus,
    ManifestContent,
    SnapshotOperation,
    TransactionOperationType,
    TransactionType,
)

__all__ = [
    "BucketTransform",
    "CommitOutcome",
    "DataFile",
    "DayTransform",
    "FileContent",
    "FileFormat",
    "FileStatus",
    "FileSystemMetadataStore",
    "HourTransform",
    "IdentityTransform",
    "InMemoryMetadataStore",
    "ManifestContent",
    "ManifestEntry",
    "ManifestEntryCache",
    "ManifestEntryList",
    "ManifestFile",
    "ManifestFileList",
    "ManifestReplacement",
    "ManifestWriter",
    "ManifestWriterFactory",
    "MetadataStore",
    "MonthTransform",
    "PartitionField",
    "PartitionFieldSummary",
    "PartitionSpec",
    "PartitionSpecBuilder",
    "PartitionSpecUpdate",
    "PartitionValues",
    "RollingManifestWriter",
    "Schema",
    "Snapshot",
    "SnapshotOperation",
    "TableMetadata",
    "TableProperty",
    "Transaction",
    "TransactionOperation",
    "TransactionOperationType",
    "TransactionType",
    "Transform",
    "TruncateTransform",
    "VoidTransform",
    "YearTransform",
    "read_manifest",
]
