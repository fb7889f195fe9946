from __future__ import annotations

from enum import Enum


class FileContent(str, Enum):
    DATA = "data"
    POSITION_DELETES = "position_deletes"
    EQUALITY_DELETES = "equality_deletes"


class FileFormat(str, Enum):
    PARQUET = "parquet"
    ORC = "orc"
    AVRO = "avro"
    FEATHER = "feather"


class FileStatus(str, Enum):
    # the file was added by the snapshot that wrote the manifest
    ADDED = "added"
    # the file was added by an earlier snapshot and is still live
    EXISTING = "existing"
    # the file was removed by the snapshot that wrote the manifest
    DELETED = "deleted"


class ManifestContent(str, Enum):
    DATA = "data"
    DELETES = "deletes"


class SnapshotOperation(str, Enum):
    # only data files were added
    APPEND = "append"
    # files were rewritten without changing the table's data
    REPLACE = "replace"
    # data files were added and others were logically replaced
    OVERWRITE = "overwrite"
    # data files were removed and none were added
    DELETE = "delete"


class CommitOutcome(str, Enum):
    # the new metadata value was published
    SUCCESS = "success"
    # the version token was stale so nothing was published
    CONFLICT = "conflict"
    # it is not known whether the new metadata value was published
    UNKNOWN = "unknown"


class TransactionType(str, Enum):
    # the transaction only appends new files
    APPEND = "append"
    # the transaction alters table properties, schemas, or partition specs
    ALTER = "alter"
    # the transaction overwrites existing files
    OVERWRITE = "overwrite"
    # the transaction restates existing files with a new layout without
    # changing the table's data
    RESTATE = "restate"
    # the transaction deletes existing files
    DELETE = "delete"


class TransactionOperationType(str, Enum):
    UPDATE_PROPERTIES = "update_properties"
    ADD_SCHEMA = "add_schema"
    ADD_PARTITION_SPEC = "add_partition_spec"
    REPLACE_MANIFESTS = "replace_manifests"
