from __future__ import annotations


from ledgercat.utils.common import env_string

# Environment variables
LEDGERCAT_SYS_LOG_LEVEL = env_string("LEDGERCAT_SYS_LOG_LEVEL", "DEBUG")
LEDGERCAT_SYS_LOG_DIR = env_string(
    "LEDGERCAT_SYS_LOG_DIR",
    "/tmp/ledgercat/var/output/logs/",
)
LEDGERCAT_SYS_INFO_LOG_BASE_FILE_NAME = env_string(
    "LEDGERCAT_SYS_INFO_LOG_BASE_FILE_NAME",
    "ledgercat-python.info.log",
)
LEDGERCAT_SYS_DEBUG_LOG_BASE_FILE_NAME = env_string(
    "LEDGERCAT_SYS_DEBUG_LOG_BASE_FILE_NAME",
    "ledgercat-python.debug.log",
)

# A json context which will be logged along with other context args.
LEDGERCAT_LOGGER_CONTEXT = env_string("LEDGERCAT_LOGGER_CONTEXT", None)

# Byte Units
BYTES_PER_MEBIBYTE = 2**20

# Time Units
MILLIS_PER_SEC = 1000

# Metastore Constants
METADATA_DIR_NAME: str = "metadata"
REVISION_DIR_NAME: str = "rev"
METAFILE_EXT: str = ".mpk"
MANIFEST_FILE_SUFFIX: str = "-m{}.mpk"
# zero-padded width of metadata revision file names
REVISION_NUMBER_WIDTH: int = 20

# Format versions
FORMAT_VERSION_1 = 1
FORMAT_VERSION_2 = 2
SUPPORTED_FORMAT_VERSIONS = [FORMAT_VERSION_1, FORMAT_VERSION_2]
DEFAULT_FORMAT_VERSION = FORMAT_VERSION_2

# Sequence number assigned to every snapshot and entry of a v1 table
INITIAL_SEQUENCE_NUMBER = 0

# Partition spec defaults
INITIAL_SPEC_ID = 0
# First partition field ID assigned to a table
PARTITION_DATA_ID_START = 1000
# Sentinel source ID for multi-source partition fields
MULTI_SOURCE_ID = -1

# Snapshot summary key of the manifests a replace commit carries over
# unchanged from the previous snapshot
MANIFESTS_KEPT = "manifests-kept"

# Table property defaults
DEFAULT_TARGET_MANIFEST_SIZE_BYTES = 8 * BYTES_PER_MEBIBYTE
DEFAULT_SNAPSHOT_ID_INHERITANCE_ENABLED = False
DEFAULT_COMMIT_NUM_RETRIES = 4
DEFAULT_COMMIT_MIN_RETRY_WAIT_MS = 100
DEFAULT_COMMIT_MAX_RETRY_WAIT_MS = 60 * MILLIS_PER_SEC
