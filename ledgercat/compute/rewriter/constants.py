from ledgercat.utils.common import env_bool, env_integer

# Maximum number of cluster rewrite tasks in flight at once when running on
# a Ray cluster.
TASK_MAX_PARALLELISM = env_integer("LEDGERCAT_REWRITE_TASK_MAX_PARALLELISM", 1000)

# Whether to read selected manifests once before planning and rewrite them
# from the cached entries.
DEFAULT_USE_CACHING = env_bool("LEDGERCAT_REWRITE_USE_CACHING", False)

# Option names accepted by `RewriteManifests.option`, mapped to the
# parameter they set.
TARGET_SIZE_BYTES_OPTION = "target-size-bytes"
USE_CACHING_OPTION = "use-caching"
MAX_PARALLELISM_OPTION = "max-parallelism"
STAGING_LOCATION_OPTION = "staging-location"

OPTION_TO_PARAM_NAME = {
    TARGET_SIZE_BYTES_OPTION: "target_manifest_size_bytes",
    USE_CACHING_OPTION: "use_caching",
    MAX_PARALLELISM_OPTION: "max_parallelism",
    STAGING_LOCATION_OPTION: "staging_location",
}

# Snapshot summary keys written by a manifest rewrite.
MANIFESTS_CREATED = "manifests-created"
MANIFESTS_REPLACED = "manifests-replaced"
ENTRIES_PROCESSED = "entries-processed"
