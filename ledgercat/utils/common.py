import hashlib
import os
import time
import uuid


def env_bool(key: str, default: bool) -> bool:
    if key in os.environ:
        return os.environ[key].strip().lower() in ("1", "true", "yes", "on")
    return default


def env_integer(key: str, default: int) -> int:
    if key in os.environ:
        return int(os.environ[key])
    return default


def env_string(key: str, default: str) -> str:
    if key in os.environ:
        return os.environ[key]
    return default


def current_time_ms() -> int:
    return int(round(time.time() * 1000))


def sha1_digest(_bytes) -> bytes:
    hasher = hashlib.sha1()
    hasher.update(_bytes)
    return hasher.digest()


def new_snapshot_id() -> int:
    """Returns a random, positive 63-bit snapshot ID."""
    rand = uuid.uuid4().int
    return ((rand >> 64) ^ rand) & ((1 << 63) - 1)


def parse_bool(value) -> bool:
    """Parses a table property or option value into a bool."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("1", "true", "yes", "on")
