from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

import msgpack

# msgpack extension type codes for values with no native msgpack type
_EXT_DECIMAL = 1
_EXT_DATE = 2
_EXT_DATETIME = 3
_EXT_UUID = 4


def _default(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return msgpack.ExtType(_EXT_DECIMAL, str(obj).encode("utf-8"))
    if isinstance(obj, datetime):
        return msgpack.ExtType(_EXT_DATETIME, obj.isoformat().encode("utf-8"))
    if isinstance(obj, date):
        return msgpack.ExtType(_EXT_DATE, obj.isoformat().encode("utf-8"))
    if isinstance(obj, UUID):
        return msgpack.ExtType(_EXT_UUID, obj.bytes)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"Cannot serialize object of type {type(obj).__name__}: {obj!r}")


def _ext_hook(code: int, data: bytes) -> Any:
    if code == _EXT_DECIMAL:
        return Decimal(data.decode("utf-8"))
    if code == _EXT_DATETIME:
        return datetime.fromisoformat(data.decode("utf-8"))
    if code == _EXT_DATE:
        return date.fromisoformat(data.decode("utf-8"))
    if code == _EXT_UUID:
        return UUID(bytes=data)
    return msgpack.ExtType(code, data)


def new_packer() -> msgpack.Packer:
    return msgpack.Packer(default=_default)


def new_unpacker(file_like=None) -> msgpack.Unpacker:
    # column stats are keyed by integer field IDs
    return msgpack.Unpacker(
        file_like,
        ext_hook=_ext_hook,
        strict_map_key=False,
        raw=False,
    )


def packb(obj: Any) -> bytes:
    return msgpack.packb(obj, default=_default)


def unpackb(packed: bytes) -> Any:
    return msgpack.unpackb(
        packed,
        ext_hook=_ext_hook,
        strict_map_key=False,
        raw=False,
    )
