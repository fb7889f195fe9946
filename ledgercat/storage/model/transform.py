from __future__ import annotations

import re
import struct
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from uuid import UUID

from ledgercat.utils.common import sha1_digest


_EPOCH_DATE = date(1970, 1, 1)
_EPOCH_DATETIME = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MICRO = timedelta(microseconds=1)
_MICROS_PER_HOUR = 3_600_000_000
_MICROS_PER_DAY = 24 * _MICROS_PER_HOUR

_DESCRIPTOR_PATTERN = re.compile(r"^(?P<name>[a-z]+)(?:\[(?P<arg>-?\d+)\])?$")


class TransformName(str, Enum):
    IDENTITY = "identity"
    BUCKET = "bucket"
    YEAR = "year"
    MONTH = "month"
    DAY = "day"
    HOUR = "hour"
    TRUNCATE = "truncate"
    VOID = "void"


class TransformParameters(dict):
    """
    This is a parent class that contains properties
    to be passed to the corresponding transform
    """

    pass


class BucketTransformParameters(TransformParameters):
    """
    Parameters for the bucket transform.
    """

    @staticmethod
    def of(num_buckets: int) -> BucketTransformParameters:
        bucket_transform_parameters = BucketTransformParameters()
        bucket_transform_parameters["numBuckets"] = num_buckets
        return bucket_transform_parameters

    @property
    def num_buckets(self) -> int:
        """
        The total number of buckets to create.
        """
        return self["numBuckets"]


class TruncateTransformParameters(TransformParameters):
    """
    Parameters for the truncate transform.
    """

    @staticmethod
    def of(width: int) -> TruncateTransformParameters:
        truncate_transform_parameters = TruncateTransformParameters()
        truncate_transform_parameters["width"] = width
        return truncate_transform_parameters

    @property
    def width(self) -> int:
        """
        The width to truncate the field to.
        """
        return self["width"]


class Transform(dict):
    """
    A transform represents how a particular column value can be
    transformed into a partition value. Transforms are pure: the same input
    always produces the same output, and a null input always produces a
    null output.

    Two transforms are equal if and only if their descriptors (e.g.
    "bucket[16]") are equal.
    """

    supports_multi_source: bool = False

    @staticmethod
    def from_string(descriptor: str) -> Transform:
        """
        Parses a transform descriptor such as "identity", "bucket[16]" or
        "truncate[4]" back into a transform.
        """
        match = _DESCRIPTOR_PATTERN.match(descriptor.strip().lower())
        if not match:
            raise ValueError(f"Invalid transform descriptor: {descriptor}")
        name = match.group("name")
        arg = match.group("arg")
        if name in (TransformName.BUCKET, TransformName.TRUNCATE):
            if arg is None:
                raise ValueError(f"Transform `{name}` requires an argument.")
            if name == TransformName.BUCKET:
                return BucketTransform.of(int(arg))
            return TruncateTransform.of(int(arg))
        if arg is not None:
            raise ValueError(f"Transform `{name}` does not take an argument.")
        try:
            transform_class = _SIMPLE_TRANSFORMS[TransformName(name)]
        except ValueError:
            raise ValueError(f"Unknown transform: {descriptor}") from None
        return transform_class.of()

    @staticmethod
    def from_dict(value: Dict[str, Any]) -> Transform:
        """
        Casts a deserialized transform dictionary to its transform subclass.
        """
        if isinstance(value, Transform):
            return value
        name = TransformName(value["name"])
        params = value.get("parameters") or {}
        if name == TransformName.BUCKET:
            return BucketTransform.of(params["numBuckets"])
        if name == TransformName.TRUNCATE:
            return TruncateTransform.of(params["width"])
        return _SIMPLE_TRANSFORMS[name].of()

    @property
    def name(self) -> TransformName:
        return TransformName(self["name"])

    @name.setter
    def name(self, name: TransformName) -> None:
        self["name"] = name

    @property
    def parameters(self) -> Optional[TransformParameters]:
        return self.get("parameters")

    @parameters.setter
    def parameters(
        self,
        parameters: Optional[TransformParameters] = None,
    ) -> None:
        self["parameters"] = parameters

    @property
    def descriptor(self) -> str:
        return self.name.value

    @property
    def is_void(self) -> bool:
        return self.name == TransformName.VOID

    def apply(self, value: Any) -> Any:
        """
        Applies this transform to a source value. Multi-source values are
        passed as a tuple of source values.
        """
        if value is None:
            return None
        if isinstance(value, tuple):
            if not self.supports_multi_source:
                raise ValueError(
                    f"Transform `{self.descriptor}` does not support multiple "
                    f"source values: {value}"
                )
            if all(v is None for v in value):
                return None
        return self._apply(value)

    def _apply(self, value: Any) -> Any:
        raise NotImplementedError(
            f"Transform `{self.descriptor}` does not implement `_apply`."
        )

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, Transform):
            return NotImplemented
        return self.descriptor == other.descriptor

    def __ne__(self, other: Any) -> bool:
        if not isinstance(other, Transform):
            return NotImplemented
        return self.descriptor != other.descriptor

    def __hash__(self) -> int:
        return hash(self.descriptor)

    def __str__(self) -> str:
        return self.descriptor

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.descriptor})"


class IdentityTransform(Transform):
    """
    A no-op transform that returns unmodified field values.
    """

    supports_multi_source = True

    @staticmethod
    def of() -> IdentityTransform:
        transform = IdentityTransform()
        transform.name = TransformName.IDENTITY
        return transform

    def _apply(self, value: Any) -> Any:
        return value


class BucketTransform(Transform):
    """
    A transform that hashes field values into a fixed number of buckets.

    Values are serialized to a canonical byte form and hashed with SHA-1.
    The bucket is the first four bytes of the digest, read as a big-endian
    integer masked to 31 bits, modulo the number of buckets.
    """

    supports_multi_source = True

    @staticmethod
    def of(num_buckets: int) -> BucketTransform:
        if not isinstance(num_buckets, int) or num_buckets <= 0:
            raise ValueError(
                f"Invalid number of buckets: {num_buckets} (must be > 0)"
            )
        transform = BucketTransform()
        transform.name = TransformName.BUCKET
        transform["parameters"] = BucketTransformParameters.of(num_buckets)
        return transform

    @property
    def parameters(self) -> BucketTransformParameters:
        val = self["parameters"]
        if not isinstance(val, BucketTransformParameters):
            self["parameters"] = val = BucketTransformParameters(val)
        return val

    @property
    def num_buckets(self) -> int:
        return self.parameters.num_buckets

    @property
    def descriptor(self) -> str:
        return f"{self.name.value}[{self.num_buckets}]"

    def _apply(self, value: Any) -> int:
        digest = sha1_digest(canonical_bytes(value))
        hashed = int.from_bytes(digest[:4], byteorder="big") & 0x7FFFFFFF
        return hashed % self.num_buckets


class TruncateTransform(Transform):
    """
    A transform that truncates field values to a fixed width. Integers are
    rounded down to the nearest multiple of the width, strings and bytes are
    cut to the first `width` characters or bytes, and decimals truncate their
    unscaled value while keeping their scale.
    """

    @staticmethod
    def of(width: int) -> TruncateTransform:
        if not isinstance(width, int) or width <= 0:
            raise ValueError(f"Invalid truncate width: {width} (must be > 0)")
        transform = TruncateTransform()
        transform.name = TransformName.TRUNCATE
        transform["parameters"] = TruncateTransformParameters.of(width)
        return transform

    @property
    def parameters(self) -> TruncateTransformParameters:
        val = self["parameters"]
        if not isinstance(val, TruncateTransformParameters):
            self["parameters"] = val = TruncateTransformParameters(val)
        return val

    @property
    def width(self) -> int:
        return self.parameters.width

    @property
    def descriptor(self) -> str:
        return f"{self.name.value}[{self.width}]"

    def _apply(self, value: Any) -> Any:
        width = self.width
        if isinstance(value, bool):
            raise ValueError(f"Cannot truncate boolean value: {value}")
        if isinstance(value, int):
            # python's modulo floors, so negative values round down
            return value - (value % width)
        if isinstance(value, (str, bytes, bytearray)):
            return value[:width]
        if isinstance(value, Decimal):
            unscaled, exponent = _decimal_unscaled(value)
            return _decimal_from_unscaled(unscaled - (unscaled % width), exponent)
        raise ValueError(
            f"Cannot truncate value of type {type(value).__name__}: {value}"
        )


class YearTransform(Transform):
    """
    A transform that returns the number of years since the Unix epoch.
    """

    @staticmethod
    def of() -> YearTransform:
        transform = YearTransform()
        transform.name = TransformName.YEAR
        return transform

    def _apply(self, value: Any) -> int:
        if isinstance(value, datetime):
            value = _to_utc(value)
        elif not isinstance(value, date):
            raise ValueError(f"Cannot apply `year` to value: {value}")
        return value.year - _EPOCH_DATE.year


class MonthTransform(Transform):
    """
    A transform that returns the number of months since the Unix epoch.
    """

    @staticmethod
    def of() -> MonthTransform:
        transform = MonthTransform()
        transform.name = TransformName.MONTH
        return transform

    def _apply(self, value: Any) -> int:
        if isinstance(value, datetime):
            value = _to_utc(value)
        elif not isinstance(value, date):
            raise ValueError(f"Cannot apply `month` to value: {value}")
        return (value.year - _EPOCH_DATE.year) * 12 + (value.month - 1)


class DayTransform(Transform):
    """
    A transform that returns the number of days since the Unix epoch.
    """

    @staticmethod
    def of() -> DayTransform:
        transform = DayTransform()
        transform.name = TransformName.DAY
        return transform

    def _apply(self, value: Any) -> int:
        if isinstance(value, datetime):
            return _epoch_micros(value) // _MICROS_PER_DAY
        if isinstance(value, date):
            return (value - _EPOCH_DATE).days
        raise ValueError(f"Cannot apply `day` to value: {value}")


class HourTransform(Transform):
    """
    A transform that returns the number of hours since the Unix epoch.
    """

    @staticmethod
    def of() -> HourTransform:
        transform = HourTransform()
        transform.name = TransformName.HOUR
        return transform

    def _apply(self, value: Any) -> int:
        if not isinstance(value, datetime):
            raise ValueError(f"Cannot apply `hour` to non-timestamp value: {value}")
        return _epoch_micros(value) // _MICROS_PER_HOUR


class VoidTransform(Transform):
    """
    A transform that always returns null. Partition fields removed from a
    spec are replaced by void fields so that their field IDs stay reserved.
    """

    supports_multi_source = True

    @staticmethod
    def of() -> VoidTransform:
        transform = VoidTransform()
        transform.name = TransformName.VOID
        return transform

    def apply(self, value: Any) -> None:
        return None


_SIMPLE_TRANSFORMS = {
    TransformName.IDENTITY: IdentityTransform,
    TransformName.YEAR: YearTransform,
    TransformName.MONTH: MonthTransform,
    TransformName.DAY: DayTransform,
    TransformName.HOUR: HourTransform,
    TransformName.VOID: VoidTransform,
}


def canonical_bytes(value: Any) -> bytes:
    """
    Serializes a partition source value to the canonical byte form hashed by
    the bucket transform.
    """
    if value is None:
        return b""
    if isinstance(value, tuple):
        return b"".join(canonical_bytes(v) for v in value)
    if isinstance(value, int):
        return _int_bytes(int(value))
    if isinstance(value, float):
        return struct.pack("<d", value)
    if isinstance(value, str):
        return value.encode("utf-8")
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, datetime):
        return _int_bytes(_epoch_micros(value))
    if isinstance(value, date):
        return _int_bytes((value - _EPOCH_DATE).days)
    if isinstance(value, Decimal):
        unscaled, _ = _decimal_unscaled(value)
        return _int_bytes(unscaled)
    if isinstance(value, UUID):
        return value.bytes
    raise ValueError(f"Cannot hash value of type {type(value).__name__}: {value}")


def _int_bytes(value: int) -> bytes:
    try:
        return struct.pack("<q", value)
    except struct.error:
        length = (value.bit_length() + 8) // 8
        return value.to_bytes(length, byteorder="little", signed=True)


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _epoch_micros(value: datetime) -> int:
    return (_to_utc(value) - _EPOCH_DATETIME) // _ONE_MICRO


def _decimal_unscaled(value: Decimal) -> Tuple[int, int]:
    sign, digits, exponent = value.as_tuple()
    if not isinstance(exponent, int):
        raise ValueError(f"Cannot transform non-finite decimal: {value}")
    unscaled = int("".join(str(d) for d in digits) or "0")
    return (-unscaled if sign else unscaled), exponent


def _decimal_from_unscaled(unscaled: int, exponent: int) -> Decimal:
    digits = tuple(int(d) for d in str(abs(unscaled)))
    return Decimal((1 if unscaled < 0 else 0, digits, exponent))
