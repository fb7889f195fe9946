# Allow classes to use self-referencing Type hints in Python 3.7.
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Tuple, Union, TYPE_CHECKING

from ledgercat.constants import (
    INITIAL_SPEC_ID,
    MULTI_SOURCE_ID,
    PARTITION_DATA_ID_START,
)
from ledgercat.exceptions import ValidationError
from ledgercat.storage.model.schema import FieldLocator, Schema
from ledgercat.storage.model.transform import (
    BucketTransform,
    DayTransform,
    HourTransform,
    IdentityTransform,
    MonthTransform,
    Transform,
    TransformName,
    TruncateTransform,
    VoidTransform,
    YearTransform,
)

if TYPE_CHECKING:
    from ledgercat.storage.model.table_metadata import TableMetadata

"""
An ordered list of partition values, aligned with the fields of the
partition spec they were computed by.
"""
PartitionValues = List[Any]

_DEFAULT_NAME_SUFFIXES = {
    TransformName.IDENTITY: "",
    TransformName.BUCKET: "_bucket",
    TransformName.TRUNCATE: "_trunc",
    TransformName.YEAR: "_year",
    TransformName.MONTH: "_month",
    TransformName.DAY: "_day",
    TransformName.HOUR: "_hour",
    TransformName.VOID: "_null",
}


class PartitionField(dict):
    """
    A named partition value derived by applying a transform to one or more
    source columns. The field ID is unique across every partition spec the
    table ever had, and is never reused.
    """

    @staticmethod
    def of(
        source_ids: Union[int, List[int]],
        field_id: int,
        name: str,
        transform: Transform,
    ) -> PartitionField:
        if isinstance(source_ids, int):
            source_ids = [source_ids]
        source_ids = list(source_ids)
        if not source_ids:
            raise ValueError(f"Partition field `{name}` requires a source field.")
        if len(source_ids) > 1 and not transform.supports_multi_source:
            raise ValueError(
                f"Transform `{transform}` does not support multiple source "
                f"fields: {source_ids}"
            )
        return PartitionField(
            {
                "sourceIds": source_ids,
                "sourceId": source_ids[0] if len(source_ids) == 1 else MULTI_SOURCE_ID,
                "fieldId": field_id,
                "name": name,
                "transform": transform,
            }
        )

    @property
    def source_ids(self) -> List[int]:
        return self["sourceIds"]

    @property
    def source_id(self) -> int:
        """
        The single source field ID of this partition field, or -1 if it has
        multiple source fields (see `source_ids`).
        """
        return self["sourceId"]

    @property
    def field_id(self) -> int:
        return self["fieldId"]

    @property
    def name(self) -> str:
        return self["name"]

    @property
    def transform(self) -> Transform:
        val: Dict[str, Any] = self["transform"]
        if not isinstance(val, Transform):
            self["transform"] = val = Transform.from_dict(val)
        return val

    @property
    def is_multi_source(self) -> bool:
        return len(self.source_ids) > 1

    def with_name(self, name: str) -> PartitionField:
        return PartitionField.of(self.source_ids, self.field_id, name, self.transform)

    def with_transform(self, transform: Transform) -> PartitionField:
        return PartitionField.of(self.source_ids, self.field_id, self.name, transform)

    def apply(self, source_values: List[Any]) -> Any:
        value = source_values[0] if len(source_values) == 1 else tuple(source_values)
        return self.transform.apply(value)

    def __str__(self) -> str:
        source = self.source_id if not self.is_multi_source else self.source_ids
        return f"{self.field_id}: {self.name}: {self.transform}({source})"


class PartitionFieldList(List[PartitionField]):
    @staticmethod
    def of(items: List[PartitionField]) -> PartitionFieldList:
        typed_items = PartitionFieldList()
        for item in items:
            if item is not None and not isinstance(item, PartitionField):
                item = PartitionField(item)
            typed_items.append(item)
        return typed_items

    def __getitem__(self, item):
        val = super().__getitem__(item)
        if val is not None and not isinstance(val, PartitionField):
            self[item] = val = PartitionField(val)
        return val


class PartitionSpec(dict):
    """
    An ordered list of partition fields. The order of the fields defines the
    layout of the partition values of every data file written under this
    spec.
    """

    @staticmethod
    def of(
        spec_id: int,
        fields: List[PartitionField],
        schema_id: int = 0,
    ) -> PartitionSpec:
        return PartitionSpec(
            {
                "specId": spec_id,
                "fields": PartitionFieldList.of(fields),
                "schemaId": schema_id,
            }
        )

    @staticmethod
    def unpartitioned(schema_id: int = 0) -> PartitionSpec:
        return PartitionSpec.of(INITIAL_SPEC_ID, [], schema_id)

    @staticmethod
    def builder_for(
        schema: Schema,
        spec_id: int = INITIAL_SPEC_ID,
        last_assigned_field_id: int = PARTITION_DATA_ID_START - 1,
    ) -> PartitionSpecBuilder:
        return PartitionSpecBuilder(schema, spec_id, last_assigned_field_id)

    @property
    def spec_id(self) -> int:
        return self["specId"]

    @property
    def fields(self) -> PartitionFieldList:
        val: List[PartitionField] = self["fields"]
        if not isinstance(val, PartitionFieldList):
            self["fields"] = val = PartitionFieldList.of(val)
        return val

    @property
    def schema_id(self) -> int:
        return self["schemaId"]

    @property
    def is_unpartitioned(self) -> bool:
        return all(field.transform.is_void for field in self.fields)

    @property
    def last_assigned_field_id(self) -> int:
        return max(
            [field.field_id for field in self.fields],
            default=PARTITION_DATA_ID_START - 1,
        )

    def field(self, field_id: int) -> Optional[PartitionField]:
        for field in self.fields:
            if field.field_id == field_id:
                return field
        return None

    def field_by_name(self, name: str) -> Optional[PartitionField]:
        for field in self.fields:
            if field.name == name:
                return field
        return None

    def compatible_with(self, other: PartitionSpec) -> bool:
        """
        Returns True if both specs produce the same partition value layout,
        i.e. they have the same source fields and transforms in the same
        order. Field names and IDs are not compared.
        """
        if other is None or len(self.fields) != len(other.fields):
            return False
        return all(
            mine.source_ids == theirs.source_ids and mine.transform == theirs.transform
            for mine, theirs in zip(self.fields, other.fields)
        )

    def validate(self, schema: Schema) -> None:
        """
        Validates this spec against the given schema. Every non-void source
        field must exist in the schema, field names and IDs must be unique,
        and a partition field may only reuse the name of a schema column if
        it is an identity field sourced from that same column.
        """
        names = set()
        field_ids = set()
        for field in self.fields:
            if field.name in names:
                raise ValidationError(
                    f"Duplicate partition field name `{field.name}` in spec "
                    f"{self.spec_id}"
                )
            names.add(field.name)
            if field.field_id in field_ids:
                raise ValidationError(
                    f"Duplicate partition field ID {field.field_id} in spec "
                    f"{self.spec_id}"
                )
            field_ids.add(field.field_id)
            if field.transform.is_void:
                continue
            for source_id in field.source_ids:
                if schema.find_field(source_id) is None:
                    raise ValidationError(
                        f"Cannot find source field {source_id} of partition "
                        f"field `{field.name}` in schema {schema.id}"
                    )
            schema_field = schema.find_field(field.name)
            if schema_field is not None:
                is_identity_of_column = (
                    field.transform.name == TransformName.IDENTITY
                    and field.source_ids == [schema.field_id(field.name)]
                )
                if not is_identity_of_column:
                    raise ValidationError(
                        f"Partition field name `{field.name}` conflicts with a "
                        f"schema column of the same name"
                    )

    def partition_for(
        self,
        record: Mapping[FieldLocator, Any],
        schema: Optional[Schema] = None,
    ) -> PartitionValues:
        """
        Computes the partition values of a record. Source values are looked up
        by field ID first and, if a schema is given, by field name second.
        Missing source values are treated as null.
        """
        values = []
        for field in self.fields:
            source_values = []
            for source_id in field.source_ids:
                if source_id in record:
                    source_values.append(record[source_id])
                elif schema is not None and schema.find_field(source_id) is not None:
                    source_values.append(record.get(schema.field_name(source_id)))
                else:
                    source_values.append(None)
            values.append(field.apply(source_values))
        return values

    def __str__(self) -> str:
        fields = ", ".join(str(field) for field in self.fields)
        return f"[{fields}]"


class PartitionSpecList(List[PartitionSpec]):
    @staticmethod
    def of(items: List[PartitionSpec]) -> PartitionSpecList:
        typed_items = PartitionSpecList()
        for item in items:
            if item is not None and not isinstance(item, PartitionSpec):
                item = PartitionSpec(item)
            typed_items.append(item)
        return typed_items

    def __getitem__(self, item):
        val = super().__getitem__(item)
        if val is not None and not isinstance(val, PartitionSpec):
            self[item] = val = PartitionSpec(val)
        return val


class PartitionSpecBuilder:
    """
    Builds a new partition spec for a schema. Partition field IDs are
    assigned from a counter scoped to the table, starting after the last
    field ID ever assigned by any of the table's specs.
    """

    def __init__(
        self,
        schema: Schema,
        spec_id: int = INITIAL_SPEC_ID,
        last_assigned_field_id: int = PARTITION_DATA_ID_START - 1,
    ):
        self._schema = schema
        self._spec_id = spec_id
        self._last_assigned_field_id = last_assigned_field_id
        self._fields: List[PartitionField] = []

    def identity(self, source: FieldLocator, name: Optional[str] = None):
        return self.add_field(source, IdentityTransform.of(), name)

    def bucket(self, source, num_buckets: int, name: Optional[str] = None):
        return self.add_field(source, BucketTransform.of(num_buckets), name)

    def truncate(self, source: FieldLocator, width: int, name: Optional[str] = None):
        return self.add_field(source, TruncateTransform.of(width), name)

    def year(self, source: FieldLocator, name: Optional[str] = None):
        return self.add_field(source, YearTransform.of(), name)

    def month(self, source: FieldLocator, name: Optional[str] = None):
        return self.add_field(source, MonthTransform.of(), name)

    def day(self, source: FieldLocator, name: Optional[str] = None):
        return self.add_field(source, DayTransform.of(), name)

    def hour(self, source: FieldLocator, name: Optional[str] = None):
        return self.add_field(source, HourTransform.of(), name)

    def always_null(self, source: FieldLocator, name: Optional[str] = None):
        return self.add_field(source, VoidTransform.of(), name)

    def add_field(
        self,
        sources: Union[FieldLocator, List[FieldLocator]],
        transform: Transform,
        name: Optional[str] = None,
        field_id: Optional[int] = None,
    ) -> PartitionSpecBuilder:
        source_ids, source_names = resolve_sources(self._schema, sources)
        if name is None:
            name = default_field_name(source_names, transform)
        if any(field.name == name for field in self._fields):
            raise ValueError(f"Cannot use partition field name more than once: {name}")
        if not transform.is_void:
            for field in self._fields:
                if field.source_ids == source_ids and field.transform == transform:
                    raise ValueError(
                        f"Cannot add redundant partition field: {name} "
                        f"conflicts with {field.name}"
                    )
        if field_id is None:
            self._last_assigned_field_id += 1
            field_id = self._last_assigned_field_id
        else:
            self._last_assigned_field_id = max(self._last_assigned_field_id, field_id)
        self._fields.append(PartitionField.of(source_ids, field_id, name, transform))
        return self

    def build(self) -> PartitionSpec:
        spec = PartitionSpec.of(self._spec_id, self._fields, self._schema.id)
        spec.validate(self._schema)
        return spec


class PartitionSpecUpdate:
    """
    Evolves the default partition spec of a table. Removed fields are
    replaced in place by void fields that keep their original field ID, so
    partition values written under older specs remain interpretable.
    """

    def __init__(self, table_metadata: TableMetadata):
        self._base_spec = table_metadata.default_spec
        self._schema = table_metadata.current_schema
        self._base_last_partition_id = table_metadata.last_partition_id
        self._next_spec_id = (
            max(spec.spec_id for spec in table_metadata.partition_specs) + 1
        )
        self._adds: List[Tuple[List[int], Transform, Optional[str]]] = []
        self._removes: List[str] = []
        self._renames: Dict[str, str] = {}

    @staticmethod
    def of(table_metadata: TableMetadata) -> PartitionSpecUpdate:
        return PartitionSpecUpdate(table_metadata)

    @property
    def base_last_partition_id(self) -> int:
        return self._base_last_partition_id

    def add_field(
        self,
        sources: Union[FieldLocator, List[FieldLocator]],
        transform: Optional[Transform] = None,
        name: Optional[str] = None,
    ) -> PartitionSpecUpdate:
        if transform is None:
            transform = IdentityTransform.of()
        source_ids, source_names = resolve_sources(self._schema, sources)
        if name is None:
            name = default_field_name(source_names, transform)
        for field in self._base_spec.fields:
            if field.transform.is_void:
                continue
            if field.source_ids == source_ids and field.transform == transform:
                if field.name in self._removes:
                    raise ValueError(
                        f"Cannot add and remove partition field in the same "
                        f"update: {field.name}"
                    )
                raise ValueError(f"Cannot add duplicate partition field: {field}")
        for added_ids, added_transform, added_name in self._adds:
            if added_name == name or (
                added_ids == source_ids and added_transform == transform
            ):
                raise ValueError(f"Cannot add duplicate partition field: {name}")
        self._adds.append((source_ids, transform, name))
        return self

    def remove_field(self, name: str) -> PartitionSpecUpdate:
        if any(added_name == name for _, _, added_name in self._adds):
            raise ValueError(
                f"Cannot add and remove partition field in the same update: {name}"
            )
        field = self._base_spec.field_by_name(name)
        if field is None or field.transform.is_void:
            raise ValueError(f"Cannot find partition field to remove: {name}")
        if name in self._renames:
            raise ValueError(f"Cannot rename and remove partition field: {name}")
        if name not in self._removes:
            self._removes.append(name)
        return self

    def rename_field(self, name: str, new_name: str) -> PartitionSpecUpdate:
        field = self._base_spec.field_by_name(name)
        if field is None:
            raise ValueError(f"Cannot find partition field to rename: {name}")
        if name in self._removes:
            raise ValueError(f"Cannot rename and remove partition field: {name}")
        self._renames[name] = new_name
        return self

    def apply(self) -> PartitionSpec:
        fields: List[PartitionField] = []
        for field in self._base_spec.fields:
            if field.name in self._removes:
                fields.append(field.with_transform(VoidTransform.of()))
            elif field.name in self._renames:
                fields.append(field.with_name(self._renames[field.name]))
            else:
                fields.append(field)

        last_assigned_field_id = self._base_last_partition_id
        for source_ids, transform, name in self._adds:
            last_assigned_field_id += 1
            fields.append(
                PartitionField.of(source_ids, last_assigned_field_id, name, transform)
            )

        active_names = {
            field.name for field in fields if not field.transform.is_void
        }
        for i, field in enumerate(fields):
            if field.transform.is_void and field.name in active_names:
                # a removed field gives up its name to the field reclaiming it
                fields[i] = field.with_name(f"{field.name}_{field.field_id}")

        spec = PartitionSpec.of(self._next_spec_id, fields, self._schema.id)
        spec.validate(self._schema)
        return spec


def resolve_sources(
    schema: Schema,
    sources: Union[FieldLocator, List[FieldLocator]],
) -> Tuple[List[int], List[str]]:
    if not isinstance(sources, (list, tuple)):
        sources = [sources]
    if not sources:
        raise ValueError("At least one partition source field is required.")
    source_ids = []
    source_names = []
    for source in sources:
        field = schema.find_field(source)
        if field is None:
            raise ValueError(f"Cannot find source field `{source}` in schema.")
        source_names.append(field.name)
        source_ids.append(schema.field_id(field.name))
    return source_ids, source_names


def default_field_name(source_names: List[str], transform: Transform) -> str:
    return "_".join(source_names) + _DEFAULT_NAME_SUFFIXES[transform.name]
