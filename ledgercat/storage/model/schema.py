# Allow classes to use self-referencing Type hints in Python 3.7.
from __future__ import annotations

from typing import Optional, Dict, Union, List

import pyarrow as pa

# PyArrow Field Metadata Key used to set the Field ID when writing to Parquet.
# See: https://arrow.apache.org/docs/cpp/parquet.html#parquet-field-id
PARQUET_FIELD_ID_KEY_NAME = b"PARQUET:field_id"

# PyArrow Schema Metadata Key used to store schema ID value.
SCHEMA_ID_KEY_NAME = b"LEDGERCAT:schema_id"

# Set max field ID to INT32.MAX_VALUE - 200 to leave room for reserved fields
MAX_FIELD_ID_EXCLUSIVE = 2147483447

SchemaId = int
FieldId = int
FieldName = str
FieldLocator = Union[FieldName, FieldId]


class Schema(dict):
    """
    An Arrow schema whose top-level fields carry stable field IDs. Partition
    fields reference their source columns by these IDs, so renaming a column
    never breaks a partition spec.
    """

    @staticmethod
    def of(
        schema: Union[pa.Schema, List[pa.Field]],
        schema_id: Optional[SchemaId] = None,
    ) -> Schema:
        """
        Creates a schema from an Arrow base schema or list of Arrow fields.
        Field IDs are read from each field's "PARQUET:field_id" metadata if
        present. Any field missing a field ID is assigned the next unused ID,
        counting up from the max field ID found (or 0 if none were found).

        Args:
            schema: Arrow base schema or list of Arrow fields.
            schema_id: Unique ID of the schema within its parent table.
            Defaults to the schema ID saved in the Arrow schema's metadata,
            or 0 if none is saved.
        Returns:
            A new Schema.
        """
        if not isinstance(schema, pa.Schema):
            schema = pa.schema(schema)
        assigned_ids = [Schema._field_id(field) for field in schema]
        max_field_id = max([i for i in assigned_ids if i is not None], default=0)
        next_field_id = max_field_id + 1 if any(
            i is not None for i in assigned_ids
        ) else 0
        seen_ids = {}
        fields = []
        for field, field_id in zip(schema, assigned_ids):
            if field_id is None:
                field_id = next_field_id % MAX_FIELD_ID_EXCLUSIVE
                next_field_id += 1
            if (dupe := seen_ids.get(field_id)) is not None:
                raise ValueError(
                    f"Duplicate field id {field_id} for field: {field} "
                    f"Already assigned to field: {dupe}"
                )
            seen_ids[field_id] = field.name
            metadata = dict(field.metadata or {})
            metadata[PARQUET_FIELD_ID_KEY_NAME] = str(field_id)
            fields.append(field.with_metadata(metadata))

        schema_metadata = dict(schema.metadata or {})
        if schema_id is not None:
            schema_metadata[SCHEMA_ID_KEY_NAME] = str(schema_id)
        if schema_metadata.get(SCHEMA_ID_KEY_NAME) is None:
            schema_metadata[SCHEMA_ID_KEY_NAME] = str(0)
        final_schema = pa.schema(fields, metadata=schema_metadata)
        return Schema(
            {
                "arrow": final_schema,
                "maxFieldId": max(seen_ids, default=0),
            }
        )

    @staticmethod
    def deserialize(serialized: pa.Buffer) -> Schema:
        return Schema.of(schema=pa.ipc.read_schema(serialized))

    def serialize(self) -> pa.Buffer:
        return self.arrow.serialize()

    def equivalent_to(self, other: Optional[Schema], check_metadata: bool = False):
        if other is None:
            return False
        return self.arrow.equals(other.arrow, check_metadata=check_metadata)

    @property
    def arrow(self) -> pa.Schema:
        return self["arrow"]

    @property
    def id(self) -> SchemaId:
        return int(self.arrow.metadata[SCHEMA_ID_KEY_NAME])

    @property
    def max_field_id(self) -> FieldId:
        return self["maxFieldId"]

    @property
    def field_ids_to_names(self) -> Dict[FieldId, FieldName]:
        return {Schema._field_id(field): field.name for field in self.arrow}

    def field_id(self, name: FieldName) -> FieldId:
        index = self.arrow.get_field_index(name)
        if index < 0:
            raise KeyError(f"Field `{name}` not found in schema.")
        return Schema._field_id(self.arrow.field(index))

    def field_name(self, field_id: FieldId) -> FieldName:
        name = self.field_ids_to_names.get(field_id)
        if name is None:
            raise KeyError(f"Field ID {field_id} not found in schema.")
        return name

    def find_field(self, field_locator: FieldLocator) -> Optional[pa.Field]:
        if isinstance(field_locator, str):
            index = self.arrow.get_field_index(field_locator)
            return self.arrow.field(index) if index >= 0 else None
        for field in self.arrow:
            if Schema._field_id(field) == field_locator:
                return field
        return None

    @staticmethod
    def _field_id(field: pa.Field) -> Optional[FieldId]:
        field_metadata = field.metadata
        if field_metadata:
            field_id = field_metadata.get(PARQUET_FIELD_ID_KEY_NAME)
            if field_id is not None:
                return int(field_id.decode())
        return None


class SchemaList(List[Schema]):
    @staticmethod
    def of(items: List[Schema]) -> SchemaList:
        typed_items = SchemaList()
        for item in items:
            if item is not None and not isinstance(item, Schema):
                item = Schema(item)
            typed_items.append(item)
        return typed_items

    def __getitem__(self, item):
        val = super().__getitem__(item)
        if val is not None and not isinstance(val, Schema):
            self[item] = val = Schema(val)
        return val
