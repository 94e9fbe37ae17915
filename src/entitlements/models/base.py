from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, get_args, get_origin

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what MongoDB hands back by default."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values are assumed to be UTC already."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class IndexSpec(BaseModel):
    """
    Backend-agnostic index description.

    `partial_filter` restricts a unique index to matching documents
    (e.g. one active subscription per user).
    """

    fields: List[str]
    unique: bool = False
    partial_filter: Optional[Dict[str, Any]] = None

    @property
    def name(self) -> str:
        suffix = "_uniq" if self.unique else "_idx"
        return "_".join(self.fields) + suffix


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model that knows how to:
    - Serialize itself for DB persistence
    - Provide a backend-agnostic DB schema description derived from fields

    The actual SQL/NoSQL DDL is produced offline by the schema generator
    using this description; this class is not meant to hit the database
    at runtime for schema work.
    """

    # Logical collection / table name; subclasses should override
    collection_name: ClassVar[str]

    # Optional explicit primary key field; defaults to "id" if present
    primary_key: ClassVar[Optional[str]] = "id"

    # Secondary and unique indexes the store must maintain
    indexes: ClassVar[List[IndexSpec]] = []

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for DB persistence.

        Enums are stored by value; `None` fields are kept so that replacing
        a document clears them.
        """
        data = self.model_dump(by_alias=True)
        if data.get("id") is None:
            data.pop("id", None)
        return data

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        """
        Describe the collection without touching a database: one entry per
        field with its logical type, plus primary key and index metadata.
        `schema_generator` turns this into SQL DDL or MongoDB validators.
        """
        properties: Dict[str, Any] = {}
        required: List[str] = []

        for name, field in cls.model_fields.items():
            is_required = field.is_required()
            default = None if is_required else field.default
            properties[name] = {
                "type": _logical_type(field.annotation),
                "nullable": not is_required,
                "default": default.value if isinstance(default, Enum) else default,
                "description": field.description,
            }
            if is_required:
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "properties": properties,
            "required": required,
            "indexes": [{**index.model_dump(), "name": index.name} for index in cls.indexes],
        }


_SCALAR_TYPES: Dict[Any, str] = {
    bool: "boolean",
    int: "integer",
    float: "number",
    str: "string",
    datetime: "datetime",
}


def _logical_type(annotation: Any) -> str:
    """Collapse a field annotation to one of the generator's logical types."""
    args = [a for a in get_args(annotation) if a is not type(None)]
    if get_origin(annotation) is not None and len(args) == 1 and type(None) in get_args(annotation):
        annotation = args[0]

    origin = get_origin(annotation)
    if origin in (list, tuple, set):
        return "array"
    if origin is dict:
        return "object"
    if isinstance(annotation, type):
        if issubclass(annotation, Enum):
            return "string"
        if issubclass(annotation, BaseModel):
            return "object"
    return _SCALAR_TYPES.get(annotation, "string")


class PaginatedResult(BaseModel):
    items: list[Any] = Field(default_factory=list)
    total: int
    limit: int
    offset: int
