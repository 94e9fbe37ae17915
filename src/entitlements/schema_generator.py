from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Type

from .models.activation_code import ActivationCode
from .models.base import DBSerializableModel
from .models.code_batch import CodeBatch
from .models.ledger import LedgerEntry
from .models.subscription import Subscription


# Every persisted model; MongoDBManager.ensure_indexes walks the same list.
MODEL_REGISTRY: List[Type[DBSerializableModel]] = [
    ActivationCode,
    CodeBatch,
    Subscription,
    LedgerEntry,
]

_SQL_TYPES: Dict[str, Dict[str, str]] = {
    "postgres": {
        "integer": "INTEGER",
        "number": "DOUBLE PRECISION",
        "boolean": "BOOLEAN",
        "string": "TEXT",
        "datetime": "TIMESTAMP",
        "object": "JSONB",
        "array": "JSONB",
    },
    "sqlite": {
        "integer": "INTEGER",
        "number": "REAL",
        "boolean": "INTEGER",
        "string": "TEXT",
        "datetime": "TIMESTAMP",
        "object": "TEXT",
        "array": "TEXT",
    },
}

_BSON_TYPES: Dict[str, str] = {
    "integer": "int",
    "number": "double",
    "boolean": "bool",
    "string": "string",
    "datetime": "date",
    "object": "object",
    "array": "array",
}


def generate_logical_schema() -> Dict[str, Any]:
    """
    Backend-agnostic description of every collection, keyed by name.
    The SQL and MongoDB renderers below only ever read this structure.
    """
    return {model.collection_name: model.db_schema() for model in MODEL_REGISTRY}


def render_sql_ddl(schema: Dict[str, Any], dialect: str = "postgres") -> str:
    """
    CREATE TABLE plus CREATE INDEX statements. The one-active-subscription
    rule is a partial unique index, so only dialects with filtered indexes
    (PostgreSQL, SQLite) are supported.
    """
    if dialect not in _SQL_TYPES:
        raise ValueError(f"unsupported SQL dialect {dialect!r}; expected one of {sorted(_SQL_TYPES)}")

    statements: List[str] = []
    for table_name, table in schema.items():
        statements.append(_render_table(table_name, table, _SQL_TYPES[dialect]))
        statements.extend(_render_index(table_name, index) for index in table.get("indexes", []))
    return "\n".join(statements)


def _render_table(table_name: str, table: Dict[str, Any], types: Dict[str, str]) -> str:
    required = set(table.get("required", []))
    columns = [
        f'    "{name}" {types.get(meta["type"], "TEXT")} {"NOT NULL" if name in required else "NULL"}'
        for name, meta in table["properties"].items()
    ]
    columns.append(f'    PRIMARY KEY ("{table.get("primary_key") or "id"}")')
    return f'CREATE TABLE IF NOT EXISTS "{table_name}" (\n' + ",\n".join(columns) + "\n);\n"


def _render_index(table_name: str, index: Dict[str, Any]) -> str:
    unique = "UNIQUE " if index.get("unique") else ""
    cols = ", ".join(f'"{f}"' for f in index["fields"])
    ddl = f'CREATE {unique}INDEX IF NOT EXISTS "{table_name}_{index["name"]}" ON "{table_name}" ({cols})'
    partial = index.get("partial_filter")
    if partial:
        conditions = " AND ".join(f'"{k}" = {_sql_literal(v)}' for k, v in partial.items())
        ddl += f" WHERE {conditions}"
    return ddl + ";\n"


def _sql_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return str(value)
    return "'" + str(value).replace("'", "''") + "'"


def render_nosql_schema(schema: Dict[str, Any]) -> str:
    """
    JSON document per collection with a `$jsonSchema` validator and the
    index definitions, ready for `collMod` / `createIndexes`.
    """
    collections: Dict[str, Any] = {}
    for name, table in schema.items():
        properties = {
            field: {"bsonType": _bson_type(meta)}
            for field, meta in table["properties"].items()
            if field != table.get("primary_key")
        }
        required = [f for f in table.get("required", []) if f != table.get("primary_key")]
        collections[name] = {
            "validator": {
                "$jsonSchema": {"bsonType": "object", "required": required, "properties": properties}
            },
            "indexes": table.get("indexes", []),
        }
    return json.dumps(collections, indent=2, default=str)


def _bson_type(meta: Dict[str, Any]) -> Any:
    bson = _BSON_TYPES.get(meta["type"], "string")
    return [bson, "null"] if meta.get("nullable") else bson


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description="Generate DB schemas for the entitlements collections."
    )
    parser.add_argument(
        "--backend",
        choices=["sql", "nosql"],
        required=True,
        help="Type of schema to generate.",
    )
    parser.add_argument(
        "--dialect",
        choices=sorted(_SQL_TYPES),
        default="postgres",
        help="SQL dialect (sql backend only).",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Write to this file instead of stdout.",
    )
    args = parser.parse_args(argv)

    schema = generate_logical_schema()
    rendered = render_sql_ddl(schema, dialect=args.dialect) if args.backend == "sql" else render_nosql_schema(schema)

    if args.output is None:
        print(rendered)
    else:
        args.output.write_text(rendered, encoding="utf-8")


if __name__ == "__main__":
    main()
