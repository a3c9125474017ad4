import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import types as sqltypes
from sqlalchemy.engine import Dialect

from ..core.errors import InvalidIdentifier
from .type_inference import ColumnType


TABLE_NAME_MAX_LENGTH = 100
_TABLE_NAME_RE = re.compile(r"^[a-z0-9_]+$")

# ColumnType -> native storage type (compiled per dialect)
STORAGE_TYPES: Dict[ColumnType, sqltypes.TypeEngine] = {
    ColumnType.INTEGER: sqltypes.BIGINT(),
    ColumnType.DECIMAL: sqltypes.DECIMAL(),
    ColumnType.TIMESTAMP: sqltypes.TIMESTAMP(),
    ColumnType.DATE: sqltypes.DATE(),
    ColumnType.TEXT: sqltypes.TEXT(),
}


@dataclass(frozen=True)
class TableSchema:
    table: str
    table_identifier: str
    columns: List[Tuple[str, ColumnType]]
    column_identifiers: List[str]
    create_statement: str

    def column_metadata(self) -> List[dict]:
        return [{"name": name, "type": column_type.value} for name, column_type in self.columns]


def validate_table_name(name: Optional[str]) -> str:
    """
    Logical upload names are restricted to lowercase letters, digits and
    underscores so they stay readable in hand-written SQL.
    """
    if not name:
        raise InvalidIdentifier("Table can't be blank")
    if len(name) > TABLE_NAME_MAX_LENGTH:
        raise InvalidIdentifier(f"Table is too long (maximum is {TABLE_NAME_MAX_LENGTH} characters)")
    if not _TABLE_NAME_RE.match(name):
        raise InvalidIdentifier("Table can only contain lowercase letters, numbers, and underscores")
    return name


def quote_identifier(dialect: Dialect, name: Optional[str]) -> str:
    """
    Quote any user-supplied name through the dialect's identifier preparer.
    Names the storage engine would truncate or choke on are rejected instead.
    """
    if name is None or not name.strip():
        raise InvalidIdentifier("Column names can't be blank")
    if "\x00" in name:
        raise InvalidIdentifier(f"Invalid character in name: {name!r}")
    max_length = getattr(dialect, "max_identifier_length", None)
    if max_length and len(name.encode("utf-8")) > max_length:
        raise InvalidIdentifier(f"Name is too long (maximum is {max_length} bytes): {name!r}")
    return dialect.identifier_preparer.quote_identifier(name)


def qualified_table_name(dialect: Dialect, table: str, schema: Optional[str] = None) -> str:
    identifier = quote_identifier(dialect, table)
    if schema:
        return f"{quote_identifier(dialect, schema)}.{identifier}"
    return identifier


def storage_type(dialect: Dialect, column_type: ColumnType) -> str:
    return STORAGE_TYPES[column_type].compile(dialect=dialect)


def build_table_schema(
    dialect: Dialect,
    table: str,
    columns: Sequence[Tuple[str, ColumnType]],
    schema: Optional[str] = None,
) -> TableSchema:
    """
    Validate every identifier and render the CREATE TABLE statement.
    Nothing here touches the database.
    """
    validate_table_name(table)
    table_identifier = qualified_table_name(dialect, table, schema)

    if not columns:
        raise InvalidIdentifier("File has no columns")

    seen = set()
    column_identifiers: List[str] = []
    for name, _ in columns:
        quoted = quote_identifier(dialect, name)
        if name in seen:
            raise InvalidIdentifier(f"Duplicate column name: {name!r}")
        seen.add(name)
        column_identifiers.append(quoted)

    definitions = ", ".join(
        f"{identifier} {storage_type(dialect, column_type)}"
        for identifier, (_, column_type) in zip(column_identifiers, columns)
    )

    return TableSchema(
        table=table,
        table_identifier=table_identifier,
        columns=list(columns),
        column_identifiers=column_identifiers,
        create_statement=f"CREATE TABLE {table_identifier} ({definitions})",
    )
