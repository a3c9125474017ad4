import io
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, List, Optional, Union

from sqlalchemy import text
from sqlalchemy.engine import Connection, Dialect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.errors import DuplicateTableError, IngestionError, IngestionFailure
from ..models.upload import Upload
from .csv_reader import CsvTable, read_csv
from .schema_builder import (
    TableSchema,
    build_table_schema,
    qualified_table_name,
    quote_identifier,
    validate_table_name,
)
from .type_inference import infer_column_types

logger = logging.getLogger(__name__)

CSV_CONTENT_TYPES = {"text/csv"}


@dataclass
class IngestionPlan:
    schema: TableSchema
    csv: CsvTable

    @property
    def row_count(self) -> int:
        return len(self.csv.rows)


# ------------------------------------------------------
# PHASE 1: PURE VALIDATION (no database access)
# ------------------------------------------------------
def prepare_ingestion(
    dialect: Dialect,
    table: str,
    contents: Union[bytes, str],
    content_type: Optional[str],
    schema_name: Optional[str] = None,
) -> IngestionPlan:
    """
    Parse the file, infer column types and render the DDL.
    Everything that can fail on bad input fails here, before any
    transaction is opened.
    """
    media_type = (content_type or "").split(";")[0].strip().lower()
    if media_type not in CSV_CONTENT_TYPES:
        raise IngestionError("File is not a CSV", reason=IngestionFailure.NOT_TABULAR)

    csv_table = read_csv(contents)
    column_types = infer_column_types(csv_table.rows, csv_table.width)
    table_schema = build_table_schema(
        dialect,
        table,
        list(zip(csv_table.header, column_types)),
        schema=schema_name,
    )
    return IngestionPlan(schema=table_schema, csv=csv_table)


# ------------------------------------------------------
# PHASE 2: STORAGE STEPS (caller owns the transaction)
# ------------------------------------------------------
def drop_table(connection: Connection, table_identifier: str) -> None:
    connection.exec_driver_sql(f"DROP TABLE IF EXISTS {table_identifier}")


def rename_table(connection: Connection, table_identifier: str, new_table: str) -> None:
    new_identifier = quote_identifier(connection.dialect, new_table)
    connection.exec_driver_sql(f"ALTER TABLE {table_identifier} RENAME TO {new_identifier}")


def _copy_from_stdin(connection: Connection, plan: IngestionPlan) -> None:
    sql = f"COPY {plan.schema.table_identifier} FROM STDIN CSV HEADER"
    payload = plan.csv.to_csv()
    dbapi_connection = connection.connection
    cursor = dbapi_connection.cursor()
    try:
        if hasattr(cursor, "copy_expert"):
            # psycopg2
            cursor.copy_expert(sql, io.StringIO(payload))
        else:
            # psycopg 3
            with cursor.copy(sql) as copy:
                copy.write(payload)
    except connection.dialect.dbapi.Error as e:
        raise IngestionError(f"Could not load file: {e}") from e
    finally:
        cursor.close()


def _insert_many(connection: Connection, plan: IngestionPlan) -> None:
    if not plan.csv.rows:
        return
    width = plan.csv.width
    keys = [f"p{i}" for i in range(width)]
    statement = text(
        f"INSERT INTO {plan.schema.table_identifier} "
        f"({', '.join(plan.schema.column_identifiers)}) "
        f"VALUES ({', '.join(':' + k for k in keys)})"
    )
    params: List[dict] = []
    for row in plan.csv.rows:
        padded = list(row) + [None] * (width - len(row))
        params.append(dict(zip(keys, padded)))
    connection.execute(statement, params)


def bulk_load(connection: Connection, plan: IngestionPlan) -> int:
    """
    Stream every row into the freshly created table.
    PostgreSQL gets COPY; other backends get one executemany batch.
    """
    if connection.dialect.name == "postgresql":
        _copy_from_stdin(connection, plan)
    else:
        _insert_many(connection, plan)
    return plan.row_count


def ingest(connection: Connection, plan: IngestionPlan, replace_target: Optional[str] = None) -> int:
    """
    Drop (optional), create and load. Must run inside a transaction so a
    failure at any step leaves storage exactly as it was.
    """
    if replace_target:
        drop_table(connection, replace_target)
    connection.exec_driver_sql(plan.schema.create_statement)
    loaded = bulk_load(connection, plan)
    logger.info("Loaded %d rows into %s", loaded, plan.schema.table_identifier)
    return loaded


# ------------------------------------------------------
# UPLOAD OPERATIONS (metadata + storage as one unit)
# ------------------------------------------------------
def upload_table_identifier(dialect: Dialect, table: str) -> str:
    return qualified_table_name(dialect, table, settings.UPLOADS_SCHEMA)


@contextmanager
def storage_transaction(db: Session) -> Iterator[Connection]:
    """
    Yield the session's own connection so metadata writes and DDL share
    one transaction. Commit on success, roll everything back otherwise.
    """
    try:
        yield db.connection()
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        detail = getattr(e, "orig", None) or e
        logger.warning("Storage rejected upload change: %s", detail)
        raise IngestionError(f"Could not save table: {detail}") from e
    except Exception:
        db.rollback()
        raise


def _ensure_table_available(db: Session, table: str, upload_id: Optional[int] = None) -> None:
    query = db.query(Upload).filter(Upload.table == table)
    if upload_id is not None:
        query = query.filter(Upload.id != upload_id)
    if query.first() is not None:
        raise DuplicateTableError("Table has already been taken")


def list_uploads(db: Session) -> List[Upload]:
    return db.query(Upload).order_by(Upload.table).all()


def get_upload(db: Session, upload_id: int) -> Optional[Upload]:
    return db.query(Upload).filter(Upload.id == upload_id).first()


def create_upload(
    db: Session,
    table: str,
    contents: Union[bytes, str],
    content_type: Optional[str],
    description: Optional[str] = None,
    creator_id: Optional[int] = None,
) -> Upload:
    """
    Create the Upload row and its table from a CSV file.
    """
    dialect = db.get_bind().dialect
    plan = prepare_ingestion(dialect, table, contents, content_type, schema_name=settings.UPLOADS_SCHEMA)
    _ensure_table_available(db, table)

    upload = Upload(
        table=table,
        description=description,
        creator_id=creator_id,
        columns=plan.schema.column_metadata(),
    )
    with storage_transaction(db) as connection:
        db.add(upload)
        db.flush()
        ingest(connection, plan)

    db.refresh(upload)
    logger.info("Created upload %s (%s, %d rows)", upload.id, upload.table, plan.row_count)
    return upload


def update_upload(
    db: Session,
    upload: Upload,
    table: Optional[str] = None,
    contents: Optional[Union[bytes, str]] = None,
    content_type: Optional[str] = None,
    description: Optional[str] = None,
) -> Upload:
    """
    Re-upload and/or rename.

    - new file: the old table is dropped and the new one loaded under the
      (possibly new) name
    - name only: the existing table is renamed, data untouched
    """
    dialect = db.get_bind().dialect
    original_table = upload.table
    new_table = table or original_table

    plan = None
    if contents is not None:
        plan = prepare_ingestion(dialect, new_table, contents, content_type, schema_name=settings.UPLOADS_SCHEMA)
    else:
        validate_table_name(new_table)

    if new_table != original_table:
        _ensure_table_available(db, new_table, upload_id=upload.id)

    original_identifier = upload_table_identifier(dialect, original_table)

    with storage_transaction(db) as connection:
        upload.table = new_table
        if description is not None:
            upload.description = description
        if plan is not None:
            upload.columns = plan.schema.column_metadata()
        db.flush()

        if plan is not None:
            ingest(connection, plan, replace_target=original_identifier)
        elif new_table != original_table:
            rename_table(connection, original_identifier, new_table)

    db.refresh(upload)
    logger.info("Updated upload %s (%s -> %s)", upload.id, original_table, upload.table)
    return upload


def delete_upload(db: Session, upload: Upload) -> None:
    """
    Drop the table and delete the row together.
    """
    dialect = db.get_bind().dialect
    upload_id, table = upload.id, upload.table
    identifier = upload_table_identifier(dialect, table)
    with storage_transaction(db) as connection:
        drop_table(connection, identifier)
        db.delete(upload)
        db.flush()
    logger.info("Deleted upload %s (%s)", upload_id, table)
