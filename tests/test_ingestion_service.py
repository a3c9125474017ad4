from contextlib import contextmanager
from types import SimpleNamespace

import pytest
from sqlalchemy import inspect
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError

from queryhub.core.errors import (
    DuplicateTableError,
    IngestionError,
    IngestionFailure,
    InvalidIdentifier,
    MalformedInputError,
)
from queryhub.models.upload import Upload
from queryhub.services import ingestion_service
from queryhub.services.ingestion_service import (
    create_upload,
    delete_upload,
    list_uploads,
    prepare_ingestion,
    update_upload,
)


SALES_CSV = b"id,amount,signup_date\n1,10.5,2023-01-01\n2,20,2023-02-01\n"
MORE_SALES_CSV = b"id,amount\n1,1\n2,2\n3,3\n"


def _rows(engine, table):
    with engine.connect() as conn:
        return [tuple(r) for r in conn.exec_driver_sql(f'SELECT * FROM "{table}"').fetchall()]


def _has_table(engine, table):
    return inspect(engine).has_table(table)


def _failing_bulk_load(connection, plan):
    # get partway, then blow up like a storage engine would
    connection.exec_driver_sql(
        f"INSERT INTO {plan.schema.table_identifier} ({plan.schema.column_identifiers[0]}) VALUES (99)"
    )
    raise OperationalError("COPY", {}, Exception("disk full"))


def test_create_upload_end_to_end(db, engine) -> None:
    upload = create_upload(db, table="sales", contents=SALES_CSV, content_type="text/csv")

    assert upload.id is not None
    assert upload.columns == [
        {"name": "id", "type": "integer"},
        {"name": "amount", "type": "decimal"},
        {"name": "signup_date", "type": "date"},
    ]
    assert _has_table(engine, "sales")
    assert len(_rows(engine, "sales")) == 2
    columns = {c["name"]: str(c["type"]) for c in inspect(engine).get_columns("sales")}
    assert columns == {"id": "BIGINT", "amount": "DECIMAL", "signup_date": "DATE"}


def test_content_type_is_checked_before_anything_is_written(db, engine) -> None:
    with pytest.raises(IngestionError) as exc:
        create_upload(db, table="sales", contents=SALES_CSV, content_type="application/pdf")

    assert exc.value.reason == IngestionFailure.NOT_TABULAR
    assert str(exc.value) == "File is not a CSV"
    assert not _has_table(engine, "sales")
    assert db.query(Upload).count() == 0


def test_content_type_parameters_are_ignored(db) -> None:
    upload = create_upload(db, table="sales", contents=SALES_CSV, content_type="text/csv; charset=utf-8")
    assert upload.table == "sales"


def test_malformed_file_leaves_no_trace(db, engine) -> None:
    with pytest.raises(MalformedInputError):
        create_upload(db, table="sales", contents=b"a,b\n1,2\n1,2,3,4\n", content_type="text/csv")

    assert not _has_table(engine, "sales")
    assert db.query(Upload).count() == 0


def test_invalid_header_is_rejected_before_ddl(db, engine) -> None:
    with pytest.raises(InvalidIdentifier):
        create_upload(db, table="sales", contents=b"a,a\n1,2\n", content_type="text/csv")
    assert not _has_table(engine, "sales")


def test_duplicate_table_name(db) -> None:
    create_upload(db, table="sales", contents=SALES_CSV, content_type="text/csv")
    with pytest.raises(DuplicateTableError):
        create_upload(db, table="sales", contents=SALES_CSV, content_type="text/csv")


def test_failed_bulk_load_rolls_back_table_and_metadata(db, engine, monkeypatch) -> None:
    monkeypatch.setattr(ingestion_service, "bulk_load", _failing_bulk_load)

    with pytest.raises(IngestionError) as exc:
        create_upload(db, table="sales", contents=SALES_CSV, content_type="text/csv")

    assert exc.value.reason == IngestionFailure.STORAGE_REJECTED
    assert "disk full" in str(exc.value)
    assert not _has_table(engine, "sales")
    assert db.query(Upload).count() == 0


def test_failed_replace_keeps_previous_table(db, engine, monkeypatch) -> None:
    upload = create_upload(db, table="sales", contents=SALES_CSV, content_type="text/csv")
    before = _rows(engine, "sales")

    monkeypatch.setattr(ingestion_service, "bulk_load", _failing_bulk_load)
    with pytest.raises(IngestionError):
        update_upload(db, upload, contents=MORE_SALES_CSV, content_type="text/csv")

    assert _rows(engine, "sales") == before
    db.refresh(upload)
    assert [c["name"] for c in upload.columns] == ["id", "amount", "signup_date"]


def test_reupload_same_file_is_idempotent(db, engine) -> None:
    upload = create_upload(db, table="sales", contents=SALES_CSV, content_type="text/csv")
    update_upload(db, upload, contents=SALES_CSV, content_type="text/csv")

    assert len(_rows(engine, "sales")) == 2
    assert [name for name in inspect(engine).get_table_names() if name != "uploads"] == ["sales"]
    assert len(list_uploads(db)) == 1


def test_reupload_replaces_columns(db, engine) -> None:
    upload = create_upload(db, table="sales", contents=SALES_CSV, content_type="text/csv")
    upload = update_upload(db, upload, contents=MORE_SALES_CSV, content_type="text/csv")

    assert upload.columns == [{"name": "id", "type": "integer"}, {"name": "amount", "type": "integer"}]
    assert len(_rows(engine, "sales")) == 3


def test_reupload_under_new_name_drops_old_table(db, engine) -> None:
    upload = create_upload(db, table="sales_2023", contents=SALES_CSV, content_type="text/csv")
    update_upload(db, upload, table="sales_2024", contents=MORE_SALES_CSV, content_type="text/csv")

    assert not _has_table(engine, "sales_2023")
    assert len(_rows(engine, "sales_2024")) == 3


def test_rename_without_reload(db, engine) -> None:
    upload = create_upload(db, table="sales_2023", contents=SALES_CSV, content_type="text/csv")
    before = _rows(engine, "sales_2023")

    upload = update_upload(db, upload, table="sales_2024")

    assert upload.table == "sales_2024"
    assert not _has_table(engine, "sales_2023")
    assert _rows(engine, "sales_2024") == before
    assert [c["name"] for c in upload.columns] == ["id", "amount", "signup_date"]


def test_rename_to_taken_name_is_rejected(db, engine) -> None:
    first = create_upload(db, table="sales_2023", contents=SALES_CSV, content_type="text/csv")
    create_upload(db, table="sales_2024", contents=SALES_CSV, content_type="text/csv")

    with pytest.raises(DuplicateTableError):
        update_upload(db, first, table="sales_2024")
    assert _has_table(engine, "sales_2023")


def test_delete_drops_table_and_row_together(db, engine) -> None:
    upload = create_upload(db, table="sales", contents=SALES_CSV, content_type="text/csv")
    delete_upload(db, upload)

    assert not _has_table(engine, "sales")
    assert db.query(Upload).count() == 0


def test_delete_when_table_already_gone(db, engine) -> None:
    upload = create_upload(db, table="sales", contents=SALES_CSV, content_type="text/csv")
    # release the session's read lock before writing from another connection
    db.commit()
    with engine.begin() as conn:
        conn.exec_driver_sql('DROP TABLE "sales"')

    delete_upload(db, upload)
    assert db.query(Upload).count() == 0


def test_whitespace_only_cells_load_as_null(db, engine) -> None:
    upload = create_upload(db, table="ws", contents=b"id,n\n1,5\n2,   \n", content_type="text/csv")

    assert upload.columns == [{"name": "id", "type": "integer"}, {"name": "n", "type": "integer"}]
    with engine.connect() as conn:
        rows = conn.exec_driver_sql('SELECT id, n, typeof(n) FROM "ws" ORDER BY id').fetchall()
    assert [tuple(r) for r in rows] == [(1, 5, "integer"), (2, None, "null")]


# ------------------------------------------------------
# POSTGRESQL COPY
# ------------------------------------------------------
class FakeDbapiError(Exception):
    pass


class Psycopg2Cursor:
    def __init__(self, fail=False):
        self.fail = fail
        self.closed = False
        self.copied = []

    def copy_expert(self, sql, file):
        if self.fail:
            raise FakeDbapiError('invalid input syntax for type bigint: "x"')
        self.copied.append((sql, file.read()))

    def close(self):
        self.closed = True


class Psycopg3Cursor:
    def __init__(self):
        self.closed = False
        self.copied = []

    @contextmanager
    def copy(self, sql):
        chunks = []
        yield SimpleNamespace(write=chunks.append)
        self.copied.append((sql, "".join(chunks)))

    def close(self):
        self.closed = True


def _pg_connection(cursor):
    dialect = SimpleNamespace(name="postgresql", dbapi=SimpleNamespace(Error=FakeDbapiError))
    return SimpleNamespace(dialect=dialect, connection=SimpleNamespace(cursor=lambda: cursor))


def _pg_plan():
    return prepare_ingestion(
        postgresql.dialect(), "sales", b"id,n,note\n1,5,\"a, b\"\n2,  ,\n", "text/csv"
    )


EXPECTED_COPY_SQL = 'COPY "sales" FROM STDIN CSV HEADER'
EXPECTED_COPY_PAYLOAD = 'id,n,note\n1,5,"a, b"\n2,,\n'


def test_copy_streams_normalised_csv_through_psycopg2() -> None:
    cursor = Psycopg2Cursor()

    loaded = ingestion_service.bulk_load(_pg_connection(cursor), _pg_plan())

    assert loaded == 2
    assert cursor.copied == [(EXPECTED_COPY_SQL, EXPECTED_COPY_PAYLOAD)]
    assert cursor.closed


def test_copy_streams_normalised_csv_through_psycopg3() -> None:
    cursor = Psycopg3Cursor()

    ingestion_service.bulk_load(_pg_connection(cursor), _pg_plan())

    assert cursor.copied == [(EXPECTED_COPY_SQL, EXPECTED_COPY_PAYLOAD)]
    assert cursor.closed


def test_copy_driver_error_becomes_ingestion_error() -> None:
    cursor = Psycopg2Cursor(fail=True)

    with pytest.raises(IngestionError, match="invalid input syntax") as exc:
        ingestion_service.bulk_load(_pg_connection(cursor), _pg_plan())

    assert exc.value.reason == IngestionFailure.STORAGE_REJECTED
    assert cursor.closed
