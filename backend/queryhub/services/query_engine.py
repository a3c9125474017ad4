import logging
import threading
import time
import uuid
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ..core.db import make_engine
from ..core.errors import ExecutionError

logger = logging.getLogger(__name__)


@dataclass
class QueryResult:
    columns: List[str]
    rows: List[List[Any]]
    truncated: bool = False
    duration_ms: int = 0

    def to_payload(self) -> Dict[str, Any]:
        return {
            "columns": self.columns,
            "rows": self.rows,
            "row_count": len(self.rows),
            "truncated": self.truncated,
            "duration_ms": self.duration_ms,
        }


def _json_value(value: Any) -> Any:
    # binary columns (BLOB, bytea) go over the wire as hex
    if isinstance(value, memoryview):
        value = value.tobytes()
    if isinstance(value, (bytes, bytearray)):
        return value.hex()
    return value


class QueryEngine(Protocol):
    """What the dispatcher needs from whatever actually runs SQL."""

    def has_data_source(self, data_source: str) -> bool: ...

    def start(self, data_source: str, statement: str) -> str: ...

    def wait(self, run_id: str, timeout: float) -> Optional[QueryResult]:
        """Result if finished within `timeout`, None if still running."""
        ...

    def cancel(self, run_id: str) -> bool: ...


@dataclass
class _Run:
    future: Future
    data_source: str
    last_seen: float = field(default_factory=time.monotonic)


class ThreadPoolQueryEngine:
    """
    Runs statements on a worker pool against SQLAlchemy engines, one per
    configured data source. Runs nobody has asked about for `ttl_seconds`
    are dropped.

    Statements run inside a transaction that is always rolled back.
    """

    def __init__(
        self,
        data_sources: Dict[str, str],
        row_limit: int = 10_000,
        max_workers: int = 4,
        ttl_seconds: float = 600,
        engine_factory: Callable[[str], Engine] = make_engine,
    ):
        self.row_limit = row_limit
        self.ttl_seconds = ttl_seconds
        self._urls = dict(data_sources)
        self._engine_factory = engine_factory
        self._engines: Dict[str, Engine] = {}
        self._runs: Dict[str, _Run] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="queryhub-query")

    def has_data_source(self, data_source: str) -> bool:
        return data_source in self._urls

    def _engine_for(self, data_source: str) -> Engine:
        with self._lock:
            engine = self._engines.get(data_source)
            if engine is None:
                engine = self._engine_factory(self._urls[data_source])
                self._engines[data_source] = engine
            return engine

    def _execute(self, data_source: str, statement: str) -> QueryResult:
        started = time.monotonic()
        try:
            with self._engine_for(data_source).connect() as conn:
                result = conn.exec_driver_sql(statement)
                if result.returns_rows:
                    columns = list(result.keys())
                    fetched = result.fetchmany(self.row_limit + 1)
                    rows = [[_json_value(v) for v in r] for r in fetched[: self.row_limit]]
                    truncated = len(fetched) > self.row_limit
                else:
                    columns, rows, truncated = [], [], False
                conn.rollback()
        except SQLAlchemyError as e:
            raise ExecutionError(str(getattr(e, "orig", None) or e)) from e

        duration_ms = int((time.monotonic() - started) * 1000)
        return QueryResult(columns=columns, rows=rows, truncated=truncated, duration_ms=duration_ms)

    def _evict_expired(self) -> None:
        # caller holds the lock
        cutoff = time.monotonic() - self.ttl_seconds
        for run_id in [rid for rid, run in self._runs.items() if run.last_seen < cutoff]:
            run = self._runs.pop(run_id)
            run.future.cancel()
            logger.info("Dropped abandoned query run %s", run_id)

    def start(self, data_source: str, statement: str) -> str:
        if not self.has_data_source(data_source):
            raise ExecutionError(f"Unknown data source: {data_source}")
        run_id = uuid.uuid4().hex
        try:
            future = self._executor.submit(self._execute, data_source, statement)
        except RuntimeError as e:
            # executor already shut down
            raise ExecutionError(f"Query engine is not accepting queries: {e}") from e
        with self._lock:
            self._evict_expired()
            self._runs[run_id] = _Run(future=future, data_source=data_source)
        logger.debug("Started query run %s on %s", run_id, data_source)
        return run_id

    def wait(self, run_id: str, timeout: float) -> Optional[QueryResult]:
        with self._lock:
            self._evict_expired()
            run = self._runs.get(run_id)
            if run is None:
                raise ExecutionError("Query not found or expired, please run it again")
            run.last_seen = time.monotonic()

        try:
            result = run.future.result(timeout=timeout)
        except FutureTimeoutError:
            return None
        except CancelledError as e:
            self._forget(run_id)
            raise ExecutionError("Query was cancelled") from e
        except ExecutionError:
            self._forget(run_id)
            raise
        except Exception as e:
            self._forget(run_id)
            logger.exception("Query run %s crashed", run_id)
            raise ExecutionError(f"Query failed: {e}") from e

        self._forget(run_id)
        return result

    def cancel(self, run_id: str) -> bool:
        """
        Forget the run. A statement that already reached the database
        finishes there; its result is discarded.
        """
        with self._lock:
            run = self._runs.pop(run_id, None)
        if run is None:
            return False
        run.future.cancel()
        logger.info("Cancelled query run %s", run_id)
        return True

    def _forget(self, run_id: str) -> None:
        with self._lock:
            self._runs.pop(run_id, None)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        with self._lock:
            for engine in self._engines.values():
                engine.dispose()
            self._engines.clear()
            self._runs.clear()
