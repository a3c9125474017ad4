import logging
import threading
import time
from typing import Callable, Optional, Union

from ..core.config import settings
from ..core.errors import ExecutionError
from ..schemas.queries import (
    DoneEnvelope,
    FailedEnvelope,
    PendingEnvelope,
    QueryParameters,
    QueryResultPayload,
)
from .continuation import ContinuationToken, decode_token, encode_token
from .query_engine import QueryEngine, ThreadPoolQueryEngine

logger = logging.getLogger(__name__)

Envelope = Union[PendingEnvelope, DoneEnvelope, FailedEnvelope]


class ExecutionDispatcher:
    """
    Server side of the polling protocol.

    Every call returns within roughly `time_budget` seconds with one of:
    a finished result, a fresh continuation token, or an error. The only
    state carried between calls is inside the token.
    """

    def __init__(
        self,
        engine: QueryEngine,
        secret_key: str,
        time_budget: float = 3.0,
        ttl_seconds: float = 600,
        default_data_source: str = "main",
        clock: Callable[[], float] = time.time,
    ):
        self.engine = engine
        self.secret_key = secret_key
        self.time_budget = time_budget
        self.ttl_seconds = ttl_seconds
        self.default_data_source = default_data_source
        self.clock = clock

    def _resume(self, continuation: str) -> ContinuationToken:
        return decode_token(continuation, self.secret_key, now=self.clock())

    def execute(self, params: QueryParameters) -> Envelope:
        try:
            if params.continuation:
                token = self._resume(params.continuation)
                run_id, data_source = token.run_id, token.data_source
            else:
                data_source = params.data_source or self.default_data_source
                run_id = self.engine.start(data_source, params.statement)

            result = self.engine.wait(run_id, self.time_budget)
        except ExecutionError as e:
            logger.info("Query failed: %s", e)
            return FailedEnvelope(error=str(e))
        except Exception as e:
            logger.exception("Query engine error")
            return FailedEnvelope(error=f"Query engine error: {e}")

        if result is None:
            token = ContinuationToken(run_id=run_id, data_source=data_source, issued_at=self.clock())
            return PendingEnvelope(continuation=encode_token(token, self.secret_key, self.ttl_seconds))

        logger.info("Query run %s finished with %d rows in %d ms", run_id, len(result.rows), result.duration_ms)
        return DoneEnvelope(result=QueryResultPayload(**result.to_payload()))

    def cancel(self, continuation: str) -> bool:
        try:
            token = self._resume(continuation)
        except ExecutionError:
            return False
        return self.engine.cancel(token.run_id)


_dispatcher: Optional[ExecutionDispatcher] = None
_dispatcher_lock = threading.Lock()


def get_dispatcher() -> ExecutionDispatcher:
    """
    FastAPI dependency. The engine's worker pool is shared by the whole
    process; override this dependency to plug in another engine.
    """
    global _dispatcher
    if _dispatcher is not None:
        return _dispatcher
    with _dispatcher_lock:
        if _dispatcher is None:
            engine = ThreadPoolQueryEngine(
                settings.data_source_urls(),
                row_limit=settings.QUERY_ROW_LIMIT,
                max_workers=settings.QUERY_WORKERS,
                ttl_seconds=settings.CONTINUATION_TTL_SECONDS,
            )
            _dispatcher = ExecutionDispatcher(
                engine,
                secret_key=settings.SECRET_KEY,
                time_budget=settings.QUERY_TIME_BUDGET_SECONDS,
                ttl_seconds=settings.CONTINUATION_TTL_SECONDS,
                default_data_source=settings.DEFAULT_DATA_SOURCE,
            )
        return _dispatcher


def shutdown_dispatcher() -> None:
    global _dispatcher
    with _dispatcher_lock:
        if _dispatcher is not None and isinstance(_dispatcher.engine, ThreadPoolQueryEngine):
            _dispatcher.engine.shutdown()
        _dispatcher = None
