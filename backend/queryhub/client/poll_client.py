"""
Client for POST /queries/run.

A query that outlives one request comes back as a `pending` envelope with a
continuation token. The client re-posts the caller's original parameters
with that token merged in, once per interval, until it gets a result or an
error. Waiting is an asyncio sleep, so the event loop stays free.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import httpx
from pydantic import TypeAdapter, ValidationError

from ..core.config import settings
from ..core.errors import ExecutionError, TransportError
from ..schemas.queries import ExecutionEnvelope, FailedEnvelope, PendingEnvelope

logger = logging.getLogger(__name__)

_ENVELOPE = TypeAdapter(ExecutionEnvelope)


class PollState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"


class PollClient:
    """
    Drives one query at a time through the run/poll loop.

    `run_query` resolves exactly once with the result payload, or raises
    exactly once: TransportError for network/HTTP failures, ExecutionError
    when the server reports the query failed.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        run_path: str = "/queries/run",
        cancel_path: str = "/queries/cancel",
        interval: float = settings.POLL_INTERVAL_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.run_path = run_path
        self.cancel_path = cancel_path
        self.interval = interval
        self._sleep = sleep

        self.state = PollState.IDLE
        self.attempts = 0
        self.continuation: Optional[str] = None

    async def run_query(self, parameters: Mapping[str, Any]) -> Dict[str, Any]:
        if self.state in (PollState.REQUESTING, PollState.RETRYING):
            raise RuntimeError("A query is already running on this client")

        original = dict(parameters)
        body = dict(original)
        self.attempts = 0
        self.continuation = None

        try:
            while True:
                self.state = PollState.REQUESTING
                self.attempts += 1
                envelope = await self._request(body)

                if isinstance(envelope, PendingEnvelope):
                    self.continuation = envelope.continuation
                    body = {**original, "continuation": envelope.continuation}
                    self.state = PollState.RETRYING
                    logger.debug("Query still running, retrying in %ss (attempt %d)", self.interval, self.attempts)
                    await self._sleep(self.interval)
                    continue

                if isinstance(envelope, FailedEnvelope):
                    self.state = PollState.FAILED
                    raise ExecutionError(envelope.error)

                self.state = PollState.COMPLETED
                self.continuation = None
                return envelope.result.model_dump()
        except asyncio.CancelledError:
            # Caller gave up; tell the server so it can drop the run.
            if self.continuation:
                await self._send_cancel(self.continuation)
            self.state = PollState.IDLE
            raise

    async def _request(self, body: Dict[str, Any]):
        try:
            response = await self.client.post(self.run_path, json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            self.state = PollState.FAILED
            raise TransportError(str(e) or e.__class__.__name__) from e

        try:
            return _ENVELOPE.validate_python(response.json())
        except (ValueError, ValidationError) as e:
            self.state = PollState.FAILED
            raise TransportError(f"Unexpected response from {self.run_path}: {e}") from e

    async def _send_cancel(self, continuation: str) -> None:
        try:
            await self.client.post(self.cancel_path, json={"continuation": continuation})
        except httpx.HTTPError as e:
            logger.warning("Could not cancel abandoned query: %s", e)


async def run_query(
    base_url: str,
    parameters: Mapping[str, Any],
    transport: Optional[httpx.AsyncBaseTransport] = None,
    **kwargs,
) -> Dict[str, Any]:
    """One-shot helper: open a client, run the query, close the client."""
    async with httpx.AsyncClient(base_url=base_url, transport=transport, timeout=httpx.Timeout(30.0)) as client:
        return await PollClient(client, **kwargs).run_query(parameters)
