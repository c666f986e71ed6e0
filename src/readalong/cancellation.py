"""
Cooperative cancellation and per-entity busy tracking for engine operations.

Every logical operation (summon batch, reply, regenerate, quiz generation,
quiz submit) runs under one CancellationToken. Cancelling stops the
operation at its next suspension point; work already committed stays.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from .errors import OperationCancelled
from .observability import bind_operation, get_logger, unbind_operation

logger = get_logger(__name__)

T = TypeVar("T")


class CancellationToken:
    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        self._event.set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise OperationCancelled("operation cancelled")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Awaits `awaitable`, abandoning it as soon as the token is cancelled."""
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if not work.done():
            work.cancel()
            await asyncio.gather(work, return_exceptions=True)
            raise OperationCancelled("operation cancelled")
        self.raise_if_cancelled()
        return work.result()


class OperationGate:
    """
    Busy map keyed by (operation kind, entity id).
    A second request for a busy key is refused; different entities proceed
    independently.
    """

    def __init__(self):
        self._tokens: dict[tuple[str, str], CancellationToken] = {}

    def is_busy(self, kind: str, entity_id: str) -> bool:
        return (kind, entity_id) in self._tokens

    def try_acquire(self, kind: str, entity_id: str) -> CancellationToken | None:
        key = (kind, entity_id)
        if key in self._tokens:
            logger.info("operation_busy", kind=kind, entity_id=entity_id)
            return None
        token = CancellationToken()
        self._tokens[key] = token
        bind_operation(kind, entity_id)
        return token

    def release(self, kind: str, entity_id: str, token: CancellationToken):
        key = (kind, entity_id)
        if self._tokens.get(key) is token:
            del self._tokens[key]
            unbind_operation()

    def cancel(self, kind: str, entity_id: str) -> bool:
        token = self._tokens.get((kind, entity_id))
        if token is None:
            return False
        token.cancel()
        logger.info("operation_cancel_requested", kind=kind, entity_id=entity_id)
        return True
