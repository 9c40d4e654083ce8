"""Rendezvous state machine: which message is valid for a code, and when."""
from __future__ import annotations

import logging
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from ..core.errors import ConflictError, NotFoundError
from ..schemas.signaling import Blob, Role, SessionState
from .session_store import PendingCandidate, SessionRecord, SessionStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AnswerResult:
    record: SessionRecord
    accepted: bool


class RendezvousProtocol:
    """Apply offer, answer and candidate messages to the session store.

    States per code: EMPTY -> OFFERED -> ANSWERED -> CLOSED. Reads never
    transition; a record leaves the store on clear, on disconnect of a bound
    handle, or on expiry.
    """

    def __init__(self, store: SessionStore) -> None:
        self._store = store

    @property
    def store(self) -> SessionStore:
        return self._store

    @asynccontextmanager
    async def _locked(self, code: str, *, create: bool = False) -> AsyncIterator[SessionRecord]:
        while True:
            record = await (self._store.create(code) if create else self._store.get(code))
            if record is None:
                raise NotFoundError("Connection not found", code=code)
            async with record.lock:
                if record.closed:
                    if create:
                        # Deleted while we waited for the lock; join a fresh record.
                        continue
                    raise NotFoundError("Connection not found", code=code)
                yield record
                record.updated_at = self._store.now()
                return

    async def send_offer(self, code: str, offer: Blob, handle: str | None = None) -> SessionRecord:
        async with self._locked(code, create=True) as record:
            if record.answer is not None:
                raise ConflictError("Code already answered; generate a new code", code=code)
            if handle and record.initiator_handle and record.initiator_handle != handle:
                raise ConflictError("Code is in use by another sender", code=code)
            if record.offer is not None:
                logger.info("Replacing unanswered offer for code %s", code)
            record.offer = offer
            if handle:
                record.initiator_handle = handle
            return record

    async def wait_for_offer(self, code: str, handle: str) -> tuple[SessionRecord, Optional[Blob]]:
        """Join ``code`` as a prospective responder and return the offer if present."""

        async with self._locked(code, create=True) as record:
            if record.answer is not None and record.responder_handle != handle:
                raise NotFoundError("Code already connected", code=code)
            record.offer_waiters.add(handle)
            return record, record.offer

    async def get_offer(self, code: str) -> Blob:
        async with self._locked(code) as record:
            if record.offer is None:
                raise NotFoundError("Offer not found", code=code, pending=True)
            return record.offer

    async def send_answer(self, code: str, answer: Blob, handle: str | None = None) -> AnswerResult:
        async with self._locked(code) as record:
            if record.offer is None:
                raise NotFoundError("Offer not found", code=code, pending=True)
            if record.answer is not None:
                same_responder = handle is not None and handle == record.responder_handle
                if same_responder or answer == record.answer:
                    return AnswerResult(record=record, accepted=False)
                raise ConflictError("Code already answered by another receiver", code=code)
            record.answer = answer
            if handle:
                record.responder_handle = handle
                record.offer_waiters.discard(handle)
            logger.info("Code %s answered", code)
            return AnswerResult(record=record, accepted=True)

    async def get_answer(self, code: str) -> Blob:
        async with self._locked(code) as record:
            if record.answer is None:
                raise NotFoundError("Answer not found", code=code, pending=True)
            return record.answer

    async def send_candidate(self, code: str, candidate: Blob, role: Role) -> SessionRecord:
        async with self._locked(code) as record:
            if record.state not in (SessionState.OFFERED, SessionState.ANSWERED):
                raise NotFoundError("Connection not found", code=code)
            record.pending_candidates.append(PendingCandidate(origin=role, candidate=candidate))
            return record

    async def pop_candidate(self, code: str, role: Role) -> Blob:
        """Consume the oldest candidate addressed to ``role``."""

        async with self._locked(code) as record:
            origin = role.opposite
            for index, entry in enumerate(record.pending_candidates):
                if entry.origin is origin:
                    del record.pending_candidates[index]
                    return entry.candidate
            raise NotFoundError("No ICE candidates found", code=code, pending=True)

    async def drain_candidates(self, code: str, role: Role) -> list[Blob]:
        try:
            async with self._locked(code) as record:
                origin = role.opposite
                drained = [entry.candidate for entry in record.pending_candidates if entry.origin is origin]
                if drained:
                    record.pending_candidates = deque(
                        entry for entry in record.pending_candidates if entry.origin is not origin
                    )
                return drained
        except NotFoundError:
            return []

    async def resolve_role(self, code: str, handle: str) -> Optional[Role]:
        record = await self._store.get(code)
        if record is None:
            return None
        return record.role_of(handle)

    async def state(self, code: str) -> SessionState:
        record = await self._store.get(code)
        return SessionState.CLOSED if record is None else record.state

    async def clear(self, code: str) -> Optional[SessionRecord]:
        record = await self._store.delete(code)
        if record is not None:
            logger.info("Cleared connection for code %s", code)
        return record

    async def disconnect(self, handle: str) -> list[SessionRecord]:
        """Tear down every session ``handle`` is bound to; drop it as an offer waiter elsewhere."""

        closed: list[SessionRecord] = []
        for record in await self._store.find_by_handle(handle):
            if handle in record.bound_handles():
                removed = await self._store.delete(record.code, expected=record)
                if removed is not None:
                    logger.info("Cleaned up connection for code %s after disconnect", record.code)
                    closed.append(removed)
                continue
            async with record.lock:
                record.offer_waiters.discard(handle)
                orphan = record.offer is None and not record.bound_handles() and not record.offer_waiters
                if orphan:
                    await self._store.delete(record.code, expected=record)
        return closed

    async def sweep(self, max_age: float | None = None) -> list[SessionRecord]:
        return await self._store.sweep_expired(max_age)
