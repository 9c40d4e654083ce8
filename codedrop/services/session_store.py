"""In-memory rendezvous session storage keyed by code."""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, Optional

from ..schemas.signaling import Blob, Role, SessionState, SessionSummary

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass(slots=True)
class PendingCandidate:
    origin: Role
    candidate: Blob


@dataclass
class SessionRecord:
    """Everything the relay knows about one code."""

    code: str
    created_at: float
    updated_at: float
    offer: Optional[Blob] = None
    answer: Optional[Blob] = None
    initiator_handle: Optional[str] = None
    responder_handle: Optional[str] = None
    offer_waiters: set[str] = field(default_factory=set)
    pending_candidates: Deque[PendingCandidate] = field(default_factory=deque)
    closed: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    @property
    def state(self) -> SessionState:
        if self.closed:
            return SessionState.CLOSED
        if self.answer is not None:
            return SessionState.ANSWERED
        if self.offer is not None:
            return SessionState.OFFERED
        return SessionState.EMPTY

    def handle_for(self, role: Role) -> Optional[str]:
        return self.initiator_handle if role is Role.INITIATOR else self.responder_handle

    def role_of(self, handle: str) -> Optional[Role]:
        if handle == self.initiator_handle:
            return Role.INITIATOR
        if handle == self.responder_handle:
            return Role.RESPONDER
        return None

    def bound_handles(self) -> set[str]:
        return {handle for handle in (self.initiator_handle, self.responder_handle) if handle}

    def summary(self) -> SessionSummary:
        return SessionSummary(
            code=self.code,
            state=self.state,
            has_offer=self.offer is not None,
            has_answer=self.answer is not None,
            initiator_handle=self.initiator_handle,
            responder_handle=self.responder_handle,
            offer_waiters=len(self.offer_waiters),
            pending_candidates=len(self.pending_candidates),
            created_at=datetime.fromtimestamp(self.created_at, tz=timezone.utc),
            updated_at=datetime.fromtimestamp(self.updated_at, tz=timezone.utc),
        )


class SessionStore:
    """Registry of live sessions with age-based eviction.

    The registry itself is guarded by one lock; mutations of a single record
    happen under that record's own lock, so independent codes never contend.
    """

    def __init__(
        self,
        max_age_seconds: float = 300.0,
        resolved_ttl_seconds: float = 3600.0,
        clock: Clock = time.time,
    ) -> None:
        self._max_age = max_age_seconds
        self._resolved_ttl = resolved_ttl_seconds
        self._clock = clock
        self._sessions: Dict[str, SessionRecord] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def now(self) -> float:
        return self._clock()

    async def create(self, code: str) -> SessionRecord:
        """Return the live record for ``code``, creating it when absent."""

        async with self._lock:
            record = self._sessions.get(code)
            now = self._clock()
            if record is not None and self._is_expired(record, now, self._max_age):
                self._evict(record)
                record = None
            if record is None:
                record = SessionRecord(code=code, created_at=now, updated_at=now)
                self._sessions[code] = record
                logger.debug("Created session for code %s", code)
            return record

    async def get(self, code: str) -> Optional[SessionRecord]:
        async with self._lock:
            record = self._sessions.get(code)
            if record is None:
                return None
            if self._is_expired(record, self._clock(), self._max_age):
                self._evict(record)
                return None
            return record

    async def delete(self, code: str, *, expected: SessionRecord | None = None) -> Optional[SessionRecord]:
        """Remove the record for ``code``; with ``expected``, only if it is still that record."""

        async with self._lock:
            record = self._sessions.get(code)
            if record is None or (expected is not None and record is not expected):
                return None
            self._evict(record)
            return record

    async def sweep_expired(self, max_age: float | None = None) -> list[SessionRecord]:
        """Remove unresolved sessions older than ``max_age`` and stale resolved ones."""

        limit = self._max_age if max_age is None else max_age
        async with self._lock:
            now = self._clock()
            expired = [record for record in self._sessions.values() if self._is_expired(record, now, limit)]
            for record in expired:
                self._evict(record)
        if expired:
            logger.info("Swept %d expired session(s)", len(expired))
        return expired

    async def find_by_handle(self, handle: str) -> list[SessionRecord]:
        async with self._lock:
            return [
                record
                for record in self._sessions.values()
                if handle in record.bound_handles() or handle in record.offer_waiters
            ]

    async def snapshot(self) -> list[SessionSummary]:
        async with self._lock:
            records = list(self._sessions.values())
        return [record.summary() for record in records]

    def _is_expired(self, record: SessionRecord, now: float, max_age: float) -> bool:
        age = now - record.created_at
        if record.answer is None:
            return age > max_age
        return age > self._resolved_ttl

    def _evict(self, record: SessionRecord) -> None:
        self._sessions.pop(record.code, None)
        record.closed = True
