"""
Split oversized tokens into QR-sized parts and reassemble them in any order.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Union

from .errors import MalformedToken

logger = logging.getLogger(__name__)

PART_MARKER = "p"
PART_SEPARATOR = "|"
# Fits a version 25 code at error correction level L with room for the header.
DEFAULT_MAX_PART_SIZE = 900
# Reassembled sessions remembered so late duplicate parts resolve to the same token.
COMPLETED_HISTORY = 32


@dataclass(frozen=True)
class ChunkToken:
    """One QR-sized fragment of a token."""

    session_id: str
    index: int
    total: int
    data: str

    def __post_init__(self) -> None:
        if self.total < 1:
            raise MalformedToken(f"part total must be >= 1, got {self.total}")
        if not 0 <= self.index < self.total:
            raise MalformedToken(f"part index {self.index} outside 0..{self.total - 1}")

    def to_text(self) -> str:
        return PART_SEPARATOR.join(
            (PART_MARKER, self.session_id, str(self.index), str(self.total), self.data)
        )

    @classmethod
    def from_text(cls, text: str) -> "ChunkToken":
        fields = text.split(PART_SEPARATOR, 4)
        if len(fields) != 5 or fields[0] != PART_MARKER:
            raise MalformedToken("not a multi-part token")
        _, session_id, index_raw, total_raw, data = fields
        if not session_id:
            raise MalformedToken("multi-part token has no session id")
        try:
            index = int(index_raw)
            total = int(total_raw)
        except ValueError as exc:
            raise MalformedToken("multi-part header is not numeric") from exc
        return cls(session_id=session_id, index=index, total=total, data=data)


@dataclass(frozen=True)
class Incomplete:
    """Reassembly progress for a session that is still missing parts."""

    session_id: str
    received: int
    total: int

    @property
    def missing(self) -> int:
        return self.total - self.received


@dataclass
class _PendingSession:
    total: int
    parts: Dict[int, str] = field(default_factory=dict)
    last_seen: float = 0.0


def is_part_text(text: str) -> bool:
    return text.startswith(PART_MARKER + PART_SEPARATOR)


class QrChunker:
    """
    Owns the pending reassembly state for one negotiation attempt.

    `abandon_after` is the number of seconds a partially received session may
    sit idle before it is dropped; None keeps sessions until `reset()`.
    """

    def __init__(
        self,
        abandon_after: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.abandon_after = abandon_after
        self._clock = clock
        self._pending: Dict[str, _PendingSession] = {}
        self._completed: "OrderedDict[str, str]" = OrderedDict()

    # Outbound -------------------------------------------------------

    def split(self, token: str, max_part_size: int = DEFAULT_MAX_PART_SIZE) -> List[ChunkToken]:
        if max_part_size < 1:
            raise ValueError("max_part_size must be at least 1")
        if len(token) <= max_part_size:
            return [ChunkToken(session_id=_new_session_id(), index=0, total=1, data=token)]
        slices = [token[i : i + max_part_size] for i in range(0, len(token), max_part_size)]
        session_id = _new_session_id()
        total = len(slices)
        return [
            ChunkToken(session_id=session_id, index=index, total=total, data=data)
            for index, data in enumerate(slices)
        ]

    def render(self, token: str, max_part_size: int = DEFAULT_MAX_PART_SIZE) -> List[str]:
        """Return the texts to display, one per QR code."""

        parts = self.split(token, max_part_size)
        if len(parts) == 1:
            return [token]
        return [part.to_text() for part in parts]

    # Inbound --------------------------------------------------------

    def ingest(self, chunk: ChunkToken) -> Union[str, Incomplete]:
        self.expire()
        done = self._completed.get(chunk.session_id)
        if done is not None:
            logger.debug("late part %d for reassembled session %s", chunk.index, chunk.session_id)
            return done
        now = self._clock()
        session = self._pending.get(chunk.session_id)
        if session is None:
            session = _PendingSession(total=chunk.total)
            self._pending[chunk.session_id] = session
        elif session.total != chunk.total:
            raise MalformedToken(
                f"part declares {chunk.total} parts but session {chunk.session_id} "
                f"expects {session.total}"
            )
        session.parts[chunk.index] = chunk.data
        session.last_seen = now
        if len(session.parts) < session.total:
            logger.debug(
                "session %s: %d/%d parts", chunk.session_id, len(session.parts), session.total
            )
            return Incomplete(chunk.session_id, len(session.parts), session.total)
        token = "".join(session.parts[index] for index in range(session.total))
        del self._pending[chunk.session_id]
        self._completed[chunk.session_id] = token
        while len(self._completed) > COMPLETED_HISTORY:
            self._completed.popitem(last=False)
        logger.debug("session %s reassembled (%d characters)", chunk.session_id, len(token))
        return token

    def feed(self, text: str) -> Union[str, Incomplete]:
        """Accept any scanned or pasted text; plain tokens pass straight through."""

        if is_part_text(text):
            return self.ingest(ChunkToken.from_text(text))
        return text

    def expire(self) -> List[str]:
        """Drop sessions idle for longer than `abandon_after`; return their ids."""

        if self.abandon_after is None:
            return []
        cutoff = self._clock() - self.abandon_after
        stale = [sid for sid, session in self._pending.items() if session.last_seen < cutoff]
        for session_id in stale:
            logger.info("abandoning incomplete session %s", session_id)
            self._pending.pop(session_id, None)
        return stale

    def pending(self) -> Dict[str, Incomplete]:
        return {
            sid: Incomplete(sid, len(session.parts), session.total)
            for sid, session in self._pending.items()
        }

    def reset(self) -> None:
        self._pending.clear()
        self._completed.clear()


def _new_session_id() -> str:
    return uuid.uuid4().hex[:8]


__all__ = [
    "ChunkToken",
    "DEFAULT_MAX_PART_SIZE",
    "Incomplete",
    "QrChunker",
    "is_part_text",
]
