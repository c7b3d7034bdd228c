import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Optional

from opsrouter.schemas import RequestContext

if TYPE_CHECKING:
    from opsrouter.provider import CapabilityProvider

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class PendingConfirmation:
    key: str
    provider: "CapabilityProvider"
    context: RequestContext
    created_ms: int = field(default_factory=_now_ms)


class PendingStore:
    """
    Confirmations awaiting a yes/no turn, sharded by session.

    Keys are "{session_id}_{epoch_ms}". A session holds one live entry: adding
    a new one drops whatever prompt the user left unanswered.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, "OrderedDict[str, PendingConfirmation]"] = {}
        self._lock = asyncio.Lock()

    async def add(self, provider: "CapabilityProvider", context: RequestContext) -> str:
        async with self._lock:
            now = _now_ms()
            key = f"{context.session_id}_{now}"
            stale = self._sessions.get(context.session_id)
            if stale:
                logger.info("Replacing %d unanswered confirmation(s) for session %s", len(stale), context.session_id)
            self._sessions[context.session_id] = OrderedDict(
                [(key, PendingConfirmation(key=key, provider=provider, context=context, created_ms=now))]
            )
            return key

    async def discard(self, session_id: str, provider_id: str) -> bool:
        """Drop the session's entry if it belongs to provider_id (answered out of band)."""
        async with self._lock:
            bucket = self._sessions.get(session_id)
            if not bucket:
                return False
            latest = bucket[next(reversed(bucket))]
            if latest.provider.id != provider_id:
                return False
            del self._sessions[session_id]
            return True

    async def latest(self, session_id: str) -> Optional[PendingConfirmation]:
        async with self._lock:
            bucket = self._sessions.get(session_id)
            if not bucket:
                return None
            return bucket[next(reversed(bucket))]

    async def remove(self, session_id: str, key: str) -> bool:
        async with self._lock:
            bucket = self._sessions.get(session_id)
            if not bucket or key not in bucket:
                return False
            del bucket[key]
            if not bucket:
                del self._sessions[session_id]
            return True

    async def clear(self) -> None:
        async with self._lock:
            self._sessions.clear()

    def count(self, session_id: Optional[str] = None) -> int:
        if session_id is not None:
            return len(self._sessions.get(session_id, ()))
        return sum(len(b) for b in self._sessions.values())
