"""
Registry of live call sessions.

Two indexes: dialled calls waiting for their media stream (keyed by call SID,
pruned by age) and streaming sessions (keyed by stream SID). Both are only
touched from the event loop thread, so no locking.
"""

import time
from typing import TYPE_CHECKING, Callable, Dict, Optional, Tuple

from call_trainer.logging_config import get_logger

if TYPE_CHECKING:
    from call_trainer.core.call_session import CallSession

logger = get_logger(__name__)


class SessionRegistry:
    def __init__(self, pending_ttl_sec: float = 600.0, clock: Callable[[], float] = time.monotonic):
        self._pending_ttl_sec = pending_ttl_sec
        self._clock = clock
        self._pending: Dict[str, Tuple[float, "CallSession"]] = {}
        self._by_stream: Dict[str, "CallSession"] = {}

    def add_pending(self, call_id: str, session: "CallSession") -> None:
        self.prune()
        self._pending[call_id] = (self._clock(), session)

    def claim_pending(self, call_id: Optional[str]) -> Optional["CallSession"]:
        """Remove and return the dialled session for a call, if still known."""
        self.prune()
        if not call_id:
            return None
        entry = self._pending.pop(call_id, None)
        return entry[1] if entry else None

    def prune(self) -> int:
        """Forget dialled calls whose stream never started."""
        cutoff = self._clock() - self._pending_ttl_sec
        expired = [call_id for call_id, (added, _) in self._pending.items() if added < cutoff]
        for call_id in expired:
            del self._pending[call_id]
        if expired:
            logger.info("Pruned dialled calls without a media stream", count=len(expired), call_ids=expired)
        return len(expired)

    def register(self, stream_id: str, session: "CallSession") -> None:
        if stream_id in self._by_stream:
            logger.warning("Stream already registered; replacing", stream_id=stream_id)
        self._by_stream[stream_id] = session

    def get(self, stream_id: str) -> Optional["CallSession"]:
        return self._by_stream.get(stream_id)

    def remove(self, stream_id: Optional[str]) -> Optional["CallSession"]:
        if not stream_id:
            return None
        return self._by_stream.pop(stream_id, None)

    @property
    def active_count(self) -> int:
        return len(self._by_stream)

    @property
    def pending_count(self) -> int:
        return len(self._pending)
