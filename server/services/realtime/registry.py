"""
Realtime Session Registry

Single source of truth for which conversation ids have a live relay session.

- At most one live session per conversation id; a second start by the same
  device replaces the first ("last start wins") and the old provider connection
  is fully closed before the new one is opened.
- Mutations are serialized per conversation id, never globally, so
  unrelated conversations do not wait on each other.
"""
import asyncio
import uuid
import weakref
from collections import Counter
from typing import Dict, List, Optional, Set

from constants import CONVERSATION_ID_PREFIX
from core.config import Settings
from core.logging import get_logger
from models.realtime import HistoryTurn
from services.device_auth import DeviceIdentity
from .events import EventChannel
from .exceptions import ConversationInUse, SessionNotFound
from .session import Session, Transport
from .upstream import ProviderConnector, UpstreamClient, connect_provider

logger = get_logger(__name__)


def new_conversation_id() -> str:
    """Server-generated id for clients that do not supply one."""
    return f"{CONVERSATION_ID_PREFIX}{uuid.uuid4().hex}"


class SessionRegistry:
    """Maps conversation ids to live sessions."""

    def __init__(self, settings: Settings, connector: ProviderConnector = connect_provider):
        self.settings = settings
        self._connector = connector
        self._sessions: Dict[str, Session] = {}
        # Ended sessions whose provider connection is still draining its final response
        self._draining: Dict[str, UpstreamClient] = {}
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._arrivals: Dict[str, Set[asyncio.Future]] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._closing = False

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    # =========================================================================
    # Queries
    # =========================================================================

    def get_session(self, conversation_id: str) -> Optional[Session]:
        return self._sessions.get(conversation_id)

    def require_session(self, conversation_id: str, device: Optional[DeviceIdentity] = None) -> Session:
        """Live session for the id, optionally scoped to the owning device.

        Raises:
            SessionNotFound: No live session, or it belongs to another device
        """
        session = self._sessions.get(conversation_id)
        if session is None or (device is not None and not session.belongs_to(device)):
            raise SessionNotFound(conversation_id)
        return session

    async def wait_for_session(
        self,
        conversation_id: str,
        timeout: float,
        device: Optional[DeviceIdentity] = None,
    ) -> Session:
        """Wait up to ``timeout`` seconds for a session to be started.

        Raises:
            SessionNotFound: Nothing started in time
        """
        session = self._sessions.get(conversation_id)
        if session is None and timeout > 0:
            future = asyncio.get_running_loop().create_future()
            self._arrivals.setdefault(conversation_id, set()).add(future)
            try:
                session = await asyncio.wait_for(future, timeout=timeout)
            except asyncio.TimeoutError:
                session = None
            finally:
                waiters = self._arrivals.get(conversation_id)
                if waiters is not None:
                    waiters.discard(future)
                    if not waiters:
                        del self._arrivals[conversation_id]
        if session is None:
            raise SessionNotFound(conversation_id)
        if device is not None and not session.belongs_to(device):
            raise SessionNotFound(conversation_id)
        return session

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def snapshot(self) -> Dict[str, int]:
        """Live session counts by upstream state."""
        return dict(Counter(session.state.value for session in self._sessions.values()))

    def list_sessions(self) -> List[Session]:
        return list(self._sessions.values())

    # =========================================================================
    # Mutations
    # =========================================================================

    async def start_session(
        self,
        conversation_id: Optional[str],
        device: DeviceIdentity,
        history: Optional[List[HistoryTurn]] = None,
        transport: Transport = "socket",
    ) -> Session:
        """Create the session for ``conversation_id``, replacing any existing one.

        Returns immediately; the provider connection opens in the background
        and ``conversation_started`` is emitted once it is ready.

        Raises:
            ConversationInUse: The live session for the id belongs to another device
        """
        if self._closing:
            raise RuntimeError("Session registry is shutting down")

        conversation_id = conversation_id or new_conversation_id()
        async with self._lock_for(conversation_id):
            previous = self._sessions.get(conversation_id)
            if previous is not None and not previous.belongs_to(device):
                logger.warning("[Registry] Rejected start for another device's session",
                               conversation_id=conversation_id,
                               owner_device=previous.device.device_id,
                               device_id=device.device_id)
                raise ConversationInUse(conversation_id)
            if previous is not None:
                del self._sessions[conversation_id]
                logger.info("[Registry] Replacing existing session",
                            conversation_id=conversation_id,
                            previous_device=previous.device.device_id,
                            previous_state=previous.state.value)
                await previous.upstream.abort()

            draining = self._draining.pop(conversation_id, None)
            if draining is not None:
                await draining.abort()

            events = EventChannel(conversation_id)
            upstream = UpstreamClient(
                conversation_id,
                self.settings,
                events,
                connector=self._connector,
                history=history,
            )
            session = Session(
                conversation_id=conversation_id,
                device=device,
                transport=transport,
                upstream=upstream,
                events=events,
            )
            self._sessions[conversation_id] = session
            upstream.open()
            self._watch(session)

        logger.info("[Registry] Session started", conversation_id=conversation_id,
                    device_id=device.device_id, transport=transport,
                    history_turns=len(history or []), active=len(self._sessions))

        for future in self._arrivals.pop(conversation_id, set()):
            if not future.done():
                future.set_result(session)
        return session

    async def end_session(self, conversation_id: str, session: Optional[Session] = None) -> None:
        """End a conversation. Idempotent; unknown ids are a no-op.

        When ``session`` is given, only that exact session is ended, so a stale
        connection closing cannot end the session that replaced it.
        """
        async with self._lock_for(conversation_id):
            current = self._sessions.get(conversation_id)
            if current is None or (session is not None and current is not session):
                return
            del self._sessions[conversation_id]
            self._draining[conversation_id] = current.upstream

        logger.info("[Registry] Ending session", conversation_id=conversation_id,
                    active=len(self._sessions))
        await current.upstream.end()

    def schedule_end(self, session: Session) -> None:
        """End ``session`` from a context that is itself being cancelled.

        Used by streaming responses, whose cleanup runs while the request
        task is torn down and cannot await the provider close.
        """
        self._spawn(self.end_session(session.conversation_id, session),
                    name=f"end-{session.conversation_id}")

    def _watch(self, session: Session) -> None:
        self._spawn(self._purge_when_closed(session), name=f"watch-{session.conversation_id}")

    def _spawn(self, coro, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _purge_when_closed(self, session: Session) -> None:
        await session.upstream.wait_closed()
        conversation_id = session.conversation_id
        async with self._lock_for(conversation_id):
            if self._sessions.get(conversation_id) is session:
                del self._sessions[conversation_id]
                logger.info("[Registry] Session purged after provider close",
                            conversation_id=conversation_id, active=len(self._sessions))
            if self._draining.get(conversation_id) is session.upstream:
                del self._draining[conversation_id]

    async def shutdown(self) -> None:
        """Abort every session; called once on application shutdown."""
        self._closing = True
        upstreams = [s.upstream for s in self._sessions.values()] + list(self._draining.values())
        if upstreams:
            logger.info("[Registry] Shutting down sessions", count=len(upstreams))
        await asyncio.gather(*(u.abort() for u in upstreams), return_exceptions=True)

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        for waiters in self._arrivals.values():
            for future in waiters:
                future.cancel()
        self._arrivals.clear()
        self._sessions.clear()
        self._draining.clear()
