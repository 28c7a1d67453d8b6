"""Per-session state machine and the registry that owns sessions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Dict, Iterator, List

from acp import RequestError

from zai_acp.agent.bridge.correlation import CorrelationCache, FileContentCache
from zai_acp.agent.bridge.engine import Engine, EngineConfig
from zai_acp.agent.bridge.errors import BridgeError
from zai_acp.agent.bridge.hooks import ToolHookRegistry
from zai_acp.agent.bridge.translator import EventTranslator
from zai_acp.log_utils import log_context, log_event
from zai_acp.session_modes import DEFAULT_MODE, PermissionMode

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    CREATED = "created"
    AWAITING_AUTH = "awaiting_auth"
    READY = "ready"
    IN_TURN = "in_turn"
    CANCELLED = "cancelled"
    AUTH_RECOVERED = "auth_recovered"
    CLOSED = "closed"


_TURN_STATES = frozenset({SessionState.IN_TURN, SessionState.CANCELLED})


async def await_with_cancel(awaitable: Awaitable[Any], cancel_event: asyncio.Event) -> tuple[bool, Any]:
    """Await `awaitable` unless `cancel_event` fires first.

    Returns `(True, None)` when cancelled; the awaitable is then cancelled too.
    """
    main_task = asyncio.ensure_future(awaitable)
    if cancel_event.is_set():
        main_task.cancel()
        return True, None
    wait_task = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait({main_task, wait_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        wait_task.cancel()
    if main_task in done:
        return False, main_task.result()
    main_task.cancel()
    return True, None


@dataclass
class Session:
    """One ACP session and the engine connection behind it.

    A session owns at most one engine. The engine may be absent while the
    session waits for credentials; it is then created from `engine_config`
    on the first prompt after recovery.
    """

    session_id: str
    cwd: Path
    engine_config: EngineConfig
    permission_mode: PermissionMode = DEFAULT_MODE
    state: SessionState = SessionState.CREATED
    engine: Engine | None = None
    model_id: str | None = None
    max_thinking_tokens: int | None = None
    auth_required: bool = False
    mcp_servers: List[Any] = field(default_factory=list)
    available_models: List[Any] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    # Held from auth recovery through the end of a prompt turn.
    turn_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    cache: CorrelationCache = field(default_factory=CorrelationCache)
    file_cache: FileContentCache = field(default_factory=FileContentCache)
    hooks: ToolHookRegistry = field(default_factory=ToolHookRegistry)
    translator: EventTranslator | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def in_turn(self) -> bool:
        return self.state in _TURN_STATES

    def _transition(self, state: SessionState) -> None:
        previous, self.state = self.state, state
        if previous is not state:
            with log_context(session_id=self.session_id):
                log_event(
                    logger,
                    "acp.session.state",
                    level=logging.DEBUG,
                    previous=previous.value,
                    state=state.value,
                )

    def begin_turn(self) -> None:
        """Enter a prompt turn; a session runs at most one turn at a time."""
        if self.in_turn:
            raise RequestError.invalid_request(
                {"message": "A prompt is already in progress for this session", "sessionId": self.session_id}
            )
        if self.state is not SessionState.READY:
            raise RequestError.invalid_request(
                {"message": f"Session is not ready (state: {self.state.value})", "sessionId": self.session_id}
            )
        self.cancel_event.clear()
        self._transition(SessionState.IN_TURN)

    def end_turn(self) -> None:
        if self.in_turn:
            self._transition(SessionState.READY)
        self.cancel_event.clear()

    def request_cancel(self) -> bool:
        """Flag cancellation; returns True when a turn was in flight."""
        self.cancel_event.set()
        if self.state is SessionState.IN_TURN:
            self._transition(SessionState.CANCELLED)
            return True
        return self.state is SessionState.CANCELLED

    def require_auth(self) -> None:
        self.auth_required = True
        if self.state is not SessionState.CLOSED:
            self._transition(SessionState.AWAITING_AUTH)

    def recover_auth(self) -> None:
        if not self.auth_required and self.state is not SessionState.AWAITING_AUTH:
            return
        self.auth_required = False
        self._transition(SessionState.AUTH_RECOVERED)
        if self.engine is not None:
            self._transition(SessionState.READY)

    def attach_engine(self, engine: Engine) -> None:
        if self.engine is not None and self.engine is not engine:
            raise BridgeError(f"session {self.session_id} already has an engine")
        self.engine = engine
        if self.state in (SessionState.CREATED, SessionState.AUTH_RECOVERED):
            self._transition(SessionState.READY)

    def detach_engine(self) -> Engine | None:
        engine, self.engine = self.engine, None
        return engine

    async def close(self) -> None:
        self.cancel_event.set()
        self._transition(SessionState.CLOSED)
        engine = self.detach_engine()
        if engine is not None:
            await engine.close()


class SessionRegistry:
    """Sessions keyed by id; insertion and removal are serialized."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._lock = asyncio.Lock()

    async def add(self, session: Session) -> None:
        async with self._lock:
            if session.session_id in self._sessions:
                raise BridgeError(f"duplicate session id {session.session_id}")
            self._sessions[session.session_id] = session

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise RequestError.invalid_params({"message": "Session not found", "sessionId": session_id})
        return session

    async def remove(self, session_id: str) -> Session | None:
        async with self._lock:
            return self._sessions.pop(session_id, None)

    def awaiting_auth(self) -> List[Session]:
        return [session for session in self._sessions.values() if session.auth_required]

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def __len__(self) -> int:
        return len(self._sessions)
