import time
import uuid
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from fastapi import Request

from cropdoc.config import HISTORY_BACKEND, HISTORY_RECORD_KEY, MAX_SESSIONS, SESSION_TTL
from cropdoc.errors import UnknownSessionError
from cropdoc.services.assistant import AssistantClient, AssistantPanel
from cropdoc.services.diagnosis import DiagnosticClient
from cropdoc.services.gateway import OpenRouterGateway, build_openrouter_client
from cropdoc.services.history import HistoryStore, RecordBackend, create_backend
from cropdoc.services.session import SessionOrchestrator

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_ID = "default"


@dataclass
class SessionHandle:
    session_id: str
    client_id: str
    orchestrator: SessionOrchestrator
    assistant: AssistantPanel
    last_seen: float = 0.0

    def sync_assistant(self):
        self.assistant.sync_context(self.orchestrator.diagnostic_context)


class SessionRegistry:
    """Live sessions plus one history store per client id.

    Sessions idle for longer than session_ttl seconds are dropped, and the
    least recently used one is evicted once max_sessions is reached.
    """

    def __init__(
        self,
        diagnostic_client: DiagnosticClient,
        assistant_client: AssistantClient,
        backend: RecordBackend,
        orchestrator_factory: Optional[Callable[[DiagnosticClient, HistoryStore], SessionOrchestrator]] = None,
        provider_configured: bool = True,
        session_ttl: float = SESSION_TTL,
        max_sessions: int = MAX_SESSIONS,
        clock: Callable[[], float] = time.time,
    ):
        self.diagnostic_client = diagnostic_client
        self.assistant_client = assistant_client
        self.backend = backend
        self.orchestrator_factory = orchestrator_factory or SessionOrchestrator
        self.provider_configured = provider_configured
        self.session_ttl = session_ttl
        self.max_sessions = max_sessions
        self._clock = clock
        self.sessions: Dict[str, SessionHandle] = {}
        self.stores: Dict[str, HistoryStore] = {}

    def store_for(self, client_id: str = DEFAULT_CLIENT_ID) -> HistoryStore:
        if client_id not in self.stores:
            key = HISTORY_RECORD_KEY if client_id == DEFAULT_CLIENT_ID else f"{HISTORY_RECORD_KEY}:{client_id}"
            store = HistoryStore(self.backend, key=key)
            store.load()
            self.stores[client_id] = store
        return self.stores[client_id]

    def prune(self) -> int:
        """Drop expired sessions, then least recently used ones beyond the cap"""
        now = self._clock()
        expired = [sid for sid, h in self.sessions.items() if now - h.last_seen > self.session_ttl]
        for sid in expired:
            del self.sessions[sid]

        evicted = 0
        while self.sessions and len(self.sessions) >= self.max_sessions:
            oldest = min(self.sessions.values(), key=lambda h: h.last_seen)
            del self.sessions[oldest.session_id]
            evicted += 1

        if expired or evicted:
            logger.info(f"Session cleanup: removed {len(expired)} expired, {evicted} over capacity")
        return len(expired) + evicted

    def create(self, client_id: str = DEFAULT_CLIENT_ID) -> SessionHandle:
        self.prune()
        session_id = uuid.uuid4().hex
        orchestrator = self.orchestrator_factory(self.diagnostic_client, self.store_for(client_id))
        handle = SessionHandle(
            session_id=session_id,
            client_id=client_id,
            orchestrator=orchestrator,
            assistant=AssistantPanel(self.assistant_client),
            last_seen=self._clock(),
        )
        self.sessions[session_id] = handle
        logger.info(f"✓ Session {session_id[:8]} created for client {client_id}")
        return handle

    def get(self, session_id: str) -> SessionHandle:
        handle = self.sessions.get(session_id)
        now = self._clock()
        if handle is not None and now - handle.last_seen > self.session_ttl:
            logger.info(f"Session {session_id[:8]} expired after {self.session_ttl:g}s idle")
            del self.sessions[session_id]
            handle = None
        if handle is None:
            raise UnknownSessionError(f"Unknown session {session_id}")
        handle.last_seen = now
        return handle

    def discard(self, session_id: str):
        self.sessions.pop(session_id, None)


def build_registry(backend_kind: str = HISTORY_BACKEND) -> SessionRegistry:
    gateway = OpenRouterGateway(build_openrouter_client())
    return SessionRegistry(
        diagnostic_client=DiagnosticClient(vision=gateway, search=gateway),
        assistant_client=AssistantClient(chat=gateway),
        backend=create_backend(backend_kind),
        provider_configured=gateway.configured,
    )


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry
