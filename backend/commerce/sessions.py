"""
Session/Filter Store - short-lived chat sessions handed over by the agent.
"""

import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog

from config import settings
from errors import SessionNotFound
from kv_store import KeyValueStore
from schemas.commerce import ChatSession, SessionFilters


def session_key(session_id: str) -> str:
    return f"chat:session:{session_id}"


class SessionStore:
    def __init__(
        self,
        store: KeyValueStore,
        ttl_seconds: int = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds or settings.SESSION_TTL_SECONDS
        self._clock = clock
        self._logger = structlog.get_logger().bind(component="session_store")

    async def put(self, filters: SessionFilters) -> str:
        session_id = str(uuid.uuid4())
        created_at = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        session = ChatSession(
            session_id=session_id,
            filters=filters,
            created_at=created_at,
            expires_at=created_at + timedelta(seconds=self.ttl_seconds),
        )
        await self.store.set(session_key(session_id), session.model_dump_json(), self.ttl_seconds)
        self._logger.info("session_created",
                          session_id=session_id[:8],
                          filters=filters.model_dump(exclude_none=True))
        return session_id

    async def get(self, session_id: str) -> Optional[ChatSession]:
        raw = await self.store.get(session_key(session_id))
        return ChatSession.model_validate_json(raw) if raw else None

    async def require(self, session_id: str) -> ChatSession:
        session = await self.get(session_id) if session_id else None
        if session is None:
            raise SessionNotFound("Session expired or invalid", session_id=session_id)
        return session

    async def remember_results(self, session: ChatSession, product_ids: list[str]) -> None:
        """Cache the last search results without extending the session's life."""
        remaining = session.expires_at.timestamp() - self._clock()
        if remaining <= 0:
            return
        session.product_ids = product_ids
        await self.store.set(session_key(session.session_id), session.model_dump_json(), remaining)
