from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from tenantgate.logging import get_logger
from tenantgate.storage.common import AuthStore
from tenantgate.storage.errors import StorageError
from tenantgate.storage.models import LoginEvent, LoginEventType, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class RequestContext:
    """Caller details passed explicitly into every auth operation."""

    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    source: str = "web"
    device_id: Optional[str] = None


class AuditLog:
    """Writes login events; a failed audit write never fails the auth flow."""

    def __init__(
        self, store: AuthStore, *, clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.store = store
        self._clock = clock or utcnow

    def record(
        self,
        user_id: Optional[str],
        event_type: LoginEventType,
        ctx: Optional[RequestContext] = None,
        **meta,
    ) -> None:
        ctx = ctx or RequestContext()
        event = LoginEvent.new(
            user_id,
            event_type,
            now=self._clock(),
            ip_addr=ctx.ip_addr,
            user_agent=ctx.user_agent,
            source=ctx.source,
            meta=meta,
        )
        try:
            self.store.record_login_event(event)
        except StorageError as exc:
            logger.warning(
                "login_event_write_failed",
                user_id=user_id,
                event_type=event_type.value,
                error=str(exc),
            )

    def recent(self, user_id: str, *, limit: int = 50) -> List[LoginEvent]:
        return self.store.list_login_events(user_id, limit=limit)
