from __future__ import annotations

import hashlib
import secrets
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from tenantgate.config import Settings
from tenantgate.logging import get_logger
from tenantgate.storage.common import AuthStore
from tenantgate.storage.models import DeviceTrustToken, utcnow

logger = get_logger(__name__)

TOKEN_BYTES = 48

# Order matters: more specific markers first
_BROWSER_MARKERS = (
    ("Edge", ("Edg/",)),
    ("Opera", ("OPR/", "Opera")),
    ("Chrome", ("Chrome/",)),
    ("Safari", ("Safari/",)),
    ("Firefox", ("Firefox/",)),
    ("IE", ("MSIE", "Trident/")),
)

_OS_MARKERS = (
    ("iOS", ("iPhone", "iPad")),
    ("Android", ("Android",)),
    ("MacOS", ("Mac OS X", "Macintosh")),
    ("Windows", ("Windows",)),
    ("ChromeOS", ("CrOS",)),
    ("Linux", ("Linux",)),
)


def hash_device_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def device_fingerprint(device_id: Optional[str], user_agent: Optional[str]) -> str:
    """Client-supplied device id when present, else a digest of the user agent."""
    if device_id and device_id.strip():
        return device_id.strip()[:128]
    return hashlib.sha256((user_agent or "").encode()).hexdigest()


def _parse_browser(user_agent: str) -> Optional[str]:
    for name, markers in _BROWSER_MARKERS:
        if not any(marker in user_agent for marker in markers):
            continue
        if name == "Chrome" and "Chromium/" in user_agent:
            continue
        if name == "Safari" and "Chrome/" in user_agent:
            continue
        return name
    return None


def _parse_os(user_agent: str) -> Optional[str]:
    for name, markers in _OS_MARKERS:
        if any(marker in user_agent for marker in markers):
            return name
    return None


def generate_device_name(user_agent: Optional[str]) -> str:
    """Human-readable label such as ``"Chrome on MacOS"``."""
    if not user_agent or not user_agent.strip():
        return "Unknown Device"
    browser = _parse_browser(user_agent)
    os_name = _parse_os(user_agent)
    if browser and os_name:
        return f"{browser} on {os_name}"
    if browser:
        return browser
    if os_name:
        return f"Browser on {os_name}"
    return "Unknown Device"


class DeviceTrustManager:
    """Issues and checks the long-lived tokens that let a known device skip MFA.

    Tokens are reusable until they expire or are revoked; only their SHA-256
    digest is stored.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def issue(
        self,
        user_id: str,
        fingerprint: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Tuple[str, DeviceTrustToken]:
        token = secrets.token_urlsafe(TOKEN_BYTES)
        record = DeviceTrustToken.new(
            user_id,
            fingerprint,
            hash_device_token(token),
            now=self._now(),
            ttl_days=self.settings.device_trust_days,
            device_name=generate_device_name(user_agent),
            ip_addr=ip_addr,
        )
        self.store.create_device_trust(record)
        logger.info(
            "device_trust_issued",
            user_id=user_id,
            device_id=record.id,
            device_name=record.device_name,
        )
        return token, record

    def validate(
        self, user_id: str, token: Optional[str], *, ip_addr: Optional[str] = None
    ) -> bool:
        """True only for a live token owned by ``user_id``.

        Missing, unknown, foreign, revoked and expired tokens all yield False
        with nothing to tell them apart.
        """
        if not token or not token.strip():
            return False
        record = self.store.get_device_trust_by_hash(hash_device_token(token))
        now = self._now()
        if record is None or record.user_id != user_id or not record.is_usable(now):
            return False
        self.store.touch_device_trust(record.id, now=now, ip_addr=ip_addr)
        return True

    def list_devices(self, user_id: str) -> List[DeviceTrustToken]:
        now = self._now()
        return [t for t in self.store.list_device_trust(user_id) if t.is_usable(now)]

    def remove(self, user_id: str, device_id: str) -> bool:
        removed = self.store.revoke_device_trust(user_id, device_id, now=self._now())
        if removed:
            logger.info("device_trust_removed", user_id=user_id, device_id=device_id)
        return removed

    def revoke_all(self, user_id: str) -> int:
        count = self.store.revoke_user_device_trust(user_id, now=self._now())
        if count:
            logger.info("device_trust_revoked_all", user_id=user_id, count=count)
        return count
