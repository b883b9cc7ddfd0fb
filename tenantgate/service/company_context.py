from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional, Union

from tenantgate.logging import get_logger
from tenantgate.service.errors import AuthFailure, Failure
from tenantgate.storage.common import AuthStore
from tenantgate.storage.models import Company, Session, SessionState, User, utcnow

logger = get_logger(__name__)

# Platform roles that may enter any active company without a grant
WILDCARD_ROLES = frozenset({"platform_admin"})


class CompanyContextResolver:
    """Decides which company a session acts for and who may switch."""

    def __init__(
        self, store: AuthStore, *, clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.store = store
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def has_wildcard_access(user: User) -> bool:
        return user.platform_role in WILDCARD_ROLES

    def _active_company(self, company_id: Optional[str]) -> Optional[Company]:
        if not company_id:
            return None
        company = self.store.get_company(company_id)
        return company if company and company.is_active else None

    def _granted_companies(self, user_id: str) -> List[Company]:
        companies = []
        for grant in self.store.list_company_grants(user_id):
            company = self._active_company(grant.company_id)
            if company:
                companies.append(company)
        return companies

    def _implicit_home(self, user: User) -> Optional[Company]:
        """Home company for users that have never held a grant.

        Once any grant row exists, revoked or not, grants alone decide access.
        """
        if self.store.list_company_grants(user.id, include_revoked=True):
            return None
        return self._active_company(user.home_company_id)

    def select_for_login(self, user: User) -> Union[Company, Failure]:
        """Pinned grant first, then most recently used, then the home company."""
        granted = self._granted_companies(user.id)
        if granted:
            chosen = granted[0]
            self.store.touch_company_grant(user.id, chosen.id, now=self._now())
            return chosen
        home = self._implicit_home(user)
        if home:
            return home
        if self.has_wildcard_access(user):
            active = self.store.list_active_companies()
            if active:
                return active[0]
        logger.warning("login_no_active_company", user_id=user.id)
        return Failure(AuthFailure.NO_ACTIVE_COMPANIES)

    def resolve_active_company(self, session: Session) -> Optional[Company]:
        company = self._active_company(session.active_company_id)
        if company:
            return company
        if not session.user_id:
            return None
        user = self.store.get_user(session.user_id)
        return self._active_company(user.home_company_id) if user else None

    def accessible_companies(self, user: User) -> List[Company]:
        if self.has_wildcard_access(user):
            return self.store.list_active_companies()
        companies = self._granted_companies(user.id)
        if not companies:
            home = self._implicit_home(user)
            if home:
                companies.append(home)
        return companies

    def can_switch_companies(self, user: User) -> bool:
        if self.has_wildcard_access(user):
            return self.store.count_active_companies() > 1
        return len(self.accessible_companies(user)) > 1

    def can_access(self, user: User, company_id: str) -> bool:
        company = self._active_company(company_id)
        if company is None:
            return False
        if self.has_wildcard_access(user):
            return True
        grant = self.store.get_company_grant(user.id, company_id)
        return grant is not None and grant.is_active

    def switch_company(
        self, session: Session, target_company_id: str
    ) -> Union[Company, Failure]:
        """Move a verified session to another company it is entitled to.

        On any failure the session's active company is left as it was.
        """
        if not session.user_id:
            return Failure(AuthFailure.SESSION_NOT_FOUND)
        user = self.store.get_user(session.user_id)
        if user is None or not self.can_access(user, target_company_id):
            logger.warning(
                "company_switch_denied",
                user_id=session.user_id,
                session_id=session.id,
                company_id=target_company_id,
            )
            return Failure(AuthFailure.COMPANY_ACCESS_DENIED)

        now = self._now()
        updated = self.store.update_session(
            session.id,
            expected_states=(SessionState.VERIFIED,),
            valid_at=now,
            active_company_id=target_company_id,
        )
        if updated is None:
            return Failure(AuthFailure.SESSION_NOT_FOUND)
        self.store.touch_company_grant(user.id, target_company_id, now=now)
        logger.info(
            "company_switched",
            user_id=user.id,
            session_id=session.id,
            from_company_id=session.active_company_id,
            company_id=target_company_id,
        )
        return self.store.get_company(target_company_id)
