"""Time-boxed platform-admin impersonation.

A platform administrator can act as a tenant user for support work.  The
grant ends on whichever comes first: an explicit stop, the absolute expiry
(``max_duration`` after start) or the idle timeout (``idle_timeout`` since
the last request made under the session).

Expiry is computed when a session is read; there is no background sweep.
Sessions live in an in-process dictionary owned by :class:`ImpersonationGuard`
and are keyed by the administrator, so one administrator can never see or
stop another's session.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from hvacdesk_core.state.repository import UserRepository
from sqlalchemy.ext.asyncio import AsyncSession

from hvacdesk_api.services.audit_service import AuditAction, AuditService

logger = logging.getLogger(__name__)

PLATFORM_ADMIN_ROLE = "platform_admin"

# Countdowns below this trigger the client-side warning banner.
WARNING_THRESHOLD = timedelta(minutes=5)


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Session records
# ---------------------------------------------------------------------------


class SessionState(str, Enum):
    """Lifecycle of an administrator's impersonation grant."""

    NONE = "none"
    ACTIVE = "active"
    STOPPED = "stopped"
    EXPIRED = "expired"
    IDLE_TIMED_OUT = "idle_timed_out"


@dataclass
class ImpersonationSession:
    session_id: str
    platform_admin_id: str
    platform_admin_email: str
    target_user_id: str
    target_company_id: str
    target_role: str
    reason: str
    started_at: datetime
    expires_at: datetime
    last_activity_at: datetime


@dataclass(frozen=True)
class Countdown:
    """A non-negative remaining duration split into whole minutes and seconds."""

    minutes: int
    seconds: int

    @classmethod
    def until(cls, remaining: timedelta) -> Countdown:
        total = max(int(remaining.total_seconds()), 0)
        return cls(minutes=total // 60, seconds=total % 60)

    @property
    def total_seconds(self) -> int:
        return self.minutes * 60 + self.seconds

    def to_dict(self) -> dict[str, int]:
        return {"minutes": self.minutes, "seconds": self.seconds}


@dataclass(frozen=True)
class SessionCheck:
    """Outcome of evaluating an administrator's session at one instant.

    ``session`` is the record that was evaluated; for ``EXPIRED`` and
    ``IDLE_TIMED_OUT`` it has already been removed from the store.
    """

    state: SessionState
    session: ImpersonationSession | None = None

    @property
    def ended(self) -> bool:
        return self.state in (SessionState.EXPIRED, SessionState.IDLE_TIMED_OUT)


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------


class ImpersonationGuard:
    """In-process store and state machine for impersonation sessions.

    Parameters
    ----------
    max_duration:
        Absolute lifetime of a session.
    idle_timeout:
        Maximum gap between requests made under a session.
    clock:
        Returns the current timezone-aware time.  Injectable for tests.
    """

    def __init__(
        self,
        max_duration: timedelta = timedelta(minutes=60),
        idle_timeout: timedelta = timedelta(minutes=15),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if max_duration <= timedelta(0) or idle_timeout <= timedelta(0):
            raise ValueError("Impersonation durations must be positive")
        self.max_duration = max_duration
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._sessions: dict[str, ImpersonationSession] = {}
        self._by_admin: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def start(
        self,
        *,
        platform_admin_id: str,
        platform_admin_email: str,
        target_user_id: str,
        target_company_id: str,
        target_role: str,
        reason: str,
    ) -> ImpersonationSession:
        """Open a session, replacing any the administrator already holds."""
        previous = self._remove(platform_admin_id)
        if previous is not None:
            logger.info(
                "Admin %s replaced impersonation of user %s with user %s",
                platform_admin_id,
                previous.target_user_id,
                target_user_id,
            )

        now = self._clock()
        session = ImpersonationSession(
            session_id=secrets.token_hex(32),
            platform_admin_id=platform_admin_id,
            platform_admin_email=platform_admin_email,
            target_user_id=target_user_id,
            target_company_id=target_company_id,
            target_role=target_role,
            reason=reason,
            started_at=now,
            expires_at=now + self.max_duration,
            last_activity_at=now,
        )
        self._sessions[session.session_id] = session
        self._by_admin[platform_admin_id] = session.session_id
        return session

    def check(self, platform_admin_id: str, *, touch: bool = True) -> SessionCheck:
        """Evaluate the administrator's session now.

        An expired or idle session is removed and reported once; later
        checks return ``NONE``.  With ``touch`` an active session's
        ``last_activity_at`` moves to now.
        """
        session_id = self._by_admin.get(platform_admin_id)
        session = self._sessions.get(session_id) if session_id else None
        if session is None:
            return SessionCheck(SessionState.NONE)

        now = self._clock()
        if now >= session.expires_at:
            self._remove(platform_admin_id)
            return SessionCheck(SessionState.EXPIRED, session)
        if now - session.last_activity_at >= self.idle_timeout:
            self._remove(platform_admin_id)
            return SessionCheck(SessionState.IDLE_TIMED_OUT, session)

        if touch:
            session.last_activity_at = now
        return SessionCheck(SessionState.ACTIVE, session)

    def stop(self, platform_admin_id: str) -> SessionCheck:
        """End the administrator's session if it is still active."""
        check = self.check(platform_admin_id, touch=False)
        if check.state is not SessionState.ACTIVE:
            return check
        self._remove(platform_admin_id)
        return SessionCheck(SessionState.STOPPED, check.session)

    def remaining(self, session: ImpersonationSession) -> tuple[Countdown, Countdown]:
        """Return ``(time_to_expiry, idle_budget)`` for *session*, clamped at zero."""
        now = self._clock()
        return (
            Countdown.until(session.expires_at - now),
            Countdown.until(session.last_activity_at + self.idle_timeout - now),
        )

    def elapsed(self, session: ImpersonationSession) -> timedelta:
        return self._clock() - session.started_at

    def _remove(self, platform_admin_id: str) -> ImpersonationSession | None:
        session_id = self._by_admin.pop(platform_admin_id, None)
        if session_id is None:
            return None
        return self._sessions.pop(session_id, None)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class ImpersonationService:
    """Apply the impersonation rules and audit every transition.

    Parameters
    ----------
    session:
        Request-scoped database session.
    guard:
        The application's :class:`ImpersonationGuard`.
    audit:
        Audit service bound to the acting administrator.
    min_reason_length:
        Minimum length of the stated reason after trimming.
    """

    def __init__(
        self,
        session: AsyncSession,
        guard: ImpersonationGuard,
        audit: AuditService,
        *,
        min_reason_length: int = 10,
    ) -> None:
        self._users = UserRepository(session)
        self._guard = guard
        self._audit = audit
        self._min_reason_length = min_reason_length

    async def start(
        self,
        *,
        platform_admin_id: str,
        platform_admin_email: str,
        target_user_id: str,
        reason: str,
    ) -> ImpersonationSession:
        """Begin impersonating *target_user_id*.

        Raises
        ------
        ValueError
            If the target or reason is missing, or the reason is too short.
        LookupError
            If the target user does not exist.
        PermissionError
            If the target is itself a platform administrator.
        """
        reason = (reason or "").strip()
        if not target_user_id:
            raise ValueError("Target user ID is required")
        if len(reason) < self._min_reason_length:
            raise ValueError(f"Reason must be at least {self._min_reason_length} characters")

        target = await self._users.get_by_id(target_user_id)
        if target is None:
            raise LookupError(f"User '{target_user_id}' not found")
        if target.role == PLATFORM_ADMIN_ROLE:
            raise PermissionError("Cannot impersonate another platform admin")

        # A session being replaced is closed out in the trail first.
        current = self._guard.check(platform_admin_id, touch=False)
        if current.ended:
            await self.record_timeout(current)
        elif current.state is SessionState.ACTIVE and current.session is not None:
            await self._log_stop(current.session, replaced_by_user_id=target.id)

        # Written before the grant exists so a failed audit leaves no session.
        await self._audit.log(
            AuditAction.IMPERSONATION_START,
            target_company_id=target.company_id,
            target_user_id=target.id,
            reason=reason,
            expires_in_minutes=int(self._guard.max_duration.total_seconds() // 60),
            idle_timeout_minutes=int(self._guard.idle_timeout.total_seconds() // 60),
        )
        session = self._guard.start(
            platform_admin_id=platform_admin_id,
            platform_admin_email=platform_admin_email,
            target_user_id=target.id,
            target_company_id=target.company_id,
            target_role=target.role,
            reason=reason,
        )
        logger.info(
            "Admin %s started impersonating user %s (company %s)",
            platform_admin_id,
            target.id,
            target.company_id,
        )
        return session

    async def stop(self, *, platform_admin_id: str) -> ImpersonationSession | None:
        """End the administrator's active session.

        Returns ``None`` when there is no active session.  A session found
        already expired is audited as a timeout instead.
        """
        check = self._guard.stop(platform_admin_id)
        if check.ended:
            await self.record_timeout(check)
        if check.state is not SessionState.STOPPED or check.session is None:
            return None

        session = check.session
        await self._log_stop(session)
        logger.info("Admin %s stopped impersonating user %s", platform_admin_id, session.target_user_id)
        return session

    async def _log_stop(self, session: ImpersonationSession, **details: Any) -> None:
        await self._audit.log(
            AuditAction.IMPERSONATION_STOP,
            target_company_id=session.target_company_id,
            target_user_id=session.target_user_id,
            reason=session.reason,
            duration_minutes=int(self._guard.elapsed(session).total_seconds() // 60),
            **details,
        )

    async def status(self, *, platform_admin_id: str) -> dict[str, Any]:
        """Describe the administrator's session without counting as activity."""
        check = self._guard.check(platform_admin_id, touch=False)
        if check.ended:
            await self.record_timeout(check)
        if check.state is not SessionState.ACTIVE or check.session is None:
            return {"is_impersonating": False}
        return {"is_impersonating": True, "session": self.describe(check.session)}

    async def record_timeout(self, check: SessionCheck) -> None:
        """Audit a session that ended by expiry or inactivity."""
        if check.session is None:
            return
        timeout_type = "expiry" if check.state is SessionState.EXPIRED else "idle"
        await self._audit.log(
            AuditAction.IMPERSONATION_AUTO_TIMEOUT,
            target_company_id=check.session.target_company_id,
            target_user_id=check.session.target_user_id,
            timeout_type=timeout_type,
        )
        logger.info(
            "Impersonation of user %s by admin %s ended (%s)",
            check.session.target_user_id,
            check.session.platform_admin_id,
            timeout_type,
        )

    def describe(self, session: ImpersonationSession) -> dict[str, Any]:
        remaining, idle = self._guard.remaining(session)
        return {
            "target_user_id": session.target_user_id,
            "target_company_id": session.target_company_id,
            "platform_admin_id": session.platform_admin_id,
            "platform_admin_email": session.platform_admin_email,
            "reason": session.reason,
            "started_at": session.started_at.isoformat(),
            "expires_at": session.expires_at.isoformat(),
            "remaining_time": remaining.to_dict(),
            "idle_time_remaining": idle.to_dict(),
            "warning": min(remaining.total_seconds, idle.total_seconds) < WARNING_THRESHOLD.total_seconds(),
        }
