from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlmodel import Session, col, select

from ledgerauthz.domain.claims import Claims
from ledgerauthz.domain.models import (
    LoginAttempt,
    PlatformAdmin,
    PlatformAdminCreate,
    PlatformAdminSession,
    SecurityEventType,
    SecuritySeverity,
    as_utc,
    now_utc,
)
from ledgerauthz.infra import redis_state
from ledgerauthz.infra.db import get_engine
from ledgerauthz.services.claims_service import ClaimsService
from ledgerauthz.services.directory_service import (
    AuthError as DirectoryAuthError,
)
from ledgerauthz.services.directory_service import (
    DirectoryService,
    normalize_email,
)
from ledgerauthz.services.security_service import SecurityService

logger = logging.getLogger(__name__)


@dataclass
class RateLimitStatus:
    allowed: bool
    locked: bool
    locked_until: datetime | None
    email_attempts: int
    ip_attempts: int
    max_attempts: int


@dataclass
class PlatformLogin:
    claims: Claims
    access_token: str
    session: PlatformAdminSession


class SessionError(Exception):
    pass


class NotFoundError(SessionError):
    pass


class ConflictError(SessionError):
    pass


class AuthError(SessionError):
    pass


class IpNotAllowedError(SessionError):
    pass


class SessionExpiredError(SessionError):
    pass


class LoginLockedError(SessionError):
    def __init__(self, status: RateLimitStatus) -> None:
        super().__init__("Too many failed login attempts")
        self.status = status


class SessionService:
    MAX_EMAIL_ATTEMPTS = 5
    MAX_IP_ATTEMPTS = 10
    ATTEMPT_WINDOW = timedelta(minutes=15)
    LOCKOUT = timedelta(minutes=15)

    EMAIL_COUNTER_PREFIX = "login:fail:email:"
    IP_COUNTER_PREFIX = "login:fail:ip:"
    LOCK_PREFIX = "login:lock:"

    def __init__(
        self,
        directory: DirectoryService | None = None,
        claims: ClaimsService | None = None,
        security: SecurityService | None = None,
    ) -> None:
        self._security = security or SecurityService()
        self._directory = directory or DirectoryService(self._security)
        self._claims = claims or ClaimsService(self._directory, self._security)

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _counter(self, key: str) -> int:
        raw = redis_state.get_redis().get(key)
        return 0 if raw is None else int(raw)

    def _bump(self, key: str) -> int:
        redis = redis_state.get_redis()
        count = int(redis.incr(key))
        if count == 1:
            redis.expire(key, int(self.ATTEMPT_WINDOW.total_seconds()))
        return count

    def _locked_until(self, email: str) -> datetime | None:
        raw = redis_state.get_redis().get(f"{self.LOCK_PREFIX}{email}")
        if raw is not None:
            locked_until = as_utc(datetime.fromisoformat(raw))
            if locked_until > now_utc():
                return locked_until
        with self._session() as session:
            admin = session.exec(select(PlatformAdmin).where(PlatformAdmin.email == email)).first()
        if admin is not None and admin.locked_until is not None and as_utc(admin.locked_until) > now_utc():
            return as_utc(admin.locked_until)
        return None

    def _lock(self, email: str) -> datetime:
        locked_until = now_utc() + self.LOCKOUT
        redis_state.get_redis().set(
            f"{self.LOCK_PREFIX}{email}",
            locked_until.isoformat(),
            ex=int(self.LOCKOUT.total_seconds()),
        )
        with self._session() as session:
            admin = session.exec(select(PlatformAdmin).where(PlatformAdmin.email == email)).first()
            if admin is not None:
                admin.locked_until = locked_until
                session.add(admin)
                session.commit()
        return locked_until

    def check_login_rate_limit(self, email: str, ip: str | None) -> RateLimitStatus:
        email = normalize_email(email)
        email_attempts = self._counter(f"{self.EMAIL_COUNTER_PREFIX}{email}")
        ip_attempts = 0 if ip is None else self._counter(f"{self.IP_COUNTER_PREFIX}{ip}")

        locked_until = self._locked_until(email)
        if locked_until is None and email_attempts >= self.MAX_EMAIL_ATTEMPTS:
            locked_until = self._lock(email)
            self._security.record(
                SecurityEventType.RATE_LIMIT_EXCEEDED,
                SecuritySeverity.WARNING,
                f"login locked after {email_attempts} failed attempts",
                principal_email=email,
                ip=ip,
                action_attempted="platform_login",
                detail={"email_attempts": email_attempts, "locked_until": locked_until.isoformat()},
            )
        if locked_until is not None:
            return RateLimitStatus(
                allowed=False,
                locked=True,
                locked_until=locked_until,
                email_attempts=email_attempts,
                ip_attempts=ip_attempts,
                max_attempts=self.MAX_EMAIL_ATTEMPTS,
            )
        if ip_attempts >= self.MAX_IP_ATTEMPTS:
            self._security.record(
                SecurityEventType.RATE_LIMIT_EXCEEDED,
                SecuritySeverity.WARNING,
                f"login blocked after {ip_attempts} failed attempts from one address",
                principal_email=email,
                ip=ip,
                action_attempted="platform_login",
                detail={"ip_attempts": ip_attempts},
            )
            return RateLimitStatus(
                allowed=False,
                locked=False,
                locked_until=None,
                email_attempts=email_attempts,
                ip_attempts=ip_attempts,
                max_attempts=self.MAX_EMAIL_ATTEMPTS,
            )
        return RateLimitStatus(
            allowed=True,
            locked=False,
            locked_until=None,
            email_attempts=email_attempts,
            ip_attempts=ip_attempts,
            max_attempts=self.MAX_EMAIL_ATTEMPTS,
        )

    def record_login_attempt(
        self,
        email: str,
        success: bool,
        ip: str | None,
        failure_reason: str | None = None,
    ) -> LoginAttempt:
        email = normalize_email(email)
        redis = redis_state.get_redis()
        if success:
            redis.delete(f"{self.EMAIL_COUNTER_PREFIX}{email}", f"{self.LOCK_PREFIX}{email}")
        else:
            self._bump(f"{self.EMAIL_COUNTER_PREFIX}{email}")
            if ip is not None:
                self._bump(f"{self.IP_COUNTER_PREFIX}{ip}")

        with self._session() as session:
            attempt = LoginAttempt(email=email, ip=ip, success=success, failure_reason=failure_reason)
            session.add(attempt)
            admin = session.exec(select(PlatformAdmin).where(PlatformAdmin.email == email)).first()
            if admin is not None:
                if success:
                    admin.failed_login_count = 0
                    admin.locked_until = None
                    admin.last_login_at = now_utc()
                    admin.last_login_ip = ip
                else:
                    admin.failed_login_count += 1
                session.add(admin)
            session.commit()
            session.refresh(attempt)

        if not success:
            self._security.record(
                SecurityEventType.LOGIN_FAILED,
                SecuritySeverity.INFO,
                failure_reason or "login failed",
                principal_email=email,
                ip=ip,
                action_attempted="platform_login",
            )
        return attempt

    def _ip_allowed(self, admin: PlatformAdmin, ip: str | None) -> bool:
        if not admin.require_ip_check or not admin.allowed_ips:
            return True
        return ip is not None and ip in admin.allowed_ips

    def _active_admin(self, session: Session, email: str) -> PlatformAdmin | None:
        return session.exec(
            select(PlatformAdmin)
            .where(PlatformAdmin.email == email)
            .where(col(PlatformAdmin.is_active).is_(True))
        ).first()

    def login(
        self,
        email: str,
        password: str,
        ip: str | None,
        user_agent: str | None = None,
    ) -> PlatformLogin:
        email = normalize_email(email)
        status = self.check_login_rate_limit(email, ip)
        if not status.allowed:
            raise LoginLockedError(status)

        with self._session() as session:
            admin = self._active_admin(session, email)
        if admin is None:
            self.record_login_attempt(email, False, ip, "not a platform admin")
            raise AuthError("Invalid credentials")
        try:
            principal = self._directory.authenticate(email, password)
        except DirectoryAuthError as exc:
            self.record_login_attempt(email, False, ip, "invalid credentials")
            raise AuthError("Invalid credentials") from exc
        if not self._ip_allowed(admin, ip):
            self.record_login_attempt(email, False, ip, "ip not allowed")
            self._security.record(
                SecurityEventType.IP_NOT_ALLOWED,
                SecuritySeverity.WARNING,
                "platform admin login from an address outside the allow-list",
                principal_id=principal.id,
                principal_email=email,
                ip=ip,
                action_attempted="platform_login",
            )
            raise IpNotAllowedError("Login not allowed from this address")

        self.record_login_attempt(email, True, ip)
        admin_session = self.create_session(admin.id, ip, user_agent)
        claims = self._claims.mint(
            principal.id,
            first_login=principal.last_login_at is None,
            platform_admin=True,
        )
        self._directory.mark_logged_in(principal.id)
        return PlatformLogin(claims=claims, access_token=self._claims.issue_token(claims), session=admin_session)

    def create_session(
        self,
        admin_id: str,
        ip: str | None,
        user_agent: str | None = None,
    ) -> PlatformAdminSession:
        now = now_utc()
        with self._session() as session:
            admin = session.get(PlatformAdmin, admin_id)
            if admin is None or not admin.is_active:
                raise NotFoundError("Platform admin not found")
            stale = session.exec(
                select(PlatformAdminSession)
                .where(PlatformAdminSession.admin_id == admin_id)
                .where(col(PlatformAdminSession.is_active).is_(True))
            ).all()
            for item in stale:
                if as_utc(item.expires_at) <= now:
                    item.is_active = False
                    session.add(item)
            admin_session = PlatformAdminSession(
                admin_id=admin_id,
                session_token=secrets.token_urlsafe(32),
                ip=ip,
                user_agent=user_agent,
                created_at=now,
                last_activity_at=now,
                expires_at=now + timedelta(minutes=admin.session_timeout_minutes),
            )
            session.add(admin_session)
            session.commit()
            session.refresh(admin_session)
            return admin_session

    def touch_session(self, session_token: str) -> PlatformAdminSession:
        now = now_utc()
        with self._session() as session:
            admin_session = session.exec(
                select(PlatformAdminSession).where(PlatformAdminSession.session_token == session_token)
            ).first()
            if admin_session is None or not admin_session.is_active:
                raise SessionExpiredError("Session is not active")
            admin = session.get(PlatformAdmin, admin_session.admin_id)
            if admin is None or not admin.is_active or as_utc(admin_session.expires_at) <= now:
                admin_session.is_active = False
                session.add(admin_session)
                session.commit()
                self._security.record(
                    SecurityEventType.SESSION_EXPIRED,
                    SecuritySeverity.INFO,
                    "platform admin session expired",
                    principal_email=None if admin is None else admin.email,
                    ip=admin_session.ip,
                    resource_type="platform_admin_session",
                    resource_id=admin_session.id,
                    action_attempted="touch_session",
                )
                raise SessionExpiredError("Session expired")
            admin_session.last_activity_at = now
            admin_session.expires_at = now + timedelta(minutes=admin.session_timeout_minutes)
            session.add(admin_session)
            session.commit()
            session.refresh(admin_session)
            return admin_session

    def invalidate_session(self, session_token: str) -> None:
        with self._session() as session:
            admin_session = session.exec(
                select(PlatformAdminSession).where(PlatformAdminSession.session_token == session_token)
            ).first()
            if admin_session is None:
                raise NotFoundError("Session not found")
            admin_session.is_active = False
            session.add(admin_session)
            session.commit()

    def add_platform_admin(self, payload: PlatformAdminCreate) -> PlatformAdmin:
        email = normalize_email(payload.email)
        with self._session() as session:
            existing = session.exec(select(PlatformAdmin).where(PlatformAdmin.email == email)).first()
            if existing is not None:
                raise ConflictError("Platform admin already exists")
            admin = PlatformAdmin(
                email=email,
                allowed_ips=list(payload.allowed_ips),
                require_ip_check=payload.require_ip_check,
                session_timeout_minutes=payload.session_timeout_minutes,
                notes=payload.notes,
            )
            session.add(admin)
            session.commit()
            session.refresh(admin)
            logger.info("platform admin %s added", email)
            return admin

    def list_platform_admins(self) -> list[PlatformAdmin]:
        with self._session() as session:
            return list(session.exec(select(PlatformAdmin).order_by(col(PlatformAdmin.created_at))).all())
