from __future__ import annotations

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlmodel import Session, col, select

from ledgerauthz.domain.claims import Claims
from ledgerauthz.domain.errors import (
    AuthorizationError,
    CrossTenantAttempt,
    DenialKind,
    TenantInvariantViolation,
)
from ledgerauthz.domain.models import (
    AlertLevel,
    CrossTenantAttemptSummaryRead,
    InvariantViolationCountRead,
    SecurityAlertRead,
    SecurityEvent,
    SecurityEventType,
    SecurityHealthCheckRead,
    SecurityReportRead,
    SecuritySeverity,
    TenantScoped,
    as_utc,
    now_utc,
)
from ledgerauthz.domain.policy import PolicyEvaluator, Subject
from ledgerauthz.domain.rules import ResourceType
from ledgerauthz.infra.audit import SecurityEventWriter
from ledgerauthz.infra.db import get_engine

logger = logging.getLogger(__name__)


class SecurityError(Exception):
    pass


class PermissionDeniedError(SecurityError):
    pass


@dataclass
class HealthCheck:
    metric: str
    value: int
    threshold: int


@dataclass
class EventWindow:
    events: list[SecurityEvent] = field(default_factory=list)

    def of_type(self, event_type: SecurityEventType) -> list[SecurityEvent]:
        return [item for item in self.events if item.event_type == event_type]

    def of_severity(self, severity: SecuritySeverity) -> list[SecurityEvent]:
        return [item for item in self.events if item.severity == severity]


class SecurityService:
    ALERT_WINDOW = timedelta(hours=1)
    CROSS_TENANT_ALERT_THRESHOLD = 3
    RATE_LIMIT_ALERT_THRESHOLD = 10

    HEALTH_WINDOW = timedelta(hours=24)
    HEALTH_CRITICAL_WARNING_LIMIT = 5
    HEALTH_CROSS_TENANT_THRESHOLD = 3
    HEALTH_INVARIANT_THRESHOLD = 2
    HEALTH_RATE_LIMIT_THRESHOLD = 10
    HEALTH_WARNING_WINDOW = timedelta(days=7)
    HEALTH_WARNING_THRESHOLD = 20

    RETENTION_DAYS = 90
    CRITICAL_RETENTION_DAYS = 365

    def __init__(self, writer: SecurityEventWriter | None = None) -> None:
        self._writer = writer or SecurityEventWriter()
        self._evaluator = PolicyEvaluator()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def record(
        self,
        event_type: SecurityEventType,
        severity: SecuritySeverity,
        message: str,
        *,
        principal_id: str | None = None,
        principal_email: str | None = None,
        ip: str | None = None,
        claimed_tenant_id: str | None = None,
        target_tenant_id: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        action_attempted: str | None = None,
        blocked: bool = True,
        detail: dict[str, object] | None = None,
    ) -> SecurityEvent | None:
        return self._writer.append(
            event_type=event_type,
            severity=severity,
            message=message,
            principal_id=principal_id,
            principal_email=principal_email,
            ip=ip,
            claimed_tenant_id=claimed_tenant_id,
            target_tenant_id=target_tenant_id,
            resource_type=resource_type,
            resource_id=resource_id,
            action_attempted=action_attempted,
            detail=detail,
            was_blocked=blocked,
        )

    def record_authorization_failure(self, claims: Claims, error: AuthorizationError) -> None:
        detail: dict[str, object] = {
            "denial_kind": error.kind.value,
            "org_role": None if claims.org_role is None else claims.org_role.value,
            "workflow_role": None if claims.workflow_role is None else claims.workflow_role.value,
            "is_platform_admin": claims.is_platform_admin,
        }
        if isinstance(error, CrossTenantAttempt):
            self.record(
                SecurityEventType.CROSS_TENANT_ACCESS_ATTEMPT,
                SecuritySeverity.CRITICAL,
                error.reason,
                principal_id=claims.principal_id,
                claimed_tenant_id=claims.tenant_id,
                target_tenant_id=error.target_tenant_id,
                resource_type=error.resource_type,
                resource_id=error.resource_id,
                action_attempted=error.operation,
                detail=detail,
            )
            return
        if isinstance(error, TenantInvariantViolation):
            self.record(
                SecurityEventType.TENANT_INVARIANT_VIOLATION,
                SecuritySeverity.CRITICAL,
                error.reason,
                principal_id=claims.principal_id,
                claimed_tenant_id=claims.tenant_id,
                resource_type=error.resource_type,
                resource_id=error.resource_id,
                action_attempted=error.operation,
                detail=detail,
            )
            return
        self.record(
            SecurityEventType.ACCESS_DENIED,
            SecuritySeverity.WARNING,
            error.reason,
            principal_id=claims.principal_id,
            claimed_tenant_id=claims.tenant_id,
            target_tenant_id=claims.tenant_id,
            resource_type=error.resource_type,
            resource_id=error.resource_id,
            action_attempted=error.operation,
            detail=detail,
        )

    def report_cross_tenant(
        self,
        claims: Claims,
        entity: type[TenantScoped],
        row_id: str,
        *,
        operation: str,
    ) -> bool:
        """Log a read or write that missed because the row lives in another tenant."""
        target_tenant_id = self._writer.locate_tenant(entity, row_id)
        if target_tenant_id is None or target_tenant_id == claims.tenant_id:
            return False
        resource_type = getattr(entity, "__resource_type__", None)
        self.record(
            SecurityEventType.CROSS_TENANT_ACCESS_ATTEMPT,
            SecuritySeverity.CRITICAL,
            f"{operation} of a record owned by another tenant",
            principal_id=claims.principal_id,
            claimed_tenant_id=claims.tenant_id,
            target_tenant_id=target_tenant_id,
            resource_type=None if resource_type is None else resource_type.value,
            resource_id=row_id,
            action_attempted=operation,
            detail={"denial_kind": DenialKind.CROSS_TENANT.value},
        )
        return True

    def _require_reader(self, claims: Claims) -> None:
        if not (claims.is_platform_admin or claims.is_privileged()):
            raise PermissionDeniedError("Security events require owner, admin or platform admin access")

    def _require_platform_admin(self, claims: Claims) -> None:
        if not claims.is_platform_admin:
            raise PermissionDeniedError("Platform admin access required")

    def _events_since(
        self,
        session: Session,
        since: datetime,
        claims: Claims | None = None,
    ) -> EventWindow:
        statement = select(SecurityEvent).where(col(SecurityEvent.created_at) >= since)
        if claims is not None:
            statement = statement.where(
                self._evaluator.read_criteria(Subject(claims=claims), ResourceType.SECURITY_EVENT, SecurityEvent)
            )
        rows = list(session.exec(statement.order_by(col(SecurityEvent.created_at).desc())).all())
        return EventWindow(events=rows)

    def recent_events(
        self,
        claims: Claims,
        *,
        hours: int = 24,
        severity: SecuritySeverity | None = None,
        event_type: SecurityEventType | None = None,
    ) -> list[SecurityEvent]:
        self._require_reader(claims)
        with self._session() as session:
            window = self._events_since(session, now_utc() - timedelta(hours=hours), claims)
        rows = window.events
        if severity is not None:
            rows = [item for item in rows if item.severity == severity]
        if event_type is not None:
            rows = [item for item in rows if item.event_type == event_type]
        return rows

    def severity_counts(self, claims: Claims, *, hours: int = 24) -> dict[str, int]:
        self._require_reader(claims)
        with self._session() as session:
            window = self._events_since(session, now_utc() - timedelta(hours=hours), claims)
        counts = {severity.value: 0 for severity in SecuritySeverity}
        for item in window.events:
            counts[SecuritySeverity(item.severity).value] += 1
        return counts

    def cross_tenant_attempts_by_principal(
        self,
        claims: Claims,
        *,
        hours: int = 24 * 7,
    ) -> list[CrossTenantAttemptSummaryRead]:
        self._require_platform_admin(claims)
        with self._session() as session:
            window = self._events_since(session, now_utc() - timedelta(hours=hours))
        return self._summarize_cross_tenant(window)

    def _summarize_cross_tenant(self, window: EventWindow) -> list[CrossTenantAttemptSummaryRead]:
        grouped: dict[str | None, list[SecurityEvent]] = defaultdict(list)
        for item in window.of_type(SecurityEventType.CROSS_TENANT_ACCESS_ATTEMPT):
            grouped[item.principal_id].append(item)
        summaries: list[CrossTenantAttemptSummaryRead] = []
        for principal_id, items in grouped.items():
            created = [as_utc(item.created_at) for item in items]
            targets = sorted({item.target_tenant_id for item in items if item.target_tenant_id})
            summaries.append(
                CrossTenantAttemptSummaryRead(
                    principal_id=principal_id,
                    principal_email=next((item.principal_email for item in items if item.principal_email), None),
                    attempt_count=len(items),
                    first_attempt_at=min(created),
                    last_attempt_at=max(created),
                    target_tenant_ids=targets,
                )
            )
        summaries.sort(key=lambda item: item.attempt_count, reverse=True)
        return summaries

    def invariant_violation_counts(
        self,
        claims: Claims,
        *,
        days: int = 30,
    ) -> list[InvariantViolationCountRead]:
        self._require_platform_admin(claims)
        with self._session() as session:
            window = self._events_since(session, now_utc() - timedelta(days=days))
        per_day = Counter(
            as_utc(item.created_at).date().isoformat()
            for item in window.of_type(SecurityEventType.TENANT_INVARIANT_VIOLATION)
        )
        return [InvariantViolationCountRead(day=day, count=count) for day, count in sorted(per_day.items(), reverse=True)]

    def rate_limit_violations(self, claims: Claims, *, hours: int = 24) -> list[SecurityEvent]:
        self._require_platform_admin(claims)
        with self._session() as session:
            window = self._events_since(session, now_utc() - timedelta(hours=hours))
        return window.of_type(SecurityEventType.RATE_LIMIT_EXCEEDED)

    def _rule_critical_events(self, window: EventWindow) -> SecurityAlertRead | None:
        critical = len(window.of_severity(SecuritySeverity.CRITICAL))
        if critical == 0:
            return None
        return SecurityAlertRead(
            level=AlertLevel.CRITICAL,
            message=f"{critical} critical security events in the last hour",
            action="Review recent critical security events immediately",
        )

    def _rule_invariant_violations(self, window: EventWindow) -> SecurityAlertRead | None:
        violations = len(window.of_type(SecurityEventType.TENANT_INVARIANT_VIOLATION))
        if violations == 0:
            return None
        return SecurityAlertRead(
            level=AlertLevel.CRITICAL,
            message=f"{violations} tenant invariant violations in the last hour",
            action="Investigate code paths creating records without tenant context",
        )

    def _rule_cross_tenant_attempts(self, window: EventWindow) -> SecurityAlertRead | None:
        attempts = len(window.of_type(SecurityEventType.CROSS_TENANT_ACCESS_ATTEMPT))
        if attempts < self.CROSS_TENANT_ALERT_THRESHOLD:
            return None
        return SecurityAlertRead(
            level=AlertLevel.WARNING,
            message=f"{attempts} cross-tenant access attempts in the last hour",
            action="Review cross-tenant attempts grouped by principal",
        )

    def _rule_rate_limit_trips(self, window: EventWindow) -> SecurityAlertRead | None:
        trips = len(window.of_type(SecurityEventType.RATE_LIMIT_EXCEEDED))
        if trips < self.RATE_LIMIT_ALERT_THRESHOLD:
            return None
        return SecurityAlertRead(
            level=AlertLevel.WARNING,
            message=f"{trips} login rate-limit trips in the last hour",
            action="Check login attempts for credential stuffing",
        )

    def check_alerts(self) -> list[SecurityAlertRead]:
        with self._session() as session:
            window = self._events_since(session, now_utc() - self.ALERT_WINDOW)
        alerts = [
            alert
            for alert in (
                self._rule_critical_events(window),
                self._rule_invariant_violations(window),
                self._rule_cross_tenant_attempts(window),
                self._rule_rate_limit_trips(window),
            )
            if alert is not None
        ]
        if not alerts:
            return [
                SecurityAlertRead(
                    level=AlertLevel.OK,
                    message="No security alerts in the last hour",
                    action="Continue monitoring",
                )
            ]
        for alert in alerts:
            logger.warning("security alert %s: %s", alert.level.value, alert.message)
        return alerts

    def _threshold_status(self, value: int, threshold: int) -> str:
        if value == 0:
            return "OK"
        if value < threshold:
            return "WARNING"
        return "CRITICAL"

    def health_status(self) -> list[SecurityHealthCheckRead]:
        now = now_utc()
        with self._session() as session:
            day = self._events_since(session, now - self.HEALTH_WINDOW)
            week = self._events_since(session, now - self.HEALTH_WARNING_WINDOW)
        checks = [
            HealthCheck(
                metric="critical_events_24h",
                value=len(day.of_severity(SecuritySeverity.CRITICAL)),
                threshold=self.HEALTH_CRITICAL_WARNING_LIMIT,
            ),
            HealthCheck(
                metric="cross_tenant_attempts_24h",
                value=len(day.of_type(SecurityEventType.CROSS_TENANT_ACCESS_ATTEMPT)),
                threshold=self.HEALTH_CROSS_TENANT_THRESHOLD,
            ),
            HealthCheck(
                metric="tenant_invariant_violations_24h",
                value=len(day.of_type(SecurityEventType.TENANT_INVARIANT_VIOLATION)),
                threshold=self.HEALTH_INVARIANT_THRESHOLD,
            ),
            HealthCheck(
                metric="rate_limit_trips_24h",
                value=len(day.of_type(SecurityEventType.RATE_LIMIT_EXCEEDED)),
                threshold=self.HEALTH_RATE_LIMIT_THRESHOLD,
            ),
            HealthCheck(
                metric="warning_events_7d",
                value=len(week.of_severity(SecuritySeverity.WARNING)),
                threshold=self.HEALTH_WARNING_THRESHOLD,
            ),
        ]
        return [
            SecurityHealthCheckRead(
                metric=check.metric,
                value=check.value,
                threshold=check.threshold,
                status=self._threshold_status(check.value, check.threshold),
            )
            for check in checks
        ]

    def report(self, claims: Claims, *, days: int = 7) -> SecurityReportRead:
        self._require_platform_admin(claims)
        with self._session() as session:
            window = self._events_since(session, now_utc() - timedelta(days=days))
        by_severity = Counter(SecuritySeverity(item.severity).value for item in window.events)
        by_event_type = Counter(SecurityEventType(item.event_type).value for item in window.events)
        return SecurityReportRead(
            period_days=days,
            generated_at=now_utc(),
            total_events=len(window.events),
            by_severity=dict(by_severity),
            by_event_type=dict(by_event_type),
            blocked_events=sum(1 for item in window.events if item.was_blocked),
            cross_tenant_attempts=self._summarize_cross_tenant(window),
            invariant_violations=self.invariant_violation_counts(claims, days=days),
            health=self.health_status(),
        )

    def cleanup(self, *, now: datetime | None = None) -> int:
        reference = now or now_utc()
        regular_cutoff = reference - timedelta(days=self.RETENTION_DAYS)
        deleted = self._writer.purge_before(
            severity_cutoffs={
                SecuritySeverity.INFO: regular_cutoff,
                SecuritySeverity.WARNING: regular_cutoff,
                SecuritySeverity.CRITICAL: reference - timedelta(days=self.CRITICAL_RETENTION_DAYS),
            }
        )
        logger.info("security event retention removed %s rows", deleted)
        return deleted
