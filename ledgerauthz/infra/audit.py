from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from ledgerauthz.domain.claims import Claims
from ledgerauthz.domain.models import (
    AuditLog,
    SecurityEvent,
    SecurityEventType,
    SecuritySeverity,
    TenantScoped,
    now_utc,
)
from ledgerauthz.infra.db import engine

logger = logging.getLogger(__name__)

WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
AUDITED_READ_PATH_KEYWORDS = ("/security/", "/resolve")
AUDIT_CONTEXT_STATE_KEY = "_audit_context"

_SEVERITY_LOG_LEVELS = {
    SecuritySeverity.INFO: logging.INFO,
    SecuritySeverity.WARNING: logging.WARNING,
    SecuritySeverity.CRITICAL: logging.ERROR,
}


class SecurityEventWriter:
    """Trusted append path for security events.

    Each call commits on a session of its own, outside any tenant scope, so an
    event survives the rollback of the operation it reports on. Only the
    security service holds a reference to the writer.
    """

    def append(
        self,
        *,
        event_type: SecurityEventType,
        severity: SecuritySeverity,
        message: str,
        principal_id: str | None = None,
        principal_email: str | None = None,
        ip: str | None = None,
        claimed_tenant_id: str | None = None,
        target_tenant_id: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        action_attempted: str | None = None,
        detail: dict[str, Any] | None = None,
        was_blocked: bool = True,
    ) -> SecurityEvent | None:
        security_event = SecurityEvent(
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
            detail=detail or {},
            was_blocked=was_blocked,
        )
        logger.log(
            _SEVERITY_LOG_LEVELS[severity],
            "security event %s: %s (principal=%s claimed_tenant=%s target_tenant=%s)",
            event_type.value,
            message,
            principal_id,
            claimed_tenant_id,
            target_tenant_id,
        )
        try:
            with Session(engine, expire_on_commit=False) as session:
                session.add(security_event)
                session.commit()
        except SQLAlchemyError:
            logger.exception("failed to persist security event %s", event_type.value)
            return None
        return security_event

    def locate_tenant(self, entity: type[TenantScoped], row_id: str) -> str | None:
        """Tenant owning ``row_id`` regardless of who is asking, for cross-tenant detection."""
        with Session(engine) as session:
            return session.exec(
                select(entity.tenant_id).where(entity.id == row_id)  # type: ignore[attr-defined]
            ).first()

    def purge_before(self, *, severity_cutoffs: dict[SecuritySeverity, datetime]) -> int:
        deleted = 0
        with Session(engine) as session:
            for severity, cutoff in severity_cutoffs.items():
                expired = session.exec(
                    select(SecurityEvent)
                    .where(col(SecurityEvent.severity) == severity)
                    .where(col(SecurityEvent.created_at) < cutoff)
                ).all()
                for security_event in expired:
                    session.delete(security_event)
                deleted += len(expired)
            session.commit()
        return deleted


def write_audit_log(
    *,
    tenant_id: str,
    actor_id: str | None,
    action: str,
    resource: str,
    method: str,
    status_code: int,
    detail: dict[str, Any] | None = None,
) -> None:
    log = AuditLog(
        tenant_id=tenant_id,
        actor_id=actor_id,
        action=action,
        resource=resource,
        method=method,
        status_code=status_code,
        detail=detail or {},
    )
    with Session(engine) as session:
        session.add(log)
        session.commit()


def _deep_merge(base: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
            continue
        merged[key] = value
    return merged


def _status_outcome(status_code: int) -> str:
    if status_code >= 500:
        return "error"
    if status_code in {401, 403, 404, 429}:
        return "denied"
    if status_code >= 400:
        return "rejected"
    return "success"


def should_audit_request(method: str, path: str) -> bool:
    if method in WRITE_METHODS:
        return True
    return any(keyword in path for keyword in AUDITED_READ_PATH_KEYWORDS)


def set_audit_context(
    request: Request,
    *,
    action: str | None = None,
    resource: str | None = None,
    detail: dict[str, Any] | None = None,
) -> None:
    context_raw = getattr(request.state, AUDIT_CONTEXT_STATE_KEY, {})
    context = dict(context_raw) if isinstance(context_raw, dict) else {}

    if action is not None:
        context["action"] = action
    if resource is not None:
        context["resource"] = resource

    if detail:
        previous_detail = context.get("detail")
        if isinstance(previous_detail, dict):
            context["detail"] = _deep_merge(previous_detail, detail)
        else:
            context["detail"] = detail

    setattr(request.state, AUDIT_CONTEXT_STATE_KEY, context)


class AuditMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        path = request.url.path
        method = request.method
        if path in {"/healthz", "/readyz"}:
            return response
        context_raw = getattr(request.state, AUDIT_CONTEXT_STATE_KEY, {})
        context = context_raw if isinstance(context_raw, dict) else {}
        has_explicit_context = any(key in context for key in ("action", "resource", "detail"))
        if not should_audit_request(method, path) and not has_explicit_context:
            return response

        claims = getattr(request.state, "claims", None)
        tenant_id = "system"
        actor_id: str | None = None
        if isinstance(claims, Claims):
            tenant_id = claims.tenant_id or "system"
            actor_id = claims.principal_id
        raw_action = context.get("action")
        raw_resource = context.get("resource")
        action: str = raw_action if isinstance(raw_action, str) else f"{method}:{path}"
        resource: str = raw_resource if isinstance(raw_resource, str) else path

        route = request.scope.get("route")
        route_path = getattr(route, "path", path)
        base_detail: dict[str, Any] = {
            "who": {
                "tenant_id": tenant_id,
                "actor_id": actor_id,
                "is_platform_admin": isinstance(claims, Claims) and claims.is_platform_admin,
            },
            "when": {
                "request_ts": now_utc().isoformat(),
            },
            "where": {
                "path": path,
                "route": route_path,
                "client_ip": request.client.host if request.client is not None else None,
            },
            "what": {
                "action": action,
                "resource": resource,
                "method": method,
            },
            "result": {
                "status_code": response.status_code,
                "outcome": _status_outcome(response.status_code),
            },
        }
        context_detail = context.get("detail")
        detail = _deep_merge(base_detail, context_detail) if isinstance(context_detail, dict) else base_detail

        try:
            write_audit_log(
                tenant_id=tenant_id,
                actor_id=actor_id,
                action=action,
                resource=resource,
                method=method,
                status_code=response.status_code,
                detail=detail,
            )
        except SQLAlchemyError:
            logger.exception("audit log write failed for %s %s", method, path)
        return response
