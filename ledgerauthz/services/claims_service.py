from __future__ import annotations

import logging
from typing import Any

from ledgerauthz.domain.claims import Claims
from ledgerauthz.domain.models import SecurityEventType, SecuritySeverity, now_utc
from ledgerauthz.infra import redis_state
from ledgerauthz.infra.auth import create_access_token
from ledgerauthz.services.directory_service import (
    DirectoryService,
    NotFoundError,
)
from ledgerauthz.services.security_service import SecurityService

logger = logging.getLogger(__name__)


class ClaimsError(Exception):
    pass


class StaleClaimsError(ClaimsError):
    pass


class ClaimsService:
    EPOCH_KEY_PREFIX = "claims:epoch:"

    def __init__(
        self,
        directory: DirectoryService | None = None,
        security: SecurityService | None = None,
    ) -> None:
        self._security = security or SecurityService()
        self._directory = directory or DirectoryService(self._security)

    def _epoch_key(self, principal_id: str) -> str:
        return f"{self.EPOCH_KEY_PREFIX}{principal_id}"

    def current_epoch(self, principal_id: str) -> int:
        raw = redis_state.get_redis().get(self._epoch_key(principal_id))
        if raw is None:
            return 0
        return int(raw)

    def _select_tenant(
        self,
        principal_id: str,
        requested_tenant_id: str | None,
        *,
        first_login: bool,
    ) -> str | None:
        if requested_tenant_id is not None:
            return requested_tenant_id
        principal = self._directory.get_principal(principal_id)
        if principal.active_tenant_id is not None:
            return principal.active_tenant_id
        if not first_login:
            return None
        earliest = self._directory.earliest_membership(principal_id)
        if earliest is None:
            return None
        self._directory.set_active_tenant(principal_id, earliest.organization_id)
        logger.info(
            "first login for %s defaults to tenant %s",
            principal_id,
            earliest.organization_id,
        )
        return earliest.organization_id

    def mint(
        self,
        principal_id: str,
        requested_tenant_id: str | None = None,
        *,
        first_login: bool = False,
        platform_admin: bool = False,
    ) -> Claims:
        tenant_id = self._select_tenant(principal_id, requested_tenant_id, first_login=first_login)
        # only a platform login grants the flag; refreshes keep it while the admin row stays active
        is_platform_admin = platform_admin and self._directory.is_platform_admin(principal_id)
        resolved = None if tenant_id is None else self._directory.resolve(principal_id, tenant_id)
        if resolved is None:
            if tenant_id is not None:
                logger.info("principal %s has no active membership in %s", principal_id, tenant_id)
            return Claims(principal_id=principal_id, is_platform_admin=is_platform_admin)
        return Claims(
            principal_id=principal_id,
            tenant_id=tenant_id,
            org_role=resolved.org_role,
            workflow_role=resolved.workflow_role,
            is_platform_admin=is_platform_admin,
        )

    def login(self, email: str, password: str, requested_tenant_id: str | None = None) -> Claims:
        principal = self._directory.authenticate(email, password)
        claims = self.mint(
            principal.id,
            requested_tenant_id,
            first_login=principal.last_login_at is None,
        )
        self._directory.mark_logged_in(principal.id)
        return claims

    def issue_token(self, claims: Claims) -> str:
        return create_access_token(claims, claims_epoch=self.current_epoch(claims.principal_id))

    def switch_tenant(self, principal_id: str, tenant_id: str, *, platform_admin: bool = False) -> Claims:
        if self._directory.resolve(principal_id, tenant_id) is None:
            raise NotFoundError("Organization not found")
        self._directory.set_active_tenant(principal_id, tenant_id)
        return self.mint(principal_id, tenant_id, platform_admin=platform_admin)

    def force_refresh(self, principal_id: str, *, requested_by: Claims | None = None) -> int:
        epoch = int(redis_state.get_redis().incr(self._epoch_key(principal_id)))
        self._security.record(
            SecurityEventType.CLAIMS_FORCE_REFRESH,
            SecuritySeverity.INFO,
            "claims invalidated; principal must refresh",
            principal_id=None if requested_by is None else requested_by.principal_id,
            claimed_tenant_id=None if requested_by is None else requested_by.tenant_id,
            resource_type="principal",
            resource_id=principal_id,
            action_attempted="force_refresh",
            blocked=False,
            detail={"epoch": epoch, "at": now_utc().isoformat()},
        )
        return epoch

    def ensure_fresh(self, payload: dict[str, Any]) -> None:
        principal_id = payload.get("sub")
        if not isinstance(principal_id, str):
            raise StaleClaimsError("Token has no subject")
        token_epoch = payload.get("claims_epoch", 0)
        if not isinstance(token_epoch, int) or token_epoch < self.current_epoch(principal_id):
            raise StaleClaimsError("Claims are stale; refresh the token")
