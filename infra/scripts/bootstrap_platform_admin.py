from __future__ import annotations

import os

from ledgerauthz.domain.models import PlatformAdminCreate, PrincipalCreate
from ledgerauthz.infra.log_config import configure_logging
from ledgerauthz.services.directory_service import ConflictError as DirectoryConflictError
from ledgerauthz.services.directory_service import DirectoryService
from ledgerauthz.services.session_service import ConflictError, SessionService


def main() -> int:
    configure_logging()
    email = os.getenv("PLATFORM_ADMIN_EMAIL")
    password = os.getenv("PLATFORM_ADMIN_PASSWORD")
    if not email or not password:
        print("PLATFORM_ADMIN_EMAIL and PLATFORM_ADMIN_PASSWORD are required.")
        return 1
    allowed_ips = [item.strip() for item in os.getenv("PLATFORM_ADMIN_ALLOWED_IPS", "").split(",") if item.strip()]

    try:
        DirectoryService().register_principal(PrincipalCreate(email=email, password=password))
    except DirectoryConflictError:
        print(f"Principal {email} already exists; reusing it.")
    try:
        admin = SessionService().add_platform_admin(
            PlatformAdminCreate(email=email, allowed_ips=allowed_ips, require_ip_check=bool(allowed_ips))
        )
    except ConflictError:
        print(f"Platform admin {email} already exists.")
        return 0
    print(f"Platform admin {admin.email} created ({admin.id}).")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
