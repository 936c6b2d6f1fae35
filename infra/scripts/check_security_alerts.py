from __future__ import annotations

import logging

from ledgerauthz.domain.models import AlertLevel
from ledgerauthz.infra.log_config import configure_logging
from ledgerauthz.services.security_service import SecurityService

logger = logging.getLogger("ledgerauthz.scripts.check_security_alerts")


def main() -> int:
    configure_logging()
    alerts = SecurityService().check_alerts()
    for alert in alerts:
        print(f"[{alert.level.value}] {alert.message} -> {alert.action}")
    if any(alert.level == AlertLevel.CRITICAL for alert in alerts):
        logger.error("critical security alerts raised")
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
