from __future__ import annotations

import asyncio
from typing import Protocol

from boxoffice.logging import get_logger
from boxoffice.service.email import EmailService
from boxoffice.storage.models import CredentialRecord

logger = get_logger(__name__)


class NotificationSink(Protocol):
    async def suspicious_login(self, user: CredentialRecord, reason: str, ip: str) -> None: ...

    async def two_factor_enabled(self, user: CredentialRecord) -> None: ...


class LogNotificationSink:
    """Records security notifications in the log only."""

    async def suspicious_login(self, user: CredentialRecord, reason: str, ip: str) -> None:
        logger.warning("security_alert_suspicious_login", user_id=user.id, reason=reason, ip=ip)

    async def two_factor_enabled(self, user: CredentialRecord) -> None:
        logger.info("security_notice_two_factor_enabled", user_id=user.id)


class EmailNotificationSink(LogNotificationSink):
    """Logs and also emails the account owner."""

    def __init__(self, email: EmailService) -> None:
        self.email = email

    async def suspicious_login(self, user: CredentialRecord, reason: str, ip: str) -> None:
        await super().suspicious_login(user, reason, ip)
        await asyncio.to_thread(self.email.send_security_alert, user.email, reason, ip=ip)

    async def two_factor_enabled(self, user: CredentialRecord) -> None:
        await super().two_factor_enabled(user)
        await asyncio.to_thread(self.email.send_two_factor_enabled, user.email)
