from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from functools import lru_cache

import structlog

logger = structlog.get_logger(__name__)


class TokenPurpose(StrEnum):
    VERIFY_EMAIL = "verify_email"
    RESET_PASSWORD = "reset_password"
    CHANGE_EMAIL = "change_email"


class Mailer:
    """Outbound hook for one-time tokens.

    Message content and transport live outside this service; here the issue
    is only recorded. Raw tokens are never logged.
    """

    def send_token(self, *, purpose: TokenPurpose, email: str, token: str, expires_at: datetime) -> None:
        logger.info(
            "one_time_token_issued",
            purpose=str(purpose),
            email=email,
            expires_at=expires_at.isoformat(),
        )


@lru_cache(maxsize=1)
def get_mailer() -> Mailer:
    return Mailer()
