# backend/authguard/core/security_logger.py
"""
Dedicated security logger for fail2ban integration.

Writes security events to a file in a format that fail2ban can parse.
Includes log injection safeguards and proper timestamp formatting.
"""

import logging
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path

from authguard.core.config import settings


def sanitize(value: str | None, max_length: int = 255) -> str:
    """
    Sanitize user input to prevent log injection attacks.

    Removes characters that could break log parsing or inject fake entries.
    """
    if not value:
        return "unknown"

    value = str(value).strip()
    value = re.sub(r"[\n\r\[\]<>\x00-\x1f\x7f-\x9f]", "", value)
    # Spaces would let a value forge extra key=value pairs
    value = value.replace(" ", "_")

    return value[:max_length]


def _mask_identifier(identifier: str | None) -> str:
    """
    Mask an e-mail style identifier for privacy while keeping it recognisable.

    Shows the first 3 chars of the local part + masked + domain.
    """
    if not identifier or "@" not in identifier:
        return sanitize(identifier)

    local, domain = identifier.rsplit("@", 1)
    if len(local) > 3:
        masked_local = local[:3] + "***"
    else:
        masked_local = local[0] + "***" if local else "***"

    return f"{sanitize(masked_local)}@{sanitize(domain)}"


class SecurityLogger:
    """
    Security event logger for fail2ban integration.

    Log format compatible with fail2ban datepattern:
        2026-01-05 10:15:30 SECURITY [EVENT_TYPE] ip=x.x.x.x field=value ...

    All user-controlled fields are sanitized to prevent log injection.
    """

    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if SecurityLogger._initialized:
            return

        self.logger = logging.getLogger("security")
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False

        if settings.SECURITY_LOG_ENABLED:
            log_path = Path(settings.SECURITY_LOG_PATH)
            log_path.parent.mkdir(parents=True, exist_ok=True)

            # Rotating file handler: 50MB max, keep 10 backups
            handler: logging.Handler = RotatingFileHandler(
                str(log_path),
                maxBytes=50 * 1024 * 1024,
                backupCount=10,
            )
        else:
            handler = logging.NullHandler()

        # The message carries "EVENT_TYPE] ip=... fields..."
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s SECURITY [%(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

        self.logger.addHandler(handler)
        SecurityLogger._initialized = True

    def failed_login(self, ip: str, identifier: str, reason: str) -> None:
        """
        Log a failed login attempt.

        Args:
            ip: Client IP address
            identifier: Identifier that was attempted
            reason: BAD_CREDENTIALS, UNKNOWN_IDENTIFIER, ACCOUNT_LOCKED, ...
        """
        self.logger.info(
            f"FAILED_LOGIN] ip={sanitize(ip)} email={_mask_identifier(identifier)} "
            f"reason={sanitize(reason)}"
        )

    def successful_login(self, ip: str, user_id: str) -> None:
        """Log a successful login (for audit trail, not for banning)."""
        self.logger.info(f"LOGIN_SUCCESS] ip={sanitize(ip)} user_id={sanitize(user_id)}")

    def account_locked(self, ip: str | None, user_id: str, until: str | None) -> None:
        self.logger.info(
            f"ACCOUNT_LOCKED] ip={sanitize(ip)} user_id={sanitize(user_id)} "
            f"until={sanitize(until or 'indefinite')}"
        )

    def account_unlocked(self, user_id: str, actor: str | None) -> None:
        self.logger.info(
            f"ACCOUNT_UNLOCKED] user_id={sanitize(user_id)} actor={sanitize(actor or 'system')}"
        )

    def ip_blocked(self, ip: str, failures: int) -> None:
        """Log an address block. fail2ban bans on this line."""
        self.logger.info(f"IP_BLOCKED] ip={sanitize(ip)} failures={int(failures)}")

    def ip_unblocked(self, ip: str, actor: str | None) -> None:
        self.logger.info(f"IP_UNBLOCKED] ip={sanitize(ip)} actor={sanitize(actor)}")

    def blocked_address_attempt(self, ip: str) -> None:
        self.logger.info(f"BLOCKED_ATTEMPT] ip={sanitize(ip)}")

    def code_failed(self, ip: str | None, user_id: str, purpose: str) -> None:
        """Log a failed verification code attempt. The code itself is never logged."""
        self.logger.info(
            f"CODE_FAILED] ip={sanitize(ip)} user_id={sanitize(user_id)} purpose={sanitize(purpose)}"
        )

    def code_poisoned(self, user_id: str, purpose: str) -> None:
        self.logger.info(f"CODE_POISONED] user_id={sanitize(user_id)} purpose={sanitize(purpose)}")

    def backup_code_used(self, ip: str | None, user_id: str, remaining: int) -> None:
        self.logger.info(
            f"BACKUP_CODE_USED] ip={sanitize(ip)} user_id={sanitize(user_id)} remaining={int(remaining)}"
        )

    def delivery_failed(self, destination: str, reason: str) -> None:
        self.logger.info(
            f"DELIVERY_FAILED] to={sanitize(destination, max_length=20)} "
            f"reason={sanitize(reason, max_length=100)}"
        )


# Singleton instance for easy import
security_log = SecurityLogger()
