# backend/tests/unit/core/test_security_logger.py
"""
Unit tests for the fail2ban security logger.
"""

from unittest.mock import patch

from authguard.core.security_logger import _mask_identifier, sanitize, security_log


def test_failed_login_logs_correctly():
    """failed_login logs the fail2ban format with a masked identifier."""
    with patch.object(security_log.logger, "info") as mock_info:
        security_log.failed_login("192.168.1.100", "victim@example.com", "BAD_CREDENTIALS")

        mock_info.assert_called_once()
        call_args = mock_info.call_args[0][0]
        assert call_args.startswith("FAILED_LOGIN]")
        assert "ip=192.168.1.100" in call_args
        assert "email=vic***@example.com" in call_args
        assert "reason=BAD_CREDENTIALS" in call_args
        assert "victim@" not in call_args


def test_failed_login_sanitizes_ip():
    with patch.object(security_log.logger, "info") as mock_info:
        security_log.failed_login("192.168.1.100\n<script>alert(1)</script>", "a@b.c", "X")

        call_args = mock_info.call_args[0][0]
        assert "\n" not in call_args
        assert "<script>" not in call_args


def test_spaces_cannot_forge_fields():
    with patch.object(security_log.logger, "info") as mock_info:
        security_log.ip_unblocked("10.0.0.1", "admin ip=6.6.6.6")

        call_args = mock_info.call_args[0][0]
        assert "actor=admin_ip=6.6.6.6" in call_args
        assert call_args.count(" ip=") == 1


def test_account_locked_indefinite():
    with patch.object(security_log.logger, "info") as mock_info:
        security_log.account_locked(None, "user-1", None)

        call_args = mock_info.call_args[0][0]
        assert call_args.startswith("ACCOUNT_LOCKED]")
        assert "ip=unknown" in call_args
        assert "until=indefinite" in call_args


def test_ip_blocked_logs_failures():
    with patch.object(security_log.logger, "info") as mock_info:
        security_log.ip_blocked("5.6.7.8", 10)

        assert mock_info.call_args[0][0] == "IP_BLOCKED] ip=5.6.7.8 failures=10"


def test_backup_code_used_never_logs_the_code():
    with patch.object(security_log.logger, "info") as mock_info:
        security_log.backup_code_used("1.2.3.4", "user-1", 9)

        call_args = mock_info.call_args[0][0]
        assert "remaining=9" in call_args


def test_sanitize_defaults_and_truncation():
    assert sanitize(None) == "unknown"
    assert sanitize("") == "unknown"
    assert sanitize("a" * 300) == "a" * 255
    assert sanitize("[INJECT]") == "INJECT"


def test_mask_identifier():
    assert _mask_identifier("ab@example.com") == "a***@example.com"
    assert _mask_identifier("someone@example.com") == "som***@example.com"
    assert _mask_identifier("not-an-email") == "not-an-email"
