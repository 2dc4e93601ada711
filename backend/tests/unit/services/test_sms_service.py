# backend/tests/unit/services/test_sms_service.py
"""Tests for phone number helpers and the Twilio gateway."""

import json
from urllib.parse import parse_qs

import httpx
import pytest

from authguard.db.models.verification_code import CodePurpose
from authguard.services.sms_service import (
    TwilioSmsGateway,
    build_code_message,
    format_phone_number,
    is_valid_phone_number,
    mask_phone_number,
    normalize_phone_number,
)


def _gateway(handler) -> TwilioSmsGateway:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TwilioSmsGateway(
        "AC0123", "token", "+15550001111", base_url="https://twilio.test/2010-04-01", client=client
    )


class TestPhoneNumbers:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("(954) 234-8040", "+19542348040"),
            ("+44 20 7946 0958", "+442079460958"),
            ("19542348040", "+19542348040"),
            ("+1-954-234-8040", "+19542348040"),
        ],
    )
    def test_normalize(self, raw: str, expected: str) -> None:
        assert normalize_phone_number(raw, default_country_code="1") == expected

    def test_normalize_uses_default_country_code(self) -> None:
        assert normalize_phone_number("0612345678", default_country_code="31") == "+310612345678"

    def test_validity(self) -> None:
        assert is_valid_phone_number("+19542348040")
        assert not is_valid_phone_number("12345")
        assert not is_valid_phone_number("+1234567890123456")
        assert not is_valid_phone_number("")

    def test_format(self) -> None:
        assert format_phone_number("+19542348040") == "+1 (954) 234-8040"
        assert format_phone_number("+442079460958") == "+442079460958"

    def test_mask_keeps_last_four_digits(self) -> None:
        assert mask_phone_number("+19542348040") == "+*******8040"
        assert mask_phone_number(None) == ""


def test_code_messages_carry_the_code():
    for purpose in CodePurpose:
        assert "482913" in build_code_message(purpose, "482913")
    assert "password reset" in build_code_message(CodePurpose.PASSWORD_RESET, "1")
    assert "2FA" in build_code_message(CodePurpose.TWO_FACTOR_AUTH, "1")


class TestTwilioSmsGateway:
    @pytest.mark.asyncio
    async def test_successful_send(self) -> None:
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["form"] = parse_qs(request.content.decode())
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(201, json={"sid": "SM123"})

        result = await _gateway(handler).send("+19542348040", "Your code is 123456")

        assert result.success
        assert result.message_id == "SM123"
        assert seen["url"] == "https://twilio.test/2010-04-01/Accounts/AC0123/Messages.json"
        assert seen["form"] == {
            "From": ["+15550001111"],
            "To": ["+19542348040"],
            "Body": ["Your code is 123456"],
        }
        assert seen["auth"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_known_error_code_is_translated(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"code": 21211, "message": "raw twilio text"})

        result = await _gateway(handler).send("+19542348040", "x")

        assert not result.success
        assert result.error == "Invalid phone number format"

    @pytest.mark.asyncio
    async def test_unknown_error_uses_gateway_message(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, content=json.dumps({"message": "Upstream broke"}))

        result = await _gateway(handler).send("+19542348040", "x")

        assert result.error == "Upstream broke"

    @pytest.mark.asyncio
    async def test_non_json_error_body(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502, text="Bad Gateway")

        result = await _gateway(handler).send("+19542348040", "x")

        assert not result.success
        assert result.error == "Failed to send SMS"

    @pytest.mark.asyncio
    async def test_transport_error_is_reported_not_raised(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        result = await _gateway(handler).send("+19542348040", "x")

        assert result == (False, "SMS gateway unavailable", None)

    @pytest.mark.asyncio
    async def test_unconfigured_gateway(self, monkeypatch) -> None:
        from authguard.core.config import settings

        monkeypatch.setattr(settings, "TWILIO_ACCOUNT_SID", None)
        gateway = TwilioSmsGateway(auth_token="t", from_number="+15550001111")

        assert not gateway.configured
        result = await gateway.send("+19542348040", "x")
        assert result.error == "SMS gateway not configured"


def test_gateway_singleton():
    from authguard.services.sms_service import get_sms_gateway

    assert get_sms_gateway() is get_sms_gateway()
