import logging
from datetime import timedelta

import pytest

from tokenapi.core.exceptions import (
    AuthenticationError,
    InsufficientTokensError,
    PaymentProviderError,
    ValidationError,
)
from tokenapi.core.security import create_access_token, decode_access_token, is_valid_cron_secret
from tokenapi.logging_config import RedactSecretsFilter


class TestExceptions:
    def test_error_envelope(self):
        exc = ValidationError("Plan not found or inactive", details={"plan_id": 7})

        assert exc.status_code == 422
        assert exc.detail == {
            "success": False,
            "error": {"code": "VALIDATION_001", "message": "Plan not found or inactive", "details": {"plan_id": 7}},
        }
        assert str(exc) == "Plan not found or inactive"

    def test_default_message(self):
        exc = PaymentProviderError()

        assert exc.status_code == 502
        assert exc.message == "Payment provider error"

    def test_insufficient_tokens_details(self):
        exc = InsufficientTokensError(required=10, available=3)

        assert exc.status_code == 400
        assert exc.details == {"required": 10, "available": 3}


class TestSecurity:
    def test_access_token_round_trip(self, test_settings):
        token = create_access_token({"account_id": 5, "sub": "a@example.com"}, settings=test_settings)

        payload = decode_access_token(token, test_settings)

        assert payload.account_id == 5

    def test_expired_token(self, test_settings):
        token = create_access_token({"account_id": 5, "sub": "a@example.com"}, timedelta(seconds=-1), test_settings)

        with pytest.raises(AuthenticationError):
            decode_access_token(token, test_settings)

    def test_token_signed_with_other_key(self, test_settings):
        other = test_settings.model_copy(update={"SECRET_KEY": "other"})
        token = create_access_token({"account_id": 5, "sub": "a@example.com"}, settings=other)

        with pytest.raises(AuthenticationError):
            decode_access_token(token, test_settings)

    def test_cron_secret(self, test_settings):
        assert is_valid_cron_secret("test-cron-secret", test_settings) is True
        assert is_valid_cron_secret("nope", test_settings) is False
        assert is_valid_cron_secret(None, test_settings) is False

    def test_empty_cron_secret_rejects_everything(self, test_settings):
        disabled = test_settings.model_copy(update={"CRON_SECRET": ""})

        assert is_valid_cron_secret("", disabled) is False
        assert is_valid_cron_secret("anything", disabled) is False


class TestRedactSecretsFilter:
    """로그에 인증 정보가 남지 않도록"""

    def make_record(self, msg, *args):
        return logging.LogRecord("tokenapi", logging.INFO, __file__, 1, msg, args, None)

    @pytest.mark.parametrize(
        "message, leaked",
        [
            ("Authorization: O-Bearer eyJhbGciOi.abc", "eyJhbGciOi.abc"),
            ("webhook header SHA256 c2VjcmV0c2VjcmV0", "c2VjcmV0c2VjcmV0"),
            ("https://app.example.com/reset-password?token=AbC_123-xyz", "AbC_123-xyz"),
            ('{"access_token": "phonepe-token", "expires_at": 1}', "phonepe-token"),
        ],
    )
    def test_secrets_are_masked(self, message, leaked):
        record = self.make_record(message)

        assert RedactSecretsFilter().filter(record) is True
        assert leaked not in record.getMessage()
        assert "***" in record.getMessage()

    def test_args_are_merged_before_masking(self):
        record = self.make_record("sending %s", "Bearer abc.def")

        RedactSecretsFilter().filter(record)

        assert record.getMessage() == "sending Bearer ***"

    def test_plain_message_untouched(self):
        record = self.make_record("Created token checkout %s", "TKN_1")

        RedactSecretsFilter().filter(record)

        assert record.args == ("TKN_1",)
