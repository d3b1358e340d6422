"""
Unit tests for authentication.
"""

from datetime import timedelta

import pytest
from fastapi import HTTPException
from jose import jwt

from workqueue.api.auth import (
    create_access_token,
    decode_token,
    validate_api_key,
)
from workqueue.config import Settings


class TestAuth:
    """Tests for authentication utilities."""

    def test_create_access_token(self, test_settings: Settings):
        """Test JWT token creation."""
        token = create_access_token("ops", test_settings)

        assert isinstance(token, str)
        assert len(token) > 0

    def test_decode_valid_token(self, test_settings: Settings):
        """Test decoding a valid token."""
        token = create_access_token("ops", test_settings)

        token_data = decode_token(token, test_settings)

        assert token_data.operator == "ops"
        assert token_data.exp is not None

    def test_decode_expired_token(self, test_settings: Settings):
        """Test decoding an expired token raises error."""
        token = create_access_token(
            "ops",
            test_settings,
            expires_delta=timedelta(hours=-1),
        )

        with pytest.raises(HTTPException) as exc_info:
            decode_token(token, test_settings)

        assert exc_info.value.status_code == 401

    def test_decode_invalid_token(self, test_settings: Settings):
        """Test decoding an invalid token raises error."""
        with pytest.raises(HTTPException) as exc_info:
            decode_token("invalid-token", test_settings)

        assert exc_info.value.status_code == 401

    def test_token_signed_with_other_key_rejected(self, test_settings: Settings):
        other = test_settings.model_copy(update={"api_secret_key": "another-key"})
        token = create_access_token("ops", other)

        with pytest.raises(HTTPException) as exc_info:
            decode_token(token, test_settings)

        assert exc_info.value.status_code == 401

    def test_token_without_subject_rejected(self, test_settings: Settings):
        token = jwt.encode(
            {"exp": 4102444800},
            test_settings.api_secret_key,
            algorithm=test_settings.api_algorithm,
        )

        with pytest.raises(HTTPException) as exc_info:
            decode_token(token, test_settings)

        assert "subject" in exc_info.value.detail

    def test_validate_api_key_valid(self, test_settings: Settings):
        """Test API key validation with a configured key."""
        assert validate_api_key("test-admin-key", test_settings) is True

    def test_validate_api_key_unknown(self, test_settings: Settings):
        assert validate_api_key("guess", test_settings) is False

    def test_validate_api_key_empty(self, test_settings: Settings):
        """Test API key validation with empty values."""
        assert validate_api_key("", test_settings) is False
        no_keys = test_settings.model_copy(update={"admin_api_keys": []})
        assert validate_api_key("test-admin-key", no_keys) is False
