"""Unit tests for password hashing, access tokens and log context helpers."""

from datetime import timedelta

import pytest
import structlog
from jose import JWTError

from commerce.core.logging import bind_log_context, clear_log_context
from commerce.core.security import (
    create_access_token,
    decode_access_token,
    hash_password,
    verify_password,
)


class TestPasswords:
    def test_hash_verifies_only_the_original(self):
        hashed = hash_password("s3cret-pass")
        assert hashed != "s3cret-pass"
        assert verify_password("s3cret-pass", hashed)
        assert not verify_password("wrong-pass", hashed)


class TestAccessTokens:
    def test_admin_token_names_its_store(self):
        claims = decode_access_token(create_access_token("u-1", "admin", tenant_code="acme"))
        assert claims["sub"] == "u-1"
        assert claims["role"] == "admin"
        assert claims["tenant_code"] == "acme"
        assert claims["exp"] > claims["iat"]

    def test_customer_token_has_no_tenant_claim(self):
        claims = decode_access_token(create_access_token("u-2", "customer"))
        assert "tenant_code" not in claims

    def test_expired_token_is_rejected(self):
        token = create_access_token("u-1", "admin", expires_delta=timedelta(seconds=-1))
        with pytest.raises(JWTError):
            decode_access_token(token)

    def test_tampered_token_is_rejected(self):
        token = create_access_token("u-1", "customer")
        with pytest.raises(JWTError):
            decode_access_token(token[:-2] + ("A" if token[-2] != "A" else "B") + token[-1])


class TestLogContext:
    def test_bind_then_clear(self):
        clear_log_context()
        bind_log_context(tenant_code="acme", path="/products")
        assert structlog.contextvars.get_contextvars() == {
            "tenant_code": "acme",
            "path": "/products",
        }
        clear_log_context()
        assert structlog.contextvars.get_contextvars() == {}
