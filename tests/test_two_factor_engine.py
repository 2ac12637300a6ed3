"""Tests for TOTP verification and recovery codes."""

import base64
import re

import pyotp
import pytest
from argon2 import PasswordHasher, Type

from familyhub.service.two_factor import (
    RECOVERY_CODE_COUNT,
    TwoFactorEngine,
    normalize_recovery_code,
)
from familyhub.storage.models import RecoveryCode

NOW = 1_700_000_000


@pytest.fixture
def engine():
    return TwoFactorEngine(
        hasher=PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


@pytest.fixture
def secret():
    return TwoFactorEngine.generate_secret()


def _stored(hashes, user_id="u1"):
    return [
        RecoveryCode(id=f"rc-{i}", user_id=user_id, code_hash=h)
        for i, h in enumerate(hashes)
    ]


class TestTotp:
    def test_current_code_accepted(self, secret):
        code = pyotp.TOTP(secret).at(NOW)
        assert TwoFactorEngine.verify_totp(secret, code, at=NOW)

    @pytest.mark.parametrize("offset", [-30, 30])
    def test_adjacent_step_accepted(self, secret, offset):
        code = pyotp.TOTP(secret).at(NOW + offset)
        assert TwoFactorEngine.verify_totp(secret, code, at=NOW)

    @pytest.mark.parametrize("offset", [-90, 90])
    def test_distant_step_rejected(self, secret, offset):
        code = pyotp.TOTP(secret).at(NOW + offset)
        assert not TwoFactorEngine.verify_totp(secret, code, at=NOW)

    def test_spaces_and_dashes_ignored(self, secret):
        code = pyotp.TOTP(secret).at(NOW)
        assert TwoFactorEngine.verify_totp(secret, f"{code[:3]} {code[3:]}", at=NOW)

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "abcdef"])
    def test_malformed_codes_rejected(self, secret, code):
        assert not TwoFactorEngine.verify_totp(secret, code, at=NOW)

    def test_missing_secret_rejected(self):
        assert not TwoFactorEngine.verify_totp("", "123456", at=NOW)


class TestProvisioning:
    def test_uri_and_qr(self, engine, secret):
        result = engine.build_provisioning(secret, "owner@example.com")
        assert result.otpauth_uri.startswith("otpauth://totp/")
        assert f"secret={secret}" in result.otpauth_uri
        assert "issuer=Family%20Hub" in result.otpauth_uri
        prefix = "data:image/svg+xml;base64,"
        assert result.qr_code_data_url.startswith(prefix)
        svg = base64.b64decode(result.qr_code_data_url[len(prefix):])
        assert b"<svg" in svg


class TestRecoveryCodes:
    def test_format_and_count(self, engine):
        codes = engine.generate_recovery_codes()
        assert len(codes.plain) == RECOVERY_CODE_COUNT
        assert len(codes.hashes) == RECOVERY_CODE_COUNT
        assert all(re.fullmatch(r"[0-9A-F]{4}-[0-9A-F]{4}", c) for c in codes.plain)
        assert all(h.startswith("$argon2id$") for h in codes.hashes)

    def test_match_ignores_case_and_separators(self, engine):
        codes = engine.generate_recovery_codes()
        stored = _stored(codes.hashes)
        target = codes.plain[3]
        variant = target.replace("-", " ").lower()
        assert engine.match_recovery_code(variant, stored) == "rc-3"

    def test_used_code_not_matched(self, engine):
        codes = engine.generate_recovery_codes()
        stored = _stored(codes.hashes)
        stored[0].used_at = stored[0].created_at
        assert engine.match_recovery_code(codes.plain[0], stored) is None

    def test_unknown_code_not_matched(self, engine):
        codes = engine.generate_recovery_codes()
        assert engine.match_recovery_code("0000-0000", _stored(codes.hashes)) is None
        assert engine.match_recovery_code("", _stored(codes.hashes)) is None

    def test_ambiguous_match_rejected(self, engine):
        duplicate = engine._hasher.hash("ABCD-1234")
        stored = _stored([duplicate, engine._hasher.hash("ABCD-1234")])
        assert engine.match_recovery_code("abcd1234", stored) is None


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("abcd-1234", "ABCD-1234"),
        ("ABCD1234", "ABCD-1234"),
        (" ab cd 12 34 ", "ABCD-1234"),
        ("ABC", "ABC"),
    ],
)
def test_normalize_recovery_code(raw, expected):
    assert normalize_recovery_code(raw) == expected
