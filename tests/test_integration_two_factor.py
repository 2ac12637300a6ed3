"""Two-factor enrolment, login verification and recovery codes over HTTP."""

import pyotp
import pytest

from conftest import PASSWORD, last_mail, register_household


def login(client, remember_me=False):
    return client.post(
        "/v1/auth/login",
        json={"email": "owner@example.com", "password": PASSWORD, "remember_me": remember_me},
    )


def session_family(client):
    return client.get("/v1/auth/session").json()["data"].get("family_id")


@pytest.fixture
def verified_household(client, outbox):
    response = register_household(client)
    token = last_mail(outbox, "send_email_verification")["args"][0]
    verified = client.post("/v1/account/email/verify", json={"token": token})
    assert verified.status_code == 200
    return response.json()["data"]


@pytest.fixture
def enrolled(client, verified_household):
    """Household with 2FA enabled; returns (secret, recovery codes)."""
    setup = client.post("/v1/account/two-factor/setup")
    assert setup.status_code == 200
    secret = setup.json()["data"]["secret"]
    confirm = client.post(
        "/v1/account/two-factor/confirm", json={"code": pyotp.TOTP(secret).now()}
    )
    assert confirm.status_code == 200
    codes = confirm.json()["data"]["recovery_codes"]
    client.post("/v1/auth/logout")
    return secret, codes


class TestEnrolment:
    def test_setup_requires_verified_email(self, client, outbox):
        register_household(client)
        response = client.post("/v1/account/two-factor/setup")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "email_not_verified"

    def test_setup_returns_provisioning_data(self, client, verified_household, runtime):
        response = client.post("/v1/account/two-factor/setup")
        data = response.json()["data"]
        assert data["otpauth_uri"].startswith("otpauth://totp/")
        assert data["qr_code_data_url"].startswith("data:image/svg+xml;base64,")
        stored = runtime.store.get_two_factor(verified_household["family_id"])
        assert stored.enabled is False
        assert stored.secret != data["secret"]
        assert runtime.cipher.decrypt(stored.secret) == data["secret"]

    def test_confirm_with_wrong_code(self, client, verified_household):
        client.post("/v1/account/two-factor/setup")
        response = client.post("/v1/account/two-factor/confirm", json={"code": "000000"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_two_factor_code"
        status = client.get("/v1/account/two-factor").json()["data"]
        assert status["enabled"] is False

    def test_confirm_enables_and_issues_codes(self, client, verified_household, outbox):
        secret = client.post("/v1/account/two-factor/setup").json()["data"]["secret"]
        response = client.post(
            "/v1/account/two-factor/confirm", json={"code": pyotp.TOTP(secret).now()}
        )
        codes = response.json()["data"]["recovery_codes"]
        assert len(codes) == 10
        assert len(set(codes)) == 10
        status = client.get("/v1/account/two-factor").json()["data"]
        assert status == {
            "enabled": True,
            "email_verified": True,
            "recovery_codes_remaining": 10,
            "recovery_codes_total": 10,
        }
        assert outbox[-1]["kind"] == "send_two_factor_enabled"

        again = client.post("/v1/account/two-factor/setup")
        assert again.status_code == 409

    def test_confirm_rejects_malformed_code(self, client, verified_household):
        client.post("/v1/account/two-factor/setup")
        response = client.post("/v1/account/two-factor/confirm", json={"code": "12ab56"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestLoginVerification:
    def test_login_defers_session_until_code(self, client, enrolled):
        secret, _ = enrolled
        response = login(client, remember_me=True)

        data = response.json()["data"]
        assert data["requires_two_factor"] is True
        assert data["two_factor_token"]
        assert "set-cookie" not in response.headers
        assert session_family(client) is None

        verified = client.post(
            "/v1/auth/verify-2fa",
            json={"token": data["two_factor_token"], "code": pyotp.TOTP(secret).now()},
        )
        assert verified.status_code == 200
        body = verified.json()["data"]
        assert body["used_recovery_code"] is False
        assert session_family(client) == data["family_id"]

    def test_wrong_code_spends_pending_login(self, client, enrolled):
        secret, _ = enrolled
        token = login(client).json()["data"]["two_factor_token"]

        wrong = client.post("/v1/auth/verify-2fa", json={"token": token, "code": "000000"})
        assert wrong.status_code == 401
        assert wrong.json()["error"]["code"] == "invalid_two_factor_code"

        retry = client.post(
            "/v1/auth/verify-2fa",
            json={"token": token, "code": pyotp.TOTP(secret).now()},
        )
        assert retry.status_code == 401
        assert retry.json()["error"]["code"] == "two_factor_expired"
        assert session_family(client) is None

    def test_unknown_token(self, client, enrolled):
        response = client.post(
            "/v1/auth/verify-2fa", json={"token": "f" * 64, "code": "123456"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "two_factor_expired"

    def test_code_or_recovery_code_required(self, client, enrolled):
        response = client.post("/v1/auth/verify-2fa", json={"token": "abc"})
        assert response.status_code == 400

    def test_verification_attempts_rate_limited(self, client, enrolled, runtime):
        secret, _ = enrolled
        runtime.settings.totp_rate_limit = 3
        for _ in range(3):
            token = login(client).json()["data"]["two_factor_token"]
            response = client.post(
                "/v1/auth/verify-2fa", json={"token": token, "code": "000000"}
            )
            assert response.status_code == 401

        token = login(client).json()["data"]["two_factor_token"]
        blocked = client.post(
            "/v1/auth/verify-2fa",
            json={"token": token, "code": pyotp.TOTP(secret).now()},
        )
        assert blocked.status_code == 429
        assert int(blocked.headers["Retry-After"]) >= 1
        assert blocked.json()["error"]["code"] == "rate_limited"

        # A blocked attempt leaves the pending login redeemable
        runtime._local_rate_limits.clear()
        allowed = client.post(
            "/v1/auth/verify-2fa",
            json={"token": token, "code": pyotp.TOTP(secret).now()},
        )
        assert allowed.status_code == 200


class TestRecoveryCodes:
    def test_recovery_code_logs_in_once(self, client, enrolled):
        _, codes = enrolled
        token = login(client).json()["data"]["two_factor_token"]

        response = client.post(
            "/v1/auth/verify-2fa",
            json={"token": token, "recovery_code": codes[0].lower().replace("-", "")},
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["used_recovery_code"] is True
        assert data["remaining_codes"] == 9

        client.post("/v1/auth/logout")
        token = login(client).json()["data"]["two_factor_token"]
        reused = client.post(
            "/v1/auth/verify-2fa", json={"token": token, "recovery_code": codes[0]}
        )
        assert reused.status_code == 401

    def test_recovery_code_in_code_field(self, client, enrolled):
        _, codes = enrolled
        token = login(client).json()["data"]["two_factor_token"]
        response = client.post(
            "/v1/auth/verify-2fa", json={"token": token, "code": codes[1]}
        )
        assert response.status_code == 200
        assert response.json()["data"]["used_recovery_code"] is True

    def test_regenerate_replaces_codes(self, client, enrolled):
        secret, codes = enrolled
        token = login(client).json()["data"]["two_factor_token"]
        client.post(
            "/v1/auth/verify-2fa",
            json={"token": token, "code": pyotp.TOTP(secret).now()},
        )

        bad = client.post("/v1/account/two-factor/recovery-codes", json={"code": "000000"})
        assert bad.status_code == 401

        response = client.post(
            "/v1/account/two-factor/recovery-codes",
            json={"code": pyotp.TOTP(secret).now()},
        )
        fresh = response.json()["data"]["recovery_codes"]
        assert len(fresh) == 10
        assert not set(fresh) & set(codes)

        client.post("/v1/auth/logout")
        token = login(client).json()["data"]["two_factor_token"]
        stale = client.post(
            "/v1/auth/verify-2fa", json={"token": token, "recovery_code": codes[2]}
        )
        assert stale.status_code == 401


class TestDisable:
    def test_disable_requires_current_code(self, client, enrolled, outbox):
        secret, _ = enrolled
        token = login(client).json()["data"]["two_factor_token"]
        client.post(
            "/v1/auth/verify-2fa",
            json={"token": token, "code": pyotp.TOTP(secret).now()},
        )

        wrong = client.request(
            "DELETE", "/v1/account/two-factor", json={"code": "000000"}
        )
        assert wrong.status_code == 401

        response = client.request(
            "DELETE", "/v1/account/two-factor", json={"code": pyotp.TOTP(secret).now()}
        )
        assert response.status_code == 200
        assert response.json()["data"]["enabled"] is False
        assert outbox[-1]["kind"] == "send_two_factor_disabled"

        client.post("/v1/auth/logout")
        data = login(client).json()["data"]
        assert data["requires_two_factor"] is False
        assert session_family(client) == data["family_id"]

    def test_disable_when_not_enabled(self, client, verified_household):
        response = client.request(
            "DELETE", "/v1/account/two-factor", json={"code": "123456"}
        )
        assert response.status_code == 400
