"""Integration tests for the household login flow.

Covers registration, password login, profile selection with PINs,
impersonation, profile switching and logout.
"""

import pytest

from conftest import ADMIN_PIN, PASSWORD, register_household
from familyhub.service.session import SESSION_COOKIE_NAME
from familyhub.storage.models import MemberRole


def session_state(client):
    response = client.get("/v1/auth/session")
    assert response.status_code == 200
    return response.json()["data"]


@pytest.fixture
def household(client):
    response = register_household(client)
    assert response.status_code == 201
    return response.json()["data"]


class TestRegistration:
    def test_register_opens_account_session(self, client, outbox):
        response = register_household(client)

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["email_verified"] is False
        state = session_state(client)
        assert state["authenticated"] is True
        assert state["family_id"] == data["family_id"]
        assert state["member_id"] is None
        assert state["family_name"] == "The Owners"
        assert client.cookies.get("locale") == "de"
        assert outbox[-1]["kind"] == "send_email_verification"
        assert outbox[-1]["to"] == "owner@example.com"

    def test_duplicate_email_conflicts(self, client, household):
        response = register_household(client, email="OWNER@example.com")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"email": "not-an-email"},
            {"password": "short"},
            {"admin_pin": "12"},
            {"admin_pin": "12ab"},
            {"locale": "fr"},
            {"color": "blue"},
            {"family_name": "   "},
        ],
    )
    def test_invalid_registration_rejected(self, client, overrides):
        response = register_household(client, **overrides)
        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"

    def test_password_required_without_oauth(self, client):
        response = register_household(client, password=None)
        assert response.status_code == 400


class TestLogin:
    def test_login_issues_account_session(self, client, household):
        client.post("/v1/auth/logout")
        assert session_state(client)["authenticated"] is False

        response = client.post(
            "/v1/auth/login",
            json={"email": "Owner@Example.com", "password": PASSWORD},
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["family_id"] == household["family_id"]
        assert data["requires_two_factor"] is False
        assert data["two_factor_token"] is None
        assert session_state(client)["family_id"] == household["family_id"]

    def test_wrong_password_and_unknown_email_look_alike(self, client, household, runtime):
        client.post("/v1/auth/logout")
        wrong = client.post(
            "/v1/auth/login", json={"email": "owner@example.com", "password": "nope-nope"}
        )
        unknown = client.post(
            "/v1/auth/login", json={"email": "ghost@example.com", "password": "nope-nope"}
        )

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"]["message"] == unknown.json()["error"]["message"]
        reasons = [a.failure_reason for a in runtime.store.login_attempts]
        assert reasons == ["INVALID_PASSWORD", "UNKNOWN_EMAIL"]

    def test_remember_me_extends_cookie(self, client, household, runtime):
        client.post("/v1/auth/logout")
        response = client.post(
            "/v1/auth/login",
            json={"email": "owner@example.com", "password": PASSWORD, "remember_me": True},
        )
        header = response.headers["set-cookie"]
        assert SESSION_COOKIE_NAME in header
        assert f"Max-Age={runtime.settings.remember_me_ttl_seconds}" in header


class TestProfiles:
    def test_members_listed_for_account_session(self, client, household):
        response = client.get("/v1/auth/members")
        assert response.status_code == 200
        items = response.json()["data"]["items"]
        assert len(items) == 1
        assert items[0]["name"] == "Alex"
        assert items[0]["role"] == "ADMIN"
        assert items[0]["has_pin"] is True

    def test_members_require_session(self, client):
        response = client.get("/v1/auth/members")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_select_profile_with_pin(self, client, household):
        response = client.post(
            "/v1/auth/select-profile",
            json={"member_id": household["member_id"], "pin": ADMIN_PIN},
        )

        assert response.status_code == 200
        state = session_state(client)
        assert state["member_id"] == household["member_id"]
        assert state["role"] == "ADMIN"
        assert client.cookies.get("locale") == "de"

    def test_select_profile_pin_errors(self, client, household):
        missing = client.post(
            "/v1/auth/select-profile", json={"member_id": household["member_id"]}
        )
        assert missing.status_code == 400
        assert missing.json()["error"]["code"] == "pin_required"

        wrong = client.post(
            "/v1/auth/select-profile",
            json={"member_id": household["member_id"], "pin": "0000"},
        )
        assert wrong.status_code == 401
        assert wrong.json()["error"]["code"] == "invalid_pin"
        assert session_state(client)["member_id"] is None

    def test_pin_attempts_are_rate_limited(self, client, household, runtime):
        limit = runtime.settings.pin_rate_limit
        body = {"member_id": household["member_id"], "pin": "0000"}
        for _ in range(limit):
            assert client.post("/v1/auth/select-profile", json=body).status_code == 401

        blocked = client.post(
            "/v1/auth/select-profile",
            json={"member_id": household["member_id"], "pin": ADMIN_PIN},
        )
        assert blocked.status_code == 429
        assert int(blocked.headers["Retry-After"]) >= 1

    def test_member_from_other_household_not_found(self, client, household, runtime):
        other = runtime.store.create_user("other@example.com", "Others")
        stranger = runtime.store.create_member(other.id, "Sam")
        response = client.post(
            "/v1/auth/select-profile", json={"member_id": stranger.id}
        )
        assert response.status_code == 404

    def test_member_without_pin_selects_directly(self, client, household, runtime):
        kid = runtime.store.create_member(household["family_id"], "Robin", locale="en")
        response = client.post("/v1/auth/select-profile", json={"member_id": kid.id})
        assert response.status_code == 200
        assert session_state(client)["role"] == "MEMBER"
        assert client.cookies.get("locale") == "en"

    def test_switch_profile_returns_to_picker(self, client, household):
        client.post(
            "/v1/auth/select-profile",
            json={"member_id": household["member_id"], "pin": ADMIN_PIN},
        )
        response = client.post("/v1/auth/switch-profile")
        assert response.status_code == 200
        state = session_state(client)
        assert state["authenticated"] is True
        assert state["member_id"] is None


class TestImpersonation:
    @pytest.fixture
    def kid(self, runtime, household):
        return runtime.store.create_member(household["family_id"], "Robin")

    def test_admin_impersonates_and_returns(self, client, household, kid):
        client.post(
            "/v1/auth/select-profile",
            json={"member_id": household["member_id"], "pin": ADMIN_PIN},
        )

        response = client.post("/v1/auth/impersonate", json={"member_id": kid.id})
        assert response.status_code == 200
        state = session_state(client)
        assert state["member_id"] == kid.id
        assert state["original_member_id"] == household["member_id"]
        assert state["is_impersonating"] is True

        back = client.post(
            "/v1/auth/impersonate", json={"member_id": household["member_id"]}
        )
        assert back.status_code == 200
        state = session_state(client)
        assert state["member_id"] == household["member_id"]
        assert state["is_impersonating"] is False

    def test_non_admin_cannot_impersonate(self, client, household, kid):
        client.post("/v1/auth/select-profile", json={"member_id": kid.id})
        response = client.post(
            "/v1/auth/impersonate", json={"member_id": household["member_id"]}
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_impersonation_needs_profile(self, client, household, kid):
        response = client.post("/v1/auth/impersonate", json={"member_id": kid.id})
        assert response.status_code == 403

    def test_second_admin_role_is_kept(self, client, household, runtime):
        co_admin = runtime.store.create_member(
            household["family_id"], "Jo", role=MemberRole.ADMIN
        )
        client.post(
            "/v1/auth/select-profile",
            json={"member_id": household["member_id"], "pin": ADMIN_PIN},
        )
        client.post("/v1/auth/impersonate", json={"member_id": co_admin.id})
        assert session_state(client)["role"] == "ADMIN"


class TestLogout:
    def test_logout_clears_cookie_and_audit_row(self, client, household, runtime):
        assert len(runtime.store.active_sessions) == 1
        response = client.post("/v1/auth/logout")
        assert response.status_code == 200
        assert session_state(client)["authenticated"] is False
        assert runtime.store.active_sessions == {}

    def test_logout_without_session_is_ok(self, client):
        assert client.post("/v1/auth/logout").status_code == 200


def test_locale_endpoint_sets_cookie(client):
    response = client.post("/v1/locale", json={"locale": "DE"})
    assert response.status_code == 200
    assert response.json()["data"]["locale"] == "de"
    assert client.cookies.get("locale") == "de"

    assert client.post("/v1/locale", json={"locale": "fr"}).status_code == 400
