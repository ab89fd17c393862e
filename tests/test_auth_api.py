import pytest

from app.services.otp_store import StoreError

USER = {
    "email": "Ada@Example.com",
    "password": "secret123",
    "first_name": "Ada",
    "last_name": "Lovelace",
}


def _register(client, **overrides):
    payload = {**USER, **overrides}
    response = client.post("/api/auth/register", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def _auth(data):
    return {"Authorization": f"Bearer {data['access_token']}"}


def _wrong(code):
    return "100000" if code != "100000" else "100001"


@pytest.fixture
def services(client):
    return client.app.state.services


def _break_store(monkeypatch, services, operation):
    def unavailable(*args, **kwargs):
        raise StoreError("database is locked")

    monkeypatch.setattr(services.otp._store, operation, unavailable)


class TestRegistration:
    def test_register_issues_verification_code(self, client, notifier):
        data = _register(client)

        assert data["user"]["email"] == "ada@example.com"
        assert data["user"]["full_name"] == "Ada Lovelace"
        assert data["user"]["is_email_verified"] is False
        assert data["token_type"] == "bearer"
        assert len(data["otp"]) == 6
        assert "password" not in data["user"]

        subjects = [message.subject for _, _, message in notifier.sent]
        assert subjects == [
            "Counselor App: Email Verification Code",
            "Welcome to Counselor App!",
        ]
        address, channel, message = notifier.sent[0]
        assert (address, channel) == ("ada@example.com", "email")
        assert data["otp"] in message.body

    def test_duplicate_email(self, client):
        _register(client)
        response = client.post("/api/auth/register", json=USER)
        assert response.status_code == 400
        assert "already exists" in response.json()["detail"]

    def test_validation(self, client):
        response = client.post(
            "/api/auth/register", json={**USER, "email": "not-an-email"}
        )
        assert response.status_code == 422
        response = client.post("/api/auth/register", json={**USER, "password": "123"})
        assert response.status_code == 422

    def test_delivery_failure_does_not_block_registration(self, client, notifier):
        notifier.fail = True
        data = _register(client)

        response = client.post(
            "/api/auth/verify-email", json={"otp": data["otp"]}, headers=_auth(data)
        )
        assert response.status_code == 200

    def test_routes_also_served_without_api_prefix(self, client):
        response = client.post("/auth/register", json=USER)
        assert response.status_code == 201


class TestEmailVerification:
    def test_verify_email(self, client):
        data = _register(client)

        response = client.post(
            "/api/auth/verify-email", json={"otp": data["otp"]}, headers=_auth(data)
        )
        assert response.status_code == 200
        assert response.json()["message"] == "Email verified successfully!"

        me = client.get("/api/auth/me", headers=_auth(data)).json()
        assert me["is_email_verified"] is True

    def test_code_is_single_use(self, client):
        data = _register(client)
        client.post("/api/auth/verify-email", json={"otp": data["otp"]}, headers=_auth(data))

        response = client.post(
            "/api/auth/verify-email", json={"otp": data["otp"]}, headers=_auth(data)
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid or expired OTP"

    def test_attempt_cap(self, client):
        data = _register(client)
        wrong = _wrong(data["otp"])

        for _ in range(3):
            response = client.post(
                "/api/auth/verify-email", json={"otp": wrong}, headers=_auth(data)
            )
            assert response.status_code == 400
            assert response.json()["detail"] == "Invalid OTP"

        response = client.post(
            "/api/auth/verify-email", json={"otp": data["otp"]}, headers=_auth(data)
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid or expired OTP"

    def test_expired_code(self, client, clock):
        data = _register(client)
        clock.advance(301)

        response = client.post(
            "/api/auth/verify-email", json={"otp": data["otp"]}, headers=_auth(data)
        )
        assert response.status_code == 400

    def test_resend_replaces_code(self, client):
        data = _register(client)

        resent = client.post("/api/auth/resend-email-otp", headers=_auth(data))
        assert resent.status_code == 200
        new_code = resent.json()["otp"]
        assert resent.json()["expires_in_seconds"] == 300

        response = client.post(
            "/api/auth/verify-email", json={"otp": new_code}, headers=_auth(data)
        )
        assert response.status_code == 200

    def test_resend_after_verification_is_rejected(self, client):
        data = _register(client)
        client.post("/api/auth/verify-email", json={"otp": data["otp"]}, headers=_auth(data))

        response = client.post("/api/auth/resend-email-otp", headers=_auth(data))
        assert response.status_code == 400
        assert response.json()["detail"] == "Email is already verified"

    def test_requires_authentication(self, client):
        response = client.post("/api/auth/verify-email", json={"otp": "123456"})
        assert response.status_code == 401

    def test_malformed_code(self, client):
        data = _register(client)
        response = client.post(
            "/api/auth/verify-email", json={"otp": "12ab56"}, headers=_auth(data)
        )
        assert response.status_code == 422


class TestPhoneVerification:
    def test_send_and_verify_phone(self, client, notifier):
        data = _register(client)

        sent = client.post(
            "/api/auth/send-phone-otp",
            json={"phone": "+1 (555) 000-1111"},
            headers=_auth(data),
        )
        assert sent.status_code == 200
        address, channel, message = notifier.sent[-1]
        assert (address, channel) == ("+15550001111", "phone")

        me = client.get("/api/auth/me", headers=_auth(data)).json()
        assert me["phone"] == "+15550001111"
        assert me["is_phone_verified"] is False

        response = client.post(
            "/api/auth/verify-phone", json={"otp": sent.json()["otp"]}, headers=_auth(data)
        )
        assert response.status_code == 200
        me = client.get("/api/auth/me", headers=_auth(data)).json()
        assert me["is_phone_verified"] is True

    def test_email_code_does_not_verify_phone(self, client):
        data = _register(client)
        client.post(
            "/api/auth/send-phone-otp", json={"phone": "5550001111"}, headers=_auth(data)
        )

        response = client.post(
            "/api/auth/verify-phone", json={"otp": data["otp"]}, headers=_auth(data)
        )
        assert response.status_code == 400


class TestPasswordReset:
    def test_forgot_and_reset(self, client):
        _register(client)

        forgot = client.post(
            "/api/auth/forgot-password", json={"email": "ada@example.com"}
        )
        assert forgot.status_code == 200
        code = forgot.json()["otp"]

        response = client.post(
            "/api/auth/reset-password",
            json={"email": "ada@example.com", "otp": code, "new_password": "newsecret"},
        )
        assert response.status_code == 200

        old = client.post(
            "/api/auth/login", json={"email": "ada@example.com", "password": "secret123"}
        )
        assert old.status_code == 401
        new = client.post(
            "/api/auth/login", json={"email": "ada@example.com", "password": "newsecret"}
        )
        assert new.status_code == 200

    def test_reset_signs_out_existing_sessions(self, client):
        data = _register(client)
        code = client.post(
            "/api/auth/forgot-password", json={"email": "ada@example.com"}
        ).json()["otp"]

        client.post(
            "/api/auth/reset-password",
            json={"email": "ada@example.com", "otp": code, "new_password": "newsecret"},
        )

        assert client.get("/api/auth/me", headers=_auth(data)).status_code == 401
        refreshed = client.post(
            "/api/auth/refresh", json={"refresh_token": data["refresh_token"]}
        )
        assert refreshed.status_code == 401

    def test_unknown_email_gets_same_answer(self, client, notifier):
        _register(client)
        known = client.post("/api/auth/forgot-password", json={"email": "ada@example.com"})
        unknown = client.post("/api/auth/forgot-password", json={"email": "who@example.com"})

        assert unknown.status_code == 200
        assert unknown.json()["message"] == known.json()["message"]
        assert all(address != "who@example.com" for address, _, _ in notifier.sent)

    def test_verification_code_cannot_reset_password(self, client):
        data = _register(client)
        response = client.post(
            "/api/auth/reset-password",
            json={"email": "ada@example.com", "otp": data["otp"], "new_password": "newsecret"},
        )
        assert response.status_code == 400


class TestLogin:
    def test_password_login(self, client):
        _register(client)
        response = client.post(
            "/api/auth/login", json={"email": "ADA@example.com", "password": "secret123"}
        )
        assert response.status_code == 200
        assert response.json()["user"]["last_login"] is not None

    @pytest.mark.parametrize(
        "email, password",
        [("ada@example.com", "wrongpass"), ("nobody@example.com", "secret123")],
    )
    def test_bad_credentials(self, client, email, password):
        _register(client)
        response = client.post("/api/auth/login", json={"email": email, "password": password})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid email or password"

    def test_login_with_code(self, client):
        _register(client)
        requested = client.post(
            "/api/auth/login/otp/request", json={"email": "ada@example.com"}
        )
        assert requested.status_code == 200

        response = client.post(
            "/api/auth/login/otp/verify",
            json={"email": "ada@example.com", "otp": requested.json()["otp"]},
        )
        assert response.status_code == 200
        assert response.json()["access_token"]

    def test_login_code_for_unknown_email(self, client):
        response = client.post(
            "/api/auth/login/otp/verify",
            json={"email": "nobody@example.com", "otp": "123456"},
        )
        assert response.status_code == 400


class TestSessions:
    def test_refresh_and_logout(self, client):
        data = _register(client)

        refreshed = client.post(
            "/api/auth/refresh", json={"refresh_token": data["refresh_token"]}
        )
        assert refreshed.status_code == 200
        assert refreshed.json()["access_token"]

        logout = client.post(
            "/api/auth/logout",
            headers={"Authorization": f"Bearer {data['refresh_token']}"},
        )
        assert logout.status_code == 200

        me = client.get("/api/auth/me", headers=_auth(data))
        assert me.status_code == 401
        again = client.post(
            "/api/auth/refresh", json={"refresh_token": data["refresh_token"]}
        )
        assert again.status_code == 401

    def test_access_token_is_not_a_refresh_token(self, client):
        data = _register(client)
        response = client.post(
            "/api/auth/refresh", json={"refresh_token": data["access_token"]}
        )
        assert response.status_code == 401


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_code_is_hidden_without_debug(settings, notifier, clock):
    from dataclasses import replace

    from fastapi.testclient import TestClient

    from app.main import create_app

    app = create_app(replace(settings, otp_debug=False), notifier=notifier, clock=clock)
    with TestClient(app) as client:
        data = _register(client)
        assert "otp" not in data
        forgot = client.post("/api/auth/forgot-password", json={"email": "ada@example.com"})
        assert "otp" not in forgot.json()


class TestStoreUnavailable:
    def test_register_still_succeeds_without_code(
        self, client, services, monkeypatch, notifier
    ):
        _break_store(monkeypatch, services, "insert")

        data = _register(client)

        assert "otp" not in data
        assert data["access_token"]
        subjects = [message.subject for _, _, message in notifier.sent]
        assert subjects == ["Welcome to Counselor App!"]

    def test_forgot_password(self, client, services, monkeypatch):
        _register(client)
        _break_store(monkeypatch, services, "insert")

        response = client.post("/api/auth/forgot-password", json={"email": "ada@example.com"})

        assert response.status_code == 503
        assert response.json()["detail"] == "Verification service is temporarily unavailable"

    def test_verify_email(self, client, services, monkeypatch):
        data = _register(client)
        _break_store(monkeypatch, services, "find_active")

        response = client.post(
            "/api/auth/verify-email", json={"otp": data["otp"]}, headers=_auth(data)
        )

        assert response.status_code == 503
        me = client.get("/api/auth/me", headers=_auth(data)).json()
        assert me["is_email_verified"] is False

    def test_failed_attempt_write(self, client, services, monkeypatch):
        data = _register(client)
        _break_store(monkeypatch, services, "record_attempt")

        response = client.post(
            "/api/auth/verify-email", json={"otp": data["otp"]}, headers=_auth(data)
        )
        assert response.status_code == 503

    def test_phone_change_keeps_verified_number(self, client, services, monkeypatch):
        data = _register(client)
        sent = client.post(
            "/api/auth/send-phone-otp", json={"phone": "+15550001111"}, headers=_auth(data)
        )
        client.post(
            "/api/auth/verify-phone", json={"otp": sent.json()["otp"]}, headers=_auth(data)
        )
        _break_store(monkeypatch, services, "insert")

        response = client.post(
            "/api/auth/send-phone-otp", json={"phone": "+15550002222"}, headers=_auth(data)
        )

        assert response.status_code == 503
        me = client.get("/api/auth/me", headers=_auth(data)).json()
        assert me["phone"] == "+15550001111"
        assert me["is_phone_verified"] is True
