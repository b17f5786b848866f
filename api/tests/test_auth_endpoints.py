# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Integration tests for the authentication endpoints.
"""

import pytest
from unittest.mock import Mock

PHONE = "48999991234"
PREFIX = "/api/v1/auth"


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def wrong_code(code: str) -> str:
    return "000000" if code != "000000" else "111111"


class TestRequestEndpoints:
    """Test POST /otp/request and /otp/resend."""

    def test_request_otp(self, client, gateway):
        response = client.post(f"{PREFIX}/otp/request", json={"phone": "(48) 99999-1234"})

        assert response.status_code == 200
        data = response.get_json()
        assert data["expiresIn"] == 300
        assert data["cooldown"] == 30
        assert data["nextStep"] == "otp_verify"
        assert "code" not in data
        assert set(data["_links"]) >= {"self", "verify", "resend", "restart", "session"}
        assert gateway.sent[-1][0] == PHONE

    def test_invalid_phone(self, client):
        response = client.post(f"{PREFIX}/otp/request", json={"phone": "12345"})

        assert response.status_code == 400
        data = response.get_json()
        assert data["code"] == "INVALID_PHONE"
        assert data["type"].endswith("/invalid-phone")

    def test_missing_body(self, client):
        response = client.post(f"{PREFIX}/otp/request", data="not json", content_type="text/plain")

        assert response.status_code == 422
        assert response.get_json()["code"] == "VALIDATION_ERROR"

    def test_missing_phone_field(self, client):
        response = client.post(f"{PREFIX}/otp/request", json={})

        assert response.status_code == 422
        assert response.get_json()["errors"][0]["field"] == "phone"

    def test_cooldown_sets_retry_after(self, client, clock):
        client.post(f"{PREFIX}/otp/request", json={"phone": PHONE})
        clock.advance(10)

        response = client.post(f"{PREFIX}/otp/request", json={"phone": PHONE})

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "20"
        data = response.get_json()
        assert data["code"] == "RATE_LIMITED"
        assert data["retryAfter"] == 20

    def test_delivery_failure(self, client, gateway):
        gateway.fail = True

        response = client.post(f"{PREFIX}/otp/request", json={"phone": PHONE})

        assert response.status_code == 503
        assert response.get_json()["code"] == "DELIVERY_FAILED"

    def test_resend(self, client, clock, gateway):
        sid = client.post(f"{PREFIX}/otp/request", json={"phone": PHONE}).get_json()["sid"]
        clock.advance(30)

        response = client.post(f"{PREFIX}/otp/resend", json={"sid": sid})

        assert response.status_code == 200
        assert response.get_json()["sid"] != sid
        assert len(gateway.sent) == 2

    def test_resend_unknown_session(self, client):
        response = client.post(f"{PREFIX}/otp/resend", json={"sid": "missing"})

        assert response.status_code == 404
        assert response.get_json()["code"] == "SID_EXPIRED"


class TestSessionEndpoints:
    """Test session lookup, magic links and restart."""

    def test_session_context(self, client, clock):
        sid = client.post(f"{PREFIX}/otp/request", json={"phone": PHONE}).get_json()["sid"]
        clock.advance(5)

        response = client.get(f"{PREFIX}/otp/session/{sid}")

        assert response.status_code == 200
        data = response.get_json()
        assert data["maskedPhone"] == "(XX) XXXXX-1234"
        assert data["expiresIn"] == 295
        assert data["cooldown"] == 25
        assert data["nextStep"] == "otp_verify"

    def test_session_context_unknown(self, client):
        response = client.get(f"{PREFIX}/otp/session/missing")
        assert response.status_code == 404

    def test_magic_link(self, client, gateway):
        sid = client.post(f"{PREFIX}/otp/request", json={"phone": PHONE}).get_json()["sid"]

        response = client.post(f"{PREFIX}/otp/magic", json={"token": gateway.last_token})

        assert response.status_code == 200
        assert response.get_json()["sid"] == sid

        again = client.post(f"{PREFIX}/otp/magic", json={"token": gateway.last_token})
        assert again.status_code == 404
        assert again.get_json()["code"] == "MAGIC_LINK_INVALID"

    def test_magic_link_for_expired_session(self, client, gateway, clock):
        client.post(f"{PREFIX}/otp/request", json={"phone": PHONE})
        clock.advance(301)

        response = client.post(f"{PREFIX}/otp/magic", json={"token": gateway.last_token})

        assert response.status_code == 410
        assert response.get_json()["code"] == "MAGIC_LINK_EXPIRED"

    def test_restart(self, client, store, clock):
        sid = client.post(f"{PREFIX}/otp/request", json={"phone": PHONE}).get_json()["sid"]

        response = client.post(f"{PREFIX}/otp/restart", json={"sid": sid})

        assert response.status_code == 200
        data = response.get_json()
        assert data["nextStep"] == "phone"
        assert "request-otp" in data["_links"]
        # The phone keeps its cooldown after a restart
        assert client.post(f"{PREFIX}/otp/request", json={"phone": PHONE}).status_code == 429
        clock.advance(30)
        assert client.post(f"{PREFIX}/otp/request", json={"phone": PHONE}).status_code == 200

    def test_restart_without_body(self, client):
        response = client.post(f"{PREFIX}/otp/restart")
        assert response.status_code == 200


class TestVerifyEndpoint:
    """Test POST /otp/verify."""

    def test_first_login(self, client, gateway):
        sid = client.post(f"{PREFIX}/otp/request", json={"phone": PHONE}).get_json()["sid"]

        response = client.post(f"{PREFIX}/otp/verify", json={"sid": sid, "code": gateway.last_code})

        assert response.status_code == 200
        data = response.get_json()
        assert data["accessToken"]
        assert data["refreshToken"]
        assert data["tokenType"] == "Bearer"
        assert data["isNewUser"] is True
        assert data["nextStep"] == "onboarding"
        assert data["user"]["phone"] == PHONE
        assert "complete-profile" in data["_links"]

    def test_wrong_code(self, client, gateway):
        sid = client.post(f"{PREFIX}/otp/request", json={"phone": PHONE}).get_json()["sid"]

        response = client.post(f"{PREFIX}/otp/verify", json={"sid": sid, "code": wrong_code(gateway.last_code)})

        assert response.status_code == 401
        data = response.get_json()
        assert data["code"] == "OTP_INVALID"
        assert data["attemptsLeft"] == 4

    def test_non_numeric_code(self, client):
        response = client.post(f"{PREFIX}/otp/verify", json={"sid": "s1", "code": "12ab56"})
        assert response.status_code == 422

    def test_replay(self, client, gateway):
        sid = client.post(f"{PREFIX}/otp/request", json={"phone": PHONE}).get_json()["sid"]
        code = gateway.last_code
        client.post(f"{PREFIX}/otp/verify", json={"sid": sid, "code": code})

        response = client.post(f"{PREFIX}/otp/verify", json={"sid": sid, "code": code})

        assert response.status_code == 409
        assert response.get_json()["code"] == "OTP_ALREADY_USED"

    def test_expired(self, client, gateway, clock):
        sid = client.post(f"{PREFIX}/otp/request", json={"phone": PHONE}).get_json()["sid"]
        clock.advance(300)

        response = client.post(f"{PREFIX}/otp/verify", json={"sid": sid, "code": gateway.last_code})

        assert response.status_code == 410
        assert response.get_json()["code"] == "OTP_EXPIRED"


class TestAuthenticatedEndpoints:
    """Test profile completion, /me, refresh and logout."""

    def test_complete_profile(self, client, login):
        tokens = login()

        response = client.post(
            f"{PREFIX}/profile/complete",
            json={"name": "Maria Silva", "termsAccepted": True, "neighborhoodId": "centro"},
            headers=bearer(tokens["accessToken"])
        )

        assert response.status_code == 200
        data = response.get_json()
        assert data["nextStep"] == "home"
        assert data["user"]["profileCompleted"] is True
        assert "logout" in data["_links"]

    def test_complete_profile_validation(self, client, login):
        tokens = login()

        response = client.post(
            f"{PREFIX}/profile/complete",
            json={"name": "M", "termsAccepted": False},
            headers=bearer(tokens["accessToken"])
        )

        assert response.status_code == 422
        assert response.get_json()["code"] == "VALIDATION_ERROR"

    def test_complete_profile_requires_token(self, client):
        response = client.post(f"{PREFIX}/profile/complete", json={"name": "Maria", "termsAccepted": True})
        assert response.status_code == 401

    def test_me(self, client, login):
        tokens = login()

        response = client.get(f"{PREFIX}/me", headers=bearer(tokens["accessToken"]))

        assert response.status_code == 200
        data = response.get_json()
        assert data["user"]["id"] == tokens["userId"]
        assert data["nextStep"] == "onboarding"

    def test_me_with_invalid_token(self, client):
        response = client.get(f"{PREFIX}/me", headers=bearer("garbage"))

        assert response.status_code == 401
        assert response.get_json()["type"].endswith("/invalid-token")

    def test_refresh(self, client, login, auth_service):
        tokens = login()

        response = client.post(f"{PREFIX}/refresh", json={"refreshToken": tokens["refreshToken"]})

        assert response.status_code == 200
        data = response.get_json()
        assert data["tokenType"] == "Bearer"
        assert auth_service.validate_token(data["accessToken"])["sub"] == tokens["userId"]

    def test_refresh_with_access_token(self, client, login):
        tokens = login()

        response = client.post(f"{PREFIX}/refresh", json={"refreshToken": tokens["accessToken"]})

        assert response.status_code == 401

    def test_refresh_for_unknown_user(self, client, login, users):
        tokens = login()
        users._users.clear()

        response = client.post(f"{PREFIX}/refresh", json={"refreshToken": tokens["refreshToken"]})

        assert response.status_code == 401

    def test_logout_without_blocklist(self, client, login):
        tokens = login()

        response = client.post(f"{PREFIX}/logout", headers=bearer(tokens["accessToken"]))

        assert response.status_code == 200
        data = response.get_json()
        assert data["loggedOut"] is True
        assert data["nextStep"] == "phone"


class TestRedisBackedEndpoints:
    """Test behavior that depends on a Redis service."""

    @pytest.fixture
    def redis_service(self, app):
        redis_service = Mock()
        redis_service.is_available.return_value = True
        redis_service.incr_window.return_value = 1
        redis_service.is_token_blocked.return_value = False
        redis_service.block_token.return_value = True
        app.redis_service = redis_service
        return redis_service

    def test_logout_blocks_token(self, client, login, redis_service, auth_service):
        tokens = login()
        jti = auth_service.validate_token(tokens["accessToken"])["jti"]

        response = client.post(f"{PREFIX}/logout", headers=bearer(tokens["accessToken"]))

        assert response.status_code == 200
        token_id, ttl = redis_service.block_token.call_args[0]
        assert token_id == jti
        assert 0 < ttl <= 900

    def test_blocked_token_is_rejected(self, client, login, redis_service):
        tokens = login()
        redis_service.is_token_blocked.return_value = True

        response = client.get(f"{PREFIX}/me", headers=bearer(tokens["accessToken"]))

        assert response.status_code == 401
        assert response.get_json()["type"].endswith("/token-revoked")

    def test_rate_limit_headers(self, client, redis_service):
        redis_service.incr_window.return_value = 2

        response = client.post(f"{PREFIX}/otp/request", json={"phone": PHONE})

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "3"

    def test_rate_limit_exceeded(self, client, redis_service, gateway):
        redis_service.incr_window.return_value = 6

        response = client.post(f"{PREFIX}/otp/request", json={"phone": PHONE})

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) >= 1
        assert response.get_json()["code"] == "RATE_LIMITED"
        assert gateway.sent == []

    def test_redis_outage_becomes_503(self, client, redis_service):
        import redis

        redis_service.incr_window.side_effect = redis.ConnectionError("down")

        response = client.post(f"{PREFIX}/otp/request", json={"phone": PHONE})

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "5"

    def test_forwarded_for_ignored_without_trusted_proxy(self, client, redis_service):
        for i in range(2):
            client.post(f"{PREFIX}/otp/request", json={"phone": PHONE},
                        headers={"X-Forwarded-For": f"10.0.0.{i}"})

        keys = {call[0][0] for call in redis_service.incr_window.call_args_list}
        assert len(keys) == 1

    def test_trusted_proxy_hop_uses_forwarded_for(self, otp_config, clock, store, gateway, users,
                                                  auth_service, audit):
        from app import create_app

        app = create_app(
            {'TESTING': True, 'OTP_SWEEPER_ENABLED': False, 'REDIS_URL': None,
             'MONGODB_URI': None, 'TRUSTED_PROXY_HOPS': 1},
            otp_config=otp_config, clock=clock, otp_store=store, delivery_gateway=gateway,
            user_repository=users, auth_service=auth_service, audit_service=audit
        )
        redis_service = Mock()
        redis_service.is_available.return_value = True
        redis_service.incr_window.return_value = 1
        app.redis_service = redis_service
        client = app.test_client()

        for i, phone in enumerate((PHONE, "48988887777")):
            client.post(f"{PREFIX}/otp/request", json={"phone": phone},
                        headers={"X-Forwarded-For": f"10.0.0.{i}"})

        keys = {call[0][0] for call in redis_service.incr_window.call_args_list}
        assert len(keys) == 2
