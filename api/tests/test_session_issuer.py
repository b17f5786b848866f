# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Unit tests for session issuance and magic link resolution.
"""

import pytest
from unittest.mock import Mock

from models.enums import NextStep, OtpSessionStatus
from services.magic_link import MagicLinkStatus
from services.otp_store import SessionStateError
from services.session_issuer import SessionIssuer
from services.users import InMemoryUserRepository, UserCreationConflict

PHONE = "48999991234"


@pytest.fixture
def verified_session(store):
    issued = store.create(PHONE)
    return store.verify(issued.sid, issued.code).session


class TestSessionIssuer:
    """Test turning verified sessions into tokens."""

    def test_issue_for_new_phone(self, issuer, verified_session, store, users, auth_service):
        auth_session = issuer.issue(verified_session)

        assert auth_session.is_new_user is True
        assert auth_session.next_step == NextStep.ONBOARDING
        assert auth_session.user.phone == PHONE
        assert auth_session.user.phone_verified_at == verified_session.verified_at
        assert users.find_by_phone(PHONE).id == auth_session.user_id
        assert store.lookup(verified_session.sid).status == OtpSessionStatus.CONSUMED

        refresh_payload = auth_service.validate_token(auth_session.refresh_token, "refresh")
        assert refresh_payload["sub"] == auth_session.user_id

    def test_issue_for_existing_account(self, issuer, verified_session, users, clock):
        existing = users.create_with_phone(PHONE)
        users.mark_profile_completed(existing.id, "Maria", clock())

        auth_session = issuer.issue(verified_session)

        assert auth_session.is_new_user is False
        assert auth_session.user_id == existing.id
        assert auth_session.next_step == NextStep.HOME
        assert len(users) == 1

    def test_issue_twice_fails_without_tokens(self, issuer, verified_session, auth_service):
        issuer.issue(verified_session)

        issuer.auth_service = Mock(wraps=auth_service)
        with pytest.raises(SessionStateError):
            issuer.issue(verified_session)
        issuer.auth_service.generate_tokens.assert_not_called()

    def test_creation_race_uses_winner(self, store, verified_session, auth_service):
        winner = InMemoryUserRepository().create_with_phone(PHONE)
        users = Mock()
        users.find_by_phone.side_effect = [None, winner]
        users.create_with_phone.side_effect = UserCreationConflict(PHONE)
        users.mark_phone_verified.return_value = winner

        auth_session = SessionIssuer(store, users, auth_service).issue(verified_session)

        assert auth_session.user_id == winner.id
        assert auth_session.is_new_user is False
        users.mark_phone_verified.assert_called_once_with(winner.id, verified_session.verified_at)

    def test_unresolvable_conflict_leaves_session_verified(self, store, verified_session, auth_service):
        users = Mock()
        users.find_by_phone.return_value = None
        users.create_with_phone.side_effect = UserCreationConflict(PHONE)

        with pytest.raises(UserCreationConflict):
            SessionIssuer(store, users, auth_service).issue(verified_session)
        assert store.lookup(verified_session.sid).status == OtpSessionStatus.VERIFIED

    def test_response_shape(self, issuer, verified_session):
        response = issuer.issue(verified_session).to_response()

        assert response["token_type"] == "Bearer"
        assert response["expires_in"] == 900
        assert response["next_step"] == NextStep.ONBOARDING
        assert response["user"]["phone"] == PHONE
        assert response["user"]["profileCompleted"] is False


class TestMagicLinkResolver:
    """Test magic link token resolution."""

    def test_build_url(self, magic_links):
        assert magic_links.build_url("abc") == "https://app.etijucas.test/login/otp?token=abc"

    def test_resolve_pending_session(self, magic_links, store, clock):
        issued = store.create(PHONE)
        clock.advance(40)

        result = magic_links.resolve(issued.magic_token)

        assert result.status == MagicLinkStatus.OK
        assert result.to_context() == {
            "sid": issued.sid,
            "masked_phone": "(XX) XXXXX-1234",
            "expires_in": 260,
            "cooldown": 0
        }

    def test_resolve_does_not_verify(self, magic_links, store):
        issued = store.create(PHONE)
        magic_links.resolve(issued.magic_token)
        assert store.lookup(issued.sid).status == OtpSessionStatus.PENDING

    def test_token_is_single_use(self, magic_links, store):
        issued = store.create(PHONE)
        magic_links.resolve(issued.magic_token)
        assert magic_links.resolve(issued.magic_token).status == MagicLinkStatus.INVALID

    def test_empty_or_unknown_token(self, magic_links):
        assert magic_links.resolve("").status == MagicLinkStatus.INVALID
        assert magic_links.resolve("unknown").status == MagicLinkStatus.INVALID

    def test_token_of_replaced_session(self, magic_links, store, clock):
        first = store.create(PHONE)
        clock.advance(31)
        store.create(PHONE)

        result = magic_links.resolve(first.magic_token)

        assert result.status == MagicLinkStatus.EXPIRED
        assert result.sid == first.sid
