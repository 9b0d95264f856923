"""Provider row persistence tests"""
import json
from datetime import datetime, timedelta, timezone

import pytest

from app.db.helpers import (
    as_utc, delete_auth_providers, find_user_by_provider_account, get_auth_provider, get_auth_provider_by_id,
    get_auth_provider_for_account, get_expiring_providers,
    get_or_create_user_by_email, get_provider_credentials, patch_auth_provider_secret, update_provider_tokens,
    upsert_auth_provider
)
from app.models.auth_provider import AuthProvider
from app.utils.encryption import decrypt, encrypt


@pytest.mark.critical
class TestUpsertAuthProvider:
    """Create-or-update keyed by (user, provider, provider account)"""

    def test_tokens_are_encrypted_at_rest(self, db_session, test_user):
        row = upsert_auth_provider(test_user.id, "tiktok", "tt-1", "plain-at", refresh_token="plain-rt", db=db_session)
        assert row.access_token != "plain-at"
        assert row.refresh_token != "plain-rt"
        assert get_provider_credentials(row) == {
            "access_token": "plain-at",
            "refresh_token": "plain-rt",
            "oauth1_token": None,
            "access_token_secret": None,
        }

    def test_reconnect_keeps_refresh_and_oauth1_credentials(self, db_session, test_user):
        upsert_auth_provider(test_user.id, "twitter", "42", "at-1", refresh_token="rt-1",
                             oauth1_token="o1", access_token_secret="o1-secret", db=db_session)
        row = upsert_auth_provider(test_user.id, "twitter", "42", "at-2", db=db_session)

        credentials = get_provider_credentials(row)
        assert credentials["access_token"] == "at-2"
        assert credentials["refresh_token"] == "rt-1"
        assert credentials["oauth1_token"] == "o1"
        assert credentials["access_token_secret"] == "o1-secret"
        assert db_session.query(AuthProvider).count() == 1

    def test_expires_at_always_overwritten(self, db_session, test_user):
        upsert_auth_provider(test_user.id, "tiktok", "tt-1", "at",
                             expires_at=datetime.now(timezone.utc) + timedelta(hours=1), db=db_session)
        row = upsert_auth_provider(test_user.id, "tiktok", "tt-1", "at", expires_at=None, db=db_session)
        assert row.expires_at is None

    def test_profile_capabilities_and_scopes(self, db_session, test_user):
        row = upsert_auth_provider(
            test_user.id, "facebook", "fb-1", "at",
            scopes=["email", "ads_read"],
            profile={"username": "Owner", "followers_count": 3, "email": None},
            capabilities={"can_publish_content": True, "can_manage_ads": True},
            analytics_summary={"reach": 10},
            db=db_session
        )
        assert row.scopes == "email,ads_read"
        assert row.username == "Owner"
        assert row.followers_count == 3
        assert row.email is None
        assert row.can_publish_content is True
        assert row.can_manage_ads is True
        assert row.can_access_insights is False
        assert json.loads(row.analytics_summary) == {"reach": 10}

    def test_same_account_for_two_users_is_two_rows(self, db_session, test_user, test_user_2):
        upsert_auth_provider(test_user.id, "facebook", "fb-1", "a", db=db_session)
        upsert_auth_provider(test_user_2.id, "facebook", "fb-1", "b", db=db_session)
        assert db_session.query(AuthProvider).count() == 2
        # The first link is the canonical owner
        assert find_user_by_provider_account("facebook", "fb-1", db=db_session).id == test_user.id


@pytest.mark.high
class TestRowUpdates:
    """Patching, refreshing and deleting rows"""

    def test_patch_secret_touches_only_oauth1_pair(self, db_session, test_user):
        expires = datetime.now(timezone.utc) + timedelta(hours=2)
        row = upsert_auth_provider(test_user.id, "twitter", "42", "at", refresh_token="rt", expires_at=expires,
                                   db=db_session)
        stored_access, stored_refresh = row.access_token, row.refresh_token

        patched = patch_auth_provider_secret(row.id, test_user.id, "o1", "o1-secret", db=db_session)

        assert patched.access_token == stored_access
        assert patched.refresh_token == stored_refresh
        assert as_utc(patched.expires_at) == expires
        assert decrypt(patched.oauth1_token) == "o1"
        assert decrypt(patched.access_token_secret) == "o1-secret"

    def test_patch_rejects_other_users_row(self, db_session, test_user, test_user_2):
        row = upsert_auth_provider(test_user.id, "twitter", "42", "at", db=db_session)
        assert patch_auth_provider_secret(row.id, test_user_2.id, "o1", "s", db=db_session) is None
        assert patch_auth_provider_secret(9999, test_user.id, "o1", "s", db=db_session) is None

    def test_update_tokens_keeps_refresh_token_when_not_rotated(self, db_session, test_user):
        row = upsert_auth_provider(test_user.id, "amazon", "a1", "at", refresh_token="rt", db=db_session)
        updated = update_provider_tokens(row.id, "at-2", refresh_token=None, db=db_session)
        assert get_provider_credentials(updated)["refresh_token"] == "rt"
        assert get_provider_credentials(updated)["access_token"] == "at-2"

    def test_delete_returns_count_and_is_idempotent(self, db_session, test_user, test_user_2):
        upsert_auth_provider(test_user.id, "twitter", "42", "a", db=db_session)
        upsert_auth_provider(test_user.id, "twitter", "43", "b", db=db_session)
        upsert_auth_provider(test_user_2.id, "twitter", "42", "c", db=db_session)

        assert delete_auth_providers(test_user.id, "twitter", db=db_session) == 2
        assert delete_auth_providers(test_user.id, "twitter", db=db_session) == 0
        assert get_auth_provider(test_user_2.id, "twitter", db=db_session) is not None


@pytest.mark.high
class TestQueries:
    """Lookups used by the flow controller"""

    def test_expiring_providers_ignore_non_expiring_rows(self, db_session, test_user):
        now = datetime.now(timezone.utc)
        upsert_auth_provider(test_user.id, "twitter", "42", "a", expires_at=now + timedelta(hours=1), db=db_session)
        upsert_auth_provider(test_user.id, "tiktok", "tt", "b", expires_at=now + timedelta(days=5), db=db_session)
        upsert_auth_provider(test_user.id, "facebook", "fb", "c", expires_at=None, db=db_session)

        rows = get_expiring_providers(test_user.id, now + timedelta(days=1), db=db_session)
        assert [r.provider for r in rows] == ["twitter"]

    def test_get_auth_provider_ignores_inactive_rows(self, db_session, test_user):
        row = upsert_auth_provider(test_user.id, "tiktok", "tt", "a", db=db_session)
        row.is_active = False
        db_session.commit()
        assert get_auth_provider(test_user.id, "tiktok", db=db_session) is None

    def test_get_or_create_user_by_email(self, db_session):
        first = get_or_create_user_by_email("amazon_a1@temp.local", username="a", db=db_session)
        second = get_or_create_user_by_email("amazon_a1@temp.local", username="b", db=db_session)
        assert first.id == second.id
        assert second.username == "a"

    def test_decrypt_rejects_foreign_ciphertext(self):
        assert decrypt(encrypt("value")) == "value"
        with pytest.raises(ValueError):
            decrypt("gAAAAA-not-a-token")

    def test_lookup_by_id_and_by_account_are_user_scoped(self, db_session, test_user, test_user_2):
        row = upsert_auth_provider(test_user.id, "twitter", "42", "a", db=db_session)
        assert get_auth_provider_by_id(row.id, test_user.id, db=db_session).id == row.id
        assert get_auth_provider_by_id(row.id, test_user_2.id, db=db_session) is None
        assert get_auth_provider_for_account(test_user.id, "twitter", "42", db=db_session).id == row.id
        assert get_auth_provider_for_account(test_user.id, "twitter", "43", db=db_session) is None
        assert get_auth_provider_for_account(test_user_2.id, "twitter", "42", db=db_session) is None

    def test_has_oauth2_tokens(self, db_session, test_user):
        oauth1_only = upsert_auth_provider(test_user.id, "twitter", "42", "o1", oauth1_token="o1",
                                           access_token_secret="s", db=db_session)
        assert oauth1_only.has_oauth2_tokens is False

        expiring = upsert_auth_provider(test_user.id, "twitter", "43", "at",
                                        expires_at=datetime.now(timezone.utc) + timedelta(hours=2), db=db_session)
        refreshable = upsert_auth_provider(test_user.id, "tiktok", "tt", "at", refresh_token="rt", db=db_session)
        assert expiring.has_oauth2_tokens is True
        assert refreshable.has_oauth2_tokens is True
