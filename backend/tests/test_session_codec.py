"""Session codec and session service tests"""
import pytest
from jose import jwt
from starlette.requests import Request
from starlette.responses import Response

from app.core.config import SESSION_COOKIE_NAME
from app.schemas.session import (
    AccountTokens, AppSession, AugmentExisting, OAuth1Transaction, OAuth2Transaction,
    SessionUser, TwitterAccount, TwitterConnection, UserTokens
)
from app.services.session_service import SessionCodec, SessionService
from conftest import FakeClock

TTL = 7 * 24 * 60 * 60
REMEMBER_ME_TTL = 30 * 24 * 60 * 60


def make_session() -> AppSession:
    return AppSession(
        user_id="user-1",
        user=SessionUser(email="owner@example.com", username="owner"),
        oauth_transactions={
            "twitter": OAuth2Transaction(state="s" * 64, code_verifier="v" * 43, code_challenge="c" * 43,
                                         initiated_at=1_700_000_000.0),
            "twitter_oauth1": OAuth1Transaction(oauth_token="rt", oauth_token_secret="rts",
                                                initiated_at=1_700_000_000.0,
                                                linking=AugmentExisting(existing_provider_row_id=7)),
        },
        connected_platforms={
            "twitter": TwitterConnection(
                account=TwitterAccount(provider_id="42", username="owner_tw", media_upload_enabled=True),
                account_tokens=AccountTokens(access_token="at", refresh_token="rt", expires_at=1_700_007_200.0),
                connected_at=1_700_000_000.0,
            )
        },
        remember_me=True,
        version=3,
    )


def request_with_cookie(token=None) -> Request:
    headers = []
    if token:
        headers.append((b"cookie", f"{SESSION_COOKIE_NAME}={token}".encode()))
    return Request({"type": "http", "method": "GET", "path": "/", "headers": headers, "query_string": b""})


@pytest.mark.critical
class TestSessionCodec:
    """Signed session token encoding and verification"""

    def test_round_trip_inside_ttl(self):
        """decode(encode(s)) returns the same session, tagged unions included"""
        clock = FakeClock(1_700_000_000.0)
        codec = SessionCodec("secret", ttl_seconds=TTL, remember_me_ttl_seconds=REMEMBER_ME_TTL, clock=clock)
        session = make_session()

        token = codec.encode(session)
        clock.advance(REMEMBER_ME_TTL)

        decoded = codec.decode(token)
        assert decoded == session
        assert isinstance(decoded.oauth_transactions["twitter_oauth1"].linking, AugmentExisting)
        assert isinstance(decoded.connected_platforms["twitter"], TwitterConnection)

    @pytest.mark.parametrize("remember_me,ttl", [(False, TTL), (True, REMEMBER_ME_TTL)])
    def test_expired_one_second_after_ttl(self, remember_me, ttl):
        """A token is rejected at t0 + TTL + 1s"""
        clock = FakeClock(1_700_000_000.0)
        codec = SessionCodec("secret", ttl_seconds=TTL, remember_me_ttl_seconds=REMEMBER_ME_TTL, clock=clock)
        token = codec.encode(make_session().model_copy(update={"remember_me": remember_me}))

        clock.advance(ttl)
        assert codec.decode(token) is not None
        clock.advance(1)
        assert codec.decode(token) is None

    def test_claims_carry_iat_and_exp(self):
        clock = FakeClock(1_700_000_000.0)
        codec = SessionCodec("secret", ttl_seconds=60, remember_me_ttl_seconds=600, clock=clock)
        claims = jwt.get_unverified_claims(codec.encode(AppSession(user_id="user-1")))
        assert claims["iat"] == 1_700_000_000
        assert claims["exp"] == 1_700_000_060
        assert claims["sess"]["user_id"] == "user-1"

        remembered = jwt.get_unverified_claims(codec.encode(make_session()))
        assert remembered["exp"] == 1_700_000_600

    def test_wrong_secret_rejected(self):
        token = SessionCodec("secret-a").encode(make_session())
        assert SessionCodec("secret-b").decode(token) is None

    def test_every_single_character_tamper_rejected(self):
        """Changing any one character of the token makes it invalid"""
        codec = SessionCodec("secret")
        token = codec.encode(AppSession(user_id="u", user=SessionUser(username="n")))

        for i, char in enumerate(token):
            if char == ".":
                continue
            replacement = "A" if char != "A" else "B"
            tampered = token[:i] + replacement + token[i + 1:]
            assert codec.decode(tampered) is None, f"tampered token accepted at index {i}"

    @pytest.mark.parametrize("token", [None, "", "garbage", "a.b", "a.b.c.d", "=.=.="])
    def test_malformed_tokens_rejected(self, token):
        assert SessionCodec("secret").decode(token) is None

    def test_payload_failing_schema_rejected(self):
        """A correctly signed token whose payload is not a session is rejected"""
        clock = FakeClock(1_700_000_000.0)
        token = jwt.encode(
            {"sess": {"connected_platforms": {"facebook": {"provider": "twitter"}}}, "iat": 1_700_000_000,
             "exp": 1_700_000_600},
            "secret",
            algorithm="HS256"
        )
        assert SessionCodec("secret", clock=clock).decode(token) is None

    def test_peek_reads_without_verifying(self):
        token = SessionCodec("secret-a").encode(make_session())
        peeked = SessionCodec("secret-b").peek(token)
        assert peeked is not None
        assert peeked.user_id == "user-1"


@pytest.mark.high
class TestSessionService:
    """Session mutations, transactions and cookie handling"""

    def setup_method(self):
        self.clock = FakeClock(1_700_000_000.0)
        self.service = SessionService(SessionCodec("secret", clock=self.clock), transaction_ttl_seconds=600,
                                      clock=self.clock)

    def test_read_without_cookie_is_empty_session(self):
        session = self.service.read(request_with_cookie())
        assert session == AppSession()
        assert not session.is_authenticated

    def test_read_valid_cookie(self):
        token = self.service.codec.encode(make_session())
        assert self.service.read(request_with_cookie(token)).user_id == "user-1"

    def test_expired_user_tokens_treated_as_no_session(self):
        session = make_session().model_copy(update={
            "user_tokens": UserTokens(access_token="app", expires_at=self.clock() - 1)
        })
        token = self.service.codec.encode(session)
        assert self.service.read(request_with_cookie(token)) == AppSession()

    def test_mutations_bump_version_and_updated_at(self):
        session = AppSession(user_id="u")
        self.clock.advance(5)
        updated = self.service.begin_oauth_transaction(
            session, "facebook", OAuth2Transaction(state="abc", initiated_at=self.clock())
        )
        assert updated.version == session.version + 1
        assert updated.updated_at == self.clock()
        # The original session is not modified
        assert session.oauth_transactions == {}

    def test_begin_overwrites_in_flight_transaction(self):
        session = self.service.begin_oauth_transaction(
            AppSession(), "facebook", OAuth2Transaction(state="first", initiated_at=self.clock())
        )
        session = self.service.begin_oauth_transaction(
            session, "facebook", OAuth2Transaction(state="second", initiated_at=self.clock())
        )
        assert self.service.get_oauth_transaction(session, "facebook").state == "second"

    def test_transaction_stale_after_ttl(self):
        session = self.service.begin_oauth_transaction(
            AppSession(), "tiktok", OAuth2Transaction(state="s", initiated_at=self.clock())
        )
        self.clock.advance(600)
        assert self.service.get_oauth_transaction(session, "tiktok") is not None
        self.clock.advance(1)
        assert self.service.get_oauth_transaction(session, "tiktok") is None

    def test_complete_clears_only_that_flow(self):
        session = make_session()
        session = self.service.complete_oauth_transaction(session, "twitter")
        assert "twitter" not in session.oauth_transactions
        assert "twitter_oauth1" in session.oauth_transactions

    def test_remove_platform_connection(self):
        session = self.service.remove_platform_connection(make_session(), "twitter")
        assert session.connected_platforms == {}
        # Removing again is a no-op
        assert self.service.remove_platform_connection(session, "twitter") is session

    def test_write_sets_cookie_attributes(self):
        response = Response()
        self.service.write(response, make_session())
        cookie = response.headers["set-cookie"]
        assert cookie.startswith(f"{SESSION_COOKIE_NAME}=")
        assert "HttpOnly" in cookie
        assert "samesite=lax" in cookie.lower()
        assert "Path=/" in cookie
        # remember_me sessions persist for 30 days
        assert "Max-Age=2592000" in cookie

    def test_write_without_remember_me_is_browser_session(self):
        response = Response()
        self.service.write(response, AppSession(user_id="u"))
        assert "Max-Age" not in response.headers["set-cookie"]

    def test_remember_me_cookie_lives_as_long_as_its_token(self):
        response = Response()
        token = self.service.write(response, make_session())
        claims = jwt.get_unverified_claims(token)
        lifetime = claims["exp"] - claims["iat"]
        assert f"Max-Age={lifetime}" in response.headers["set-cookie"]

        # Still decodes on the last second the browser keeps the cookie
        self.clock.advance(lifetime)
        assert self.service.codec.decode(token) is not None

    def test_clear_expires_cookie(self):
        response = Response()
        self.service.clear(response)
        cookie = response.headers["set-cookie"]
        assert cookie.startswith(f'{SESSION_COOKIE_NAME}=""') or cookie.startswith(f"{SESSION_COOKIE_NAME}=;")
        assert "Max-Age=0" in cookie
