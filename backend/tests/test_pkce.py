"""PKCE, state and OAuth 1.0a request signing tests"""
import re
from urllib.parse import parse_qs

import httpx
import pytest
from oauthlib.oauth1.rfc5849 import signature
from oauthlib.oauth1.rfc5849.utils import parse_authorization_header

from app.core.config import (
    settings, TWITTER_ACCESS_TOKEN_URL, TWITTER_REQUEST_TOKEN_URL, TWITTER_VERIFY_CREDENTIALS_URL
)
from app.core.errors import ProviderConfigurationError
from app.services.providers.base import TokenSet
from app.services.providers.twitter import TwitterOAuth1Provider
from app.utils.pkce import code_challenge_for, generate_code_verifier, generate_pkce_pair, generate_state


@pytest.mark.critical
class TestPKCE:
    """RFC 7636 S256 challenges"""

    def test_rfc7636_appendix_b_vector(self):
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert code_challenge_for(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGrSstw-cM"

    def test_verifier_is_43_char_base64url(self):
        verifier = generate_code_verifier()
        assert len(verifier) == 43
        assert re.fullmatch(r"[A-Za-z0-9_-]{43}", verifier)

    def test_pair_matches(self):
        verifier, challenge = generate_pkce_pair()
        assert challenge == code_challenge_for(verifier)
        assert "=" not in challenge

    def test_state_is_64_hex_chars_and_unique(self):
        states = {generate_state() for _ in range(50)}
        assert len(states) == 50
        assert all(re.fullmatch(r"[0-9a-f]{64}", s) for s in states)



def oauth_header(request: httpx.Request) -> dict:
    header = request.headers["Authorization"]
    assert header.startswith("OAuth ")
    return dict(parse_authorization_header(header))


def signature_is_valid(request: httpx.Request, consumer_secret: str, token_secret: str = "") -> bool:
    """Recompute the HMAC-SHA1 signature from what was actually sent"""
    params = signature.collect_parameters(
        uri_query=request.url.query.decode(),
        headers={"Authorization": request.headers["Authorization"]},
    )
    base_string = signature.signature_base_string(
        request.method,
        signature.base_string_uri(str(request.url)),
        signature.normalize_parameters(params),
    )
    expected = signature.sign_hmac_sha1(base_string, consumer_secret, token_secret)
    return oauth_header(request)["oauth_signature"] == expected


class RecordingTwitter:
    """Answers the three OAuth 1.0a endpoints and keeps the requests"""

    def __init__(self):
        self.requests = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url).split("?")[0]
        self.requests[url] = request
        if url == TWITTER_REQUEST_TOKEN_URL:
            return httpx.Response(200, text="oauth_token=req-token&oauth_token_secret=req-secret&oauth_callback_confirmed=true")
        if url == TWITTER_ACCESS_TOKEN_URL:
            return httpx.Response(200, text="oauth_token=o1-token&oauth_token_secret=o1-secret&user_id=42&screen_name=owner_tw")
        if url == TWITTER_VERIFY_CREDENTIALS_URL:
            return httpx.Response(200, json={"id_str": "42", "screen_name": "owner_tw", "followers_count": 10})
        return httpx.Response(404)


@pytest.fixture
def twitter_api():
    return RecordingTwitter()


@pytest.fixture
def oauth1_provider(twitter_api):
    return TwitterOAuth1Provider(http=httpx.AsyncClient(transport=httpx.MockTransport(twitter_api)))


@pytest.mark.critical
class TestOAuth1RequestSigning:
    """Requests the OAuth 1.0a client puts on the wire"""

    async def test_request_token_carries_callback_and_no_token(self, oauth1_provider, twitter_api):
        assert await oauth1_provider.request_token() == ("req-token", "req-secret")

        request = twitter_api.requests[TWITTER_REQUEST_TOKEN_URL]
        values = oauth_header(request)
        assert request.method == "POST"
        assert values["oauth_consumer_key"] == settings.TWITTER_API_KEY
        assert values["oauth_signature_method"] == "HMAC-SHA1"
        assert values["oauth_callback"] == oauth1_provider.callback_url
        assert "oauth_token" not in values
        assert signature_is_valid(request, settings.TWITTER_API_SECRET)

    async def test_access_token_signed_with_request_token_secret(self, oauth1_provider, twitter_api):
        tokens = await oauth1_provider.access_token("req-token", "req-secret", "the-verifier")

        assert tokens.access_token == "o1-token"
        assert tokens.access_token_secret == "o1-secret"
        assert tokens.provider_user_id == "42"
        request = twitter_api.requests[TWITTER_ACCESS_TOKEN_URL]
        values = oauth_header(request)
        assert values["oauth_token"] == "req-token"
        assert values["oauth_verifier"] == "the-verifier"
        assert signature_is_valid(request, settings.TWITTER_API_SECRET, "req-secret")
        assert not signature_is_valid(request, settings.TWITTER_API_SECRET, "wrong-secret")

    async def test_profile_query_is_sent_and_signed(self, oauth1_provider, twitter_api):
        profile = await oauth1_provider.fetch_profile(
            TokenSet(access_token="o1-token", access_token_secret="o1-secret")
        )

        assert profile.provider_id == "42"
        request = twitter_api.requests[TWITTER_VERIFY_CREDENTIALS_URL]
        assert parse_qs(request.url.query.decode()) == {"include_entities": ["false"], "skip_status": ["true"]}
        assert oauth_header(request)["oauth_token"] == "o1-token"
        assert signature_is_valid(request, settings.TWITTER_API_SECRET, "o1-secret")

    async def test_missing_consumer_key_fails_before_any_request(self, oauth1_provider, twitter_api, monkeypatch):
        monkeypatch.setattr(settings, "TWITTER_API_KEY", "")
        with pytest.raises(ProviderConfigurationError):
            await oauth1_provider.request_token()
        assert twitter_api.requests == {}
