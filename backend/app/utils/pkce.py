"""CSRF state and PKCE (RFC 7636) helpers"""
import base64
import hashlib
import secrets
from typing import Tuple


def base64url_encode(data: bytes) -> str:
    """Base64url without padding"""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_state() -> str:
    """32 random bytes, hex encoded"""
    return secrets.token_hex(32)


def generate_code_verifier() -> str:
    """32 random bytes, base64url encoded (43 characters)"""
    return base64url_encode(secrets.token_bytes(32))


def code_challenge_for(verifier: str) -> str:
    """S256 challenge: base64url(sha256(verifier))"""
    return base64url_encode(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_pkce_pair() -> Tuple[str, str]:
    """Return a fresh (code_verifier, code_challenge) pair"""
    verifier = generate_code_verifier()
    return verifier, code_challenge_for(verifier)
