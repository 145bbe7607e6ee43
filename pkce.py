"""
PKCE (Proof Key for Code Exchange, RFC 7636)

Verifies a code_verifier presented at the token endpoint against the
code_challenge / code_challenge_method stored with an authorization code.
"""

import base64
import hashlib
import hmac
import secrets
from typing import Optional

S256 = "S256"
PLAIN = "plain"

SUPPORTED_METHODS = (S256, PLAIN)


def _s256(code_verifier: str) -> str:
    digest = hashlib.sha256(code_verifier.encode('utf-8')).digest()
    return base64.urlsafe_b64encode(digest).decode('ascii').rstrip('=')


def verify_code_challenge(
    code_verifier: Optional[str],
    code_challenge: Optional[str],
    method: Optional[str]
) -> bool:
    """
    Verify a PKCE code verifier against a stored challenge.

    SECURITY: Both methods compare in constant time so the challenge cannot
    be recovered through timing analysis.

    Args:
        code_verifier: Verifier sent with the token request
        code_challenge: Challenge stored at authorization time
        method: "S256" or "plain"; anything else never verifies

    Returns:
        True if the verifier matches the challenge
    """
    if not code_verifier or not code_challenge:
        return False

    if method == S256:
        computed = _s256(code_verifier)
    elif method == PLAIN:
        computed = code_verifier
    else:
        return False

    return hmac.compare_digest(computed.encode('utf-8'), code_challenge.encode('utf-8'))


def create_code_challenge(code_verifier: str, method: str = S256) -> str:
    """Derive the code_challenge a client sends for ``code_verifier``."""
    if method == S256:
        return _s256(code_verifier)
    if method == PLAIN:
        return code_verifier
    raise ValueError(f"Unsupported code_challenge_method: {method}")


def generate_code_verifier(nbytes: int = 32) -> str:
    # 32 bytes -> 43 characters, the RFC 7636 minimum verifier length
    return secrets.token_urlsafe(nbytes)
