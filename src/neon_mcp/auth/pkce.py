"""PKCE (RFC 7636) code verifier checks."""

import base64
import hashlib
import hmac


def create_code_challenge(code_verifier: str, method: str = "S256") -> str:
    """Derive the code challenge a client would send for ``code_verifier``."""
    if method == "plain":
        return code_verifier
    if method != "S256":
        raise ValueError(f"Unsupported code challenge method: {method}")
    digest = hashlib.sha256(code_verifier.encode()).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")


def verify_code_verifier(
    code_challenge: str | None,
    code_challenge_method: str | None,
    code_verifier: str | None,
) -> bool:
    """Check a PKCE code verifier against the stored challenge.

    Args:
        code_challenge: Challenge recorded at authorization time
        code_challenge_method: ``S256`` or ``plain``
        code_verifier: Verifier presented at the token endpoint

    Returns:
        True only when every input is present and the verifier matches.
        Unknown methods never match.
    """
    if not code_challenge or not code_challenge_method or not code_verifier:
        return False
    if code_challenge_method not in ("S256", "plain"):
        return False
    expected = create_code_challenge(code_verifier, code_challenge_method)
    return hmac.compare_digest(expected.encode(), code_challenge.encode())
