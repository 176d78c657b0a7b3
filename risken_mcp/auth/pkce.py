import base64
import hashlib
import hmac
import re

_PKCE_VERIFIER_RE = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")


def _base64url_no_pad(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")


def is_valid_code_verifier(code_verifier: str) -> bool:
    return bool(_PKCE_VERIFIER_RE.match(code_verifier))


def generate_code_challenge(code_verifier: str) -> str:
    """S256: BASE64URL-ENCODE(SHA256(ASCII(code_verifier))) without padding."""
    return _base64url_no_pad(hashlib.sha256(code_verifier.encode("ascii")).digest())


def verify_pkce(code_challenge: str, code_verifier: str) -> bool:
    if not code_challenge or not code_verifier:
        return False
    try:
        computed = generate_code_challenge(code_verifier)
    except UnicodeEncodeError:
        return False
    # constant-time compare
    return hmac.compare_digest(computed.encode("ascii"), code_challenge.encode("utf-8"))
