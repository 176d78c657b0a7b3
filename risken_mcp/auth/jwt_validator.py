"""
Bearer token validation against the IdP's published signing keys.

The JWKS is fetched once at startup. Tokens are accepted only when they are
RSA-signed (RS256/RS384/RS512) by a key from that set, carry the IdP's exact
issuer, and have not expired. Which of those checks failed is logged, never
returned to the caller.
"""

import asyncio
import time
from typing import Any, Optional

import httpx
import jwt
from jwt.algorithms import RSAAlgorithm
from pydantic import BaseModel, ConfigDict

from ..logging_util import get_logger
from .errors import InvalidTokenError, KeyNotFoundError, UpstreamError
from .metadata import AuthorizationServerMetadata

logger = get_logger(__name__)

ALLOWED_ALGORITHMS = ("RS256", "RS384", "RS512")
JWKS_MIN_REFRESH_INTERVAL_SECONDS = 60


class TokenClaims(BaseModel):
    model_config = ConfigDict(frozen=True)

    issuer: str
    subject: str = ""
    expires_at: int
    scope: str = ""
    email: str = ""
    name: str = ""
    username: str = ""
    groups: list[str] = []

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenClaims":
        scope = payload.get("scope", payload.get("scp", ""))
        if isinstance(scope, list):
            scope = " ".join(str(s) for s in scope)
        groups = payload.get("groups") or []
        if not isinstance(groups, list):
            groups = [groups]
        return cls(
            issuer=payload["iss"],
            subject=str(payload.get("sub") or ""),
            expires_at=int(payload["exp"]),
            scope=str(scope or ""),
            email=str(payload.get("email") or ""),
            name=str(payload.get("name") or ""),
            username=str(payload.get("preferred_username") or ""),
            groups=[str(g) for g in groups],
        )


class SigningKeySet:
    """kid -> RSA public key. Read-only once built."""

    def __init__(self, keys: Optional[dict[str, Any]] = None):
        self._keys: dict[str, Any] = dict(keys or {})

    @classmethod
    def from_jwks(cls, document: dict) -> "SigningKeySet":
        keys: dict[str, Any] = {}
        entries = document.get("keys") or []
        if not isinstance(entries, list):
            logger.warning(f"JWKS \"keys\" is not a list: {type(entries).__name__}")
            entries = []
        for jwk in entries:
            if not isinstance(jwk, dict):
                logger.debug(f"Skipping non-object JWK entry: {jwk!r}")
                continue
            kid = jwk.get("kid")
            if jwk.get("kty") != "RSA" or not kid:
                logger.debug(f"Skipping non-RSA or kid-less JWK: kty={jwk.get('kty')}, kid={kid}")
                continue
            try:
                keys[kid] = RSAAlgorithm.from_jwk(jwk)
            except (jwt.InvalidKeyError, ValueError, TypeError, KeyError) as e:
                logger.warning(f"Skipping undecodable JWK kid={kid}: {e}")
        return cls(keys)

    def get(self, kid: str) -> Any:
        key = self._keys.get(kid)
        if key is None:
            raise KeyNotFoundError(f"key not found: {kid}")
        return key

    def __contains__(self, kid: object) -> bool:
        return kid in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def kids(self) -> list[str]:
        return list(self._keys)


async def load_jwks(jwks_uri: str, http_client: httpx.AsyncClient, timeout: float = 10.0) -> SigningKeySet:
    try:
        response = await http_client.get(jwks_uri, timeout=timeout)
    except httpx.HTTPError as e:
        raise UpstreamError(f"Failed to fetch JWKS: {e}") from e

    if response.status_code != 200:
        raise UpstreamError(f"JWKS request failed with status: {response.status_code}")

    try:
        document = response.json()
    except ValueError as e:
        raise UpstreamError("JWKS response is not valid JSON") from e
    if not isinstance(document, dict):
        raise UpstreamError("JWKS response is not a JSON object")
    if not isinstance(document.get("keys") or [], list):
        raise UpstreamError("JWKS \"keys\" is not a list")

    return SigningKeySet.from_jwks(document)


class JWTValidator:
    """
    Validates IdP-issued access tokens.

    With `refresh_on_unknown_kid` enabled, a token whose `kid` is not in the
    loaded set triggers one JWKS refetch, at most once every
    `JWKS_MIN_REFRESH_INTERVAL_SECONDS`. It is off by default: keys rotated at
    the IdP after startup are then rejected until restart.
    """

    def __init__(
        self,
        metadata: AuthorizationServerMetadata,
        keys: SigningKeySet,
        *,
        leeway: int = 0,
        http_client: Optional[httpx.AsyncClient] = None,
        refresh_on_unknown_kid: bool = False,
        timeout: float = 10.0,
    ):
        if refresh_on_unknown_kid and http_client is None:
            raise ValueError("refresh_on_unknown_kid requires an http_client")
        self.metadata = metadata
        self.leeway = leeway
        self.timeout = timeout
        self._keys = keys
        self._http_client = http_client
        self._refresh_on_unknown_kid = refresh_on_unknown_kid
        self._refresh_lock = asyncio.Lock()
        self._last_refresh = time.monotonic()

    @property
    def keys(self) -> SigningKeySet:
        return self._keys

    async def validate(self, token: str) -> TokenClaims:
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as e:
            raise InvalidTokenError(f"malformed token: {e}") from e

        alg = header.get("alg")
        if alg not in ALLOWED_ALGORITHMS:
            raise InvalidTokenError(f"unexpected signing method: {alg}")

        kid = header.get("kid")
        if not kid or not isinstance(kid, str):
            raise KeyNotFoundError("missing kid in token header")

        public_key = await self._resolve_key(kid)

        try:
            payload = jwt.decode(
                token,
                key=public_key,
                algorithms=[alg],
                issuer=self.metadata.issuer,
                leeway=self.leeway,
                options={"require": ["exp", "iss"], "verify_aud": False},
            )
        except jwt.ExpiredSignatureError as e:
            raise InvalidTokenError("token expired") from e
        except jwt.InvalidIssuerError as e:
            raise InvalidTokenError(f"invalid issuer: expected {self.metadata.issuer}") from e
        except jwt.PyJWTError as e:
            raise InvalidTokenError(f"failed to verify token: {e}") from e

        try:
            return TokenClaims.from_payload(payload)
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidTokenError(f"invalid token claims: {e}") from e

    async def _resolve_key(self, kid: str) -> Any:
        if kid in self._keys or not self._refresh_on_unknown_kid:
            return self._keys.get(kid)

        async with self._refresh_lock:
            # another request may have refreshed while we waited
            if kid not in self._keys and time.monotonic() - self._last_refresh >= JWKS_MIN_REFRESH_INTERVAL_SECONDS:
                await self._refresh()
        return self._keys.get(kid)

    async def _refresh(self) -> None:
        self._last_refresh = time.monotonic()
        try:
            keys = await load_jwks(self.metadata.jwks_uri, self._http_client, timeout=self.timeout)
        except UpstreamError as e:
            logger.warning(f"JWKS refresh failed, keeping {len(self._keys)} cached keys: {e}")
            return
        self._keys = keys
        logger.info(f"Refreshed JWKS from IdP: key_count={len(keys)}")
