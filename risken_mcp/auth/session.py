"""
## Stateless OAuth session

Nothing about an in-flight authorization is stored on the server. The data
the proxy must remember between `/authorize` and `/oauth/callback` (and then
`/token`) is signed into short-lived HS256 JWTs that travel through the
browser redirect chain:

- the *flow state* token replaces the client's `state` on the way to the IdP
  (10 minutes);
- the *internal authorization code* replaces the IdP's code on the way back
  to the MCP client, carrying that code plus the flow state (5 minutes).

Any instance holding the same signing key can complete a flow started by any
other instance.

Known gap: an internal code is not single-use. It can be redeemed more than
once until it expires.
"""

import time
from typing import Callable, Optional

import jwt
from pydantic import BaseModel

from ..logging_util import get_logger, redact
from .errors import InternalError, SessionInvalidError

logger = get_logger(__name__)

SIGNING_ALGORITHM = "HS256"
FLOW_STATE_TTL_SECONDS = 10 * 60
AUTH_CODE_TTL_SECONDS = 5 * 60

TOKEN_USE_FLOW_STATE = "flow_state"
TOKEN_USE_AUTH_CODE = "auth_code"


class FlowState(BaseModel):
    state: str = ""
    code_challenge: str
    redirect_uri: str
    client_id: str = ""


class AuthCodeGrant(FlowState):
    idp_code: str


class SessionCodec:

    def __init__(self, signing_key: str, clock: Callable[[], float] = time.time):
        if not signing_key:
            raise ValueError("signing_key must not be empty")
        self._signing_key = signing_key
        self._clock = clock

    def _sign(self, claims: dict, ttl_seconds: int) -> str:
        now = int(self._clock())
        payload = {**claims, "iat": now, "exp": now + ttl_seconds}
        try:
            return jwt.encode(payload, self._signing_key, algorithm=SIGNING_ALGORITHM)
        except jwt.PyJWTError as e:
            logger.error(f"Failed to sign session token: {e}")
            raise InternalError("Failed to create session") from e

    def _verify(self, token: str, token_use: str) -> dict:
        # algorithms pins HMAC-SHA256; RS/ES/none tokens are rejected before any key is used
        payload = jwt.decode(
            token,
            self._signing_key,
            algorithms=[SIGNING_ALGORITHM],
            options={"require": ["exp", "iat"]},
        )
        if payload.get("token_use") != token_use:
            raise jwt.InvalidTokenError(f"token_use is not {token_use}")
        if not isinstance(payload.get("state"), str):
            raise jwt.InvalidTokenError("missing state claim")
        for claim in ("code_challenge", "redirect_uri"):
            if not payload.get(claim) or not isinstance(payload[claim], str):
                raise jwt.InvalidTokenError(f"missing {claim} claim")
        return payload

    def encode(self, flow: FlowState) -> str:
        token = self._sign({**flow.model_dump(), "token_use": TOKEN_USE_FLOW_STATE}, FLOW_STATE_TTL_SECONDS)
        logger.debug(f"Stored OAuth session in JWT for client_id={flow.client_id}")
        return token

    def decode(self, token: str) -> Optional[FlowState]:
        try:
            payload = self._verify(token, TOKEN_USE_FLOW_STATE)
        except jwt.PyJWTError as e:
            logger.warning(f"Failed to decode session token {redact(token)}: {e}")
            return None

        return FlowState(
            state=payload["state"],
            code_challenge=payload["code_challenge"],
            redirect_uri=payload["redirect_uri"],
            client_id=str(payload.get("client_id") or ""),
        )

    def encode_auth_code(self, flow: FlowState, idp_code: str) -> str:
        if not idp_code:
            raise InternalError("Authorization code generation failed")
        claims = {**flow.model_dump(), "idp_code": idp_code, "token_use": TOKEN_USE_AUTH_CODE}
        return self._sign(claims, AUTH_CODE_TTL_SECONDS)

    def decode_auth_code(self, code: str) -> AuthCodeGrant:
        try:
            payload = self._verify(code, TOKEN_USE_AUTH_CODE)
            if not payload.get("idp_code") or not isinstance(payload["idp_code"], str):
                raise jwt.InvalidTokenError("missing idp_code claim")
        except jwt.PyJWTError as e:
            logger.warning(f"Invalid authorization code {redact(code)}: {e}")
            raise SessionInvalidError("Invalid authorization code") from e

        return AuthCodeGrant(
            state=payload["state"],
            code_challenge=payload["code_challenge"],
            redirect_uri=payload["redirect_uri"],
            client_id=str(payload.get("client_id") or ""),
            idp_code=payload["idp_code"],
        )
