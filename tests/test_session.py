import time

import jwt
import pytest

from risken_mcp.auth.errors import SessionInvalidError
from risken_mcp.auth.session import AuthCodeGrant, FlowState, SessionCodec

SECRET = "session-signing-secret-0123456789abcdef"


def make_flow(**overrides) -> FlowState:
    values = {
        "state": "xyz",
        "code_challenge": "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM",
        "redirect_uri": "http://localhost:3000/callback",
        "client_id": "client-abc",
    }
    values.update(overrides)
    return FlowState(**values)


def signed(payload: dict, key: str = SECRET, algorithm: str = "HS256") -> str:
    now = int(time.time())
    return jwt.encode({"iat": now, "exp": now + 300, **payload}, key, algorithm=algorithm)


class TestFlowState:

    def test_round_trip(self):
        codec = SessionCodec(SECRET)
        flow = make_flow()
        assert codec.decode(codec.encode(flow)) == flow

    def test_round_trip_with_empty_state(self):
        codec = SessionCodec(SECRET)
        decoded = codec.decode(codec.encode(make_flow(state="")))
        assert decoded is not None
        assert decoded.state == ""

    def test_expired_token_is_rejected(self):
        # signed 11 minutes ago, valid for 10
        codec = SessionCodec(SECRET, clock=lambda: time.time() - 11 * 60)
        token = codec.encode(make_flow())
        assert SessionCodec(SECRET).decode(token) is None

    def test_wrong_secret_is_rejected(self):
        token = SessionCodec("another-signing-secret-0123456789abcdef").encode(make_flow())
        assert SessionCodec(SECRET).decode(token) is None

    def test_garbage_is_rejected(self):
        assert SessionCodec(SECRET).decode("not-a-jwt") is None
        assert SessionCodec(SECRET).decode("") is None

    def test_missing_state_claim_is_rejected(self):
        token = signed({
            "token_use": "flow_state",
            "code_challenge": "challenge",
            "redirect_uri": "http://localhost/cb",
        })
        assert SessionCodec(SECRET).decode(token) is None

    def test_other_algorithm_is_rejected(self):
        token = signed({
            "token_use": "flow_state",
            "state": "xyz",
            "code_challenge": "challenge",
            "redirect_uri": "http://localhost/cb",
        }, algorithm="HS512")
        assert SessionCodec(SECRET).decode(token) is None

    def test_auth_code_is_not_a_flow_state(self):
        codec = SessionCodec(SECRET)
        code = codec.encode_auth_code(make_flow(), "idp-code")
        assert codec.decode(code) is None

    def test_empty_signing_key_is_refused(self):
        with pytest.raises(ValueError):
            SessionCodec("")


class TestAuthCode:

    def test_round_trip(self):
        codec = SessionCodec(SECRET)
        flow = make_flow()
        grant = codec.decode_auth_code(codec.encode_auth_code(flow, "idp-code-123"))
        assert isinstance(grant, AuthCodeGrant)
        assert grant.idp_code == "idp-code-123"
        assert grant.state == flow.state
        assert grant.code_challenge == flow.code_challenge
        assert grant.redirect_uri == flow.redirect_uri
        assert grant.client_id == flow.client_id

    def test_flow_state_is_not_an_auth_code(self):
        codec = SessionCodec(SECRET)
        with pytest.raises(SessionInvalidError):
            codec.decode_auth_code(codec.encode(make_flow()))

    def test_expired_code_is_rejected(self):
        # valid for 5 minutes
        old = SessionCodec(SECRET, clock=lambda: time.time() - 6 * 60)
        code = old.encode_auth_code(make_flow(), "idp-code")
        with pytest.raises(SessionInvalidError):
            SessionCodec(SECRET).decode_auth_code(code)

    @pytest.mark.parametrize("claim", ["code_challenge", "redirect_uri", "idp_code"])
    def test_empty_claim_with_valid_signature_is_rejected(self, claim):
        payload = {
            "token_use": "auth_code",
            "state": "xyz",
            "code_challenge": "challenge",
            "redirect_uri": "http://localhost/cb",
            "idp_code": "idp-code",
        }
        payload[claim] = ""
        with pytest.raises(SessionInvalidError) as exc_info:
            SessionCodec(SECRET).decode_auth_code(signed(payload))
        assert exc_info.value.error == "invalid_grant"
        assert exc_info.value.description == "Invalid authorization code"

    def test_missing_iat_is_rejected(self):
        token = jwt.encode({
            "exp": int(time.time()) + 300,
            "token_use": "auth_code",
            "state": "",
            "code_challenge": "challenge",
            "redirect_uri": "http://localhost/cb",
            "idp_code": "idp-code",
        }, SECRET, algorithm="HS256")
        with pytest.raises(SessionInvalidError):
            SessionCodec(SECRET).decode_auth_code(token)
