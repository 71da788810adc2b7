"""Signed authorization state.

The pending downstream authorization request travels through the upstream
identity provider inside the OAuth ``state`` parameter, so nothing is
persisted between ``POST /authorize`` and ``GET /callback``. The payload is a
versioned JSON document signed as a compact JWS (HS256), which makes it
tamper-evident without any server-side storage.
"""

import json
import time

from jose import jws
from jose.exceptions import JOSEError
from pydantic import BaseModel, Field, ValidationError

from neon_mcp.auth.grants import Grant
from neon_mcp.core.constants import STATE_VERSION
from neon_mcp.core.exceptions import InvalidRequestError


class DownstreamAuthRequest(BaseModel):
    """Authorization request as received from the MCP client."""

    response_type: str = "code"
    client_id: str
    redirect_uri: str
    scope: list[str] = Field(default_factory=list)
    state: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None


class AuthorizationState(BaseModel):
    """Payload carried in the upstream ``state`` parameter."""

    v: int = STATE_VERSION
    request: DownstreamAuthRequest
    grant: Grant
    locked: list[str] = Field(default_factory=list)  # consent fields fixed by headers
    read_only: bool | None = None
    iat: float = Field(default_factory=time.time)


class StateCodec:
    """Encodes and verifies ``AuthorizationState`` payloads."""

    algorithm = "HS256"

    def __init__(self, secret: str, max_age_seconds: float = 900, clock=time.time) -> None:
        if not secret:
            raise ValueError("State signing secret must not be empty")
        self._secret = secret
        self.max_age_seconds = max_age_seconds
        self.clock = clock

    def encode(
        self,
        request: DownstreamAuthRequest,
        grant: Grant,
        locked: list[str] | None = None,
        read_only: bool | None = None,
    ) -> str:
        payload = AuthorizationState(
            request=request,
            grant=grant,
            locked=locked or [],
            read_only=read_only,
            iat=self.clock(),
        )
        return jws.sign(
            payload.model_dump(mode="json", by_alias=True),
            self._secret,
            algorithm=self.algorithm,
        )

    def decode(self, token: str | None) -> AuthorizationState:
        """Verify and parse a state value.

        Raises:
            InvalidRequestError: if the signature, version, age or shape is wrong
        """
        if not token:
            raise InvalidRequestError("Missing state")
        try:
            raw = jws.verify(token, self._secret, algorithms=[self.algorithm])
            data = json.loads(raw)
        except (JOSEError, ValueError) as e:
            raise InvalidRequestError("Invalid state") from e

        if not isinstance(data, dict) or data.get("v") != STATE_VERSION:
            raise InvalidRequestError("Unsupported state version")
        try:
            state = AuthorizationState.model_validate(data)
        except ValidationError as e:
            raise InvalidRequestError("Invalid state") from e

        if self.clock() - state.iat > self.max_age_seconds:
            raise InvalidRequestError("Authorization request expired")
        return state
