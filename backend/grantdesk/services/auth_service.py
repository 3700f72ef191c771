"""
GrantDesk Backend: Token Verification Service
==============================================

What:  Verifies the bearer tokens clients present in the WebSocket `auth` frame,
       and mints tokens with the same claims for development and tests.
How:   HS256 JWTs via PyJWT. Claims follow the login endpoint of the web app:
           {"id": <user id>, "email": <email>, "role": "user" | "admin", "exp": ...}
Who:   RelayService callers (ConnectionSession) await `verify()`.

Collaborator Contract:
    verify(token) -> Participant          on success
    verify(token) -> AuthenticationFailure on any problem (raised)

    `verify` is a coroutine so a verifier backed by a remote identity
    service can be dropped in without changing the handshake code.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from grantdesk.config import settings
from grantdesk.exceptions import AuthenticationFailure
from grantdesk.schemas.chat import Participant, ParticipantRole

logger = logging.getLogger(__name__)


class TokenVerifier(ABC):
    """Interface for the authentication collaborator used at handshake time."""

    @abstractmethod
    async def verify(self, token: str) -> Participant:
        """Return the participant the token vouches for, or raise AuthenticationFailure."""


class JwtTokenService(TokenVerifier):
    """
    PyJWT-backed verifier and issuer.

    Args:
        secret: HMAC secret shared with the login token issuer
        algorithm: JWT algorithm (HS256 in every known deployment)
        expires_seconds: Lifetime of tokens created by issue()
    """

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        expires_seconds: int = 604_800,
    ):
        self.secret = secret
        self.algorithm = algorithm
        self.expires_seconds = expires_seconds

    async def verify(self, token: str) -> Participant:
        if not token:
            raise AuthenticationFailure(reason="missing_token")

        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                options={"require": ["exp"]},
            )
        except jwt.ExpiredSignatureError:
            raise AuthenticationFailure(reason="token_expired")
        except jwt.InvalidTokenError as e:
            logger.info("Token rejected: %s", str(e))
            raise AuthenticationFailure(reason="invalid_token")

        identifier = payload.get("id")
        if not identifier:
            raise AuthenticationFailure(reason="missing_id_claim")

        try:
            role = ParticipantRole(payload.get("role", ParticipantRole.USER.value))
        except ValueError:
            raise AuthenticationFailure(
                reason="unknown_role",
                context={"role": str(payload.get("role"))},
            )

        return Participant(
            identifier=str(identifier),
            role=role,
            email=payload.get("email"),
        )

    def issue(
        self,
        participant: Participant,
        expires_in: Optional[timedelta] = None,
    ) -> str:
        """
        Mint a token for `participant`.

        Used by tests and local tooling; production tokens come from the
        login endpoint, which signs the same claims with the same secret.
        """
        lifetime = expires_in if expires_in is not None else timedelta(seconds=self.expires_seconds)
        now = datetime.now(timezone.utc)
        payload = {
            "id": participant.identifier,
            "role": participant.role.value,
            "iat": now,
            "exp": now + lifetime,
        }
        if participant.email:
            payload["email"] = participant.email
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)


def build_token_service() -> JwtTokenService:
    """Token service configured from application settings."""
    return JwtTokenService(
        secret=settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
        expires_seconds=settings.jwt_expires_seconds,
    )
