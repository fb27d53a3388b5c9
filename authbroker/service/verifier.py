from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

import jwt

from authbroker.logging import get_logger
from authbroker.service.errors import InvalidTokenError
from authbroker.service.jwks import SigningKeyResolver

logger = get_logger(__name__)


@dataclass(frozen=True)
class Identity:
    subject: str
    email: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)


def identity_from_claims(claims: Dict[str, Any]) -> Identity:
    return Identity(subject=str(claims["sub"]), email=claims.get("email"), claims=claims)


class TokenVerifier:
    """Verify IdP-issued access tokens against the published signing keys."""

    def __init__(
        self,
        resolver: SigningKeyResolver,
        *,
        issuer: str,
        audience: Optional[str],
        algorithms: Iterable[str],
        leeway_seconds: int = 60,
    ) -> None:
        self.resolver = resolver
        self.issuer = issuer
        self.audience = audience
        self.algorithms = list(algorithms)
        self.leeway_seconds = leeway_seconds

    async def verify_access_token(self, token: str) -> Dict[str, Any]:
        """Return the verified claims of ``token``.

        Raises:
            InvalidTokenError: malformed, expired, wrong audience/issuer,
                disallowed algorithm or unknown signing key.
            UpstreamError: the signing keys could not be fetched and no usable
                cached copy exists.
        """
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise InvalidTokenError("invalid token") from exc

        alg = header.get("alg")
        if alg not in self.algorithms:
            logger.warning("access_token_algorithm_rejected", alg=alg)
            raise InvalidTokenError("invalid token")
        kid = header.get("kid")
        if not kid:
            logger.warning("access_token_missing_kid")
            raise InvalidTokenError("invalid token")

        signing_key = await self.resolver.get_signing_key(kid)
        if signing_key is None:
            logger.warning("access_token_unknown_kid", kid=kid)
            raise InvalidTokenError("invalid token")

        options: Dict[str, Any] = {"require": ["exp", "sub"]}
        if not self.audience:
            options["verify_aud"] = False
        try:
            return jwt.decode(
                token,
                signing_key.key,
                algorithms=[alg],
                audience=self.audience,
                issuer=self.issuer,
                leeway=self.leeway_seconds,
                options=options,
            )
        except jwt.ExpiredSignatureError as exc:
            raise InvalidTokenError("token expired", detail={"reason": "expired"}) from exc
        except jwt.PyJWTError as exc:
            logger.warning(
                "access_token_rejected", kid=kid, error_type=type(exc).__name__
            )
            raise InvalidTokenError("invalid token") from exc

    async def verify_identity(self, token: str) -> Identity:
        return identity_from_claims(await self.verify_access_token(token))
