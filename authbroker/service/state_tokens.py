from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Optional

from authbroker.logging import get_logger
from authbroker.service.errors import StateTokenInvalidOrExpiredError
from authbroker.service.idp import TokenBundle
from authbroker.storage.models import User

logger = get_logger(__name__)

_KEY_PREFIX = "state_token:"
_MAX_TOKEN_LENGTH = 128


@dataclass(frozen=True)
class PendingExchange:
    bundle: TokenBundle
    user: User
    flow_id: Optional[str] = None


class StateTokenBroker:
    """Single-use indirection between the callback redirect and the access token.

    The callback stores the token bundle under a random state token that goes
    into the redirect URL; the browser trades it once for the access token.
    """

    def __init__(self, cache, store, *, ttl_seconds: int = 300) -> None:
        self.cache = cache
        self.store = store
        self.ttl_seconds = ttl_seconds

    async def issue(
        self, bundle: TokenBundle, user: User, *, flow_id: Optional[str] = None
    ) -> str:
        state_token = secrets.token_hex(32)
        await self.cache.set_json(
            _KEY_PREFIX + state_token,
            {
                "bundle": bundle.to_dict(),
                "user_id": user.id,
                "subject": user.subject,
                "flow_id": flow_id,
            },
            self.ttl_seconds,
        )
        logger.info("state_token_issued", user_id=user.id, flow_id=flow_id)
        return state_token

    async def exchange(self, state_token: str) -> PendingExchange:
        if not state_token or len(state_token) > _MAX_TOKEN_LENGTH:
            raise StateTokenInvalidOrExpiredError("state token invalid or expired")
        payload = await self.cache.pop_json(_KEY_PREFIX + state_token)
        if payload is None:
            logger.warning("state_token_rejected")
            raise StateTokenInvalidOrExpiredError("state token invalid or expired")
        try:
            bundle = TokenBundle.from_dict(payload["bundle"])
            subject = payload["subject"]
        except (KeyError, TypeError) as exc:
            logger.error("state_token_payload_corrupt", error=str(exc))
            raise StateTokenInvalidOrExpiredError("state token invalid or expired") from exc

        user = self.store.get_user(payload.get("user_id") or "")
        if user is None or user.subject != subject:
            user = self.store.get_user_by_subject(subject) or self.store.create_user(subject)
        return PendingExchange(bundle=bundle, user=user, flow_id=payload.get("flow_id"))
