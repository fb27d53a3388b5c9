from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

import httpx

from authbroker.config import get_settings, reset_settings_cache
from authbroker.logging import get_logger
from authbroker.service.idp import IdentityProviderClient
from authbroker.service.jwks import SigningKeyResolver
from authbroker.service.orchestrator import LoginOrchestrator
from authbroker.service.refresh import RefreshCoordinator
from authbroker.service.service_token import ServiceTokenCache
from authbroker.service.sessions import SessionService
from authbroker.service.state_tokens import StateTokenBroker
from authbroker.service.verifier import TokenVerifier
from authbroker.storage.memory import InMemoryCache, MemoryStore
from authbroker.storage.postgres import PostgresStore
from authbroker.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, *, idp_transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        encryption_key = self.settings.session_encryption_key or self.settings.jwt_secret

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root, encryption_key=encryption_key
                )
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, encryption_key=encryption_key)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Union[RedisCache, SyncRedisCache, InMemoryCache]
        self.cache_backend = "redis"
        redis_error: Exception | None = None
        shared_cache = None
        if self.settings.redis_url:
            try:
                # Use sync Redis client in test mode to avoid event loop issues
                if self.settings.test_mode:
                    shared_cache = SyncRedisCache(self.settings.redis_url)
                else:
                    shared_cache = RedisCache(self.settings.redis_url)
                shared_cache.verify_connection()
            except Exception as exc:
                redis_error = exc
                shared_cache = None

        if shared_cache is not None:
            self.cache = shared_cache
        else:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for login state and state tokens shared across replicas; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; login contexts and state "
                    "tokens are only visible to this process."
                ),
                mode=fallback_mode,
            )
            self.cache = InMemoryCache()
            self.cache_backend = "memory"

        self.idp = IdentityProviderClient(self.settings, transport=idp_transport)
        self.jwks = SigningKeyResolver(
            self.idp.fetch_jwks,
            ttl_seconds=self.settings.jwks_cache_ttl_seconds,
            max_stale_seconds=self.settings.jwks_max_stale_seconds,
            requests_per_minute=self.settings.jwks_requests_per_minute,
            attempts=self.settings.jwks_fetch_attempts,
            backoff_seconds=self.settings.jwks_retry_backoff_seconds,
        )
        self.verifier = TokenVerifier(
            self.jwks,
            issuer=self.settings.expected_issuer,
            audience=self.settings.idp_audience,
            algorithms=self.settings.idp_algorithms,
            leeway_seconds=self.settings.token_leeway_seconds,
        )
        self.sessions = SessionService(
            self.store,
            secret=self.settings.jwt_secret,
            ttl_days=self.settings.session_ttl_days,
        )
        self.state_tokens = StateTokenBroker(
            self.cache, self.store, ttl_seconds=self.settings.state_token_ttl_seconds
        )
        self.orchestrator = LoginOrchestrator(
            self.settings,
            idp=self.idp,
            cache=self.cache,
            verifier=self.verifier,
            state_tokens=self.state_tokens,
            sessions=self.sessions,
        )
        self.refresh = RefreshCoordinator(self.idp, self.verifier, self.sessions)
        self.service_tokens = ServiceTokenCache(
            self.settings, idp=self.idp, store=self.store
        )
        logger.info(
            "runtime_init_completed",
            cache_backend=self.cache_backend,
            idp_origin=self.settings.idp_origin,
            service_auth_type=self.settings.service_auth_type.value,
        )

    async def close(self) -> None:
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: a lock-free fast path for an existing
    runtime, then a second check under the lock before creating one.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(
    *, idp_transport: Optional[httpx.AsyncBaseTransport] = None
) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            previous = runtime.close()
            try:
                asyncio.get_running_loop().create_task(previous)
            except RuntimeError:
                asyncio.run(previous)

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(idp_transport=idp_transport)
        return runtime
