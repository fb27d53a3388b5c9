from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authbroker.logging import get_logger

logger = get_logger(__name__)

# Asymmetric JWS algorithms accepted for IdP-issued access tokens.
ASYMMETRIC_ALGORITHMS = frozenset(
    {
        "RS256",
        "RS384",
        "RS512",
        "PS256",
        "PS384",
        "PS512",
        "ES256",
        "ES384",
        "ES512",
        "EdDSA",
    }
)


class ServiceAuthType(str, Enum):
    """How the Service Token Cache acquires credentials for partner calls."""

    NONE = "none"
    NOAUTH = "noauth"
    APIKEY = "apikey"
    OAUTH = "oauth"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


class Settings(BaseModel):
    """Runtime settings for the broker, read from the environment and `.env`."""

    # Identity provider
    idp_domain: str = env_field("example.auth0.com", "IDP_DOMAIN")
    idp_base_url: Optional[str] = env_field(
        None,
        "IDP_BASE_URL",
        description="Override for the IdP origin; defaults to https://<IDP_DOMAIN>",
    )
    idp_issuer: Optional[str] = env_field(
        None,
        "IDP_ISSUER",
        description="Expected `iss` claim; defaults to https://<IDP_DOMAIN>/",
    )
    idp_client_id: str = env_field("", "IDP_CLIENT_ID")
    idp_client_secret: Optional[str] = env_field(None, "IDP_CLIENT_SECRET")
    idp_callback_url: str = env_field(
        "http://localhost:3001/auth/callback", "IDP_CALLBACK_URL"
    )
    idp_audience: Optional[str] = env_field(None, "IDP_AUDIENCE")
    idp_scopes: List[str] = env_field(
        ["openid", "profile", "email", "offline_access"], "IDP_SCOPES"
    )
    idp_algorithms: List[str] = env_field(["RS256"], "IDP_ALGORITHMS")
    idp_timeout_seconds: float = env_field(10.0, "IDP_TIMEOUT_SECONDS")
    token_leeway_seconds: int = env_field(
        60,
        "TOKEN_LEEWAY_SECONDS",
        description="Allowance for clock skew when checking exp/nbf/iat",
    )
    # Signing-key resolver
    jwks_cache_ttl_seconds: int = env_field(600, "JWKS_CACHE_TTL_SECONDS")
    jwks_max_stale_seconds: int = env_field(3600, "JWKS_MAX_STALE_SECONDS")
    jwks_requests_per_minute: int = env_field(5, "JWKS_REQUESTS_PER_MINUTE")
    jwks_fetch_attempts: int = env_field(3, "JWKS_FETCH_ATTEMPTS")
    jwks_retry_backoff_seconds: float = env_field(0.2, "JWKS_RETRY_BACKOFF_SECONDS")
    # Browser handoff
    frontend_redirect_url: str = env_field(
        "http://localhost:3000/dashboard", "FRONTEND_REDIRECT_URL"
    )
    login_error_url: Optional[str] = env_field(
        None,
        "LOGIN_ERROR_URL",
        description="When set, callback failures redirect here with ?error=<code>",
    )
    refresh_cookie_name: str = env_field("refresh_token", "REFRESH_COOKIE_NAME")
    refresh_cookie_secure: bool = env_field(True, "REFRESH_COOKIE_SECURE")
    refresh_cookie_samesite: str = env_field("lax", "REFRESH_COOKIE_SAMESITE")
    refresh_cookie_domain: Optional[str] = env_field(None, "REFRESH_COOKIE_DOMAIN")
    refresh_cookie_path: str = env_field("/", "REFRESH_COOKIE_PATH")
    login_cookie_name: str = env_field("pkce_session", "LOGIN_COOKIE_NAME")
    pkce_ttl_seconds: int = env_field(600, "PKCE_TTL_SECONDS")
    pkce_verifier_length: int = env_field(43, "PKCE_VERIFIER_LENGTH")
    state_token_ttl_seconds: int = env_field(300, "STATE_TOKEN_TTL_SECONDS")
    session_ttl_days: int = env_field(30, "SESSION_TTL_DAYS")
    session_purge_interval_seconds: int = env_field(3600, "SESSION_PURGE_INTERVAL_SECONDS")
    # Service-to-service credentials
    service_auth_type: ServiceAuthType = env_field(
        ServiceAuthType.OAUTH, "SERVICE_AUTH_TYPE"
    )
    service_api_key: Optional[str] = env_field(None, "SERVICE_API_KEY")
    service_account_refresh_token: Optional[str] = env_field(
        None, "SERVICE_ACCOUNT_REFRESH_TOKEN"
    )
    service_account_user_id: Optional[str] = env_field(None, "SERVICE_ACCOUNT_USER_ID")
    service_token_margin_seconds: int = env_field(300, "SERVICE_TOKEN_MARGIN_SECONDS")
    # Infrastructure
    database_url: str = env_field(
        "postgresql://localhost:5432/authbroker", "DATABASE_URL"
    )
    redis_url: Optional[str] = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/authbroker", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors: sync Redis client, in-memory fallbacks",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    session_encryption_key: Optional[str] = env_field(
        None,
        "SESSION_ENCRYPTION_KEY",
        description="Key material for encrypting stored refresh tokens; defaults to JWT_SECRET",
    )
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    build_sha: Optional[str] = env_field(None, "BUILD_SHA")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def idp_origin(self) -> str:
        if self.idp_base_url:
            return self.idp_base_url.rstrip("/")
        return f"https://{self.idp_domain}"

    @property
    def expected_issuer(self) -> str:
        return self.idp_issuer or f"https://{self.idp_domain}/"

    @field_validator("idp_scopes", "cors_allow_origins", mode="before")
    @classmethod
    def _parse_list(cls, value: Any) -> List[str]:
        if isinstance(value, str) and " " in value and "," not in value:
            return [item for item in value.split() if item]
        return _split_csv(value)

    @field_validator("idp_algorithms", mode="before")
    @classmethod
    def _validate_algorithms(cls, value: Any) -> List[str]:
        algorithms = _split_csv(value)
        if not algorithms:
            raise ValueError("at least one signing algorithm is required")
        rejected = [alg for alg in algorithms if alg not in ASYMMETRIC_ALGORITHMS]
        if rejected:
            raise ValueError(
                f"only asymmetric signing algorithms are accepted, got {', '.join(rejected)}"
            )
        return algorithms

    @field_validator("refresh_cookie_samesite")
    @classmethod
    def _validate_samesite(cls, value: str) -> str:
        normalized = value.lower()
        if normalized not in {"lax", "strict", "none"}:
            raise ValueError("REFRESH_COOKIE_SAMESITE must be lax, strict or none")
        return normalized

    @field_validator("pkce_verifier_length")
    @classmethod
    def _validate_verifier_length(cls, value: int) -> int:
        if not 43 <= value <= 128:
            raise ValueError("PKCE_VERIFIER_LENGTH must be between 43 and 128")
        return value

    @field_validator("service_auth_type", mode="before")
    @classmethod
    def _validate_service_auth_type(cls, value: Any) -> ServiceAuthType:
        if isinstance(value, str):
            value = value.strip().lower()
        return ServiceAuthType(value)

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: Any) -> str:
        if value:
            return value
        # Persist a generated secret so fallback references survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/authbroker"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: Optional[str] = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
