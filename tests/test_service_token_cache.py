"""Tests for the process-scoped service token cache."""

import asyncio

import pytest

from authbroker.config import Settings
from authbroker.service.errors import RefreshInvalidGrantError, ServerError
from authbroker.service.idp import TokenBundle
from authbroker.service.service_token import STATIC_TOKEN_LIFETIME_SECONDS, ServiceTokenCache
from authbroker.storage.memory import MemoryStore
from authbroker.storage.models import ServiceAccountData

SECRET = "service-token-tests-secret-value-0123456789"


class FakeIdP:
    """Stands in for IdentityProviderClient.refresh, counting calls.

    With rotation on, a refresh token is accepted once; presenting it again
    is rejected the way a rotating IdP rejects reuse.
    """

    def __init__(self, *, latency: float = 0.01, rotate: bool = True, expires_in: int = 3600):
        self.latency = latency
        self.rotate = rotate
        self.expires_in = expires_in
        self.calls = []
        self.spent = set()
        self.reject = False

    async def refresh(self, refresh_token):
        self.calls.append(refresh_token)
        n = len(self.calls)
        reused = self.rotate and refresh_token in self.spent
        if self.rotate and not self.reject:
            self.spent.add(refresh_token)
        await asyncio.sleep(self.latency)
        if self.reject or reused:
            raise RefreshInvalidGrantError(reason="token_rotation_limit")
        return TokenBundle(
            access_token=f"svc-at-{n}",
            expires_in=self.expires_in,
            refresh_token=f"svc-rt-{n}" if self.rotate else None,
        )


class FakeClock:
    def __init__(self):
        self.now = 1_000_000.0

    def __call__(self):
        return self.now


def make_settings(**overrides):
    values = {
        "jwt_secret": SECRET,
        "service_auth_type": "oauth",
        "service_account_refresh_token": "svc-rt-0",
        "service_token_margin_seconds": 300,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def clock():
    return FakeClock()


class TestServiceTokenCache:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_acquisition(self, clock):
        idp = FakeIdP()
        cache = ServiceTokenCache(make_settings(), idp=idp, clock=clock)

        tokens = await asyncio.gather(*(cache.get_token() for _ in range(10)))

        assert len(idp.calls) == 1
        assert set(tokens) == {"svc-at-1"}
        assert cache.has_valid_token()

    @pytest.mark.asyncio
    async def test_cached_until_margin_before_expiry(self, clock):
        idp = FakeIdP(expires_in=3600)
        cache = ServiceTokenCache(make_settings(), idp=idp, clock=clock)

        assert await cache.get_token() == "svc-at-1"
        clock.now += 3299
        assert await cache.get_token() == "svc-at-1"
        clock.now += 2
        assert await cache.get_token() == "svc-at-2"
        assert len(idp.calls) == 2

    @pytest.mark.asyncio
    async def test_rotated_token_is_used_for_next_refresh(self, clock):
        idp = FakeIdP()
        cache = ServiceTokenCache(make_settings(), idp=idp, clock=clock)

        await cache.get_token()
        await cache.force_refresh()
        assert idp.calls == ["svc-rt-0", "svc-rt-1"]

    @pytest.mark.asyncio
    async def test_force_refresh_waits_for_in_flight_acquisition(self, clock):
        idp = FakeIdP(latency=0.05)
        cache = ServiceTokenCache(make_settings(), idp=idp, clock=clock)

        older_call = asyncio.create_task(cache.get_token())
        await asyncio.sleep(0.01)
        fresh = await cache.force_refresh()
        older = await older_call

        assert older == "svc-at-1"
        assert fresh == "svc-at-2"
        assert await cache.get_token() == "svc-at-2"
        # Each rotating refresh token was presented exactly once
        assert idp.calls == ["svc-rt-0", "svc-rt-1"]

    @pytest.mark.asyncio
    async def test_concurrent_force_refreshes_never_overlap(self, clock):
        idp = FakeIdP(latency=0.05)
        cache = ServiceTokenCache(make_settings(), idp=idp, clock=clock)

        results = await asyncio.gather(
            cache.force_refresh(), cache.force_refresh(), cache.force_refresh()
        )

        assert idp.calls == ["svc-rt-0", "svc-rt-1"]
        assert results == ["svc-at-1", "svc-at-2", "svc-at-2"]
        assert await cache.get_token() == "svc-at-2"

    @pytest.mark.asyncio
    async def test_invalidate_drops_cached_token(self, clock):
        idp = FakeIdP()
        cache = ServiceTokenCache(make_settings(), idp=idp, clock=clock)
        await cache.get_token()
        cache.invalidate()
        assert not cache.has_valid_token()
        assert await cache.get_token() == "svc-at-2"

    @pytest.mark.asyncio
    async def test_failed_acquisition_propagates_and_is_not_cached(self, clock):
        idp = FakeIdP()
        idp.reject = True
        cache = ServiceTokenCache(make_settings(), idp=idp, clock=clock)

        results = await asyncio.gather(
            *(cache.get_token() for _ in range(3)), return_exceptions=True
        )
        assert all(isinstance(r, RefreshInvalidGrantError) for r in results)
        assert len(idp.calls) == 1
        assert not cache.has_valid_token()

        idp.reject = False
        assert await cache.get_token() == "svc-at-2"


class TestServiceAuthModes:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("mode", ["none", "noauth"])
    async def test_no_auth_modes_yield_empty_token(self, mode, clock):
        idp = FakeIdP()
        cache = ServiceTokenCache(make_settings(service_auth_type=mode), idp=idp, clock=clock)
        assert await cache.get_token() == ""
        assert idp.calls == []

    @pytest.mark.asyncio
    async def test_apikey_mode_returns_configured_key(self, clock):
        settings = make_settings(service_auth_type="APIKEY", service_api_key="k-123")
        cache = ServiceTokenCache(settings, idp=FakeIdP(), clock=clock)
        assert await cache.get_token() == "k-123"
        clock.now += STATIC_TOKEN_LIFETIME_SECONDS - 1
        assert cache.has_valid_token()

    @pytest.mark.asyncio
    async def test_apikey_mode_without_key_fails(self, clock):
        cache = ServiceTokenCache(
            make_settings(service_auth_type="apikey"), idp=FakeIdP(), clock=clock
        )
        with pytest.raises(ServerError):
            await cache.get_token()

    @pytest.mark.asyncio
    async def test_unconfigured_oauth_in_test_mode_is_empty(self, clock):
        settings = make_settings(service_account_refresh_token=None, test_mode=True)
        idp = FakeIdP()
        cache = ServiceTokenCache(settings, idp=idp, clock=clock)
        assert await cache.get_token() == ""
        assert idp.calls == []

    @pytest.mark.asyncio
    async def test_unconfigured_oauth_outside_test_mode_fails(self, clock):
        settings = make_settings(service_account_refresh_token=None, test_mode=False)
        cache = ServiceTokenCache(settings, idp=FakeIdP(), clock=clock)
        with pytest.raises(ServerError):
            await cache.get_token()


class TestStoredServiceAccount:
    @pytest.fixture
    def store(self, tmp_path):
        return MemoryStore(fs_root=str(tmp_path), encryption_key=SECRET)

    @pytest.fixture
    def service_user(self, store):
        user = store.create_user("svc|ingest", role="service")
        store.replace_session(user.id, "stored-rt", custom_data=ServiceAccountData(label="ingest"))
        return user

    @pytest.mark.asyncio
    async def test_refresh_token_read_from_and_rotated_into_store(self, store, service_user, clock):
        settings = make_settings(
            service_account_refresh_token=None, service_account_user_id=service_user.id
        )
        idp = FakeIdP()
        cache = ServiceTokenCache(settings, idp=idp, store=store, clock=clock)

        assert await cache.get_token() == "svc-at-1"
        assert idp.calls == ["stored-rt"]
        assert store.get_session_for_user(service_user.id).refresh_token == "svc-rt-1"

    @pytest.mark.asyncio
    async def test_invalid_grant_flags_service_session(self, store, service_user, clock):
        settings = make_settings(service_account_user_id=service_user.id)
        idp = FakeIdP()
        idp.reject = True
        cache = ServiceTokenCache(settings, idp=idp, store=store, clock=clock)

        with pytest.raises(RefreshInvalidGrantError):
            await cache.get_token()
        session = store.get_session_for_user(service_user.id)
        assert session.requires_reauth
        assert session.reauth_reason == "token_rotation_limit"

    @pytest.mark.asyncio
    async def test_overlapping_refreshes_keep_service_session_usable(
        self, store, service_user, clock
    ):
        settings = make_settings(
            service_account_refresh_token=None, service_account_user_id=service_user.id
        )
        idp = FakeIdP(latency=0.05)
        cache = ServiceTokenCache(settings, idp=idp, store=store, clock=clock)

        in_flight = asyncio.create_task(cache.get_token())
        await asyncio.sleep(0.01)
        results = await asyncio.gather(
            in_flight, cache.force_refresh(), cache.force_refresh(), return_exceptions=True
        )

        assert not any(isinstance(r, Exception) for r in results)
        assert idp.calls == ["stored-rt", "svc-rt-1"]
        session = store.get_session_for_user(service_user.id)
        assert not session.requires_reauth
        assert session.refresh_token == "svc-rt-2"
