"""Tests for the signing-key resolver and access-token verification."""

import jwt
import pytest

from authbroker.service.errors import InvalidTokenError, UpstreamUnavailableError
from authbroker.service.jwks import SigningKeyResolver
from authbroker.service.verifier import TokenVerifier
from idp_stub import AUDIENCE, ISSUER, IdPStub


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeJwksEndpoint:
    """Counts fetches and fails the next ``failures`` of them."""

    def __init__(self, stub: IdPStub):
        self.stub = stub
        self.calls = 0
        self.failures = 0

    async def __call__(self):
        self.calls += 1
        if self.failures:
            self.failures -= 1
            raise UpstreamUnavailableError("signing keys unavailable")
        return {"keys": [self.stub.public_jwk()]}


@pytest.fixture
def stub():
    return IdPStub()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def endpoint(stub):
    return FakeJwksEndpoint(stub)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def resolver(endpoint, clock, sleeps):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    return SigningKeyResolver(
        endpoint,
        ttl_seconds=600,
        max_stale_seconds=3600,
        requests_per_minute=2,
        attempts=3,
        backoff_seconds=0.2,
        clock=clock,
        sleep=fake_sleep,
    )


@pytest.fixture
def verifier(resolver):
    return TokenVerifier(resolver, issuer=ISSUER, audience=AUDIENCE, algorithms=["RS256"])


class TestSigningKeyResolver:
    @pytest.mark.asyncio
    async def test_keys_are_cached_within_ttl(self, resolver, endpoint, stub, clock):
        assert await resolver.get_signing_key(stub.kid) is not None
        clock.advance(599)
        assert await resolver.get_signing_key(stub.kid) is not None
        assert endpoint.calls == 1
        assert resolver.cached_kids == [stub.kid]

    @pytest.mark.asyncio
    async def test_expired_cache_refetches(self, resolver, endpoint, stub, clock):
        await resolver.get_signing_key(stub.kid)
        clock.advance(601)
        await resolver.get_signing_key(stub.kid)
        assert endpoint.calls == 2

    @pytest.mark.asyncio
    async def test_unknown_kid_refetch_is_rate_limited(self, resolver, endpoint):
        """Unknown kids refetch early, but never more than the per-minute limit."""
        for _ in range(5):
            assert await resolver.get_signing_key("rotated-away") is None
        assert endpoint.calls == 2

    @pytest.mark.asyncio
    async def test_rate_limit_window_slides(self, resolver, endpoint, clock):
        for _ in range(3):
            await resolver.get_signing_key("rotated-away")
        clock.advance(61)
        await resolver.get_signing_key("rotated-away")
        assert endpoint.calls == 3

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried_with_backoff(
        self, resolver, endpoint, stub, sleeps
    ):
        endpoint.failures = 2
        assert await resolver.get_signing_key(stub.kid) is not None
        assert endpoint.calls == 3
        assert sleeps == [0.2, 0.4]

    @pytest.mark.asyncio
    async def test_serves_stale_keys_while_idp_is_down(self, resolver, endpoint, stub, clock):
        await resolver.get_signing_key(stub.kid)
        clock.advance(601)
        endpoint.failures = 10
        key = await resolver.get_signing_key(stub.kid)
        assert key is not None
        assert endpoint.calls == 4

    @pytest.mark.asyncio
    async def test_stale_keys_expire_after_grace_window(self, resolver, endpoint, stub, clock):
        await resolver.get_signing_key(stub.kid)
        clock.advance(600 + 3600 + 1)
        endpoint.failures = 10
        with pytest.raises(UpstreamUnavailableError):
            await resolver.get_signing_key(stub.kid)

    @pytest.mark.asyncio
    async def test_no_cache_and_idp_down_raises(self, resolver, endpoint, stub):
        endpoint.failures = 10
        with pytest.raises(UpstreamUnavailableError):
            await resolver.get_signing_key(stub.kid)

    @pytest.mark.asyncio
    async def test_last_attempt_error_raised_without_trailing_sleep(
        self, resolver, endpoint, stub, sleeps
    ):
        endpoint.failures = 10
        with pytest.raises(UpstreamUnavailableError):
            await resolver.get_signing_key(stub.kid)
        assert endpoint.calls == 3
        assert sleeps == [0.2, 0.4]

    def test_encryption_keys_are_ignored(self, stub):
        enc = dict(stub.public_jwk(), kid="enc-key", use="enc")
        keys = SigningKeyResolver._parse_keys({"keys": [stub.public_jwk(), enc, {"kty": "RSA"}]})
        assert list(keys) == [stub.kid]


class TestTokenVerifier:
    @pytest.mark.asyncio
    async def test_valid_token_returns_claims(self, verifier, stub):
        token = stub.mint_access_token("auth0|alice", email="alice@example.com")
        claims = await verifier.verify_access_token(token)
        assert claims["sub"] == "auth0|alice"
        identity = await verifier.verify_identity(token)
        assert identity.subject == "auth0|alice"
        assert identity.email == "alice@example.com"

    @pytest.mark.asyncio
    async def test_expired_token_rejected(self, verifier, stub):
        token = stub.mint_access_token("auth0|alice", expires_in=-300)
        with pytest.raises(InvalidTokenError) as exc_info:
            await verifier.verify_access_token(token)
        assert exc_info.value.detail == {"reason": "expired"}

    @pytest.mark.asyncio
    async def test_expiry_within_leeway_accepted(self, verifier, stub):
        token = stub.mint_access_token("auth0|alice", expires_in=-30)
        claims = await verifier.verify_access_token(token)
        assert claims["sub"] == "auth0|alice"

    @pytest.mark.asyncio
    async def test_wrong_audience_rejected(self, verifier, stub):
        token = stub.mint_access_token("auth0|alice", audience="https://other.test")
        with pytest.raises(InvalidTokenError):
            await verifier.verify_access_token(token)

    @pytest.mark.asyncio
    async def test_wrong_issuer_rejected(self, verifier, stub):
        token = stub.mint_access_token("auth0|alice", issuer="https://evil.test/")
        with pytest.raises(InvalidTokenError):
            await verifier.verify_access_token(token)

    @pytest.mark.asyncio
    async def test_unknown_kid_rejected(self, verifier, stub):
        token = stub.mint_access_token("auth0|alice", kid="not-published")
        with pytest.raises(InvalidTokenError):
            await verifier.verify_access_token(token)

    @pytest.mark.asyncio
    async def test_symmetric_algorithm_rejected(self, verifier, stub, endpoint):
        """An HS256 token is refused before any key lookup."""
        token = jwt.encode(
            {"sub": "auth0|alice", "iss": ISSUER, "aud": AUDIENCE, "exp": 9999999999},
            "guessable",
            algorithm="HS256",
            headers={"kid": stub.kid},
        )
        with pytest.raises(InvalidTokenError):
            await verifier.verify_access_token(token)
        assert endpoint.calls == 0

    @pytest.mark.asyncio
    async def test_signature_from_other_key_rejected(self, verifier, stub):
        impostor = IdPStub(kid=stub.kid)
        token = impostor.mint_access_token("auth0|alice")
        with pytest.raises(InvalidTokenError):
            await verifier.verify_access_token(token)

    @pytest.mark.asyncio
    async def test_malformed_token_rejected(self, verifier):
        with pytest.raises(InvalidTokenError):
            await verifier.verify_access_token("not-a-jwt")
