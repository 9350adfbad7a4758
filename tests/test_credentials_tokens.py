"""Unit tests for password hashing, token minting and session resolution."""

from datetime import timedelta

import pytest

from asphaltworks.config import get_settings
from asphaltworks.service.credentials import CredentialManager
from asphaltworks.service.errors import AuthenticationError, AuthorizationError
from asphaltworks.service.session import (
    SessionResolver,
    check_ownership,
    extract_token,
    require_permission,
    require_roles,
    require_verified_email,
)
from asphaltworks.service.tokens import TokenIssuer
from asphaltworks.storage.memory import MemoryStore
from asphaltworks.storage.models import User, utcnow


@pytest.fixture
def credentials():
    return CredentialManager(time_cost=1, memory_cost=1024)


@pytest.fixture
def issuer(credentials):
    return TokenIssuer(get_settings(), credentials)


class TestCredentialManager:
    def test_hash_and_verify(self, credentials):
        stored, algo = credentials.hash("Asphalt@2024")
        assert algo == "argon2id"
        assert stored != "Asphalt@2024"
        assert credentials.verify(stored, "Asphalt@2024", algo=algo)
        assert not credentials.verify(stored, "asphalt#2024", algo=algo)

    def test_unknown_algorithm_never_verifies(self, credentials):
        stored, _ = credentials.hash("Asphalt@2024")
        assert not credentials.verify(stored, "Asphalt@2024", algo="bcrypt")

    def test_garbage_hash_is_rejected_not_raised(self, credentials):
        assert not credentials.verify("not-a-hash", "Asphalt@2024")

    def test_generate_token_entropy(self, credentials):
        token = credentials.generate_token()
        assert len(token) == 64
        int(token, 16)
        assert credentials.generate_token() != token
        assert len(credentials.generate_token(64)) == 128

    def test_token_bytes_floor(self):
        with pytest.raises(ValueError):
            CredentialManager(token_bytes=16)

    def test_digest_is_sha256_hex(self, credentials):
        digest = credentials.digest("abc")
        assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"

    async def test_async_helpers(self, credentials):
        stored, algo = await credentials.hash_async("Asphalt@2024")
        assert await credentials.verify_async(stored, "Asphalt@2024", algo=algo)


class TestTokenIssuer:
    def test_round_trip(self, issuer):
        issued = issuer.issue("user-1")
        assert issuer.decode_access_token(issued.access_token) == "user-1"
        assert len(issued.refresh_token) == 128
        assert issued.refresh_digest == issuer.credentials.digest(issued.refresh_token)
        assert issued.access_expires_in == get_settings().access_token_ttl_minutes * 60

    def test_expired_token(self, issuer):
        token = issuer.issue_access_token("user-1", now=utcnow() - timedelta(days=1))
        with pytest.raises(AuthenticationError) as excinfo:
            issuer.decode_access_token(token)
        assert excinfo.value.reason == "token_expired"

    def test_tampered_signature(self, issuer):
        token = issuer.issue_access_token("user-1")
        head, payload, sig = token.split(".")
        forged = f"{head}.{payload}.{'A' * len(sig)}"
        with pytest.raises(AuthenticationError) as excinfo:
            issuer.decode_access_token(forged)
        assert excinfo.value.reason == "token_invalid"

    def test_other_secret_rejected(self, credentials, issuer):
        other_settings = get_settings().model_copy(update={"jwt_secret": "x" * 40})
        other = TokenIssuer(other_settings, credentials)
        with pytest.raises(AuthenticationError):
            issuer.decode_access_token(other.issue_access_token("user-1"))

    def test_wrong_audience_rejected(self, credentials, issuer):
        other_settings = get_settings().model_copy(update={"jwt_audience": "someone-else"})
        other = TokenIssuer(other_settings, credentials)
        with pytest.raises(AuthenticationError) as excinfo:
            issuer.decode_access_token(other.issue_access_token("user-1"))
        assert excinfo.value.reason == "token_invalid"

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "e30.e30.sig"])
    def test_malformed_tokens(self, issuer, token):
        with pytest.raises(AuthenticationError):
            issuer.decode_access_token(token)

    @pytest.mark.parametrize(
        "token",
        ["eyJhbGciOiJIUzI1NiJ9.e30.\xe9\xe9", "eyJhbGciOiJIUzI1NiJ9.\u00e9.sig", "\u00e9.e30.sig"],
    )
    def test_non_ascii_tokens_are_invalid(self, issuer, token):
        with pytest.raises(AuthenticationError) as excinfo:
            issuer.decode_access_token(token)
        assert excinfo.value.reason == "token_invalid"

    def test_non_ascii_signature_on_a_real_token(self, issuer):
        head, payload, _ = issuer.issue_access_token("user-1").split(".")
        with pytest.raises(AuthenticationError) as excinfo:
            issuer.decode_access_token(f"{head}.{payload}.\xe9\xe9")
        assert excinfo.value.reason == "token_invalid"


class TestExtractToken:
    def test_bearer_header_wins(self):
        assert extract_token("Bearer abc", "cookie") == "abc"

    def test_cookie_fallback(self):
        assert extract_token(None, "cookie") == "cookie"
        assert extract_token("Basic xyz", "cookie") == "cookie"

    def test_nothing_presented(self):
        assert extract_token(None, None) is None
        assert extract_token("Bearer ", None) is None


class TestSessionResolver:
    @pytest.fixture
    def store(self, tmp_path):
        return MemoryStore(fs_root=str(tmp_path), persist=False)

    async def test_resolves_live_user(self, store, issuer):
        user = store.create_user("alice", "alice@example.com")
        resolver = SessionResolver(store, issuer)
        resolved = await resolver.resolve(issuer.issue_access_token(user.id))
        assert resolved.id == user.id

    async def test_missing_token(self, store, issuer):
        resolver = SessionResolver(store, issuer)
        with pytest.raises(AuthenticationError) as excinfo:
            await resolver.resolve(None)
        assert excinfo.value.reason == "token_missing"

    async def test_deleted_user(self, store, issuer):
        user = store.create_user("alice", "alice@example.com")
        token = issuer.issue_access_token(user.id)
        store.delete_user(user.id)
        with pytest.raises(AuthenticationError) as excinfo:
            await SessionResolver(store, issuer).resolve(token)
        assert excinfo.value.reason == "user_not_found"

    async def test_deactivation_revokes_live_token(self, store, issuer):
        user = store.create_user("alice", "alice@example.com")
        token = issuer.issue_access_token(user.id)
        store.update_user(user.id, is_active=False)
        with pytest.raises(AuthenticationError) as excinfo:
            await SessionResolver(store, issuer).resolve(token)
        assert excinfo.value.reason == "account_deactivated"

    async def test_optional_resolution_is_anonymous_on_failure(self, store, issuer):
        resolver = SessionResolver(store, issuer)
        assert await resolver.resolve_optional(None) is None
        assert await resolver.resolve_optional("garbage") is None
        assert await resolver.resolve_optional("e30.e30.\xe9\xe9") is None


class TestGuards:
    def _user(self, **kwargs):
        return User(id="u1", username="bob", email="bob@example.com", **kwargs)

    def test_require_roles(self):
        with pytest.raises(AuthorizationError) as excinfo:
            require_roles(self._user(role="user"), ["admin", "moderator"])
        assert excinfo.value.detail["required"] == ["admin", "moderator"]
        assert excinfo.value.detail["current"] == "user"
        assert require_roles(self._user(role="moderator"), ["admin", "moderator"])

    def test_admin_holds_every_permission(self):
        assert require_permission(self._user(role="admin"), "contacts:manage")
        assert require_permission(
            self._user(permissions=["contacts:manage"]), "contacts:manage"
        )
        with pytest.raises(AuthorizationError) as excinfo:
            require_permission(self._user(), "contacts:manage")
        assert excinfo.value.status_code == 403

    def test_require_verified_email(self):
        with pytest.raises(AuthorizationError) as excinfo:
            require_verified_email(self._user(is_email_verified=False))
        assert excinfo.value.detail["reason"] == "email_not_verified"

    def test_ownership(self):
        check_ownership(self._user(), "u1")
        check_ownership(self._user(role="admin"), "someone-else")
        with pytest.raises(AuthorizationError) as excinfo:
            check_ownership(self._user(), "someone-else")
        assert excinfo.value.detail["reason"] == "not_owner"
