"""Unit tests for the auth service: registration, login, tokens and revocation."""

import pytest

from aiva.config import Settings
from aiva.service.auth import AuthService
from aiva.service.errors import AuthenticationError, ConflictError
from aiva.storage.memory import MemoryStore


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        dev_bypass_user_id="dev-user-1",
        dev_bypass_role="admin",
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def auth_service(memory_store, settings):
    return AuthService(store=memory_store, cache=None, settings=settings)


def _bearer(tokens):
    return f"Bearer {tokens['access_token']}"


class TestRegistration:
    async def test_register_issues_usable_token(self, auth_service):
        user, session, tokens = await auth_service.register(
            "New@Example.com", "Password123", first_name="New", last_name="User"
        )
        assert user.email == "new@example.com"
        assert tokens["token_type"] == "bearer"
        ctx = await auth_service.authenticate(_bearer(tokens))
        assert ctx is not None
        assert ctx.user_id == user.id
        assert ctx.session_id == session.id
        assert ctx.first_name == "New"
        assert not ctx.is_admin

    async def test_register_duplicate_email_conflicts(self, auth_service):
        await auth_service.register("dup@example.com", "Password123")
        with pytest.raises(ConflictError) as exc_info:
            await auth_service.register("dup@example.com", "Password123")
        assert exc_info.value.message == "User with this email already exists"

    async def test_password_stored_as_argon2_hash(self, auth_service, memory_store):
        user, _, _ = await auth_service.register("hash@example.com", "Password123")
        pwd_hash, algo = memory_store.get_password_record(user.id)
        assert pwd_hash.startswith("$argon2id$")
        assert "Password123" not in pwd_hash
        assert algo


class TestLogin:
    async def test_login_with_valid_credentials(self, auth_service, memory_store):
        user, _, _ = await auth_service.register("login@example.com", "Password123")
        logged_in, _, tokens = await auth_service.login("login@example.com", "Password123")
        assert logged_in.id == user.id
        assert memory_store.get_user(user.id).last_login_at is not None
        assert await auth_service.authenticate(_bearer(tokens)) is not None

    async def test_login_wrong_password(self, auth_service):
        await auth_service.register("login@example.com", "Password123")
        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.login("login@example.com", "WrongPassword")
        assert exc_info.value.message == "Invalid email or password"

    async def test_login_unknown_email(self, auth_service):
        with pytest.raises(AuthenticationError):
            await auth_service.login("nobody@example.com", "Password123")

    async def test_login_disabled_account(self, auth_service, memory_store):
        user, _, _ = await auth_service.register("off@example.com", "Password123")
        memory_store.update_user(user.id, is_active=False)
        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.login("off@example.com", "Password123")
        assert exc_info.value.message == "Account is disabled"


class TestTokens:
    async def test_missing_or_malformed_header(self, auth_service):
        assert await auth_service.authenticate(None) is None
        assert await auth_service.authenticate("Token abc") is None
        assert await auth_service.authenticate("Bearer not.a.jwt") is None

    async def test_tampered_token_rejected(self, auth_service):
        _, _, tokens = await auth_service.register("tamper@example.com", "Password123")
        token = tokens["access_token"]
        tampered = token[:-2] + ("AA" if not token.endswith("AA") else "BB")
        assert await auth_service.authenticate(f"Bearer {tampered}") is None

    async def test_token_from_other_secret_rejected(self, auth_service, memory_store):
        other = AuthService(
            store=memory_store,
            cache=None,
            settings=Settings(jwt_secret="A-Completely-Different-Secret-Value-1234567"),
        )
        _, _, tokens = await other.register("other@example.com", "Password123")
        assert await auth_service.authenticate(_bearer(tokens)) is None

    async def test_revoked_session_rejected(self, auth_service):
        _, session, tokens = await auth_service.register("bye@example.com", "Password123")
        await auth_service.revoke(session.id)
        assert await auth_service.authenticate(_bearer(tokens)) is None

    async def test_role_change_invalidates_old_token(self, auth_service):
        user, _, tokens = await auth_service.register("promote@example.com", "Password123")
        await auth_service.set_user_role(user.id, "admin")
        assert await auth_service.authenticate(_bearer(tokens)) is None
        _, _, fresh = await auth_service.login("promote@example.com", "Password123")
        ctx = await auth_service.authenticate(_bearer(fresh))
        assert ctx.is_admin

    async def test_context_carries_role(self, auth_service):
        _, _, tokens = await auth_service.register("plain@example.com", "Password123")
        ctx = await auth_service.authenticate(_bearer(tokens))
        assert ctx.role == "user"
        assert ctx.is_admin is False


class TestDevBypass:
    def test_context_for_unknown_user_uses_defaults(self, auth_service):
        ctx = auth_service.dev_bypass_context()
        assert ctx.bypass is True
        assert ctx.user_id == "dev-user-1"
        assert ctx.role == "admin"
        assert ctx.email == "dev-user-1@example.com"
        assert (ctx.first_name, ctx.last_name) == ("Test", "User")

    def test_context_reflects_existing_user(self, auth_service, memory_store):
        memory_store.create_user(
            "real@example.com", first_name="Real", role="user", user_id="dev-user-1"
        )
        ctx = auth_service.dev_bypass_context()
        assert ctx.role == "user"
        assert ctx.email == "real@example.com"
        assert ctx.first_name == "Real"

    def test_bypass_requires_development_env(self):
        assert Settings(jwt_secret="x" * 40, bypass_auth=True, app_env="production").dev_bypass_enabled is False
        assert Settings(jwt_secret="x" * 40, bypass_auth=True, app_env="Development").dev_bypass_enabled is True
