from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from aiva.config import Settings
from aiva.logging import get_logger
from aiva.service.errors import AuthenticationError, ConflictError
from aiva.storage.errors import ConstraintViolation
from aiva.storage.models import Session, User
from aiva.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        *,
        first_name: str = "",
        last_name: str = "",
        role: str = "user",
        provider: str = "local",
        provider_id: Optional[str] = None,
        user_id: Optional[str] = None,
        is_active: bool = True,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: str, *, role: Optional[str] = None, **kwargs: Any) -> Optional[User]: ...

    def record_login(self, user_id: str) -> None: ...

    def list_users(
        self, *, exclude_role: Optional[str] = None, search: Optional[str] = None
    ) -> List[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        meta: Optional[dict] = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def set_session_meta(self, session_id: str, meta: dict) -> None: ...

    def revoke_session(self, session_id: str) -> None: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    session_id: Optional[str] = None
    email: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    bypass: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class AuthService:
    """Password login, bearer tokens and session revocation."""

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache],
        settings: Settings,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.logger = logger
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._clock_skew_leeway = timedelta(seconds=30)

    def _now(self) -> datetime:
        return datetime.utcnow()

    async def register(
        self,
        email: str,
        password: str,
        *,
        first_name: str = "",
        last_name: str = "",
        role: str = "user",
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> tuple[User, Session, dict[str, str]]:
        try:
            user = self.store.create_user(
                email, first_name=first_name, last_name=last_name, role=role
            )
        except ConstraintViolation as exc:
            raise ConflictError("User with this email already exists", detail=exc.detail) from exc
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user.id, pwd_hash, algo)
        session = self.store.create_session(
            user.id,
            ttl_minutes=self.settings.access_token_ttl_minutes,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
        tokens = self._issue_tokens(user, session)
        if self.cache:
            await self.cache.cache_session(session.id, user.id, session.expires_at)
        self.logger.info("user_registered", user_id=user.id)
        return user, session, tokens

    async def login(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> tuple[User, Session, dict[str, str]]:
        user = self.store.get_user_by_email(email)
        if not user or not self.verify_password(user.id, password):
            raise AuthenticationError("Invalid email or password")
        if not user.is_active:
            raise AuthenticationError("Account is disabled")
        session = self.store.create_session(
            user.id,
            ttl_minutes=self.settings.access_token_ttl_minutes,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
        tokens = self._issue_tokens(user, session)
        self.store.record_login(user.id)
        if self.cache:
            await self.cache.cache_session(session.id, user.id, session.expires_at)
        return user, session, tokens

    async def revoke(self, session_id: str) -> None:
        """Revoke a session and denylist its access token."""
        sess = self.store.get_session(session_id)
        if sess and isinstance(sess.meta, dict) and self.cache:
            access_jti = sess.meta.get("access_jti")
            access_exp = sess.meta.get("access_exp")
            if access_jti and access_exp:
                ttl = max(0, int(access_exp - time.time()))
                try:
                    await self.cache.denylist_access_token(access_jti, ttl)
                except Exception as exc:
                    # Revocation in the store below still blocks the token
                    self.logger.warning(
                        "access_token_denylist_failed", session_id=session_id, error=str(exc)
                    )
        self.store.revoke_session(session_id)
        if self.cache:
            await self.cache.revoke_session(session_id)

    async def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        token = self._extract_bearer(authorization)
        if not token:
            return None
        if self.cache:
            payload = self._decode_jwt(token)
            jti = payload.get("jti") if payload else None
            if jti:
                try:
                    if await self.cache.is_access_token_denylisted(jti):
                        self.logger.info("access_token_denylisted", jti=jti)
                        return None
                except Exception as exc:
                    # Fail open on cache outages; the session row is still checked
                    self.logger.warning("denylist_check_failed", jti=jti, error=str(exc))
        return self._authenticate_access_token(token)

    def dev_bypass_context(self) -> AuthContext:
        """Identity used when APP_ENV=development and BYPASS_AUTH=true."""
        user_id = self.settings.dev_bypass_user_id
        existing = self.store.get_user(user_id)
        return AuthContext(
            user_id=user_id,
            role=existing.role if existing else self.settings.dev_bypass_role,
            email=existing.email if existing else f"{user_id}@example.com",
            first_name=existing.first_name if existing else "Test",
            last_name=existing.last_name if existing else "User",
            bypass=True,
        )

    async def set_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self.store.update_user(user_id, role=role)

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), "argon2id"

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to avoid algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, json.JSONDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, json.JSONDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def _issue_tokens(self, user: User, session: Session) -> dict[str, str]:
        access_exp = int(
            (self._now() + timedelta(minutes=self.settings.access_token_ttl_minutes)).timestamp()
        )
        access_jti = str(uuid.uuid4())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "sid": session.id,
            "role": user.role,
            "token_type": "access",
            "jti": access_jti,
            "exp": access_exp,
        }
        meta = dict(session.meta or {})
        meta.update({"access_jti": access_jti, "access_exp": access_exp})
        session.meta = meta
        self.store.set_session_meta(session.id, meta)
        return {
            "access_token": self._encode_jwt(payload),
            "token_type": "bearer",
            "expires_at": datetime.utcfromtimestamp(access_exp).isoformat(),
        }

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip()

    def _authenticate_access_token(self, token: str) -> Optional[AuthContext]:
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access":
            return None
        session_id = payload.get("sid")
        sess = self.store.get_session(session_id) if session_id else None
        if not sess or sess.revoked or sess.expires_at <= self._now() - self._clock_skew_leeway:
            return None
        user = self.store.get_user(payload.get("sub"))
        if not user or not user.is_active:
            return None
        if payload.get("role") != user.role:
            return None
        return AuthContext(
            user_id=user.id,
            role=user.role,
            session_id=sess.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
        )
