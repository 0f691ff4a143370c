from __future__ import annotations

import asyncio
import json
import secrets
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from sessionguard.config import Settings
from sessionguard.logging import get_logger, hash_identifier
from sessionguard.service.attempts import FailedAttemptTracker
from sessionguard.service.devices import DeviceRegistry
from sessionguard.service.email import EmailService
from sessionguard.service.errors import (
    AuthenticationError,
    ConflictError,
    DependencyUnavailableError,
    InactiveAccountError,
    NotFoundError,
    RefreshTokenError,
    TooManyRequestsError,
    ValidationError,
)
from sessionguard.service.profile_cache import ProfileCache
from sessionguard.service.refresh_tokens import RefreshTokenStore
from sessionguard.service.sessions import SessionStore
from sessionguard.service.tokens import TokenCodec
from sessionguard.storage.errors import ConstraintViolation, StoreUnavailableError
from sessionguard.storage.kv import KeyValueStore
from sessionguard.storage.models import DeviceInfo, DeviceRecord, User, utcnow

logger = get_logger(__name__)

DEVICE_LOGOUT_MESSAGE = (
    "You have been automatically logged out from your previous device/browser."
)
PASSWORD_RESET_MESSAGE = (
    "If an account with that email exists, a password reset link has been sent."
)
MIN_PASSWORD_LENGTH = 8


class UserStore(Protocol):
    def create_user(
        self,
        email: str,
        *,
        first_name: str = "",
        last_name: str = "",
        is_active: bool = True,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_user(self, user: User) -> User: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


@dataclass
class AuthContext:
    user_id: str
    session_id: str
    email: Optional[str] = None


@dataclass
class LoginResult:
    access_token: str
    refresh_token: str
    expires_at: str
    session_id: str
    user: Dict[str, Any]
    device_id: str
    is_new_device: bool
    total_devices: int
    previous_device: Optional[Dict[str, Any]] = None
    token_type: str = "bearer"

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": self.expires_at,
            "user": self.user,
            "device_info": {
                "device_id": self.device_id,
                "is_new_device": self.is_new_device,
                "total_devices": self.total_devices,
            },
        }
        if self.previous_device:
            body["device_logout"] = {
                "was_logged_out": True,
                "previous_device": self.previous_device,
                "message": DEVICE_LOGOUT_MESSAGE,
            }
        return body


class AuthService:
    """Login orchestration under a single-active-session-per-user policy.

    A login runs CHECK_LOCK, VERIFY_CREDENTIALS, CHECK_ACTIVE, EVICT_PRIOR,
    ISSUE_NEW, PERSIST and RESPOND in that order. Prior sessions are evicted
    before the new one is issued, so a crash in between leaves the user with
    no session rather than two. Fast-store writes in ISSUE_NEW must succeed;
    the durable user is saved once, after them.
    """

    def __init__(
        self,
        store: UserStore,
        kv: KeyValueStore,
        settings: Settings,
        *,
        attempts: Optional[FailedAttemptTracker] = None,
        sessions: Optional[SessionStore] = None,
        refresh_tokens: Optional[RefreshTokenStore] = None,
        devices: Optional[DeviceRegistry] = None,
        tokens: Optional[TokenCodec] = None,
        profiles: Optional[ProfileCache] = None,
        email: Optional[EmailService] = None,
        password_hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.kv = kv
        self.settings = settings
        self.attempts = attempts or FailedAttemptTracker(
            kv, lockout_seconds=settings.lockout_time
        )
        self.sessions = sessions or SessionStore(
            kv,
            ttl_seconds=settings.session_timeout,
            refresh_throttle_seconds=settings.session_refresh_throttle,
        )
        self.refresh_tokens = refresh_tokens or RefreshTokenStore(
            kv, ttl_seconds=settings.refresh_token_expire
        )
        self.devices = devices or DeviceRegistry(max_devices=settings.max_devices)
        self.tokens = tokens or TokenCodec(
            settings, clock_skew_leeway=settings.jwt_clock_skew_seconds
        )
        self.profiles = profiles or ProfileCache(kv, ttl_seconds=settings.user_cache_ttl)
        self.email = email
        self._pwd_hasher = password_hasher or PasswordHasher(type=Type.ID)
        self.logger = logger

    async def require_store(self) -> None:
        """Raise ``DependencyUnavailableError`` unless the fast store answers."""
        if self.kv.is_ready():
            return
        self.logger.warning("kv_not_ready_reconnecting")
        if not await self.kv.ensure_connection():
            self.logger.error("kv_unavailable")
            raise DependencyUnavailableError()

    # login

    async def login(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
        push_token: Optional[str] = None,
    ) -> LoginResult:
        identifier = self.attempts.identifier(email, ip)
        email_hash = hash_identifier(email.strip().lower())

        if await self.attempts.is_locked(identifier):
            retry_after = await self.attempts.retry_after(identifier)
            self.logger.warning("login_rejected_locked", email_hash=email_hash)
            raise TooManyRequestsError(
                "Too many failed login attempts. Please try again later.",
                retry_after=retry_after,
            )

        user = self.store.get_user_by_email(email)
        if not user or not self.verify_password(user.id, password):
            await self._register_failure(identifier, email_hash)

        if not user.is_active:
            self.logger.info("login_rejected_inactive", user_id=user.id)
            raise InactiveAccountError("Account is deactivated")

        await self.attempts.clear(identifier)

        info = DeviceInfo.from_request(user_agent, ip, push_token)
        device_id = self.devices.fingerprint(info)
        previous = self.devices.most_recent_other_active(user, device_id)
        previous_device = self._device_notice(previous) if previous else None

        await self.sessions.delete_all_for_user(user.id)
        await self.refresh_tokens.delete_all_for_user(user.id)
        self.devices.deactivate_others(user, device_id)

        session_id = str(uuid.uuid4())
        try:
            await self.sessions.create(
                user.id,
                session_id,
                {
                    "email": user.email,
                    "first_name": user.first_name,
                    "last_name": user.last_name,
                },
                fail_open=False,
            )
            issued = self.tokens.issue_pair(user.id, session_id, email=user.email)
            await self.refresh_tokens.store(issued["refresh_token"], user.id, session_id)
        except StoreUnavailableError as exc:
            self.logger.error(
                "login_issue_failed", user_id=user.id, op=exc.op, error=str(exc)
            )
            await self.sessions.delete(session_id)
            raise DependencyUnavailableError() from exc

        now = utcnow()
        user.last_login = now
        device, is_new = self.devices.record_login(user, info, now=now)
        user.last_device_info = {**info.summary(), "device_id": device.device_id}
        self.store.save_user(user)
        await self.profiles.invalidate(user.id)

        self.logger.info(
            "login_succeeded",
            user_id=user.id,
            session_id=session_id,
            device_type=info.device_type,
            new_device=is_new,
            evicted_previous=bool(previous_device),
        )
        return LoginResult(
            access_token=issued["access_token"],
            refresh_token=issued["refresh_token"],
            expires_at=issued["expires_at"],
            session_id=session_id,
            user=user.public_profile(),
            device_id=device.device_id,
            is_new_device=is_new,
            total_devices=len(user.devices),
            previous_device=previous_device,
        )

    async def _register_failure(self, identifier: str, email_hash: str) -> None:
        attempts = await self.attempts.record_failure(identifier)
        threshold = self.settings.max_failed_attempts
        if attempts >= threshold:
            await self.attempts.lock(identifier)
            raise TooManyRequestsError(
                "Too many failed login attempts. Account locked temporarily.",
                retry_after=self.attempts.lockout_seconds,
            )
        remaining = threshold - attempts
        self.logger.info("login_rejected_credentials", email_hash=email_hash, attempts=attempts)
        raise AuthenticationError(
            f"Invalid credentials. {remaining} attempt{'s' if remaining != 1 else ''} remaining.",
            attempts_remaining=remaining,
        )

    @staticmethod
    def _device_notice(device: DeviceRecord) -> Dict[str, Any]:
        return {
            "browser": device.browser_name or "Unknown Browser",
            "os": device.os_name or "Unknown OS",
            "device_type": device.device_type or "desktop",
            "device_id": device.device_id,
            "last_seen": device.last_seen.isoformat(),
        }

    # sessions

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self.tokens.extract_bearer(authorization)
        if not token:
            raise AuthenticationError("Access token required")
        payload = self.tokens.decode(token, token_type="access")
        if not payload:
            raise AuthenticationError("Invalid or expired token")
        user_id = payload.get("sub")
        session_id = payload.get("sid")
        if not user_id or not session_id:
            raise AuthenticationError("Invalid or expired token")
        session = await self.sessions.resolve(session_id, user_id)
        if not session:
            raise AuthenticationError(
                "Invalid or expired session", error_code="session_expired"
            )
        await self.sessions.refresh(session_id)
        return AuthContext(
            user_id=user_id,
            session_id=session_id,
            email=session.email or payload.get("email"),
        )

    async def refresh_access_token(self, refresh_token: str) -> Dict[str, str]:
        payload = self.tokens.decode(refresh_token, token_type="refresh")
        if not payload:
            raise RefreshTokenError("Invalid or expired refresh token", reason="expired")

        record = await self.refresh_tokens.get(refresh_token)
        if not record or record.session_id != payload.get("sid"):
            raise RefreshTokenError("Refresh token not found or expired", reason="revoked")

        session = await self.sessions.resolve(record.session_id, record.user_id)
        if not session:
            await self.refresh_tokens.delete(refresh_token)
            raise RefreshTokenError("Session expired", reason="session_gone")

        user = self.store.get_user(record.user_id)
        if not user or not user.is_active:
            await self.refresh_tokens.delete(refresh_token)
            raise RefreshTokenError("User not found or inactive", reason="user_inactive")

        access_token = self.tokens.issue_access(user.id, session.session_id, email=user.email)
        await self.sessions.refresh(session.session_id)
        return {"access_token": access_token, "token_type": "bearer"}

    async def logout(self, session_id: str, user_id: str) -> None:
        await self.sessions.delete(session_id)
        await self.refresh_tokens.delete_all_for_user(user_id)
        self.logger.info("logout", user_id=user_id, session_id=session_id)

    async def revoke_all_user_sessions(self, user_id: str) -> None:
        await self.sessions.delete_all_for_user(user_id)
        await self.refresh_tokens.delete_all_for_user(user_id)

    async def session_time_left(self, session_id: str) -> int:
        return await self.sessions.time_left(session_id)

    async def extend_session(self, session_id: str) -> bool:
        return await self.sessions.refresh(session_id, force=True)

    # devices

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def list_devices(self, user_id: str) -> List[Dict[str, Any]]:
        user = self._require_user(user_id)
        return [device.to_dict() for device in self.devices.history(user)]

    def deactivate_device(self, user_id: str, device_id: str) -> bool:
        user = self._require_user(user_id)
        if not self.devices.deactivate(user, device_id):
            return False
        self.store.save_user(user)
        self.logger.info("device_deactivated", user_id=user_id, device_id=device_id)
        return True

    # accounts

    async def register(
        self,
        email: str,
        password: str,
        *,
        first_name: str = "",
        last_name: str = "",
    ) -> User:
        if not email or "@" not in email:
            raise ValidationError("A valid email is required", detail={"field": "email"})
        self._check_password_strength(password)
        try:
            user = self.store.create_user(email, first_name=first_name, last_name=last_name)
        except ConstraintViolation as exc:
            raise ConflictError("User already exists with this email", detail=exc.detail) from exc
        self.save_password(user.id, password)
        self.logger.info("user_registered", user_id=user.id)
        if self.email:
            await asyncio.to_thread(self.email.send_welcome, user.email, user.first_name)
        return user

    async def get_profile(self, user_id: str) -> Dict[str, Any]:
        cached = await self.profiles.get(user_id)
        if cached:
            return cached
        profile = self._require_user(user_id).public_profile()
        await self.profiles.put(user_id, profile)
        return profile

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> None:
        user = self._require_user(user_id)
        if not self.verify_password(user.id, current_password):
            raise ValidationError("Current password is incorrect")
        self._check_password_strength(new_password)
        self.save_password(user.id, new_password)
        await self.revoke_all_user_sessions(user.id)
        await self.profiles.invalidate(user.id)
        self.logger.info("password_changed", user_id=user.id)

    @staticmethod
    def _reset_key(token: str) -> str:
        return f"reset_token:{token}"

    async def request_password_reset(self, email: str) -> str:
        """Issue a reset token when the account exists; the reply never says which."""
        user = self.store.get_user_by_email(email)
        if not user:
            self.logger.info(
                "password_reset_unknown_email",
                email_hash=hash_identifier(email.strip().lower()),
            )
            return PASSWORD_RESET_MESSAGE
        token = secrets.token_hex(32)
        stored = await self.kv.set_with_ttl(
            self._reset_key(token),
            json.dumps({"user_id": user.id, "email": user.email}),
            self.settings.reset_token_ttl,
            default=False,
        )
        if not stored:
            self.logger.warning("password_reset_token_not_stored", user_id=user.id)
        if self.email:
            sent = await asyncio.to_thread(
                self.email.send_password_reset, user.email, token, user.first_name
            )
            if not sent:
                self.logger.warning("password_reset_email_failed", user_id=user.id)
        self.logger.info("password_reset_requested", user_id=user.id)
        return PASSWORD_RESET_MESSAGE

    async def complete_password_reset(self, token: str, new_password: str) -> None:
        try:
            raw = await self.kv.get(self._reset_key(token))
        except StoreUnavailableError as exc:
            raise DependencyUnavailableError() from exc
        data: Optional[Dict[str, Any]] = None
        if raw:
            try:
                data = json.loads(raw)
            except ValueError:
                data = None
        if not data or not data.get("user_id"):
            self.logger.warning("password_reset_invalid_token", token_prefix=token[:8])
            raise ValidationError("Invalid or expired reset token")
        user = self.store.get_user(data["user_id"])
        if not user:
            raise NotFoundError("User not found")
        self._check_password_strength(new_password)
        self.save_password(user.id, new_password)
        await self.kv.delete(self._reset_key(token), default=0)
        await self.revoke_all_user_sessions(user.id)
        await self.profiles.invalidate(user.id)
        self.logger.info("password_reset_completed", user_id=user.id)

    # passwords

    @staticmethod
    def _check_password_strength(password: str) -> None:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), "argon2id"

    def verify_password(self, user_id: str, password: str) -> bool:
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
        except (InvalidHash, VerificationError):
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)


__all__ = ["AuthService", "AuthContext", "LoginResult", "UserStore"]
