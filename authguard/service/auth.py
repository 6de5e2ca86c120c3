from __future__ import annotations

import base64
import contextlib
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authguard.config import Settings
from authguard.logging import get_logger, hash_identifier
from authguard.service.jwt_keys import JWTKeyRegistry
from authguard.storage.models import User

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(
        self, email: str, *, role: str = "user", is_active: bool = True, meta: Optional[dict] = None
    ) -> User: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    key_id: str


class AuthService:
    """Password checks and access tokens signed with the registry's active key."""

    def __init__(self, store: AuthStore, registry: JWTKeyRegistry, settings: Settings) -> None:
        self.store = store
        self.registry = registry
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the email is unknown so both paths cost one argon2 check
        self._dummy_hash = self._pwd_hasher.hash(uuid.uuid4().hex)
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    # Users and passwords
    # ------------------------------------------------------------------

    def signup(self, email: str, password: str, *, role: str = "user") -> User:
        user = self.store.create_user(email, role=role)
        self.save_password(user.id, password)
        logger.info("user_created", user_id=user.id, role=role)
        return user

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), "argon2id"

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def authenticate_credentials(self, email: str, password: str) -> Optional[User]:
        user = self.store.get_user_by_email(email)
        if not user:
            with contextlib.suppress(VerificationError):
                self._pwd_hasher.verify(self._dummy_hash, password)
            logger.info("login_unknown_email", email_hash=hash_identifier(email))
            return None
        if not user.is_active or not self.verify_password(user.id, password):
            return None
        return user

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, secret: str, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], key_id: str, secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT", "kid": key_id}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(secret, signing_input)}"

    async def _decode_jwt(self, token: str) -> Optional[Tuple[dict[str, Any], str]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        # Reject anything but HS256 to rule out algorithm confusion
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg") if isinstance(header, dict) else None)
            return None
        key_id = header.get("kid")
        if not isinstance(key_id, str):
            return None
        key = await self.registry.get_verification_key(key_id)
        if key is None:
            logger.info("jwt_unknown_or_retired_key", key_id=key_id)
            return None
        if not hmac.compare_digest(self._sign(key.secret, f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict) or payload.get("iss") != self.settings.jwt_issuer:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload, key_id

    async def issue_access_token(self, user: User) -> dict[str, Any]:
        key = await self.registry.get_signing_key()
        now = self._now()
        ttl = timedelta(minutes=self.settings.access_token_ttl_minutes)
        payload = {
            "iss": self.settings.jwt_issuer,
            "sub": user.id,
            "role": user.role,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }
        return {
            "access_token": self._encode_jwt(payload, key.id, key.secret),
            "token_type": "bearer",
            "expires_in": int(ttl.total_seconds()),
        }

    async def verify_access_token(self, token: str) -> Optional[AuthContext]:
        decoded = await self._decode_jwt(token)
        if not decoded:
            return None
        payload, key_id = decoded
        if payload.get("token_type") != "access":
            return None
        user = self.store.get_user(payload.get("sub"))
        if not user or not user.is_active or payload.get("role") != user.role:
            return None
        return AuthContext(user_id=user.id, role=user.role, key_id=key_id)

    def extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header or not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1]
