from __future__ import annotations

import asyncio
import base64
import contextlib
import json
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable, Dict, List, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from authguard.config import EncryptionConfig, JWTKeyConfig
from authguard.logging import get_logger
from authguard.service.errors import InvariantViolation, NotFoundError, ServerError
from authguard.storage.errors import StoreUnavailable
from authguard.storage.local_cache import CoordinationStore
from authguard.storage.models import KeyStatus, SigningKey

logger = get_logger(__name__)

ACTIVE_SIGNING_KEY = "jwt:keys:active_signing_key_id"
ALL_KEYS = "jwt:keys:all"
REVOKED_KEYS = "jwt:keys:revoked"
ROTATION_LOCK = "jwt:keys:rotation:lock"
UPDATES_CHANNEL = "jwt:key:updates"

ROTATION_LOCK_TTL_SECONDS = 60
LEGACY_KEY_ID = "legacy-main-secret"
# How long get_signing_key waits on a rotation held by another caller
SIGNING_KEY_WAIT_ATTEMPTS = 40
SIGNING_KEY_WAIT_SECONDS = 0.05


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class KeyEncryptor:
    """AES-256-GCM envelope for signing-key records.

    Each record gets its own random salt; the AES key is PBKDF2-HMAC-SHA256 of
    the master secret over that salt. Derived keys are cached per salt.
    """

    def __init__(self, secret: str, config: Optional[EncryptionConfig] = None) -> None:
        if not secret:
            raise ValueError("JWT_ENCRYPTION_KEY or JWT_SECRET must be set")
        self._secret = secret.encode("utf-8")
        self.config = config or EncryptionConfig()
        self._derived: Dict[bytes, bytes] = {}

    def _key_for(self, salt: bytes) -> bytes:
        key = self._derived.get(salt)
        if key is None:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=32,
                salt=salt,
                iterations=self.config.iterations,
            )
            key = kdf.derive(self._secret)
            self._derived[salt] = key
        return key

    def encrypt(self, plaintext: str) -> str:
        salt = os.urandom(self.config.salt_length)
        iv = os.urandom(self.config.iv_length)
        sealed = AESGCM(self._key_for(salt)).encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[: -self.config.tag_length], sealed[-self.config.tag_length :]
        return json.dumps(
            {
                "encrypted": ciphertext.hex(),
                "iv": iv.hex(),
                "authTag": tag.hex(),
                "salt": salt.hex(),
                "algorithm": self.config.algorithm,
                "iterations": self.config.iterations,
            }
        )

    def decrypt(self, envelope: str) -> str:
        data = json.loads(envelope)
        salt = bytes.fromhex(data["salt"])
        sealed = bytes.fromhex(data["encrypted"]) + bytes.fromhex(data["authTag"])
        plain = AESGCM(self._key_for(salt)).decrypt(bytes.fromhex(data["iv"]), sealed, None)
        return plain.decode("utf-8")


@dataclass
class RotationResult:
    rotated: bool
    reason: str
    key: Optional[SigningKey] = None
    previous_key_id: Optional[str] = None
    revoked_key_ids: List[str] = field(default_factory=list)


class JWTKeyRegistry:
    """Signing keys for access tokens, stored encrypted in the coordination store.

    Exactly one key is ``active`` and signs new tokens; ``rotating`` keys only
    verify until they expire. Rotations run under a store-wide lock and land as
    one transaction, then announce the new key on ``jwt:key:updates``.
    """

    def __init__(
        self,
        store: CoordinationStore,
        encryption_secret: str,
        config: Optional[JWTKeyConfig] = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.config = config or JWTKeyConfig()
        self.encryptor = KeyEncryptor(encryption_secret, self.config.encryption)
        self._clock = clock
        self._signing_key_id: Optional[str] = None

    def _record_key(self, key_id: str) -> str:
        return f"{self.config.storage.key_prefix}{key_id}"

    @property
    def _interval(self) -> timedelta:
        return timedelta(milliseconds=self.config.rotation.interval_ms)

    @property
    def _grace(self) -> timedelta:
        return timedelta(milliseconds=self.config.rotation.grace_period_ms)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _decode(self, key_id: str, envelope: Optional[str]) -> Optional[SigningKey]:
        if envelope is None:
            return None
        try:
            return SigningKey.from_dict(json.loads(self.encryptor.decrypt(envelope)))
        except (InvalidTag, ValueError, KeyError) as exc:
            logger.error("jwt_key_decrypt_failed", key_id=key_id, error_type=type(exc).__name__)
            return None

    async def _load_keys(self) -> Tuple[List[SigningKey], List[str]]:
        """All readable keys, newest first, plus ids whose records are gone."""
        ids = sorted(await self.store.smembers(ALL_KEYS))
        if not ids:
            return [], []
        envelopes = await self.store.mget([self._record_key(key_id) for key_id in ids])
        revoked = await self.store.smembers(REVOKED_KEYS)
        keys: List[SigningKey] = []
        stale: List[str] = []
        for key_id, envelope in zip(ids, envelopes):
            key = self._decode(key_id, envelope)
            if key is None:
                if envelope is None:
                    stale.append(key_id)
                continue
            if key_id in revoked:
                key.status = KeyStatus.REVOKED
            keys.append(key)
        keys.sort(key=lambda k: k.created_at, reverse=True)
        return keys, stale

    async def get_all_keys(self) -> List[SigningKey]:
        keys, _ = await self._load_keys()
        return keys

    async def get_active_keys(self) -> List[SigningKey]:
        """Keys that still verify tokens: active or rotating, not yet expired."""
        now = self._clock()
        return [
            key
            for key in await self.get_all_keys()
            if key.status in KeyStatus.VERIFYING and key.expires_at > now
        ]

    async def get_current_signing_key_id(self) -> Optional[str]:
        key_id = await self.store.get(ACTIVE_SIGNING_KEY)
        self._signing_key_id = key_id
        return key_id

    async def get_key_by_id(self, key_id: str) -> Optional[SigningKey]:
        key = self._decode(key_id, await self.store.get(self._record_key(key_id)))
        if key is not None and await self.store.sismember(REVOKED_KEYS, key_id):
            key.status = KeyStatus.REVOKED
        return key

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def rotation_lock(self) -> AsyncIterator[bool]:
        """Hold ``jwt:keys:rotation:lock`` for the block; yields False if another holder has it."""
        token = str(uuid.uuid4())
        acquired = await self.store.acquire_lock(ROTATION_LOCK, token, ROTATION_LOCK_TTL_SECONDS)
        try:
            yield acquired
        finally:
            if acquired:
                try:
                    await self.store.release_lock(ROTATION_LOCK, token)
                except StoreUnavailable as exc:
                    # The lock TTL frees it anyway
                    logger.warning("jwt_rotation_lock_release_failed", error=str(exc))

    async def check_and_rotate_keys(self) -> RotationResult:
        """Rotate only when the active key has reached the rotation interval."""
        return await self.rotate_keys(force=False)

    async def rotate_keys(self, force: bool = False) -> RotationResult:
        async with self.rotation_lock() as acquired:
            if not acquired:
                logger.debug("jwt_rotation_in_progress_elsewhere")
                return RotationResult(rotated=False, reason="lock_held")
            return await self._rotate_locked(force)

    def _new_key(self, now: datetime) -> SigningKey:
        return SigningKey(
            id=f"jwt-key-{uuid.uuid4()}",
            secret=base64.b64encode(os.urandom(64)).decode("ascii"),
            created_at=now,
            expires_at=now + self._interval + self._grace,
            status=KeyStatus.ACTIVE,
        )

    def _ttl_seconds(self, key: SigningKey, now: datetime) -> int:
        if key.status == KeyStatus.REVOKED:
            return self.config.storage.ttl
        return max(1, int((key.expires_at - now).total_seconds()))

    async def _rotate_locked(self, force: bool) -> RotationResult:
        now = self._clock()
        keys, stale = await self._load_keys()
        current_id = await self.store.get(ACTIVE_SIGNING_KEY)
        current = next(
            (k for k in keys if k.id == current_id and k.status == KeyStatus.ACTIVE), None
        )

        if current is not None and not force and now - current.created_at < self._interval:
            logger.info(
                "jwt_rotation_not_due", key_id=current.id, age_days=current.age_days(now)
            )
            return RotationResult(rotated=False, reason="not_due", key=current)

        new_key = self._new_key(now)
        changed: Dict[str, SigningKey] = {new_key.id: new_key}

        # Demote every other active key, including strays left by an interrupted rotation
        for key in keys:
            if key.status == KeyStatus.ACTIVE:
                key.status = KeyStatus.ROTATING
                changed[key.id] = key

        live = [new_key] + [
            k for k in keys if k.status != KeyStatus.REVOKED and k.expires_at > now
        ]
        revoked_ids: List[str] = []
        for key in live[self.config.rotation.max_active_keys :]:
            key.status = KeyStatus.REVOKED
            changed[key.id] = key
            revoked_ids.append(key.id)
            logger.info("jwt_key_revoked_over_limit", key_id=key.id)

        state = {k.id: k for k in keys}
        state.update(changed)
        active = [k.id for k in state.values() if k.status == KeyStatus.ACTIVE]
        if active != [new_key.id]:
            raise InvariantViolation("rotation would leave more than one active key")

        writes = [
            (self._record_key(k.id), self.encryptor.encrypt(json.dumps(k.to_dict())), self._ttl_seconds(k, now))
            for k in changed.values()
        ]
        writes.append((ACTIVE_SIGNING_KEY, new_key.id, None))
        await self.store.commit(
            writes,
            set_adds=[(ALL_KEYS, new_key.id)] + [(REVOKED_KEYS, key_id) for key_id in revoked_ids],
            set_removes=[(ALL_KEYS, key_id) for key_id in stale]
            + [(REVOKED_KEYS, key_id) for key_id in stale],
        )
        self._signing_key_id = new_key.id

        previous_id = current.id if current else None
        await self._publish(
            {
                "event": "key_rotated",
                "newKeyId": new_key.id,
                "oldKeyId": previous_id,
                "timestamp": now.isoformat(),
            }
        )
        logger.info(
            "jwt_key_rotated",
            new_key_id=new_key.id,
            old_key_id=previous_id,
            forced=force,
            revoked=len(revoked_ids),
        )
        return RotationResult(
            rotated=True,
            reason="forced" if force else "due",
            key=new_key,
            previous_key_id=previous_id,
            revoked_key_ids=revoked_ids,
        )

    async def _publish(self, event: dict) -> None:
        try:
            await self.store.publish(UPDATES_CHANNEL, json.dumps(event))
        except StoreUnavailable as exc:
            # Other instances pick the change up on their next pointer read
            logger.warning("jwt_key_event_publish_failed", key_event=event["event"], error=str(exc))

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    async def revoke_key(self, key_id: str) -> SigningKey:
        current_id = await self.get_current_signing_key_id()
        if key_id == current_id:
            raise InvariantViolation(
                "Cannot revoke the active signing key; rotate keys first",
                detail={"key_id": key_id},
            )
        key = await self.get_key_by_id(key_id)
        if key is None:
            raise NotFoundError("signing key not found", detail={"key_id": key_id})
        if key.status == KeyStatus.ACTIVE:
            raise InvariantViolation("Cannot revoke an active signing key", detail={"key_id": key_id})

        now = self._clock()
        key.status = KeyStatus.REVOKED
        await self.store.commit(
            [(self._record_key(key.id), self.encryptor.encrypt(json.dumps(key.to_dict())), self.config.storage.ttl)],
            set_adds=[(REVOKED_KEYS, key.id)],
        )
        await self._publish({"event": "key_revoked", "keyId": key.id, "timestamp": now.isoformat()})
        logger.info("jwt_key_revoked", key_id=key.id)
        return key

    async def register_legacy_key(self, secret: str) -> SigningKey:
        """Accept tokens signed with a pre-rotation static secret for a limited time."""
        now = self._clock()
        key = SigningKey(
            id=LEGACY_KEY_ID,
            secret=secret,
            created_at=now - timedelta(days=365),
            expires_at=now + timedelta(days=60),
            status=KeyStatus.ROTATING,
        )
        await self.store.commit(
            [(self._record_key(key.id), self.encryptor.encrypt(json.dumps(key.to_dict())), self._ttl_seconds(key, now))],
            set_adds=[(ALL_KEYS, key.id)],
        )
        logger.info("jwt_legacy_key_registered", key_id=key.id, expires_at=key.expires_at.isoformat())
        return key

    # ------------------------------------------------------------------
    # Token issuance support
    # ------------------------------------------------------------------

    async def _load_active(self, key_id: Optional[str]) -> Optional[SigningKey]:
        key = await self.get_key_by_id(key_id) if key_id else None
        return key if key is not None and key.status == KeyStatus.ACTIVE else None

    async def get_signing_key(self) -> SigningKey:
        """The active key for new tokens.

        Starts from the id tracked by ``listen_for_updates`` and falls back to
        the store pointer once that record is no longer active. An empty
        registry bootstraps its first key; while another caller holds the
        rotation lock this waits for the pointer to appear.
        """
        key = await self._load_active(self._signing_key_id)
        if key is None:
            key = await self._load_active(await self.get_current_signing_key_id())
        waits = 0
        while key is None:
            result = await self.check_and_rotate_keys()
            if result.key is not None:
                return result.key
            if waits >= SIGNING_KEY_WAIT_ATTEMPTS:
                raise ServerError("no active signing key available")
            waits += 1
            await asyncio.sleep(SIGNING_KEY_WAIT_SECONDS)
            key = await self._load_active(await self.get_current_signing_key_id())
        return key

    async def get_verification_keys(self) -> Dict[str, SigningKey]:
        return {key.id: key for key in await self.get_active_keys()}

    async def get_verification_key(self, key_id: str) -> Optional[SigningKey]:
        key = await self.get_key_by_id(key_id)
        if key is None or key.status not in KeyStatus.VERIFYING or key.expires_at <= self._clock():
            return None
        return key

    async def listen_for_updates(self) -> None:
        """Track rotations made by other instances. Runs until cancelled.

        The tracked id is where ``get_signing_key`` looks first, so new tokens
        switch to a key rotated elsewhere without a pointer read.
        """
        async for message in self.store.subscribe(UPDATES_CHANNEL):
            try:
                event = json.loads(message)
            except ValueError:
                logger.warning("jwt_key_update_malformed")
                continue
            if event.get("event") == "key_rotated":
                self._signing_key_id = event.get("newKeyId")
            logger.info(
                "jwt_key_update_received",
                key_event=event.get("event"),
                key_id=event.get("newKeyId") or event.get("keyId"),
            )

    @property
    def cached_signing_key_id(self) -> Optional[str]:
        return self._signing_key_id


class RotationScheduler:
    """Periodic ``check_and_rotate_keys`` as a background asyncio task."""

    def __init__(self, registry: JWTKeyRegistry, check_interval_ms: Optional[int] = None) -> None:
        self.registry = registry
        self.check_interval_ms = check_interval_ms or registry.config.rotation.check_interval_ms
        self._task: Optional[asyncio.Task] = None

    async def run_once(self, force: bool = False) -> Optional[RotationResult]:
        try:
            result = await self.registry.rotate_keys(force=force)
            active = await self.registry.get_active_keys()
            signing_key_id = await self.registry.get_current_signing_key_id()
        except (StoreUnavailable, InvariantViolation) as exc:
            logger.error("jwt_rotation_check_failed", error_type=type(exc).__name__, error=str(exc))
            return None
        now = _utcnow()
        logger.info(
            "jwt_rotation_check_completed",
            rotated=result.rotated,
            reason=result.reason,
            active_keys=len(active),
            signing_key_id=signing_key_id,
            key_ages=[{"id": k.id, "age_days": k.age_days(now), "status": k.status} for k in active],
        )
        return result

    async def _run(self) -> None:
        logger.info(
            "jwt_rotation_scheduler_started",
            check_interval_ms=self.check_interval_ms,
            rotation_interval_ms=self.registry.config.rotation.interval_ms,
        )
        while True:
            await self.run_once()
            await asyncio.sleep(self.check_interval_ms / 1000)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("jwt_rotation_scheduler_stopped")
