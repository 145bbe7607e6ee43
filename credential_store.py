"""
Credential Store

Holds issued authorization codes, access tokens and refresh tokens, keyed by
their opaque string value, with expiry metadata.

Each store exposes three independent namespaces (codes, access_tokens,
refresh_tokens) with the same operations:
- put(key, record)
- take(key): atomic read-and-delete, used for single-use redemption
- get(key): read without deleting, used for token validation
- delete(key)
- delete_if_expired(key): used by lazy expiry and the background sweep

SECURITY: take() is the load-bearing primitive for replay protection. If two
callers race on the same key, exactly one receives the record.
"""

import hashlib
import json
import logging
import math
import secrets
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Type

import redis

# Opaque identifier sizes in random bytes. secrets.token_urlsafe encodes every
# byte, so the visible string always carries the full entropy.
CODE_BYTES = 32           # 256 bits, short-lived
ACCESS_TOKEN_BYTES = 32   # 256 bits
REFRESH_TOKEN_BYTES = 48  # 384 bits, long-lived


class StorageError(Exception):
    """The backing store failed; surfaced to clients as server_error."""


class CredentialGenerationError(Exception):
    """The system random source failed; surfaced to clients as server_error."""


def generate_credential(nbytes: int) -> str:
    """
    Generate an opaque credential from the OS CSPRNG.

    Args:
        nbytes: Number of random bytes (entropy budget)

    Returns:
        Unpadded base64url string of all nbytes
    """
    try:
        return secrets.token_urlsafe(nbytes)
    except (OSError, NotImplementedError) as e:
        raise CredentialGenerationError(f"Random source unavailable: {e}") from e


class _ExpiringRecord:
    """Serialization and expiry helpers shared by the credential records."""

    expires_at: float

    def is_expired(self, now: Optional[float] = None) -> bool:
        if now is None:
            now = time.time()
        return self.expires_at <= now

    def expires_in(self, now: Optional[float] = None) -> int:
        if now is None:
            now = time.time()
        # Whole seconds, rounded up so a live record never reports 0
        return max(0, math.ceil(round(self.expires_at - now, 3)))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        return cls(**data)


@dataclass
class AuthorizationCode(_ExpiringRecord):
    """Single-use code bound to client, redirect URI, scopes and PKCE challenge."""
    code: str
    client_id: str
    user_id: str
    redirect_uri: str
    scopes: List[str]
    expires_at: float
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    created_at: float = field(default_factory=time.time)


@dataclass
class AccessToken(_ExpiringRecord):
    """Bearer credential presented to resource servers."""
    token: str
    client_id: str
    user_id: str
    scopes: List[str]
    expires_at: float
    created_at: float = field(default_factory=time.time)


@dataclass
class RefreshToken(_ExpiringRecord):
    """Long-lived credential, rotated on every use."""
    token: str
    client_id: str
    user_id: str
    scopes: List[str]
    expires_at: float
    created_at: float = field(default_factory=time.time)


# ===== In-memory backend =====

class InMemoryNamespace:
    """
    One key space of the in-memory store.

    Mutations hold the namespace lock. get() is a single dict lookup, which
    is atomic in CPython, so readers never wait on writers.
    """

    def __init__(self, name: str):
        self.name = name
        self._records: Dict[str, _ExpiringRecord] = {}
        self._lock = threading.Lock()

    def put(self, key: str, record: _ExpiringRecord) -> None:
        with self._lock:
            self._records[key] = record

    def take(self, key: str) -> Optional[_ExpiringRecord]:
        with self._lock:
            return self._records.pop(key, None)

    def get(self, key: str) -> Optional[_ExpiringRecord]:
        return self._records.get(key)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._records.pop(key, None) is not None

    def delete_if_expired(self, key: str, now: Optional[float] = None) -> bool:
        with self._lock:
            record = self._records.get(key)
            if record is None or not record.is_expired(now):
                return False
            del self._records[key]
            return True

    def sweep_expired(self, now: Optional[float] = None) -> int:
        if now is None:
            now = time.time()
        with self._lock:
            candidates = [k for k, r in self._records.items() if r.is_expired(now)]
        return sum(1 for key in candidates if self.delete_if_expired(key, now))

    def __len__(self) -> int:
        return len(self._records)


class CredentialStore:
    """Base for credential stores: three namespaces plus maintenance hooks."""

    codes: Any
    access_tokens: Any
    refresh_tokens: Any

    def namespaces(self) -> list:
        return [self.codes, self.access_tokens, self.refresh_tokens]

    def sweep_expired(self, now: Optional[float] = None) -> int:
        """
        Remove expired records from every namespace.

        Returns:
            Number of records removed
        """
        removed = sum(ns.sweep_expired(now) for ns in self.namespaces())
        if removed:
            logging.info(f"Swept {removed} expired credential(s)")
        return removed

    def ping(self) -> bool:
        return True


class InMemoryCredentialStore(CredentialStore):
    """Volatile store; the default backend."""

    def __init__(self):
        self.codes = InMemoryNamespace("codes")
        self.access_tokens = InMemoryNamespace("access_tokens")
        self.refresh_tokens = InMemoryNamespace("refresh_tokens")


# ===== Redis backend =====

class RedisNamespace:
    """
    One key space of the Redis store.

    Keys are <prefix><sha256(credential)>, so raw bearer values never appear
    in Redis. Each key carries a millisecond TTL equal to the record lifetime.
    """

    def __init__(
        self,
        redis_client: "redis.Redis",
        prefix: str,
        record_cls: Type[_ExpiringRecord],
        get_and_delete_script,
        encryptor=None
    ):
        self.redis_client = redis_client
        self.prefix = prefix
        self.record_cls = record_cls
        self._get_and_delete = get_and_delete_script
        self.encryptor = encryptor

    def redis_key(self, key: str) -> str:
        return self.prefix + hashlib.sha256(key.encode('utf-8')).hexdigest()

    def _serialize(self, record: _ExpiringRecord) -> str:
        payload = json.dumps(record.to_dict())
        if self.encryptor is not None:
            payload = self.encryptor.encrypt(payload, associated_data=self.prefix)
        return payload

    def _deserialize(self, data) -> Optional[_ExpiringRecord]:
        if not data:
            return None
        if isinstance(data, bytes):
            data = data.decode('utf-8')
        try:
            if self.encryptor is not None:
                data = self.encryptor.decrypt(data, associated_data=self.prefix)
            return self.record_cls.from_dict(json.loads(data))
        except (ValueError, TypeError, KeyError) as e:
            logging.error(f"Failed to decode {self.prefix} record: {e}")
            return None

    def put(self, key: str, record: _ExpiringRecord) -> None:
        ttl_ms = max(1, int((record.expires_at - time.time()) * 1000))
        try:
            self.redis_client.set(self.redis_key(key), self._serialize(record), px=ttl_ms)
        except redis.RedisError as e:
            raise StorageError(f"Failed to store {self.prefix} record: {e}") from e

    def take(self, key: str) -> Optional[_ExpiringRecord]:
        # SECURITY: GET and DEL run inside one Lua script, so concurrent
        # redemptions of the same credential cannot both observe it
        try:
            data = self._get_and_delete(keys=[self.redis_key(key)])
        except redis.RedisError as e:
            raise StorageError(f"Failed to consume {self.prefix} record: {e}") from e
        return self._deserialize(data)

    def get(self, key: str) -> Optional[_ExpiringRecord]:
        try:
            data = self.redis_client.get(self.redis_key(key))
        except redis.RedisError as e:
            raise StorageError(f"Failed to read {self.prefix} record: {e}") from e
        return self._deserialize(data)

    def delete(self, key: str) -> bool:
        try:
            return bool(self.redis_client.delete(self.redis_key(key)))
        except redis.RedisError as e:
            raise StorageError(f"Failed to delete {self.prefix} record: {e}") from e

    def delete_if_expired(self, key: str, now: Optional[float] = None) -> bool:
        # Credential keys are never rewritten and expiry is monotonic, so an
        # expired record read here cannot have been replaced before the DEL.
        record = self.get(key)
        if record is None or not record.is_expired(now):
            return False
        return self.delete(key)

    def sweep_expired(self, now: Optional[float] = None) -> int:
        # Redis expires keys itself
        return 0


class RedisCredentialStore(CredentialStore):
    """
    Redis-backed credential store.

    Payloads are encrypted with AES-256-GCM when an encryptor is supplied
    (see token_encryption.TokenEncryption).
    """

    CODE_PREFIX = "oauth:code:"
    TOKEN_PREFIX = "oauth:token:"
    REFRESH_PREFIX = "oauth:refresh:"

    def __init__(self, redis_client: Optional["redis.Redis"] = None, redis_url: Optional[str] = None, encryptor=None):
        """
        Args:
            redis_client: Existing client (takes precedence over redis_url)
            redis_url: Connection URL used when no client is given
            encryptor: Optional TokenEncryption for payloads at rest
        """
        if redis_client is None:
            redis_client = redis.from_url(
                redis_url or "redis://localhost:6379",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                socket_keepalive=True
            )
        self.redis_client = redis_client
        self.encryption_enabled = encryptor is not None

        if not self.encryption_enabled:
            logging.warning("Credential payloads will be stored UNENCRYPTED in Redis - set REDIS_ENCRYPTION_KEY")

        get_and_delete = self.redis_client.register_script("""
            local value = redis.call('GET', KEYS[1])
            if value then
                redis.call('DEL', KEYS[1])
            end
            return value
        """)

        self.codes = RedisNamespace(redis_client, self.CODE_PREFIX, AuthorizationCode, get_and_delete, encryptor)
        self.access_tokens = RedisNamespace(redis_client, self.TOKEN_PREFIX, AccessToken, get_and_delete, encryptor)
        self.refresh_tokens = RedisNamespace(redis_client, self.REFRESH_PREFIX, RefreshToken, get_and_delete, encryptor)

    def ping(self) -> bool:
        try:
            return bool(self.redis_client.ping())
        except redis.RedisError as e:
            logging.error(f"Redis ping failed: {e}")
            return False
