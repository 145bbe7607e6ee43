"""
OAuth Client Registry

Holds registered OAuth clients (id, secret, redirect URIs, allowed scopes).
Clients are registered once and are immutable afterwards.

Two backends share one interface:
- ClientRegistry: in-process dict, the default
- RedisClientRegistry: clients persisted under oauth:client:<client_id>
"""

import hmac
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import redis
import yaml

from audit_logger import AuditAction, AuditSeverity, get_audit_logger
from credential_store import StorageError


class DuplicateClientError(Exception):
    """A client with the same client_id is already registered."""


class InvalidClientError(Exception):
    """Client metadata is incomplete (empty id, secret or redirect URIs)."""


@dataclass(frozen=True)
class Client:
    """A registered OAuth client."""
    client_id: str
    client_secret: str
    redirect_uris: frozenset = field(default_factory=frozenset)
    allowed_scopes: frozenset = field(default_factory=frozenset)
    created_at: int = field(default_factory=lambda: int(time.time()))

    @classmethod
    def create(
        cls,
        client_id: str,
        client_secret: str,
        redirect_uris: Iterable[str],
        allowed_scopes: Iterable[str] = ()
    ) -> "Client":
        # A bare string would otherwise become a set of its characters
        if isinstance(redirect_uris, str) or isinstance(allowed_scopes, str):
            raise InvalidClientError("redirect_uris and allowed_scopes must be collections, not strings")
        return cls(
            client_id=client_id,
            client_secret=client_secret,
            redirect_uris=frozenset(redirect_uris),
            allowed_scopes=frozenset(allowed_scopes)
        )

    def has_redirect_uri(self, redirect_uri: Optional[str]) -> bool:
        # Exact string match only: no prefix, wildcard or normalization
        return bool(redirect_uri) and redirect_uri in self.redirect_uris

    def allows_scopes(self, scopes: Iterable[str]) -> bool:
        return all(s in self.allowed_scopes for s in scopes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uris": sorted(self.redirect_uris),
            "allowed_scopes": sorted(self.allowed_scopes),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Client":
        return cls(
            client_id=data["client_id"],
            client_secret=data["client_secret"],
            redirect_uris=frozenset(data.get("redirect_uris", [])),
            allowed_scopes=frozenset(data.get("allowed_scopes", [])),
            created_at=int(data.get("created_at", time.time()))
        )


def _check_registrable(client: Client) -> None:
    if not client.client_id:
        raise InvalidClientError("client_id must not be empty")
    if not client.client_secret:
        raise InvalidClientError("client_secret must not be empty")
    if not client.redirect_uris or not all(client.redirect_uris):
        raise InvalidClientError("at least one non-empty redirect URI is required")


# Compared against when the client is unknown, so a miss costs the same as a hit
_DUMMY_SECRET = b"\x00" * 32


class ClientRegistry:
    """
    In-memory client registry.

    Registration holds a lock so two callers racing on the same client_id
    cannot both succeed. Lookups are plain dict reads and never block.
    """

    def __init__(self):
        self._clients: Dict[str, Client] = {}
        self._lock = threading.Lock()

    def register(self, client: Client) -> None:
        """
        Register a client.

        Raises:
            InvalidClientError: If client_id, client_secret or redirect_uris is empty
            DuplicateClientError: If client_id is already registered
        """
        _check_registrable(client)
        with self._lock:
            if client.client_id in self._clients:
                raise DuplicateClientError(f"Client already registered: {client.client_id}")
            self._clients[client.client_id] = client
        _audit_registration(client)

    def lookup(self, client_id: Optional[str]) -> Optional[Client]:
        if not client_id:
            return None
        return self._clients.get(client_id)

    def validate_secret(self, client_id: Optional[str], supplied_secret: Optional[str]) -> bool:
        """
        Check a client secret in constant time.

        Unknown clients and wrong secrets are indistinguishable to the caller.
        """
        return _compare_secret(self.lookup(client_id), supplied_secret)

    def ping(self) -> bool:
        return True

    def __len__(self) -> int:
        return len(self._clients)


class RedisClientRegistry:
    """
    Redis-backed client registry.

    SET NX makes registration atomic across processes sharing the Redis.
    """

    CLIENT_PREFIX = "oauth:client:"

    def __init__(self, redis_client: "redis.Redis"):
        self.redis_client = redis_client

    def register(self, client: Client) -> None:
        _check_registrable(client)
        key = f"{self.CLIENT_PREFIX}{client.client_id}"
        try:
            created = self.redis_client.set(key, json.dumps(client.to_dict()), nx=True)
        except redis.RedisError as e:
            raise StorageError(f"Client registration failed: {e}") from e
        if not created:
            raise DuplicateClientError(f"Client already registered: {client.client_id}")
        _audit_registration(client)

    def lookup(self, client_id: Optional[str]) -> Optional[Client]:
        if not client_id:
            return None
        try:
            data = self.redis_client.get(f"{self.CLIENT_PREFIX}{client_id}")
        except redis.RedisError as e:
            raise StorageError(f"Client lookup failed: {e}") from e
        if not data:
            return None
        if isinstance(data, bytes):
            data = data.decode('utf-8')
        return Client.from_dict(json.loads(data))

    def validate_secret(self, client_id: Optional[str], supplied_secret: Optional[str]) -> bool:
        return _compare_secret(self.lookup(client_id), supplied_secret)

    def ping(self) -> bool:
        try:
            return bool(self.redis_client.ping())
        except redis.RedisError as e:
            logging.error(f"Redis ping failed: {e}")
            return False


def _compare_secret(client: Optional[Client], supplied_secret: Optional[str]) -> bool:
    supplied = (supplied_secret or "").encode('utf-8')
    if client is None:
        hmac.compare_digest(supplied, _DUMMY_SECRET)
        return False
    return hmac.compare_digest(supplied, client.client_secret.encode('utf-8'))


def _audit_registration(client: Client) -> None:
    logging.info(f"Registered OAuth client: {client.client_id}")
    get_audit_logger().log_event(
        event_type="client_registered",
        severity=AuditSeverity.HIGH,
        action=AuditAction.CREATE,
        status="success",
        client_id=client.client_id,
        additional_safe_fields={"redirect_uri_count": len(client.redirect_uris)}
    )


def load_clients_from_yaml(path: str, registry) -> List[str]:
    """
    Register clients listed in a YAML file.

    Expected layout::

        clients:
          - client_id: c1
            client_secret: s1
            redirect_uris: [https://a/cb]
            scopes: [read]

    Clients that are already registered are skipped with a warning.

    Returns:
        client_ids registered by this call
    """
    with open(path, "r", encoding="utf-8") as f:
        document = yaml.safe_load(f) or {}

    entries = document.get("clients") or []
    if not isinstance(entries, list):
        raise ValueError(f"{path}: 'clients' must be a list")

    registered = []
    for entry in entries:
        for key in ("redirect_uris", "scopes"):
            if not isinstance(entry.get(key) or [], list):
                raise ValueError(f"{path}: '{key}' must be a list")

        client = Client.create(
            client_id=str(entry.get("client_id") or ""),
            client_secret=str(entry.get("client_secret") or ""),
            redirect_uris=entry.get("redirect_uris") or [],
            allowed_scopes=entry.get("scopes") or []
        )
        try:
            registry.register(client)
        except DuplicateClientError:
            logging.warning(f"Skipping already registered client from {path}: {client.client_id}")
            continue
        registered.append(client.client_id)

    logging.info(f"Loaded {len(registered)} OAuth client(s) from {path}")
    return registered
