"""
Tests for the OAuth client registry (in-memory and Redis backends).
"""

import json
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest
import redis

from client_registry import (
    Client,
    ClientRegistry,
    DuplicateClientError,
    InvalidClientError,
    RedisClientRegistry,
    load_clients_from_yaml,
)
from credential_store import StorageError


def make_client(client_id="c1", secret="s1", redirect_uris=("https://a/cb",), scopes=("read",)):
    return Client.create(client_id, secret, redirect_uris, scopes)


class TestClientRegistry:
    """Test the in-memory registry."""

    def test_register_and_lookup(self):
        registry = ClientRegistry()
        registry.register(make_client())

        client = registry.lookup("c1")
        assert client is not None
        assert client.client_id == "c1"
        assert client.redirect_uris == frozenset({"https://a/cb"})
        assert client.allowed_scopes == frozenset({"read"})

    def test_lookup_unknown(self):
        registry = ClientRegistry()
        assert registry.lookup("nope") is None
        assert registry.lookup(None) is None
        assert registry.lookup("") is None

    def test_duplicate_rejected(self):
        registry = ClientRegistry()
        registry.register(make_client())
        with pytest.raises(DuplicateClientError):
            registry.register(make_client(secret="other"))
        # Original registration is untouched
        assert registry.validate_secret("c1", "s1")

    @pytest.mark.parametrize("kwargs", [
        {"client_id": ""},
        {"secret": ""},
        {"redirect_uris": ()},
        {"redirect_uris": ("",)},
    ])
    def test_incomplete_client_rejected(self, kwargs):
        registry = ClientRegistry()
        with pytest.raises(InvalidClientError):
            registry.register(make_client(**kwargs))
        assert len(registry) == 0

    def test_validate_secret(self):
        registry = ClientRegistry()
        registry.register(make_client())

        assert registry.validate_secret("c1", "s1")
        assert not registry.validate_secret("c1", "s2")
        assert not registry.validate_secret("c1", "")
        assert not registry.validate_secret("c1", None)
        assert not registry.validate_secret("unknown", "s1")

    def test_concurrent_registration_single_winner(self):
        """Exactly one of many racing registrations of one client_id succeeds."""
        registry = ClientRegistry()
        barrier = threading.Barrier(16)

        def attempt(i):
            barrier.wait()
            try:
                registry.register(make_client(secret=f"s{i}"))
                return True
            except DuplicateClientError:
                return False

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(attempt, range(16)))

        assert results.count(True) == 1
        assert len(registry) == 1


class TestClient:
    """Test Client matching helpers."""

    def test_redirect_uri_exact_match_only(self):
        client = make_client(redirect_uris=("https://a/cb",))
        assert client.has_redirect_uri("https://a/cb")
        assert not client.has_redirect_uri("https://a/cb/")
        assert not client.has_redirect_uri("https://a/cb?x=1")
        assert not client.has_redirect_uri("https://a/")
        assert not client.has_redirect_uri("HTTPS://A/cb")
        assert not client.has_redirect_uri(None)

    def test_allows_scopes(self):
        client = make_client(scopes=("read", "write"))
        assert client.allows_scopes(["read"])
        assert client.allows_scopes(["read", "write"])
        assert not client.allows_scopes(["read", "admin"])

    def test_dict_round_trip(self):
        client = make_client(scopes=("write", "read"))
        data = client.to_dict()
        assert data["allowed_scopes"] == ["read", "write"]
        assert Client.from_dict(data) == client


class TestRedisClientRegistry:
    """Test the Redis-backed registry with a mocked client."""

    def test_register_uses_set_nx(self):
        mock_redis = MagicMock()
        mock_redis.set.return_value = True
        registry = RedisClientRegistry(mock_redis)

        registry.register(make_client())

        args, kwargs = mock_redis.set.call_args
        assert args[0] == "oauth:client:c1"
        assert json.loads(args[1])["client_id"] == "c1"
        assert kwargs["nx"] is True

    def test_register_duplicate(self):
        mock_redis = MagicMock()
        mock_redis.set.return_value = None  # NX refused
        registry = RedisClientRegistry(mock_redis)

        with pytest.raises(DuplicateClientError):
            registry.register(make_client())

    def test_lookup_and_validate(self):
        mock_redis = MagicMock()
        mock_redis.get.return_value = json.dumps(make_client().to_dict())
        registry = RedisClientRegistry(mock_redis)

        assert registry.lookup("c1").client_id == "c1"
        assert registry.validate_secret("c1", "s1")
        assert not registry.validate_secret("c1", "bad")
        mock_redis.get.assert_called_with("oauth:client:c1")

    def test_lookup_missing(self):
        mock_redis = MagicMock()
        mock_redis.get.return_value = None
        registry = RedisClientRegistry(mock_redis)

        assert registry.lookup("c1") is None
        assert not registry.validate_secret("c1", "s1")

    def test_redis_errors_become_storage_errors(self):
        mock_redis = MagicMock()
        mock_redis.get.side_effect = redis.ConnectionError("down")
        mock_redis.set.side_effect = redis.ConnectionError("down")
        registry = RedisClientRegistry(mock_redis)

        with pytest.raises(StorageError):
            registry.lookup("c1")
        with pytest.raises(StorageError):
            registry.register(make_client())

    def test_ping_failure(self):
        mock_redis = MagicMock()
        mock_redis.ping.side_effect = redis.ConnectionError("down")
        assert RedisClientRegistry(mock_redis).ping() is False


class TestLoadClientsFromYaml:
    """Test bootstrapping clients from a YAML file."""

    def test_load(self, tmp_path):
        path = tmp_path / "clients.yaml"
        path.write_text(
            "clients:\n"
            "  - client_id: c1\n"
            "    client_secret: s1\n"
            "    redirect_uris: [https://a/cb]\n"
            "    scopes: [read]\n"
            "  - client_id: c2\n"
            "    client_secret: s2\n"
            "    redirect_uris: [https://b/cb, https://b/alt]\n"
            "    scopes: [read, write]\n"
        )
        registry = ClientRegistry()

        loaded = load_clients_from_yaml(str(path), registry)

        assert loaded == ["c1", "c2"]
        assert registry.lookup("c2").redirect_uris == frozenset({"https://b/cb", "https://b/alt"})
        assert registry.validate_secret("c1", "s1")

    def test_duplicates_skipped(self, tmp_path):
        path = tmp_path / "clients.yaml"
        path.write_text(
            "clients:\n"
            "  - {client_id: c1, client_secret: s1, redirect_uris: [https://a/cb], scopes: [read]}\n"
        )
        registry = ClientRegistry()
        registry.register(make_client())

        assert load_clients_from_yaml(str(path), registry) == []
        assert len(registry) == 1

    def test_invalid_entry_raises(self, tmp_path):
        path = tmp_path / "clients.yaml"
        path.write_text("clients:\n  - {client_id: c1, client_secret: s1, redirect_uris: []}\n")

        with pytest.raises(InvalidClientError):
            load_clients_from_yaml(str(path), ClientRegistry())

    def test_clients_must_be_a_list(self, tmp_path):
        path = tmp_path / "clients.yaml"
        path.write_text("clients: {c1: s1}\n")

        with pytest.raises(ValueError):
            load_clients_from_yaml(str(path), ClientRegistry())

    @pytest.mark.parametrize("entry,field", [
        ("{client_id: c1, client_secret: s1, redirect_uris: 'https://a/cb', scopes: [read]}", "redirect_uris"),
        ("{client_id: c1, client_secret: s1, redirect_uris: ['https://a/cb'], scopes: read}", "scopes"),
    ])
    def test_scalar_uris_or_scopes_rejected(self, tmp_path, entry, field):
        path = tmp_path / "clients.yaml"
        path.write_text(f"clients:\n  - {entry}\n")
        registry = ClientRegistry()

        with pytest.raises(ValueError, match=field):
            load_clients_from_yaml(str(path), registry)
        assert len(registry) == 0

    def test_create_rejects_bare_strings(self):
        with pytest.raises(InvalidClientError):
            Client.create("c1", "s1", "https://a/cb", ["read"])
        with pytest.raises(InvalidClientError):
            Client.create("c1", "s1", ["https://a/cb"], "read")
