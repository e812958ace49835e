from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from pumpguard.storage.errors import StorageError
from pumpguard.storage.kv import MemoryKeyValueStore, RedisKeyValueStore


class TestMemoryKeyValueStore:
    def test_set_get_delete(self):
        store = MemoryKeyValueStore()
        store.set("a", "1")

        assert store.get("a") == "1"
        assert "a" in store
        store.delete("a")
        store.delete("missing")
        assert store.get("a") is None
        assert len(store) == 0

    def test_rejects_non_string_values(self):
        with pytest.raises(StorageError):
            MemoryKeyValueStore().set("a", 1)


class TestRedisKeyValueStore:
    def test_requires_url_or_client(self):
        with pytest.raises(ValueError):
            RedisKeyValueStore()

    def test_keys_are_namespaced(self):
        client = MagicMock()
        client.get.return_value = "value"
        store = RedisKeyValueStore(client=client, namespace="pg", ttl_seconds=60)

        store.set("hint", "value")
        assert store.get("hint") == "value"
        store.delete("hint")

        client.set.assert_called_once_with("pg:hint", "value", ex=60)
        client.get.assert_called_once_with("pg:hint")
        client.delete.assert_called_once_with("pg:hint")

    def test_bytes_decoded(self):
        client = MagicMock()
        client.get.return_value = b"raw"

        assert RedisKeyValueStore(client=client).get("k") == "raw"

    def test_errors_wrapped(self):
        client = MagicMock()
        client.get.side_effect = RedisConnectionError("down")
        client.set.side_effect = RedisConnectionError("down")
        store = RedisKeyValueStore(client=client)

        with pytest.raises(StorageError):
            store.get("k")
        with pytest.raises(StorageError) as excinfo:
            store.set("k", "v")
        assert excinfo.value.detail["key"] == "k"

    def test_verify_connection(self):
        client = MagicMock()
        RedisKeyValueStore(client=client).verify_connection()
        client.ping.assert_called_once()

        client.ping.side_effect = RedisConnectionError("refused")
        with pytest.raises(StorageError):
            RedisKeyValueStore(client=client).verify_connection()
