"""Tests for the session, verification-code and user stores.

The in-memory stores run against a fake clock; the Redis stores run against
a small in-process stand-in for the redis.asyncio client.
"""

import json

import pytest

from cocoauth.service.errors import ParseError
from cocoauth.storage.common import email_code_key, session_key
from cocoauth.storage.errors import ConstraintViolation
from cocoauth.storage.memory import (
    MemorySessionStore,
    MemoryUserStore,
    MemoryVerificationCodeStore,
)
from cocoauth.storage.models import ClientType, ProfilePayload
from cocoauth.storage.redis_cache import RedisSessionStore, RedisVerificationCodeStore

WEB = ClientType.WEB
MOBILE = ClientType.MOBILE


class FakeRedisClient:
    def __init__(self):
        self.values = {}
        self.ttls = {}

    async def set(self, key, value, ex=None):
        self.values[key] = value
        self.ttls[key] = ex

    async def get(self, key):
        return self.values.get(key)

    async def delete(self, key):
        self.values.pop(key, None)
        self.ttls.pop(key, None)


class FakeRotateScript:
    """Mirrors the compare-and-set Lua script against FakeRedisClient."""

    def __init__(self, client):
        self.client = client
        self.invocations = []

    async def __call__(self, keys, args):
        self.invocations.append((keys, args))
        key = keys[0]
        expected, new_value, ttl = args
        if self.client.values.get(key) == expected:
            self.client.values[key] = new_value
            self.client.ttls[key] = ttl
            return 1
        return 0


class FakeCache:
    def __init__(self):
        self.client = FakeRedisClient()
        self.rotate_script = FakeRotateScript(self.client)


class TestKeys:
    def test_session_key_includes_client_type(self):
        assert session_key(WEB, "42") == "auth:refresh:WEB:42"
        assert session_key(MOBILE, "42") == "auth:refresh:MOBILE:42"

    def test_email_key_is_normalized(self):
        assert email_code_key("  Alice@Example.COM ") == "auth:email_code:alice@example.com"

    def test_client_type_parse_defaults_to_web(self):
        assert ClientType.parse(None) is WEB
        assert ClientType.parse("") is WEB
        assert ClientType.parse(" mobile ") is MOBILE
        with pytest.raises(ValueError):
            ClientType.parse("TABLET")


class TestMemorySessionStore:
    async def test_put_get_delete(self, clock):
        store = MemorySessionStore(clock)
        await store.put(WEB, "u1", "token-1", 600)

        assert await store.get(WEB, "u1") == "token-1"
        await store.delete(WEB, "u1")
        assert await store.get(WEB, "u1") is None
        # Deleting again is not an error
        await store.delete(WEB, "u1")

    async def test_client_types_are_isolated(self, clock):
        store = MemorySessionStore(clock)
        await store.put(MOBILE, "u1", "mobile-token", 600)
        await store.put(WEB, "u1", "web-token", 600)

        assert await store.get(MOBILE, "u1") == "mobile-token"
        assert await store.get(WEB, "u1") == "web-token"

    async def test_entry_expires_with_ttl(self, clock):
        store = MemorySessionStore(clock)
        await store.put(WEB, "u1", "token-1", 10)

        clock.advance(9)
        assert await store.get(WEB, "u1") == "token-1"
        clock.advance(1)
        assert await store.get(WEB, "u1") is None

    async def test_put_overwrites(self, clock):
        store = MemorySessionStore(clock)
        await store.put(WEB, "u1", "old", 600)
        await store.put(WEB, "u1", "new", 600)

        assert await store.matches(WEB, "u1", "new")
        assert not await store.matches(WEB, "u1", "old")

    async def test_rotate_swaps_only_on_match(self, clock):
        store = MemorySessionStore(clock)
        await store.put(WEB, "u1", "current", 600)

        assert not await store.rotate(WEB, "u1", "stale", "next", 600)
        assert await store.get(WEB, "u1") == "current"
        assert await store.rotate(WEB, "u1", "current", "next", 600)
        assert await store.get(WEB, "u1") == "next"
        assert not await store.rotate(WEB, "u1", "current", "again", 600)

    async def test_rotate_on_absent_session_fails(self, clock):
        store = MemorySessionStore(clock)
        assert not await store.rotate(WEB, "u1", "anything", "next", 600)
        assert await store.get(WEB, "u1") is None

    async def test_rotate_resets_ttl(self, clock):
        store = MemorySessionStore(clock)
        await store.put(WEB, "u1", "current", 10)
        clock.advance(8)
        assert await store.rotate(WEB, "u1", "current", "next", 10)
        clock.advance(8)
        assert await store.get(WEB, "u1") == "next"


class TestMemoryVerificationCodeStore:
    async def test_newer_code_replaces_older(self, clock):
        store = MemoryVerificationCodeStore(clock)
        await store.put("a@example.com", "FIRST00000", 300)
        await store.put("A@example.com", "SECOND0000", 300)

        assert await store.get("a@example.com") == "SECOND0000"

    async def test_code_expires(self, clock):
        store = MemoryVerificationCodeStore(clock)
        await store.put("a@example.com", "CODE000000", 300)
        clock.advance(300)
        assert await store.get("a@example.com") is None


class TestRedisStores:
    async def test_session_put_uses_composite_key_and_ttl(self):
        cache = FakeCache()
        store = RedisSessionStore(cache)
        await store.put(MOBILE, "u1", "token-1", 600)

        assert cache.client.values == {"auth:refresh:MOBILE:u1": "token-1"}
        assert cache.client.ttls["auth:refresh:MOBILE:u1"] == 600
        assert await store.matches(MOBILE, "u1", "token-1")
        assert not await store.matches(WEB, "u1", "token-1")

    async def test_session_rotate_goes_through_script(self):
        cache = FakeCache()
        store = RedisSessionStore(cache)
        await store.put(WEB, "u1", "current", 600)

        assert await store.rotate(WEB, "u1", "current", "next", 600)
        assert not await store.rotate(WEB, "u1", "current", "other", 600)
        assert await store.get(WEB, "u1") == "next"
        keys, args = cache.rotate_script.invocations[0]
        assert keys == ["auth:refresh:WEB:u1"]
        assert args == ["current", "next", 600]

    async def test_session_delete(self):
        cache = FakeCache()
        store = RedisSessionStore(cache)
        await store.put(WEB, "u1", "token", 600)
        await store.delete(WEB, "u1")
        assert await store.get(WEB, "u1") is None

    async def test_code_store_keys_by_normalized_email(self):
        cache = FakeCache()
        store = RedisVerificationCodeStore(cache)
        await store.put("Bob@Example.com", "ABCDE12345", 300)

        assert cache.client.values == {"auth:email_code:bob@example.com": "ABCDE12345"}
        assert cache.client.ttls["auth:email_code:bob@example.com"] == 300
        assert await store.get("bob@example.com") == "ABCDE12345"


class TestMemoryUserStore:
    def test_duplicate_login_id_rejected(self):
        users = MemoryUserStore()
        users.create_user("alice", "digest")
        with pytest.raises(ConstraintViolation):
            users.create_user("alice", "digest")

    def test_duplicate_email_rejected_case_insensitively(self):
        users = MemoryUserStore()
        users.create_user("alice", "digest", email="alice@example.com")
        assert users.exists_by_email("ALICE@example.com")
        with pytest.raises(ConstraintViolation):
            users.create_user("alice2", "digest", email="Alice@Example.com")

    def test_exists_by_phone(self):
        users = MemoryUserStore()
        users.create_user("alice", "digest", phone="010-1234-5678")
        assert users.exists_by_phone("010-1234-5678")
        assert not users.exists_by_phone("010-0000-0000")

    def test_lookup_returns_copy(self):
        users = MemoryUserStore()
        users.create_user("alice", "digest")
        found = users.find_by_login_id("alice")
        found.password_digest = "changed"

        assert users.find_by_login_id("alice").password_digest == "digest"

    def test_save_unknown_user_rejected(self):
        users = MemoryUserStore()
        user = users.create_user("alice", "digest")
        other = MemoryUserStore()
        with pytest.raises(ConstraintViolation):
            other.save(user)

    def test_state_file_roundtrip(self, tmp_path):
        path = tmp_path / "users.json"
        users = MemoryUserStore(state_path=path)
        created = users.create_user(
            "alice",
            "digest",
            "sha256",
            email="alice@example.com",
            profile=ProfilePayload(message="hi"),
        )

        reloaded = MemoryUserStore(state_path=path).find_by_login_id("alice")

        assert reloaded.id == created.id
        assert reloaded.password_algo == "sha256"
        assert reloaded.email == "alice@example.com"
        assert ProfilePayload.from_json(reloaded.profile).message == "hi"

    def test_malformed_state_file_raises_parse_error(self, tmp_path):
        path = tmp_path / "users.json"
        path.write_text(json.dumps({"users": [{"login_id": "alice"}]}))
        with pytest.raises(ParseError):
            MemoryUserStore(state_path=path)


class TestProfilePayload:
    def test_empty_blob_is_default_profile(self):
        assert ProfilePayload.from_json(None) == ProfilePayload()

    def test_invalid_blob_raises_parse_error(self):
        with pytest.raises(ParseError):
            ProfilePayload.from_json("{not json")
