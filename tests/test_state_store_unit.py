#!/usr/bin/env python3
"""
Unit tests for the state store.

Tests snapshot derivation, change detection, listener fan-out,
persistence and serialization of concurrent replacements.
"""

import asyncio
import json
import pytest

from authsync.auth.storage import MemoryStorage
from authsync.listeners import ListenerRegistry
from authsync.state_store import (
    StateStore, build_snapshot, read_blob, write_blob,
    resolve_active_session, resolve_active_organization
)
from shared.exceptions import StorageError
from helpers import make_client, make_session, make_user, make_organization


def make_store(storage=None, on_replaced=None):
    listeners = ListenerRegistry()
    store = StateStore(storage or MemoryStorage(), listeners, "client", on_replaced=on_replaced)
    return store, listeners


class BrokenStorage(MemoryStorage):
    def get(self, key):
        raise StorageError("unreadable", key=key)

    def set(self, key, value):
        raise StorageError("unwritable", key=key)


class TestSnapshotDerivation:
    """Test resolution of the active session, user and organization."""

    def test_active_views(self):
        acme = make_organization("org_1", "acme")
        user = make_user(organizations=[acme])
        client = make_client([make_session("sess_1", user=user, organization_id="org_1")])

        snapshot = build_snapshot(client, 1)

        assert snapshot.session.id == "sess_1"
        assert snapshot.user.id == "user_1"
        assert snapshot.organization == acme

    def test_dangling_active_session(self):
        """Test an active pointer to an absent session resolves to None."""
        client = make_client([make_session("sess_1")], active="sess_gone")

        assert resolve_active_session(client) is None
        assert build_snapshot(client, 1).user is None

    def test_organization_without_membership(self):
        """Test an organization the user is not a member of resolves to None."""
        session = make_session(organization_id="org_other")

        assert resolve_active_organization(session) is None

    def test_no_client(self):
        snapshot = build_snapshot(None, 0)

        assert snapshot.session is None
        assert snapshot.organization is None


class TestReplace:
    """Test StateStore.replace."""

    @pytest.mark.asyncio
    async def test_replace_notifies_and_persists(self):
        storage = MemoryStorage()
        store, listeners = make_store(storage)
        received = []
        listeners.add_listener(lambda *args: received.append(args))
        client = make_client()

        changed = await store.replace(client)

        assert changed is True
        assert store.version == 1
        assert store.get_current() == client
        assert received == [(client, client.sessions[0], client.sessions[0].user, None)]
        assert json.loads(storage.get("client"))["id"] == "client_1"

    @pytest.mark.asyncio
    async def test_unchanged_client_does_not_notify(self):
        """Test an equal client leaves version and listeners untouched."""
        store, listeners = make_store()
        received = []
        listeners.add_listener(lambda *args: received.append(args))

        await store.replace(make_client(updated_at=5))
        changed = await store.replace(make_client(updated_at=5))

        assert changed is False
        assert store.version == 1
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_same_key_keeps_newer_payload(self):
        """Test a profile edit that leaves the version key alone is still stored."""
        storage = MemoryStorage()
        store, listeners = make_store(storage)
        received = []
        listeners.add_listener(lambda *args: received.append(args))
        await store.replace(make_client(updated_at=5))

        renamed = make_client(updated_at=5)
        renamed.sessions[0].user.first_name = "Grace"
        changed = await store.replace(renamed)

        assert changed is False
        assert store.version == 1
        assert len(received) == 1
        assert store.get_current() is renamed
        assert store.active_user().first_name == "Grace"
        stored = json.loads(storage.get("client"))
        assert stored["sessions"][0]["user"]["first_name"] == "Grace"

    @pytest.mark.asyncio
    async def test_user_membership_change_notifies(self):
        """Test a client whose only change is a new user membership is applied."""
        store, listeners = make_store()
        received = []
        listeners.add_listener(lambda *args: received.append(args))
        await store.replace(make_client(updated_at=5))

        joined = make_client(
            [make_session("sess_1", user=make_user(organizations=[make_organization("org_1", "acme")]))],
            updated_at=5
        )
        changed = await store.replace(joined)

        assert changed is True
        assert store.version == 2
        assert store.get_current() is joined
        assert len(store.active_user().organization_memberships) == 1
        assert received[-1][2].organization_memberships[0].organization.slug == "acme"

    @pytest.mark.asyncio
    async def test_clear_removes_persisted_entry(self):
        storage = MemoryStorage()
        store, listeners = make_store(storage)
        received = []
        listeners.add_listener(lambda *args: received.append(args))
        await store.replace(make_client())

        changed = await store.replace(None)

        assert changed is True
        assert store.get_current() is None
        assert storage.get("client") is None
        assert received[-1] == (None, None, None, None)

    @pytest.mark.asyncio
    async def test_clear_when_empty_is_noop(self):
        store, _ = make_store()

        assert await store.replace(None) is False
        assert store.version == 0

    @pytest.mark.asyncio
    async def test_persist_false_skips_storage(self):
        storage = MemoryStorage()
        store, _ = make_store(storage)

        await store.replace(make_client(), persist=False)

        assert storage.get("client") is None

    @pytest.mark.asyncio
    async def test_expected_version_mismatch_discards(self):
        """Test a replacement based on an outdated version is dropped."""
        store, listeners = make_store()
        received = []
        listeners.add_listener(lambda *args: received.append(args))
        await store.replace(make_client(updated_at=1))

        changed = await store.replace(make_client(updated_at=2), expected_version=0)

        assert changed is False
        assert store.get_current().updated_at == 1
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_storage_failure_still_replaces(self):
        """Test that a failed write-back keeps the in-memory state."""
        store, _ = make_store(BrokenStorage())

        assert await store.replace(make_client()) is True
        assert store.get_current().id == "client_1"

    @pytest.mark.asyncio
    async def test_hook_receives_previous_and_current(self):
        seen = []
        store, _ = make_store(on_replaced=lambda previous, current: seen.append((previous, current)))

        await store.replace(make_client())

        previous, current = seen[0]
        assert previous.client is None
        assert current.client.id == "client_1"
        assert current.version == 1

    @pytest.mark.asyncio
    async def test_hook_error_does_not_block_listeners(self):
        def broken_hook(previous, current):
            raise RuntimeError("hook failure")

        store, listeners = make_store(on_replaced=broken_hook)
        received = []
        listeners.add_listener(lambda *args: received.append(args))

        await store.replace(make_client())

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_concurrent_replacements_are_serialized(self):
        """Test listeners see each accepted replacement once, in version order."""
        store, listeners = make_store()
        seen_versions = []
        listeners.add_listener(lambda client, *rest: seen_versions.append(store.version))

        results = await asyncio.gather(*[
            store.replace(make_client(updated_at=i)) for i in range(1, 51)
        ])

        assert all(results)
        assert store.version == 50
        assert seen_versions == list(range(1, 51))


class TestLoadCached:
    """Test reading the persisted client."""

    @pytest.mark.asyncio
    async def test_round_trip(self):
        storage = MemoryStorage()
        store, _ = make_store(storage)
        client = make_client()
        await store.replace(client)

        fresh_store, _ = make_store(storage)

        assert await fresh_store.load_cached() == client

    @pytest.mark.asyncio
    async def test_malformed_entry_is_a_miss(self):
        storage = MemoryStorage()
        storage.set("client", "{not json")
        store, _ = make_store(storage)

        assert await store.load_cached() is None

    @pytest.mark.asyncio
    async def test_undecodable_client_is_a_miss(self):
        storage = MemoryStorage()
        storage.set("client", json.dumps({"id": ""}))
        store, _ = make_store(storage)

        assert await store.load_cached() is None

    @pytest.mark.asyncio
    async def test_unreadable_storage_is_a_miss(self):
        store, _ = make_store(BrokenStorage())

        assert await store.load_cached() is None


class TestBlobHelpers:
    """Test read_blob and write_blob."""

    @pytest.mark.asyncio
    async def test_non_object_is_ignored(self):
        storage = MemoryStorage()
        storage.set("environment", "[1, 2]")

        assert await read_blob(storage, "environment") is None

    @pytest.mark.asyncio
    async def test_write_failure_returns_false(self):
        assert await write_blob(BrokenStorage(), "client", {"id": "client_1"}) is False
