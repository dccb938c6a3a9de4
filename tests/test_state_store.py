"""Tests for state/backends.py and state/store.py."""

import json
import os

import pytest

from strata.core.errors import LockContentionError, StateCorruptionError
from strata.resources.models import ResourceKind, ResourceState, ResourceStatus
from strata.state.backends import FileStateBackend, lock_payload
from strata.state.store import STATE_VERSION, StateStore, parse_document, render_document


def vpc_state(identity="vpc-1", **attributes):
    return ResourceState(
        name="vpc",
        kind=ResourceKind.NETWORK,
        identity=identity,
        attributes=attributes or {"cidr_block": "10.0.0.0/16"},
        status=ResourceStatus.CREATED,
    )


class TestDocument:
    def test_round_trip(self):
        document = render_document({"vpc": vpc_state()}, serial=3)
        states, serial = parse_document(document)
        assert serial == 3
        assert states["vpc"].identity == "vpc-1"
        assert document["version"] == STATE_VERSION

    def test_empty(self):
        assert parse_document(None) == ({}, 0)

    def test_wrong_version(self):
        with pytest.raises(StateCorruptionError):
            parse_document({"version": 99, "resources": {}})

    def test_invalid_entry(self):
        with pytest.raises(StateCorruptionError):
            parse_document({"version": STATE_VERSION, "resources": {"vpc": {"name": "vpc"}}})

    def test_name_mismatch(self):
        document = render_document({"vpc": vpc_state()}, serial=1)
        document["resources"]["other"] = document["resources"].pop("vpc")
        with pytest.raises(StateCorruptionError):
            parse_document(document)


class TestFileStateBackend:
    def test_write_then_read(self, tmp_path):
        backend = FileStateBackend(tmp_path / "state.json")
        backend.write({"version": 1, "serial": 1, "resources": {}})
        assert backend.read() == {"version": 1, "serial": 1, "resources": {}}

    def test_missing_file_reads_as_none(self, tmp_path):
        assert FileStateBackend(tmp_path / "absent.json").read() is None

    def test_unparseable_file(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json")
        with pytest.raises(StateCorruptionError):
            FileStateBackend(path).read()

    def test_failed_replace_keeps_previous_document(self, tmp_path, monkeypatch):
        path = tmp_path / "state.json"
        backend = FileStateBackend(path)
        backend.write({"serial": 1})

        def broken_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", broken_replace)
        with pytest.raises(OSError):
            backend.write({"serial": 2})

        assert json.loads(path.read_text()) == {"serial": 1}
        assert not list(tmp_path.glob("*.tmp"))

    def test_backup_holds_previous_document(self, tmp_path):
        backend = FileStateBackend(tmp_path / "state.json")
        backend.write({"serial": 1})
        backend.write({"serial": 2})
        assert json.loads(backend.backup_path.read_text()) == {"serial": 1}

    def test_lock_is_exclusive(self, tmp_path):
        backend = FileStateBackend(tmp_path / "state.json")
        backend.acquire(lock_payload("run-1", "apply"))

        with pytest.raises(LockContentionError) as exc_info:
            FileStateBackend(tmp_path / "state.json").acquire(lock_payload("run-2", "apply"))
        assert exc_info.value.holder["run_id"] == "run-1"

        backend.release("run-1")
        assert backend.lock_info() is None

    def test_release_ignores_foreign_lock(self, tmp_path):
        backend = FileStateBackend(tmp_path / "state.json")
        backend.acquire(lock_payload("run-1", "apply"))
        backend.release("run-2")
        assert backend.lock_info()["run_id"] == "run-1"

    def test_force_unlock(self, tmp_path):
        backend = FileStateBackend(tmp_path / "state.json")
        backend.acquire(lock_payload("crashed", "apply"))
        assert backend.force_unlock() is True
        assert backend.force_unlock() is False


class TestStateStore:
    @pytest.mark.asyncio
    async def test_record_and_forget(self, store, backend):
        async with store.lock("run-1"):
            await store.record(vpc_state())
            assert store.get("vpc").identity == "vpc-1"
            await store.forget("vpc")
        assert store.get("vpc") is None
        assert backend.writes == 2
        assert backend.document["serial"] == 2

    @pytest.mark.asyncio
    async def test_writes_require_lock(self, store):
        with pytest.raises(RuntimeError):
            await store.record(vpc_state())

    @pytest.mark.asyncio
    async def test_second_lock_fails_immediately(self, backend):
        first, second = StateStore(backend), StateStore(backend)
        async with first.lock("run-1"):
            with pytest.raises(LockContentionError):
                async with second.lock("run-2"):
                    pass
        assert backend.holder is None

    @pytest.mark.asyncio
    async def test_lock_released_on_error(self, store, backend):
        with pytest.raises(ValueError):
            async with store.lock("run-1"):
                raise ValueError("boom")
        assert backend.holder is None

    @pytest.mark.asyncio
    async def test_failed_write_leaves_previous_state(self, store, backend):
        async with store.lock("run-1"):
            await store.record(vpc_state("vpc-1"))
            backend.fail_next_write = OSError("disk full")
            with pytest.raises(OSError):
                await store.record(vpc_state("vpc-2"))
            assert store.get("vpc").identity == "vpc-1"
        assert backend.document["resources"]["vpc"]["identity"] == "vpc-1"

    @pytest.mark.asyncio
    async def test_save_replaces_full_set(self, store, backend):
        async with store.lock("run-1"):
            await store.record(vpc_state())
            await store.save({})
        assert backend.document["resources"] == {}

    @pytest.mark.asyncio
    async def test_load_from_file(self, tmp_path):
        backend = FileStateBackend(tmp_path / "state.json")
        async with StateStore(backend).lock("run-1") as locked:
            await locked.record(vpc_state())

        states = await StateStore(backend).load()
        assert list(states) == ["vpc"]
        assert states["vpc"].status is ResourceStatus.CREATED
