"""Tests for the embedding maintenance loop."""

import asyncio

import pytest

from conftest import FakeProvider
from trackchar import db
from trackchar.maintenance import MaintenanceState
from trackchar.models import CharacterizationRecord
from trackchar.recommend import find_similar


def _seed(store, *items: tuple[str, str]) -> None:
    for record_id, characteristics in items:
        store._records[record_id] = CharacterizationRecord(id=record_id, characteristics=characteristics)


class TestRunPass:
    @pytest.mark.asyncio
    async def test_propagates_to_shared_characteristics(self, store, provider: FakeProvider) -> None:
        _seed(store, ("a", "dark ambient"), ("b", "dark ambient"), ("c", "surf rock"))
        store._records["b"].embedding = []

        result = await store.maintenance.run_pass()

        assert result.processed == 2
        assert provider.calls.count("dark ambient") == 1
        assert store.get("a").embedding == store.get("b").embedding
        assert store.get("a").has_embedding
        assert store.get("c").has_embedding
        assert not store.is_dirty

    @pytest.mark.asyncio
    async def test_skips_records_with_embeddings(self, store, provider: FakeProvider) -> None:
        _seed(store, ("a", "jazz"))
        store._records["a"].embedding = [1.0, 0.0, 0.0, 0.0]
        result = await store.maintenance.run_pass()
        assert result.processed == 0
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_failure_logged_and_skipped(self, store, provider: FakeProvider) -> None:
        _seed(store, ("a", "broken"), ("b", "fine"))
        provider.fail_on.add("broken")

        result = await store.maintenance.run_pass()

        assert result.failed == 1
        assert result.processed == 1
        assert store.get("a").embedding == []
        assert store.get("b").has_embedding

    @pytest.mark.asyncio
    async def test_disabled_clears_everything(self, store, settings) -> None:
        _seed(store, ("a", "rock"), ("b", "pop"))
        await store.maintenance.run_pass()
        assert all(r.has_embedding for r in store.all())

        settings.local_embeddings_enabled = False
        result = await store.maintenance.run_pass()

        assert result.cleared == 2
        assert all(r.embedding == [] for r in store.all())
        assert await find_similar(store, "rock") == []

        settings.local_embeddings_enabled = True
        assert [r.record.id for r in await find_similar(store, "rock")][0] == "a"

    @pytest.mark.asyncio
    async def test_flag_flip_aborts_pass(self, store, settings, provider: FakeProvider) -> None:
        _seed(store, *((f"t{i}", f"text {i}") for i in range(5)))
        original = provider.embed

        async def embed_then_disable(text: str) -> list[float]:
            settings.local_embeddings_enabled = False
            return await original(text)

        provider.embed = embed_then_disable

        result = await store.maintenance.run_pass()

        assert result.aborted
        assert result.processed == 1
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_checkpoints_every_ten(self, store, monkeypatch: pytest.MonkeyPatch) -> None:
        _seed(store, *((f"t{i}", f"text {i}") for i in range(25)))
        writes = []
        real_write = db.write_records

        def counting(path, records) -> None:
            writes.append(len(records))
            real_write(path, records)

        monkeypatch.setattr(db, "write_records", counting)
        store.mark_dirty()

        result = await store.maintenance.run_pass()

        assert result.processed == 25
        assert len(writes) == 3

    @pytest.mark.asyncio
    async def test_single_flight(self, store, provider: FakeProvider) -> None:
        _seed(store, ("a", "slow"))
        provider.gate = asyncio.Event()

        first = asyncio.create_task(store.maintenance.run_pass())
        while not provider.calls:
            await asyncio.sleep(0)
        assert store.maintenance.state is MaintenanceState.SCANNING

        second = await store.maintenance.run_pass()
        assert second.skipped

        provider.gate.set()
        result = await first
        assert result.processed == 1
        assert store.maintenance.state is MaintenanceState.IDLE
        assert provider.calls == ["slow"]


class TestRegenerateAll:
    @pytest.mark.asyncio
    async def test_reports_progress(self, store) -> None:
        _seed(store, ("a", "one"), ("b", "two"), ("c", "two"))
        store._records["d"] = CharacterizationRecord(id="d", characteristics="three", embedding=[0.5] * 4)
        seen = []

        result = await store.maintenance.regenerate_all(lambda current, total: seen.append((current, total)))

        assert result.processed == 2
        assert seen == [(1, 2), (2, 2)]
        assert store.get("d").embedding == [0.5] * 4

    @pytest.mark.asyncio
    async def test_disabled(self, store, settings, provider: FakeProvider) -> None:
        _seed(store, ("a", "one"))
        settings.local_embeddings_enabled = False
        result = await store.maintenance.regenerate_all()
        assert result.aborted
        assert provider.calls == []
        assert store.get("a").embedding is None


class TestPeriodic:
    @pytest.mark.asyncio
    async def test_start_runs_immediately_and_stops(self, store) -> None:
        _seed(store, ("a", "startup"))
        store.start()
        assert store.maintenance.running

        for _ in range(200):
            if store.get("a").has_embedding:
                break
            await asyncio.sleep(0.01)
        assert store.get("a").has_embedding

        await store.close()
        assert not store.maintenance.running

    @pytest.mark.asyncio
    async def test_no_immediate_pass_when_disabled(self, store, settings, provider: FakeProvider) -> None:
        _seed(store, ("a", "startup"))
        settings.local_embeddings_enabled = False
        store.start()
        await asyncio.sleep(0.05)
        await store.close()
        assert provider.calls == []
        assert store.get("a").embedding is None


class TestWaiting:
    @pytest.mark.asyncio
    async def test_waiter_runs_as_soon_as_pass_ends(self, store, provider: FakeProvider) -> None:
        _seed(store, ("a", "slow"))
        provider.gate = asyncio.Event()

        first = asyncio.create_task(store.maintenance.run_pass())
        while not provider.calls:
            await asyncio.sleep(0)
        waiter = asyncio.create_task(store.maintenance.regenerate_all())
        await asyncio.sleep(0)
        assert not waiter.done()

        provider.gate.set()
        await first
        result = await asyncio.wait_for(waiter, timeout=0.05)

        assert not result.skipped
        assert result.processed == 0
        assert store.maintenance.state is MaintenanceState.IDLE

    @pytest.mark.asyncio
    async def test_several_waiters_take_turns(self, store, provider: FakeProvider) -> None:
        _seed(store, ("a", "slow"))
        provider.gate = asyncio.Event()

        first = asyncio.create_task(store.maintenance.run_pass())
        while not provider.calls:
            await asyncio.sleep(0)
        waiters = [asyncio.create_task(store.maintenance.ensure_embeddings()) for _ in range(3)]

        provider.gate.set()
        await first
        results = await asyncio.wait_for(asyncio.gather(*waiters), timeout=1.0)

        assert not any(r.skipped for r in results)
        assert provider.calls == ["slow"]
