"""
Tests for MutationCoordinator: writes followed by their cache effects.
"""

import asyncio

import pytest

from bizsync.cache import (
    Invalidate,
    Mutation,
    MutationCoordinator,
    Patch,
    QueryOrchestrator,
    Remove,
    SetValue,
)
from bizsync.errors import DanglingReferenceError, ValidationError
from bizsync.keys import branches_key, business_key, business_list_key, settings_key
from bizsync.testing import ManualClock


class RecordingWrite:
    """Write that counts calls and returns (or raises) a fixed outcome."""

    def __init__(self, result=None, error=None, gate=None):
        self.result = result
        self.error = error
        self.gate = gate
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def queries():
    return QueryOrchestrator(clock=ManualClock())


@pytest.fixture
def coordinator(queries):
    return MutationCoordinator(queries)


@pytest.mark.asyncio
class TestEffects:

    async def test_effects_apply_after_success(self, queries, coordinator):
        queries.set_value(business_list_key(), ["b1", "b2"])
        write = RecordingWrite(result="ok")

        result = await coordinator.execute(Mutation(
            name="drop_b1",
            write=write,
            effects=[
                Patch(business_list_key(), lambda items: [i for i in items if i != "b1"]),
                Invalidate(business_list_key()),
            ],
        ))

        entry = queries.peek(business_list_key())
        assert result == "ok"
        assert entry.value == ["b2"]
        assert entry.stale
        assert write.calls == 1

    async def test_effects_built_from_result(self, queries, coordinator):
        await coordinator.execute(Mutation(
            name="save_settings",
            write=RecordingWrite(result={"allow_transfers": False}),
            effects=lambda stored: [SetValue(settings_key("b1"), stored)],
        ))
        assert queries.peek(settings_key("b1")).value == {"allow_transfers": False}

    async def test_remove_effect_is_deep(self, queries, coordinator):
        queries.set_value(branches_key("b1"), [])
        queries.set_value(settings_key("b1"), None)
        queries.set_value(branches_key("b2"), [])

        await coordinator.execute(Mutation(
            name="delete_business",
            write=RecordingWrite(),
            effects=[Remove(business_key("b1"), deep=True)],
        ))

        assert branches_key("b1") not in queries.store
        assert settings_key("b1") not in queries.store
        assert branches_key("b2") in queries.store


@pytest.mark.asyncio
class TestFailures:

    async def test_write_error_is_reraised_unchanged(self, queries, coordinator):
        queries.set_value(business_list_key(), ["b1"])
        error = ValidationError("rejected", status=422)

        with pytest.raises(ValidationError) as info:
            await coordinator.execute(Mutation(
                name="drop_b1",
                write=RecordingWrite(error=error),
                effects=[Patch(business_list_key(), lambda items: [])],
            ))

        entry = queries.peek(business_list_key())
        assert info.value is error
        assert entry.value == ["b1"]
        assert not entry.stale
        assert coordinator.failures == 1

    async def test_guard_rejects_before_write(self, coordinator):
        write = RecordingWrite()

        def guard():
            raise DanglingReferenceError("default branch missing", branch_id="br-3")

        with pytest.raises(DanglingReferenceError):
            await coordinator.execute(Mutation(name="save", write=write, guards=[guard]))

        assert write.calls == 0
        assert coordinator.writes == 0
        assert coordinator.rejections == 1


@pytest.mark.asyncio
class TestEffectPlanning:

    async def test_failing_patch_applies_no_effect(self, queries, coordinator):
        queries.set_value(business_list_key(), ["b1"])
        queries.set_value(branches_key("b1"), ["br-1"])
        write = RecordingWrite(result="ok")

        def broken(items):
            raise KeyError("missing field")

        with pytest.raises(KeyError):
            await coordinator.execute(Mutation(
                name="rename",
                write=write,
                effects=[
                    Patch(business_list_key(), lambda items: items + ["b2"]),
                    Patch(branches_key("b1"), broken),
                ],
            ))

        listing = queries.peek(business_list_key())
        branches = queries.peek(branches_key("b1"))
        assert write.calls == 1
        assert listing.value == ["b1"]
        assert branches.value == ["br-1"]
        assert listing.stale and branches.stale
        assert coordinator.effect_failures == 1

    async def test_patches_on_one_key_compose(self, queries, coordinator):
        queries.set_value(business_list_key(), [])
        await coordinator.execute(Mutation(
            name="append_twice",
            write=RecordingWrite(),
            effects=[
                Patch(business_list_key(), lambda items: items + ["a"]),
                Patch(business_list_key(), lambda items: items + ["b"]),
            ],
        ))
        assert queries.peek(business_list_key()).value == ["a", "b"]

    async def test_patch_after_deep_remove_is_skipped(self, queries, coordinator):
        queries.set_value(branches_key("b1"), ["br-1"])
        touched = []

        await coordinator.execute(Mutation(
            name="delete_business",
            write=RecordingWrite(),
            effects=[
                Remove(business_key("b1"), deep=True),
                Patch(branches_key("b1"), lambda items: touched.append(items) or items),
            ],
        ))

        assert touched == []
        assert branches_key("b1") not in queries.store


@pytest.mark.asyncio
class TestExactlyOnce:

    async def test_same_mutation_from_two_triggers_writes_once(self, queries, coordinator):
        queries.set_value(business_list_key(), [])
        write = RecordingWrite(result="new")
        mutation = Mutation(
            name="append",
            write=write,
            effects=[Patch(business_list_key(), lambda items: items + ["new"])],
        )

        results = await asyncio.gather(coordinator.execute(mutation), coordinator.execute(mutation))

        assert results == ["new", "new"]
        assert write.calls == 1
        assert queries.peek(business_list_key()).value == ["new"]

    async def test_distinct_mutations_are_not_deduplicated(self, coordinator):
        write = RecordingWrite()
        await asyncio.gather(
            coordinator.execute(Mutation(name="a", write=write)),
            coordinator.execute(Mutation(name="a", write=write)),
        )
        assert write.calls == 2

    async def test_failed_mutation_reports_same_error_to_every_trigger(self, coordinator):
        error = ValidationError("nope")
        mutation = Mutation(name="bad", write=RecordingWrite(error=error))

        outcomes = await asyncio.gather(
            coordinator.execute(mutation),
            coordinator.execute(mutation),
            return_exceptions=True,
        )
        assert outcomes == [error, error]

    async def test_pending_names(self, coordinator):
        gate = asyncio.Event()
        task = asyncio.ensure_future(
            coordinator.execute(Mutation(name="slow", write=RecordingWrite(gate=gate)))
        )
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert coordinator.pending == ["slow"]

        gate.set()
        await task
        assert coordinator.pending == []
