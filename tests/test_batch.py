"""Tests for batch generation against the master image."""

from __future__ import annotations

import asyncio

import pytest

from batch import BatchOrchestrator
from conftest import Gate, make_upload
from errors import GenerationError, NotFoundError, ValidationError
from master import MasterOrchestrator
from models import UnitReferenceImage
from progress import ProgressEmitter
from prompt_composer import PromptComposer
from reference_images import ReferenceImagePipeline


async def _batch(client, events=None, shots=("Walking", "Seated", "Close-up")) -> BatchOrchestrator:
    emitter = ProgressEmitter(events.append if events is not None else None)
    pipeline = ReferenceImagePipeline(client, emitter=emitter)
    pipeline.add([make_upload("a.png")])
    await pipeline.process_all()
    composer = PromptComposer()
    composer.set_consistent_prompt("Navy suit")
    composer.set_unit_prompt(composer.unit_zero.id, shots[0])
    for shot in shots[1:]:
        composer.add_unit(shot)
    master = MasterOrchestrator(client, pipeline, composer, emitter)
    await master.generate()
    return BatchOrchestrator(client, pipeline, composer, master, emitter)


class TestGenerateAll:
    """Concurrent generation for every unit."""

    @pytest.mark.asyncio
    async def test_requires_master(self, fake_client) -> None:
        pipeline = ReferenceImagePipeline(fake_client)
        composer = PromptComposer()
        master = MasterOrchestrator(fake_client, pipeline, composer)
        batch = BatchOrchestrator(fake_client, pipeline, composer, master)
        with pytest.raises(ValidationError):
            await batch.generate_all()

    @pytest.mark.asyncio
    async def test_every_unit_gets_a_result(self, fake_client, events) -> None:
        batch = await _batch(fake_client, events)
        summary = await batch.generate_all()

        assert summary.total == 3
        assert summary.succeeded == 3
        assert summary.failed == 0
        assert batch.notice is None
        for unit in batch.composer.units:
            assert batch.results[unit.id].src.startswith("https://img.test/single/")
        assert all(call["master"] == "https://img.test/master-1.jpg" for call in fake_client.singles)
        assert all(call["is_regeneration"] is False for call in fake_client.singles)
        assert events[-1]["stage"] == "batch"
        assert events[-1]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_all_slots_load_before_any_completes(self, fake_client) -> None:
        gate = Gate()
        fake_client.generate_single_from_master.side_effect = gate.returning("https://img.test/s.jpg")
        batch = await _batch(fake_client)

        task = asyncio.ensure_future(batch.generate_all())
        await asyncio.sleep(0)
        assert [batch.results[u.id].is_loading for u in batch.composer.units] == [True, True, True]
        assert batch.is_running

        gate.open()
        await task
        assert not batch.is_running

    @pytest.mark.asyncio
    async def test_partial_failure_sets_one_notice(self, fake_client, events) -> None:
        batch = await _batch(fake_client, events)
        await batch.generate_all()
        previous = {u.id: batch.results[u.id].src for u in batch.composer.units}
        failing = batch.composer.units[1].id

        def single(images, master, consistent, variable, is_regeneration, reference_image=None):
            if variable == "Seated":
                raise GenerationError("safety filter", "generate_single_from_master")
            return "https://img.test/new.jpg"

        fake_client.generate_single_from_master.side_effect = single
        summary = await batch.generate_all()

        assert summary.failed_ids == [failing]
        assert batch.notice == "1 of 3 pictures failed to generate. Retry them individually."
        assert batch.results[failing].error == "safety filter"
        assert batch.results[failing].src == previous[failing]
        assert events[-1]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_unexpected_error_is_scoped_to_its_unit(self, fake_client, events) -> None:
        batch = await _batch(fake_client, events)
        failing = batch.composer.units[1].id

        def single(images, master, consistent, variable, is_regeneration, reference_image=None):
            if variable == "Seated":
                raise ValueError("bad base64 payload")
            return "https://img.test/new.jpg"

        fake_client.generate_single_from_master.side_effect = single
        summary = await batch.generate_all()

        assert summary.succeeded == 2
        assert summary.failed_ids == [failing]
        assert batch.results[failing].is_loading is False
        assert "bad base64 payload" in batch.results[failing].error
        assert not batch.is_running
        assert batch.notice == "1 of 3 pictures failed to generate. Retry them individually."
        assert events[-1]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_rejected_while_a_reference_is_processing(self, fake_client) -> None:
        batch = await _batch(fake_client)
        fake_client.generate_single_from_master.reset_mock()
        batch.pipeline.add([make_upload("late.png")])
        assert batch.pipeline.is_busy

        with pytest.raises(ValidationError, match="still being processed"):
            await batch.generate_all()
        with pytest.raises(ValidationError, match="still being processed"):
            await batch.regenerate_single(batch.composer.unit_zero.id)
        fake_client.generate_single_from_master.assert_not_awaited()
        assert batch.results == {}

    @pytest.mark.asyncio
    async def test_removed_unit_result_is_dropped(self, fake_client) -> None:
        gate = Gate()
        fake_client.generate_single_from_master.side_effect = gate.returning("https://img.test/s.jpg")
        batch = await _batch(fake_client)
        doomed = batch.composer.units[2]

        task = asyncio.ensure_future(batch.generate_all())
        await asyncio.sleep(0)
        batch.composer.remove_unit(doomed.id)
        batch.purge(doomed.id)
        gate.open()
        summary = await task

        assert doomed.id not in batch.results
        assert summary.succeeded == 2
        assert summary.failed == 0

    @pytest.mark.asyncio
    async def test_unit_reference_image_is_passed(self, fake_client) -> None:
        batch = await _batch(fake_client, shots=("Walking",))
        upload = make_upload("shoe.png")
        batch.composer.unit_zero.reference_image = UnitReferenceImage(
            id="r1", upload=upload, preview=upload.to_data_uri()
        )
        await batch.generate_all()
        assert fake_client.singles[0]["reference_image"] == upload.to_data_uri()


class TestRegenerateSingle:
    """One-unit regeneration."""

    @pytest.mark.asyncio
    async def test_only_target_slot_changes(self, fake_client, events) -> None:
        batch = await _batch(fake_client, events)
        await batch.generate_all()
        before = {u.id: batch.results[u.id].src for u in batch.composer.units}
        target = batch.composer.units[1].id

        assert await batch.regenerate_single(target) is True

        assert fake_client.singles[-1]["is_regeneration"] is True
        for unit in batch.composer.units:
            if unit.id == target:
                assert batch.results[unit.id].src != before[unit.id]
            else:
                assert batch.results[unit.id].src == before[unit.id]
        assert events[-1]["stage"] == "unit"
        assert events[-1]["status"] == "regenerated"

    @pytest.mark.asyncio
    async def test_unknown_unit(self, fake_client) -> None:
        batch = await _batch(fake_client)
        with pytest.raises(NotFoundError):
            await batch.regenerate_single("missing")

    @pytest.mark.asyncio
    async def test_superseded_request_is_ignored(self, fake_client) -> None:
        first, second = Gate(), Gate()
        calls = iter([first.returning("https://img.test/old.jpg"), second.returning("https://img.test/new.jpg")])

        async def single(*args, **kwargs):
            return await next(calls)(*args, **kwargs)

        batch = await _batch(fake_client)
        fake_client.generate_single_from_master.side_effect = single
        target = batch.composer.unit_zero.id

        older = asyncio.ensure_future(batch.regenerate_single(target))
        await asyncio.sleep(0)
        newer = asyncio.ensure_future(batch.regenerate_single(target))
        await asyncio.sleep(0)
        second.open()
        assert await newer is True
        first.open()
        assert await older is False
        assert batch.results[target].src == "https://img.test/new.jpg"

    @pytest.mark.asyncio
    async def test_failure_keeps_previous_image(self, fake_client) -> None:
        batch = await _batch(fake_client)
        await batch.generate_all()
        target = batch.composer.unit_zero.id
        previous = batch.results[target].src
        fake_client.generate_single_from_master.side_effect = GenerationError("timeout", "x")

        assert await batch.regenerate_single(target) is False
        assert batch.results[target].src == previous
        assert batch.results[target].error == "timeout"
        assert batch.results[target].is_loading is False
