"""
Tests for the job orchestrator.

The engine and probe are fakes; downloads go through MockTransport.
"""

import asyncio
import json
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import FakeEngine, fake_prober, media_transport
from timeline_renderer.config import Settings
from timeline_renderer.exceptions import EngineError, NotFoundError, NotReadyError, ServiceUnavailableError, ValidationError
from timeline_renderer.services.asset_fetcher import AssetFetcher
from timeline_renderer.services.job_store import JobState
from timeline_renderer.services.orchestrator import JobOrchestrator

URL_A = "https://cdn.example.com/a.mp4"
URL_B = "https://cdn.example.com/b.mp4"
URL_MUSIC = "https://cdn.example.com/music.mp3"

ROUTES = {URL_A: b"a" * 100, URL_B: b"b" * 100, URL_MUSIC: b"m" * 100}


def make_orchestrator(settings: Settings, engine=None, routes=None, prober=fake_prober) -> JobOrchestrator:
    fetcher = AssetFetcher(
        upload_dir=settings.upload_dir,
        timeout_s=5,
        transport=media_transport(ROUTES if routes is None else routes),
    )
    return JobOrchestrator(
        settings=settings,
        fetcher=fetcher,
        engine=engine or FakeEngine(),
        prober=prober,
    )


async def wait_terminal(orchestrator: JobOrchestrator, job_id: str, timeout: float = 5.0):
    async def poll():
        while True:
            job = await orchestrator.get_status(job_id)
            if job.state.terminal:
                return job
            await asyncio.sleep(0.01)

    return await asyncio.wait_for(poll(), timeout)


TWO_CLIPS = {"clips": [{"source": URL_A}, {"source": URL_B, "trim": {"start": 1, "end": 3}}]}


class TestSubmit:
    @pytest.mark.asyncio
    async def test_completed_job(self, test_settings: Settings):
        engine = FakeEngine(output_size=5000)
        orchestrator = make_orchestrator(test_settings, engine)

        job_id = await orchestrator.submit(TWO_CLIPS)
        job = await wait_terminal(orchestrator, job_id)

        assert job.state is JobState.COMPLETED
        assert job.error is None
        assert job.output_size == 5000
        assert (job.work_dir / "timeline.json").exists()
        assert sorted(p.name for p in (job.work_dir / "assets").iterdir()) == ["0.mp4", "1.mp4"]
        plan = engine.plans[0]
        assert [i.path for i in plan.inputs] == ["assets/0.mp4", "assets/1.mp4"]
        assert json.loads((job.work_dir / "plan.json").read_text())[-1]["kind"] == "encode"

        with await orchestrator.open_output(job_id) as handle:
            assert len(handle.read()) == 5000

    @pytest.mark.asyncio
    async def test_legacy_payload(self, test_settings: Settings):
        orchestrator = make_orchestrator(test_settings)

        payload = {"videoMedia": [{"url": URL_A}], "audioMedia": [{"url": URL_MUSIC}]}

        job_id = await orchestrator.submit(payload)
        job = await wait_terminal(orchestrator, job_id)

        assert job.state is JobState.COMPLETED
        assert (job.work_dir / "assets" / "1.mp3").exists()
        # Body kept as sent; the normalised timeline sits beside it
        assert json.loads((job.work_dir / "request.json").read_text()) == payload
        assert len(json.loads((job.work_dir / "timeline.json").read_text())["clips"]) == 1

    @pytest.mark.asyncio
    async def test_unwritable_work_dir_leaves_no_job(self, test_settings: Settings):
        orchestrator = make_orchestrator(test_settings)

        with patch.object(JobOrchestrator, "_persist_request", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                await orchestrator.submit(TWO_CLIPS)

        assert await orchestrator.store.jobs() == []
        assert orchestrator.in_flight == 0

    @pytest.mark.asyncio
    async def test_empty_timeline_rejected_without_job(self, test_settings: Settings):
        orchestrator = make_orchestrator(test_settings)

        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.submit({"clips": []})

        assert exc_info.value.code == "EMPTY_TIMELINE"
        assert exc_info.value.status_code == 400
        assert await orchestrator.store.jobs() == []

    @pytest.mark.asyncio
    async def test_malformed_payload(self, test_settings: Settings):
        orchestrator = make_orchestrator(test_settings)

        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.submit({"clips": [{"speed": 2}]})

        assert exc_info.value.code == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_invalid_parameter_rejected(self, test_settings: Settings):
        orchestrator = make_orchestrator(test_settings)

        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.submit({"clips": [{"source": URL_A, "speed": -1}]})

        assert exc_info.value.code == "INVALID_PARAMETER"


class TestFailures:
    """Failures end the job failed with a message; nothing is retried."""

    @pytest.mark.asyncio
    async def test_missing_asset_fails_job(self, test_settings: Settings):
        engine = FakeEngine()
        orchestrator = make_orchestrator(test_settings, engine, routes={URL_A: b"a"})

        job_id = await orchestrator.submit(TWO_CLIPS)
        job = await wait_terminal(orchestrator, job_id)

        assert job.state is JobState.FAILED
        assert URL_B in job.error
        assert engine.plans == []

    @pytest.mark.asyncio
    async def test_small_output_fails_job(self, test_settings: Settings):
        orchestrator = make_orchestrator(test_settings, FakeEngine(output_size=10))

        job_id = await orchestrator.submit(TWO_CLIPS)
        job = await wait_terminal(orchestrator, job_id)

        assert job.state is JobState.FAILED
        assert "invalid or empty" in job.error
        with pytest.raises(NotReadyError):
            await orchestrator.open_output(job_id)

    @pytest.mark.asyncio
    async def test_engine_failure_message_stored(self, test_settings: Settings):
        error = EngineError(exit_code=1, diagnostics="Invalid data found when processing input")
        orchestrator = make_orchestrator(test_settings, FakeEngine(error=error))

        job_id = await orchestrator.submit(TWO_CLIPS)
        job = await wait_terminal(orchestrator, job_id)

        assert job.state is JobState.FAILED
        assert "Invalid data found" in job.error

    @pytest.mark.asyncio
    async def test_unreadable_media_fails_job(self, test_settings: Settings):
        def broken_probe(path: str):
            raise RuntimeError("ffprobe failed: moov atom not found")

        orchestrator = make_orchestrator(test_settings, prober=broken_probe)

        job_id = await orchestrator.submit(TWO_CLIPS)
        job = await wait_terminal(orchestrator, job_id)

        assert job.state is JobState.FAILED
        assert "moov atom" in job.error

    @pytest.mark.asyncio
    async def test_failed_job_does_not_affect_others(self, test_settings: Settings):
        orchestrator = make_orchestrator(test_settings, routes={URL_A: b"a"})

        bad = await orchestrator.submit(TWO_CLIPS)
        good = await orchestrator.submit({"clips": [{"source": URL_A}]})

        assert (await wait_terminal(orchestrator, bad)).state is JobState.FAILED
        assert (await wait_terminal(orchestrator, good)).state is JobState.COMPLETED


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_polling_is_idempotent(self, test_settings: Settings):
        orchestrator = make_orchestrator(test_settings)
        job_id = await orchestrator.submit(TWO_CLIPS)
        await wait_terminal(orchestrator, job_id)

        first = await orchestrator.get_status(job_id)
        second = await orchestrator.get_status(job_id)

        assert first == second

    @pytest.mark.asyncio
    async def test_concurrency_limit_keeps_jobs_queued(self, tmp_path: Path):
        settings = Settings(
            work_root=str(tmp_path / "jobs"),
            upload_dir=str(tmp_path / "uploads"),
            max_concurrent_jobs=1,
            render_min_output_bytes=1,
        )
        orchestrator = make_orchestrator(settings, FakeEngine(delay=0.2))

        first = await orchestrator.submit({"clips": [{"source": URL_A}]})
        second = await orchestrator.submit({"clips": [{"source": URL_A}]})
        await asyncio.sleep(0.1)

        assert (await orchestrator.get_status(second)).state is JobState.QUEUED
        assert orchestrator.in_flight == 2
        assert (await wait_terminal(orchestrator, first)).state is JobState.COMPLETED
        assert (await wait_terminal(orchestrator, second)).state is JobState.COMPLETED
        await asyncio.sleep(0.05)
        assert orchestrator.in_flight == 0

    @pytest.mark.asyncio
    async def test_delete_running_job(self, test_settings: Settings):
        orchestrator = make_orchestrator(test_settings, FakeEngine(delay=5))
        job_id = await orchestrator.submit(TWO_CLIPS)
        job = await orchestrator.get_status(job_id)
        await asyncio.sleep(0.05)

        await orchestrator.delete_job(job_id)

        assert not job.work_dir.exists()
        with pytest.raises(NotFoundError):
            await orchestrator.get_status(job_id)

    @pytest.mark.asyncio
    async def test_sweep_expired(self, test_settings: Settings):
        test_settings.job_ttl_seconds = 0
        orchestrator = make_orchestrator(test_settings)
        job_id = await orchestrator.submit(TWO_CLIPS)
        await wait_terminal(orchestrator, job_id)

        assert await orchestrator.sweep_expired() == [job_id]
        with pytest.raises(NotFoundError):
            await orchestrator.get_status(job_id)

    @pytest.mark.asyncio
    async def test_sweep_abandons_stuck_job(self, test_settings: Settings):
        test_settings.job_ttl_seconds = 0
        engine = FakeEngine(delay=5)
        orchestrator = make_orchestrator(test_settings, engine)
        job_id = await orchestrator.submit(TWO_CLIPS)
        job = await orchestrator.get_status(job_id)
        await asyncio.sleep(0.05)
        assert len(engine.plans) == 1

        assert await orchestrator.sweep_expired() == [job_id]

        assert not job.work_dir.exists()
        with pytest.raises(NotFoundError):
            await orchestrator.get_status(job_id)
        await asyncio.sleep(0.01)
        assert orchestrator.in_flight == 0

    @pytest.mark.asyncio
    async def test_drain_cancels_stragglers(self, test_settings: Settings):
        orchestrator = make_orchestrator(test_settings, FakeEngine(delay=5))
        job_id = await orchestrator.submit(TWO_CLIPS)
        await asyncio.sleep(0.05)

        await orchestrator.drain(timeout=0.1)

        job = await orchestrator.get_status(job_id)
        assert job.state is JobState.FAILED
        assert job.error == "Render cancelled"
        with pytest.raises(ServiceUnavailableError):
            await orchestrator.submit(TWO_CLIPS)
