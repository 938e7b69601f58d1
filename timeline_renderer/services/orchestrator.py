"""Render job orchestration.

One asyncio task per job runs fetch -> probe -> compile -> engine -> output
check. A semaphore bounds how many jobs render at once; a job stays queued
until it gets a slot. Every failure inside a job is caught at the task
boundary and stored on the job as its error message.
"""

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, BinaryIO

import pydantic

from timeline_renderer.config import RenderDefaults, Settings, get_settings
from timeline_renderer.exceptions import (
    CompileError,
    CorruptAssetError,
    NotFoundError,
    OutputInvalidError,
    RenderServiceError,
    ServiceUnavailableError,
    ValidationError,
)
from timeline_renderer.render.compiler import ResolvedAsset, TimelineCompiler
from timeline_renderer.render.engine import EngineInvoker
from timeline_renderer.schemas.timeline import Timeline, parse_render_request
from timeline_renderer.services.asset_fetcher import AssetFetcher, suffix_for
from timeline_renderer.services.job_store import Job, JobState, JobStore
from timeline_renderer.utils.media_info import MediaInfo, probe_media

logger = logging.getLogger(__name__)


def parse_timeline(payload: dict[str, Any] | Timeline) -> Timeline:
    """Parse a request body into a Timeline.

    Raises:
        ValidationError: If the body matches neither request shape
    """
    if isinstance(payload, Timeline):
        return payload
    try:
        return parse_render_request(payload)
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or None
        raise ValidationError(f"Invalid timeline: {first.get('msg')}", field=field)


class JobOrchestrator:
    """Accepts render jobs and drives them to a terminal state."""

    def __init__(
        self,
        settings: Settings | None = None,
        store: JobStore | None = None,
        fetcher: AssetFetcher | None = None,
        engine: EngineInvoker | None = None,
        compiler: TimelineCompiler | None = None,
        prober=probe_media,
    ):
        self.settings = settings or get_settings()
        self.store = store or JobStore(self.settings.work_root)
        self.fetcher = fetcher or AssetFetcher()
        self.engine = engine or EngineInvoker()
        self.compiler = compiler or TimelineCompiler(
            RenderDefaults.from_settings(self.settings),
            font_file=self.settings.overlay_font_file,
        )
        self.prober = prober
        self._slots = asyncio.Semaphore(self.settings.max_concurrent_jobs)
        self._tasks: dict[str, asyncio.Task] = {}
        self._accepting = True

    @property
    def in_flight(self) -> int:
        """Jobs accepted but not yet terminal (queued or running)."""
        return sum(1 for task in self._tasks.values() if not task.done())

    # ========================================================================
    # Public operations
    # ========================================================================

    async def submit(self, payload: dict[str, Any] | Timeline) -> str:
        """Validate a timeline and start a job for it.

        Args:
            payload: Request body (timeline or legacy videoMedia/audioMedia
                shape) or an already parsed Timeline

        Returns:
            The new job id; the job starts queued

        Raises:
            ValidationError: Malformed timeline, no job is created
            ServiceUnavailableError: Shutdown in progress
        """
        if not self._accepting:
            raise ServiceUnavailableError()

        timeline = parse_timeline(payload)
        try:
            self.compiler.validate(timeline)
        except CompileError as e:
            raise ValidationError.from_compile_error(e)

        job = await self.store.create()
        try:
            self._persist_request(job, payload, timeline)
        except OSError:
            await self.store.delete(job.job_id)
            raise

        task = asyncio.create_task(self._run(job.job_id, timeline), name=f"render-{job.job_id}")
        self._tasks[job.job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job.job_id, None))

        logger.info(
            f"[JOBS] Accepted {job.job_id}: {len(timeline.clips)} clip(s), "
            f"{len(timeline.soundtrack)} soundtrack item(s)"
        )
        return job.job_id

    async def get_status(self, job_id: str) -> Job:
        """Snapshot of a job; polling has no side effects.

        Raises:
            NotFoundError: Unknown or deleted job
        """
        return await self.store.get(job_id)

    async def open_output(self, job_id: str) -> BinaryIO:
        """Open the rendered MP4 of a completed job.

        Raises:
            NotFoundError: Unknown or deleted job
            NotReadyError: Job is not completed
        """
        return await self.store.open_output(job_id)

    async def delete_job(self, job_id: str) -> None:
        """Cancel a job if it is still running, then remove it and its files.

        Raises:
            NotFoundError: Unknown or already deleted job
        """
        await self._cancel(job_id)
        await self.store.delete(job_id)

    async def sweep_expired(self) -> list[str]:
        """Remove jobs older than the retention TTL, whatever their state.

        A job still running at that age is cancelled (its engine process is
        killed) before its entry and files go.
        """
        ttl = self.settings.job_ttl_seconds
        now = time.monotonic()
        for job_id in await self.store.expired(ttl, now):
            if await self._cancel(job_id):
                logger.warning(f"[JOBS] {job_id} still running after {ttl}s, abandoning it")
        return await self.store.expire(ttl, now)

    async def run_retention_loop(self) -> None:
        """Sweep expired jobs forever; run as a background task."""
        interval = self.settings.retention_sweep_interval_s
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep_expired()
            except OSError as e:
                logger.error(f"[JOBS] Retention sweep failed: {e}")

    async def drain(self, timeout: float | None = None) -> None:
        """Stop accepting jobs and wait for running ones.

        Jobs still unfinished after the timeout are cancelled and end failed.
        """
        self._accepting = False
        timeout = self.settings.shutdown_drain_timeout_s if timeout is None else timeout
        tasks = [task for task in self._tasks.values() if not task.done()]
        if not tasks:
            return
        logger.info(f"[JOBS] Draining {len(tasks)} job(s), timeout {timeout}s")
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"[JOBS] Cancelled {len(pending)} job(s) at shutdown")
            await asyncio.gather(*pending, return_exceptions=True)

    # ========================================================================
    # Job task
    # ========================================================================

    def _persist_request(self, job: Job, payload: dict[str, Any] | Timeline, timeline: Timeline) -> None:
        """Write the request body as received, plus its normalised form."""
        if isinstance(payload, Timeline):
            body = payload.model_dump_json(by_alias=True, exclude_none=True, indent=2)
        else:
            body = json.dumps(payload, indent=2)
        (job.work_dir / "request.json").write_text(body)
        (job.work_dir / "timeline.json").write_text(
            timeline.model_dump_json(by_alias=True, exclude_none=True, indent=2)
        )

    async def _cancel(self, job_id: str) -> bool:
        """Cancel a job's task and wait for it; False if nothing was running."""
        task = self._tasks.get(job_id)
        if task is None or task.done():
            return False
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return True

    async def _run(self, job_id: str, timeline: Timeline) -> None:
        try:
            async with self._slots:
                await self._render(job_id, timeline)
        except NotFoundError:
            logger.info(f"[JOBS] {job_id} was deleted while running")
        except asyncio.CancelledError:
            await self._fail(job_id, "Render cancelled")
            raise
        except RenderServiceError as e:
            await self._fail(job_id, e.message)
        except Exception as e:
            logger.exception(f"[JOBS] {job_id} crashed")
            await self._fail(job_id, f"Internal error: {e}")

    async def _fail(self, job_id: str, message: str) -> None:
        try:
            await self.store.transition(job_id, JobState.FAILED, error=message)
        except (NotFoundError, ValueError) as e:
            logger.debug(f"[JOBS] Not marking {job_id} failed: {e}")

    async def _render(self, job_id: str, timeline: Timeline) -> None:
        job = await self.store.transition(job_id, JobState.DOWNLOADING, stage="Fetching assets")
        assets = await self._fetch_assets(job, timeline)

        await self.store.transition(job_id, JobState.RENDERING, stage="Compiling timeline")
        plan = self.compiler.compile(timeline, assets)
        for warning in plan.warnings:
            logger.warning(f"[COMPILE] {job_id}: {warning}")
        (job.work_dir / "plan.json").write_text(json.dumps(plan.describe(), indent=2))

        def on_progress(fraction: float) -> None:
            self.store.set_stage(job_id, f"Encoding ({int(fraction * 100)}%)")

        self.store.set_stage(job_id, "Encoding")
        await self.engine.run_plan(plan, cwd=str(job.work_dir), on_progress=on_progress)

        self._check_output(job.work_dir / plan.output_name)
        await self.store.transition(job_id, JobState.COMPLETED)

    async def _fetch_assets(self, job: Job, timeline: Timeline) -> dict[str, ResolvedAsset]:
        kinds: dict[str, str] = {}
        for clip in [*timeline.clips, *timeline.soundtrack]:
            kinds.setdefault(clip.source.key, clip.media_type)
            for overlay in clip.overlays:
                if overlay.source is not None:
                    kinds.setdefault(overlay.source.key, "image")

        assets_dir = job.work_dir / "assets"
        assets_dir.mkdir(exist_ok=True)
        sources = timeline.sources()
        items = [
            (source, assets_dir / f"{index}{suffix_for(source, kinds[source.key])}")
            for index, source in enumerate(sources)
        ]
        paths = await self.fetcher.fetch_all(items)

        self.store.set_stage(job.job_id, "Probing assets")
        resolved: dict[str, ResolvedAsset] = {}
        for source, path in zip(sources, paths):
            try:
                info: MediaInfo = await asyncio.to_thread(self.prober, str(path))
            except RuntimeError as e:
                raise CorruptAssetError(f"Unreadable media {source}: {e}", source=str(source))
            resolved[source.key] = ResolvedAsset(
                # Relative to the work dir, where the engine runs
                path=str(Path(path).relative_to(job.work_dir)),
                has_video=info.has_video,
                has_audio=info.has_audio,
                duration_s=info.duration_s,
            )
        return resolved

    def _check_output(self, output: Path) -> None:
        size = output.stat().st_size if output.exists() else 0
        if size < self.settings.render_min_output_bytes:
            raise OutputInvalidError(f"Output video invalid or empty ({size} bytes)")
