"""Job orchestrator: owns job records and sequences the pipeline.

    PENDING --admit--> RUNNING --fetch+upscale ok--> COMPLETED
    PENDING --admit--> RUNNING --any stage error--> FAILED

``run_job`` is the terminal error boundary of a job run: whatever a stage
raises ends up as a FAILED status with a stored reason, and nothing escapes
into the admission queue. The input directory is removed when a run ends,
on success and on failure alike; upscaled outputs are kept until the job is
deleted.

Deleting a job while its pipeline runs cancels the pipeline (killing any
upscaler subprocesses) before its directory tree is removed. Status writes
for a job whose record is gone are no-ops.
"""

import asyncio
from pathlib import Path
from typing import Dict, List, Optional, Sequence
from urllib.parse import quote

from .exceptions import InvalidJobRequest, InvalidTransitionError, UpscalerError
from .fetcher import FetchStage
from .logging import bind_job, get_logger, unbind_job
from .models import UpscalerConfig
from .queue import AdmissionQueue, JobRecord, JobResult, JobStatus
from .scraper import PageScraper
from .staging import StagingStore
from .store import JobStore
from .upscale_runner import UpscaleRunner, UpscaleStage

logger = get_logger(__name__)

INTERRUPTED_REASON = "Interrupted by service restart"


class JobOrchestrator:
    """Creates, runs, reports on and deletes upscaling jobs.

    Args:
        store: Job record store
        staging: Per-job directory manager
        fetch_stage: Best-effort download stage
        upscale_stage: Fail-fast upscale stage
        queue: Admission queue the job runs are submitted to
        base_url: Externally advertised base URL for artifact links
        scraper: Page scraper used by ``create_process_from_page``
    """

    def __init__(
        self,
        store: JobStore,
        staging: StagingStore,
        fetch_stage: FetchStage,
        upscale_stage: UpscaleStage,
        queue: AdmissionQueue,
        base_url: str = "http://localhost:3001",
        scraper: Optional[PageScraper] = None,
    ):
        self.store = store
        self.staging = staging
        self.fetch_stage = fetch_stage
        self.upscale_stage = upscale_stage
        self.queue = queue
        self.base_url = base_url.rstrip("/")
        self.scraper = scraper or PageScraper(fetch_stage.config)
        self._running: Dict[str, asyncio.Task] = {}
        self._started = False

    @classmethod
    def from_config(cls, config: UpscalerConfig) -> "JobOrchestrator":
        """Wire every component from a resolved configuration."""
        runner = UpscaleRunner(config.upscale)
        return cls(
            store=JobStore(config.storage.database_url),
            staging=StagingStore(config.storage.process_dir),
            fetch_stage=FetchStage(config.fetch),
            upscale_stage=UpscaleStage(runner, concurrency=config.upscale.concurrency),
            queue=AdmissionQueue(concurrency=config.queue.concurrency),
            base_url=config.server.base_url,
            scraper=PageScraper(config.fetch),
        )

    # --- lifecycle ---

    async def start(self) -> None:
        """Connect the store, start the queue and recover jobs from a previous run."""
        if self._started:
            return
        self._started = True
        await self.store.connect()
        self.queue.start()
        await self.recover()

    async def shutdown(self) -> None:
        """Stop admitting work; cancels running pipelines and their subprocesses."""
        await self.queue.shutdown(wait=False)
        await self.store.disconnect()
        self._started = False

    async def recover(self) -> None:
        """Fail jobs left RUNNING by a previous process and re-admit PENDING ones.

        Partially processed jobs are never resumed.
        """
        for record in reversed(await self.store.list_all()):
            if record.status == JobStatus.RUNNING and record.id not in self._running:
                logger.warning("job_interrupted", job_id=record.id)
                await self.store.transition(record.id, JobStatus.FAILED, INTERRUPTED_REASON)
                await self.staging.aremove_input(record.id)
            elif record.status == JobStatus.PENDING:
                self.queue.submit(self.run_job, record.id)

    # --- operations ---

    async def create_process(self, images: Sequence[str], title: Optional[str] = None) -> str:
        """Persist a PENDING job and admit it. Returns the id without waiting.

        Raises:
            InvalidJobRequest: if ``images`` is empty or holds blank entries
        """
        if isinstance(images, str) or not images:
            raise InvalidJobRequest("images must be a non-empty list of URLs")
        urls = [url.strip() if isinstance(url, str) else url for url in images]
        if any(not isinstance(url, str) or not url for url in urls):
            raise InvalidJobRequest("images must only contain non-empty URL strings")

        record = await self.store.create(urls, (title or "").strip() or None)
        self.queue.submit(self.run_job, record.id)
        logger.info("job_created", job_id=record.id, images=len(urls), depth=self.queue.depth)
        return record.id

    async def create_process_from_page(self, url: str) -> str:
        """Scrape a page for its images and create a job from them.

        Raises:
            ScrapeError: if the page cannot be fetched or has no images
        """
        page = await self.scraper.scrape(url)
        return await self.create_process(page.images, page.title or None)

    async def run_job(self, job_id: str) -> None:
        """Run one job's pipeline. Never raises, except on cancellation by shutdown."""
        bind_job(job_id)
        try:
            pipeline = asyncio.ensure_future(self._run_pipeline(job_id))
            self._running[job_id] = pipeline
            try:
                await pipeline
            except asyncio.CancelledError:
                # delete_process pops the entry before cancelling
                if job_id in self._running:
                    raise
                logger.info("job_cancelled", reason="deleted")
            finally:
                self._running.pop(job_id, None)
        finally:
            unbind_job()

    async def get_process(self, job_id: str) -> Optional[JobRecord]:
        return await self.store.get(job_id)

    async def get_result(self, job_id: str) -> Optional[JobResult]:
        """Status, live remaining count and (once completed) sorted artifact URLs.

        Returns None if no record exists for ``job_id``.
        """
        record = await self.store.get(job_id)
        if record is None:
            return None

        remaining = await asyncio.to_thread(self.staging.count_input, job_id)
        images = None
        if record.status == JobStatus.COMPLETED:
            names = await asyncio.to_thread(self.staging.list_output, job_id)
            images = [self.artifact_url(job_id, name) for name in names]

        return JobResult(
            id=record.id,
            status=record.status,
            title=record.title,
            remaining=remaining,
            images=images,
            error=record.error,
        )

    async def delete_process(self, job_id: str) -> bool:
        """Remove the record and the whole directory tree.

        Returns:
            False if there was no record for ``job_id``
        """
        if not await self.store.delete(job_id):
            return False

        pipeline = self._running.pop(job_id, None)
        if pipeline is not None and not pipeline.done():
            logger.info("job_cancelling", job_id=job_id)
            pipeline.cancel()
            await asyncio.gather(pipeline, return_exceptions=True)

        await self.staging.aremove_job_tree(job_id)
        logger.info("job_deleted", job_id=job_id)
        return True

    async def list_all(self) -> List[JobRecord]:
        return await self.store.list_all()

    def output_file(self, job_id: str, name: str) -> Optional[Path]:
        """Path of an output artifact, or None if the job or file is absent."""
        return self.staging.output_file(job_id, name)

    def artifact_url(self, job_id: str, name: str) -> str:
        return f"{self.base_url}/api/static/{job_id}/output/{quote(name)}"

    # --- pipeline ---

    async def _run_pipeline(self, job_id: str) -> None:
        try:
            if not await self.store.transition(job_id, JobStatus.RUNNING):
                logger.info("job_skipped", reason="record deleted before admission")
                return
        except InvalidTransitionError as e:
            logger.warning("job_skipped", reason=e.message)
            return

        logger.info("job_started")
        try:
            await self.staging.acreate_job_tree(job_id)
            record = await self.store.get(job_id)
            if record is None:
                return
            input_dir = self.staging.input_dir(job_id)
            output_dir = self.staging.output_dir(job_id)

            batch = await self.fetch_stage.fetch_all(record.images, input_dir)
            if batch.failed:
                logger.warning(
                    "job_fetch_partial",
                    succeeded=len(batch.succeeded),
                    failed=len(batch.failed),
                )

            await self.upscale_stage.upscale_all(input_dir, output_dir)
            await self.staging.aremove_input(job_id)
        except Exception as e:
            logger.exception("job_failed")
            await self._cleanup_input(job_id)
            await self._finish(job_id, JobStatus.FAILED, _failure_reason(e))
        else:
            await self._finish(job_id, JobStatus.COMPLETED)
            logger.info("job_completed")

    async def _cleanup_input(self, job_id: str) -> None:
        try:
            await self.staging.aremove_input(job_id)
        except UpscalerError as e:
            logger.error("job_cleanup_failed", error=e.message)

    async def _finish(self, job_id: str, status: JobStatus, error: Optional[str] = None) -> None:
        try:
            await self.store.transition(job_id, status, error)
        except Exception:
            logger.exception("job_status_write_failed", status=status.value)


def _failure_reason(exc: Exception) -> str:
    if isinstance(exc, UpscalerError):
        return exc.message
    return f"{type(exc).__name__}: {exc}"
