import asyncio
from pathlib import Path

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from upscaler.api.main import create_app
from upscaler.fetcher import FetchStage
from upscaler.models import FetchConfig, UpscaleConfig
from upscaler.orchestrator import JobOrchestrator
from upscaler.queue import AdmissionQueue, JobStatus
from upscaler.scraper import PageScraper
from upscaler.staging import StagingStore
from upscaler.store import JobStore
from upscaler.upscale_runner import UpscaleErrorType, UpscaleResult, UpscaleRunner, UpscaleStage

BASE_URL = "http://test-host"

READER_PAGE = """
<html><head><title>Chapter 7 | Some Reader Site</title></head>
<body>
  <img id="logo" src="/static/logo.png">
  <img id="image-0" src="https://cdn.example.com/ch7/001.jpg">
  <img id="image-1" data-src="/ch7/002.jpg">
</body></html>
"""


def image_handler(request: httpx.Request) -> httpx.Response:
    """Serve fake images; any URL containing 'missing' is a 404."""
    if "missing" in request.url.path:
        return httpx.Response(404)
    if request.url.path.endswith(".html"):
        return httpx.Response(200, text=READER_PAGE)
    return httpx.Response(200, content=b"image:" + request.url.path.encode())


class FakeRunner(UpscaleRunner):
    """Stands in for the upscaler executable: copies input to output.

    Args:
        fail_on: input file names that exit non-zero
        gate: when set, every invocation waits on this event first
    """

    def __init__(self, fail_on=(), gate=None, config=None):
        super().__init__(config or UpscaleConfig(concurrency=1))
        self.fail_on = set(fail_on)
        self.gate = gate
        self.calls = []
        self.cancelled = []
        self.started = asyncio.Event()

    async def upscale(self, input_path, output_path):
        name = Path(input_path).name
        self.calls.append(name)
        self.started.set()
        if self.gate is not None:
            try:
                await self.gate.wait()
            except asyncio.CancelledError:
                self.cancelled.append(name)
                raise
        if name in self.fail_on:
            return UpscaleResult(
                success=False,
                returncode=1,
                stdout="",
                stderr=f"cannot decode {name}",
                duration_s=0.0,
                error_type=UpscaleErrorType.EXIT_CODE,
            )
        Path(output_path).write_bytes(Path(input_path).read_bytes())
        return UpscaleResult(success=True, returncode=0, stdout="", stderr="", duration_s=0.0)


async def wait_for_status(orchestrator, job_id, *statuses, timeout=5.0):
    """Poll until the job reaches one of ``statuses``; returns the record."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        record = await orchestrator.get_process(job_id)
        if record is not None and record.status in statuses:
            return record
        if loop.time() > deadline:
            raise AssertionError(f"job {job_id} never reached {statuses}: {record}")
        await asyncio.sleep(0.01)


async def wait_terminal(orchestrator, job_id, timeout=5.0):
    return await wait_for_status(
        orchestrator, job_id, JobStatus.COMPLETED, JobStatus.FAILED, timeout=timeout
    )


@pytest.fixture
def http_client():
    return httpx.AsyncClient(transport=httpx.MockTransport(image_handler))


@pytest.fixture
async def make_orchestrator(tmp_path, http_client):
    """Factory building started orchestrators on a temp database and job root."""
    created = []

    async def factory(runner=None, queue_concurrency=1, download_concurrency=5, start=True):
        runner = runner or FakeRunner()
        fetch_config = FetchConfig(concurrency=download_concurrency)
        orchestrator = JobOrchestrator(
            store=JobStore(f"sqlite:///{tmp_path / 'jobs.db'}"),
            staging=StagingStore(tmp_path / "processes"),
            fetch_stage=FetchStage(fetch_config, client=http_client),
            upscale_stage=UpscaleStage(runner, concurrency=runner.config.concurrency),
            queue=AdmissionQueue(concurrency=queue_concurrency),
            base_url=BASE_URL,
            scraper=PageScraper(fetch_config, client=http_client),
        )
        if start:
            await orchestrator.start()
        created.append(orchestrator)
        return orchestrator

    yield factory

    for orchestrator in created:
        await orchestrator.shutdown()
    await http_client.aclose()


@pytest.fixture
async def orchestrator(make_orchestrator):
    return await make_orchestrator()


@pytest.fixture
async def client(orchestrator):
    app = create_app(orchestrator=orchestrator)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
