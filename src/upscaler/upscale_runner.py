"""Upscaler runner with timeout enforcement and process-tree cleanup.

This module drives the external upscaler executable (a realcugan-ncnn-vulkan
style CLI) one file at a time, and the fail-fast stage that drains a job's
input directory through it.

Key Features:
- asyncio subprocesses, so a running upscale never blocks other jobs
- Hard per-invocation timeout with terminate-then-kill of the whole tree
- Kill on cancellation (a job deleted mid-run leaves no orphans)
- Error classification for the stored failure reason
- Fail-fast batching: the first failing file aborts the rest of the job
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional

import psutil

from .exceptions import UpscaleError
from .logging import get_logger
from .models import UpscaleConfig
from .staging import StagingStore

logger = get_logger(__name__)

STDERR_TAIL_CHARS = 500


class UpscaleErrorType(Enum):
    """Upscaler failure classification."""
    SPAWN = "spawn"            # Executable missing or not runnable
    EXIT_CODE = "exit_code"    # Process ran and exited non-zero
    TIMEOUT = "timeout"        # Killed after exceeding timeout_s


@dataclass
class UpscaleResult:
    """Result of one upscaler execution."""
    success: bool
    returncode: Optional[int]
    stdout: str
    stderr: str
    duration_s: float
    error_type: Optional[UpscaleErrorType] = None

    @property
    def stderr_tail(self) -> str:
        return self.stderr[-STDERR_TAIL_CHARS:]


def output_name(file_name: str, scale: int = 2, denoise: int = 3) -> str:
    """Output artifact name for an input file.

    The extension is stripped at the first dot, so ``page.01.jpg`` becomes
    ``page_x2_denoise3x.png``.
    """
    return f"{file_name.split('.')[0]}_x{scale}_denoise{denoise}x.png"


class UpscaleRunner:
    """Runs the upscaler executable on a single image.

    Example:
        >>> runner = UpscaleRunner(UpscaleConfig(executable="/opt/realcugan/realcugan-ncnn-vulkan"))
        >>> result = await runner.upscale("in/a.jpg", "out/a_x2_denoise3x.png")
        >>> if not result.success:
        ...     print(result.error_type, result.stderr_tail)
    """

    def __init__(self, config: Optional[UpscaleConfig] = None):
        self.config = config or UpscaleConfig()

    def build_command(self, input_path: str, output_path: str) -> List[str]:
        return [
            self.config.executable,
            "-i", input_path,
            "-o", output_path,
            "-s", str(self.config.scale),
            "-n", str(self.config.denoise),
            "-m", self.config.models_path,
        ]

    async def upscale(self, input_path: str, output_path: str) -> UpscaleResult:
        """Upscale one file. Never raises for process failures; see ``error_type``.

        Raises:
            asyncio.CancelledError: after killing the process tree, if cancelled
        """
        return await self._run(self.build_command(str(input_path), str(output_path)))

    async def _run(self, cmd: List[str]) -> UpscaleResult:
        start_time = time.monotonic()

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return UpscaleResult(
                success=False,
                returncode=None,
                stdout="",
                stderr=str(e),
                duration_s=time.monotonic() - start_time,
                error_type=UpscaleErrorType.SPAWN,
            )

        communicate = asyncio.ensure_future(process.communicate())
        try:
            stdout, stderr = await asyncio.wait_for(
                asyncio.shield(communicate), timeout=self.config.timeout_s
            )
        except asyncio.TimeoutError:
            await self._kill_process_tree(process)
            stdout, stderr = await communicate
            logger.warning("upscale_timeout", input=cmd[2], timeout_s=self.config.timeout_s)
            return UpscaleResult(
                success=False,
                returncode=process.returncode,
                stdout=_decode(stdout),
                stderr=_decode(stderr),
                duration_s=time.monotonic() - start_time,
                error_type=UpscaleErrorType.TIMEOUT,
            )
        except asyncio.CancelledError:
            await self._kill_process_tree(process)
            communicate.cancel()
            raise

        returncode = process.returncode
        return UpscaleResult(
            success=(returncode == 0),
            returncode=returncode,
            stdout=_decode(stdout),
            stderr=_decode(stderr),
            duration_s=time.monotonic() - start_time,
            error_type=None if returncode == 0 else UpscaleErrorType.EXIT_CODE,
        )

    async def _kill_process_tree(self, process: asyncio.subprocess.Process) -> None:
        """Kill the upscaler and all its children.

        Kill sequence:
        1. Terminate every process in the tree
        2. Wait the grace period
        3. Kill survivors
        """
        if process.returncode is not None:
            return
        await asyncio.to_thread(_terminate_tree, process.pid, self.config.kill_grace_period_s)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.kill_grace_period_s)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()


def _terminate_tree(pid: int, grace_period_s: float) -> None:
    try:
        parent = psutil.Process(pid)
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        return

    for proc in children + [parent]:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            pass

    _, alive = psutil.wait_procs(children + [parent], timeout=grace_period_s)
    for proc in alive:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass


def _decode(data: Optional[bytes]) -> str:
    return (data or b"").decode("utf-8", errors="replace")


class UpscaleStage:
    """Fail-fast upscaling of every file staged in a job's input directory.

    Each successful file is deleted from the input directory right after its
    subprocess exits 0, so ``remaining`` shrinks as the job progresses. The
    first failure cancels everything still scheduled or running for the job
    and is raised as :class:`~upscaler.exceptions.UpscaleError`.
    """

    def __init__(self, runner: Optional[UpscaleRunner] = None, concurrency: Optional[int] = None):
        self.runner = runner or UpscaleRunner()
        self.concurrency = concurrency or self.runner.config.concurrency

    async def upscale_all(self, input_dir: Path, output_dir: Path) -> None:
        """Upscale every file in ``input_dir`` into ``output_dir``.

        Raises:
            UpscaleError: on the first failed invocation
        """
        input_dir, output_dir = Path(input_dir), Path(output_dir)
        files = sorted(await asyncio.to_thread(StagingStore.list_files, input_dir))
        if not files:
            logger.info("upscale_skipped", reason="no input files")
            return

        logger.info("upscale_started", files=len(files), concurrency=self.concurrency)
        semaphore = asyncio.Semaphore(self.concurrency)
        aborted = asyncio.Event()
        tasks = [
            asyncio.ensure_future(
                self._upscale_one(semaphore, aborted, input_dir, output_dir, name)
            )
            for name in files
        ]

        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            await _cancel_all(tasks)
            raise

        failure = next((t.exception() for t in done if t.exception() is not None), None)
        if failure is not None:
            await _cancel_all(pending)
            raise failure

        logger.info("upscale_completed", files=len(files))

    async def _upscale_one(
        self,
        semaphore: asyncio.Semaphore,
        aborted: asyncio.Event,
        input_dir: Path,
        output_dir: Path,
        name: str,
    ) -> None:
        config = self.runner.config
        input_path = input_dir / name
        output_path = output_dir / output_name(name, config.scale, config.denoise)

        async with semaphore:
            # A slot freed by a failing file must not start new work.
            if aborted.is_set():
                return
            logger.debug("upscale_file_started", input=str(input_path), output=str(output_path))
            result = await self.runner.upscale(str(input_path), str(output_path))
            if not result.success:
                aborted.set()

        if not result.success:
            logger.error(
                "upscale_file_failed",
                file=name,
                returncode=result.returncode,
                error_type=result.error_type.value,
                stderr=result.stderr_tail,
            )
            raise UpscaleError(
                f"Upscaling {name} failed ({result.error_type.value}, "
                f"returncode={result.returncode}): {result.stderr_tail.strip()}",
                file_name=name,
                returncode=result.returncode,
                error_type=result.error_type.value,
            )

        await asyncio.to_thread(input_path.unlink, missing_ok=True)
        logger.debug("upscale_file_completed", file=name, duration_s=round(result.duration_s, 2))


async def _cancel_all(tasks) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
