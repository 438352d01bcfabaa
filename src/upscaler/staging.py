"""Per-job staging directories.

Layout::

    {base}/{job_id}/input/    downloaded sources, consumed by the upscaler
    {base}/{job_id}/output/   upscaled artifacts served by the API

Directory-existence is a signal: :meth:`StagingStore.list_files` treats an
absent directory exactly like an empty one. Callers rely on this so that a
job that was never admitted, one whose input was already cleaned up, and one
that was deleted while running all read as "nothing staged". Any other
filesystem failure raises :class:`~upscaler.exceptions.StagingError`.
"""

import asyncio
import shutil
from pathlib import Path
from typing import List, Optional, Union

from .exceptions import StagingError
from .logging import get_logger

logger = get_logger(__name__)

PathLike = Union[str, Path]


class StagingStore:
    """Creates, lists and removes job directory trees under ``base``."""

    INPUT = "input"
    OUTPUT = "output"

    def __init__(self, base: PathLike):
        self.base = Path(base)

    def job_dir(self, job_id: str) -> Path:
        return self.base / job_id

    def input_dir(self, job_id: str) -> Path:
        return self.job_dir(job_id) / self.INPUT

    def output_dir(self, job_id: str) -> Path:
        return self.job_dir(job_id) / self.OUTPUT

    def create_job_tree(self, job_id: str) -> None:
        """Create ``input/`` and ``output/`` for a job (idempotent).

        Raises:
            StagingError: if a directory cannot be created
        """
        for path in (self.input_dir(job_id), self.output_dir(job_id)):
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.error("staging_create_failed", path=str(path), error=str(e))
                raise StagingError(f"Cannot create {path}: {e}", str(path), job_id=job_id) from e

    def remove_job_tree(self, job_id: str) -> bool:
        """Recursively delete a job's tree. Returns False if it was already absent."""
        return self._remove(self.job_dir(job_id), job_id)

    def remove_input(self, job_id: str) -> bool:
        """Recursively delete a job's input directory. Returns False if absent."""
        return self._remove(self.input_dir(job_id), job_id)

    @staticmethod
    def list_files(directory: PathLike) -> List[str]:
        """Return the file names in ``directory``.

        An absent directory yields an empty list, not an error.

        Raises:
            StagingError: if the directory exists but cannot be read
        """
        path = Path(directory)
        try:
            return [entry.name for entry in path.iterdir() if entry.is_file()]
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StagingError(f"Cannot list {path}: {e}", str(path)) from e

    def count_input(self, job_id: str) -> int:
        """Number of files still staged for upscaling."""
        return len(self.list_files(self.input_dir(job_id)))

    def list_output(self, job_id: str) -> List[str]:
        """Output artifact names, sorted lexicographically."""
        return sorted(self.list_files(self.output_dir(job_id)))

    def output_file(self, job_id: str, name: str) -> Optional[Path]:
        """Resolve an output artifact, or None if absent or outside the output dir."""
        output_dir = self.output_dir(job_id).resolve()
        candidate = (output_dir / name).resolve()
        if candidate.parent != output_dir or not candidate.is_file():
            return None
        return candidate

    def _remove(self, path: Path, job_id: str) -> bool:
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error("staging_remove_failed", path=str(path), error=str(e))
            raise StagingError(f"Cannot remove {path}: {e}", str(path), job_id=job_id) from e
        return True

    # --- async wrappers (filesystem work off the event loop) ---

    async def acreate_job_tree(self, job_id: str) -> None:
        await asyncio.to_thread(self.create_job_tree, job_id)

    async def aremove_job_tree(self, job_id: str) -> bool:
        return await asyncio.to_thread(self.remove_job_tree, job_id)

    async def aremove_input(self, job_id: str) -> bool:
        return await asyncio.to_thread(self.remove_input, job_id)

    async def alist_files(self, directory: PathLike) -> List[str]:
        return await asyncio.to_thread(self.list_files, directory)
