"""
Independent job group with staggered starts and bounded concurrency.

Used to dispatch one import job per chunk of ids: jobs run on their own,
a failing job never cancels its siblings, and one completion callback fires
after every job has settled.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ordersync.observability import get_logger

logger = get_logger(__name__)

JobFactory = Callable[[], Awaitable[Any]]


@dataclass
class JobGroupResult:
    name: str
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    results: Dict[str, Any] = field(default_factory=dict)
    errors: Dict[str, BaseException] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)

    @property
    def all_succeeded(self) -> bool:
        return not self.failed


class ImportJobGroup:
    """
    Usage:
        group = ImportJobGroup("open_orders", concurrency=3, stagger_seconds=2)
        for n, chunk in enumerate(chunks, start=1):
            group.add(f"batch-{n}", lambda chunk=chunk: import_chunk(chunk))
        result = await group.run(on_complete=finalize)
    """

    def __init__(
        self,
        name: str,
        concurrency: int = 3,
        stagger_seconds: float = 0.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.name = name
        self.concurrency = concurrency
        self.stagger_seconds = stagger_seconds
        self.sleep = sleep
        self._jobs: List[Tuple[str, JobFactory]] = []
        self._started = False

    def add(self, job_id: str, factory: JobFactory) -> None:
        if self._started:
            raise RuntimeError(f"Job group {self.name} already started")
        if any(existing == job_id for existing, _ in self._jobs):
            raise ValueError(f"Duplicate job id {job_id}")
        self._jobs.append((job_id, factory))

    def __len__(self) -> int:
        return len(self._jobs)

    async def run(
        self,
        on_complete: Optional[Callable[[JobGroupResult], Awaitable[None]]] = None,
    ) -> JobGroupResult:
        """Run all jobs and call ``on_complete`` once with the combined result."""
        if self._started:
            raise RuntimeError(f"Job group {self.name} already started")
        self._started = True

        result = JobGroupResult(name=self.name)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _run_job(index: int, job_id: str, factory: JobFactory) -> None:
            # Job N starts no earlier than N * stagger after the group
            if self.stagger_seconds and index:
                await self.sleep(index * self.stagger_seconds)
            async with semaphore:
                try:
                    result.results[job_id] = await factory()
                    result.succeeded.append(job_id)
                except Exception as e:
                    logger.error(
                        f"Job {job_id} in group {self.name} failed: {e}",
                        extra={"group": self.name, "job_id": job_id, "error_class": type(e).__name__},
                    )
                    result.errors[job_id] = e
                    result.failed.append(job_id)

        await asyncio.gather(*[
            _run_job(index, job_id, factory) for index, (job_id, factory) in enumerate(self._jobs)
        ])

        logger.info(
            f"Job group {self.name} finished",
            extra={"group": self.name, "succeeded": len(result.succeeded), "failed": len(result.failed)},
        )

        if on_complete is not None:
            await on_complete(result)
        return result
