"""Fan-out of the upload step across partitions.

With parallelism 1 the driver pushes everything itself using the context
it already bootstrapped.  Otherwise the work items are cut into
partitions and each partition goes to ``run_push_partition``, a top-level
function taking one plain-dict payload, so any executor able to pickle a
function or serialize JSON can run it.  The worker rebuilds its plugin
registry, file-system bindings and controller clients from the payload
before touching anything.
"""

import time
from abc import ABC, abstractmethod
from concurrent.futures import FIRST_EXCEPTION, Executor, ProcessPoolExecutor, ThreadPoolExecutor, wait
from typing import Any

import structlog

from segment_push.config import get_settings
from segment_push.context import PushContext
from segment_push.errors import SegmentPushError
from segment_push.spec import JobSpec, PushMode
from segment_push.upload import SegmentUploader

logger = structlog.get_logger()


def partition_items(items: list, parallelism: int) -> list[list]:
    """
    Cut ``items`` into contiguous partitions.

    ``parallelism`` of 0 gives one partition per item; otherwise at most
    ``parallelism`` partitions of near-equal size.
    """
    if not items:
        return []
    count = len(items) if parallelism <= 0 else min(parallelism, len(items))
    size, extra = divmod(len(items), count)
    partitions = []
    start = 0
    for index in range(count):
        end = start + size + (1 if index < extra else 0)
        partitions.append(items[start:end])
        start = end
    return partitions


def build_payload(spec: JobSpec, push_mode: PushMode, items: list, partition: int = 0) -> dict[str, Any]:
    """The serializable input of one unit of distributed work."""
    return {
        "job_spec": spec.to_payload(),
        "push_mode": push_mode.value,
        "items": list(items),
        "partition": partition,
    }


def push_partition(context: PushContext, push_mode: PushMode, items: list) -> list[str]:
    """Upload one partition with an existing context."""
    return SegmentUploader(context).upload(push_mode, items)


def run_push_partition(payload: dict[str, Any]) -> list[str]:
    """
    Worker entry point.

    Bootstraps a fresh context from the payload, pushes the partition and
    returns the pushed segment names.
    """
    spec = JobSpec.from_payload(payload["job_spec"])
    push_mode = PushMode(payload["push_mode"])
    log = logger.bind(partition=payload.get("partition", 0), push_mode=push_mode.value)
    log.info("partition_started", items=len(payload["items"]))

    with PushContext.bootstrap(spec, worker=True) as context:
        pushed = push_partition(context, push_mode, payload["items"])

    log.info("partition_completed", segments=len(pushed))
    return pushed


class PartitionMapper(ABC):
    """Runs ``run_push_partition`` over a list of payloads."""

    name: str = "base"

    @abstractmethod
    def map(self, payloads: list[dict[str, Any]]) -> list[list[str]]:
        """
        Run every payload; results come back in payload order.

        The first failing partition stops queued partitions and its error
        is raised.
        """
        ...


class _ExecutorMapper(PartitionMapper):
    def __init__(self, max_workers: int | None = None):
        self.max_workers = max_workers

    @abstractmethod
    def _executor(self, max_workers: int) -> Executor:
        ...

    def map(self, payloads: list[dict[str, Any]]) -> list[list[str]]:
        if not payloads:
            return []
        max_workers = min(len(payloads), self.max_workers or get_settings().dispatch_max_workers)
        executor = self._executor(max_workers)
        try:
            futures = [executor.submit(run_push_partition, payload) for payload in payloads]
            done, pending = wait(futures, return_when=FIRST_EXCEPTION)
            failed = [f for f in futures if f in done and f.exception() is not None]
            if failed:
                for future in pending:
                    future.cancel()
                logger.error(
                    "partition_failed",
                    mapper=self.name,
                    failed=len(failed),
                    cancelled=sum(1 for f in pending if f.cancelled()),
                )
                raise failed[0].exception()
            return [future.result() for future in futures]
        finally:
            # In-flight partitions finish before the caller reacts to a failure
            executor.shutdown(wait=True, cancel_futures=True)


class ThreadPartitionMapper(_ExecutorMapper):
    """Partitions on a thread pool in this process (``standalone``)."""

    name = "standalone"

    def _executor(self, max_workers: int) -> Executor:
        return ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="segment-push")


class ProcessPartitionMapper(_ExecutorMapper):
    """Partitions in worker processes that share nothing with the driver (``process``)."""

    name = "process"

    def _executor(self, max_workers: int) -> Executor:
        return ProcessPoolExecutor(max_workers=max_workers)


class CeleryPartitionMapper(PartitionMapper):
    """
    Partitions as a group of Celery tasks (``celery``).

    Children are polled as they complete; the first failing partition
    revokes the whole group, whatever its position.
    """

    name = "celery"

    def __init__(self, timeout: float | None = None, poll_interval: float = 0.5):
        self.timeout = timeout
        self.poll_interval = poll_interval

    def _wait(self, result: Any) -> None:
        """Block until every child is ready, raising the first failure seen."""
        from celery.exceptions import TimeoutError as CeleryTimeoutError

        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        while True:
            children = list(result.results)
            for child in children:
                if child.failed():
                    child.get(propagate=True)
            if all(child.ready() for child in children):
                return
            if deadline is not None and time.monotonic() >= deadline:
                raise CeleryTimeoutError(f"Partitions not done after {self.timeout}s")
            time.sleep(self.poll_interval)

    def map(self, payloads: list[dict[str, Any]]) -> list[list[str]]:
        from celery import group

        from segment_push.tasks import push_partition_task

        result = group(push_partition_task.s(payload) for payload in payloads).apply_async()
        try:
            self._wait(result)
            return [child.get(propagate=True) for child in result.results]
        except SegmentPushError as e:
            result.revoke()
            logger.error("partition_failed", mapper=self.name, error=str(e))
            raise
        except Exception as e:
            result.revoke()
            logger.error("partition_failed", mapper=self.name, error=str(e))
            raise SegmentPushError(f"Celery partition failed: {type(e).__name__}: {e}") from e


MAPPERS: dict[str, type[PartitionMapper]] = {
    "standalone": ThreadPartitionMapper,
    "process": ProcessPartitionMapper,
    "celery": CeleryPartitionMapper,
}


def get_mapper(execution_framework: str) -> PartitionMapper:
    return MAPPERS[execution_framework]()


def dispatch(
    context: PushContext,
    push_mode: PushMode,
    items: list,
    mapper: PartitionMapper | None = None,
) -> tuple[list[str], int]:
    """
    Push every item, on the driver or across partitions.

    Returns:
        (pushed segment names, number of partitions)
    """
    spec = context.spec
    parallelism = spec.push.parallelism
    if not items:
        return [], 0

    if parallelism == 1 or (parallelism == 0 and len(items) == 1):
        logger.info("push_on_driver", push_mode=push_mode.value, items=len(items))
        return push_partition(context, push_mode, items), 1

    partitions = partition_items(items, parallelism)
    payloads = [build_payload(spec, push_mode, part, index) for index, part in enumerate(partitions)]
    mapper = mapper or get_mapper(spec.execution_framework)
    logger.info(
        "push_dispatched",
        push_mode=push_mode.value,
        mapper=mapper.name,
        partitions=len(partitions),
        items=len(items),
    )
    results = mapper.map(payloads)
    return [name for pushed in results for name in pushed], len(partitions)
