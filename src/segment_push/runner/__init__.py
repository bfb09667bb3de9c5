"""Push job runners, one per push mode."""

from segment_push.context import PushContext
from segment_push.dispatch import PartitionMapper
from segment_push.models import PushResult
from segment_push.runner.base import PushJobRunner
from segment_push.runner.metadata import MetadataPushJobRunner
from segment_push.runner.tar import TarPushJobRunner
from segment_push.runner.uri import UriPushJobRunner
from segment_push.spec import JobSpec, PushMode

RUNNERS: dict[PushMode, type[PushJobRunner]] = {
    PushMode.TAR: TarPushJobRunner,
    PushMode.URI: UriPushJobRunner,
    PushMode.METADATA: MetadataPushJobRunner,
}


def create_runner(push_mode: PushMode, mapper: PartitionMapper | None = None) -> PushJobRunner:
    return RUNNERS[PushMode(push_mode)](mapper=mapper)


def run_push(
    spec: JobSpec,
    context: PushContext | None = None,
    mapper: PartitionMapper | None = None,
) -> PushResult:
    """Run one push job with the runner for its push mode."""
    runner = create_runner(spec.push.mode, mapper=mapper).init(spec, context)
    try:
        return runner.run()
    finally:
        runner.close()


__all__ = [
    "PushJobRunner",
    "TarPushJobRunner",
    "UriPushJobRunner",
    "MetadataPushJobRunner",
    "RUNNERS",
    "create_runner",
    "run_push",
]
