"""Tar push: stream archive bytes to the controllers."""

from segment_push.runner.base import PushJobRunner
from segment_push.spec import PushMode


class TarPushJobRunner(PushJobRunner):
    push_mode = PushMode.TAR

    def compute_routing(self) -> list[str]:
        # Archives are read straight from where they were generated
        return list(self.candidates)
