"""URI push: tell the controllers where to download each archive."""

import structlog

from segment_push.runner.base import PushJobRunner
from segment_push.spec import PushMode
from segment_push.uris import generate_segment_tar_uri

logger = structlog.get_logger()


class UriPushJobRunner(PushJobRunner):
    push_mode = PushMode.URI

    def compute_routing(self) -> list[str]:
        """Rewrite each archive URI with the configured prefix and suffix."""
        push = self.spec.push
        segment_uris = [
            generate_segment_tar_uri(
                self.output_dir_uri,
                tar_uri,
                prefix=push.segment_uri_prefix,
                suffix=push.segment_uri_suffix,
            )
            for tar_uri in self.candidates
        ]
        logger.debug("segment_uris_generated", count=len(segment_uris))
        return segment_uris
