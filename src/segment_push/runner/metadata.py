"""Metadata push: send segment URIs together with extracted metadata."""

import structlog

from segment_push.errors import InvalidRequestError, SegmentPushError
from segment_push.naming import segment_name_from_uri
from segment_push.retry import RetryContext, attempt
from segment_push.runner.base import PushJobRunner
from segment_push.spec import PushMode
from segment_push.uris import generate_segment_tar_uri, join_uri, normalize_dir_uri, relativize

logger = structlog.get_logger()


class MetadataPushJobRunner(PushJobRunner):
    """
    Builds the segment URI -> tar mapping.

    With ``deep_store_uri`` set, each archive is first copied (or moved)
    there and the public URI is derived from the staged copy.  Metadata is
    read from whichever copy is still in place: the original after a copy,
    the staged archive after a move.
    """

    push_mode = PushMode.METADATA

    def _stage(self, tar_uri: str, deep_store_uri: str) -> str:
        relative = relativize(self.output_dir_uri, tar_uri)
        if relative == tar_uri:
            relative = f"{segment_name_from_uri(tar_uri)}.tar.gz"
        staged_uri = join_uri(deep_store_uri, relative)

        move = self.spec.push.move_to_deep_store
        retry = RetryContext(self.context.retry_policy, description=f"stage {tar_uri}")
        try:
            retry.run(lambda: attempt(self.context.filesystems.transfer, tar_uri, staged_uri, move=move))
        except SegmentPushError as e:
            raise e.with_context(
                segment=segment_name_from_uri(tar_uri),
                push_mode=self.push_mode.value,
                uri=tar_uri,
            )
        logger.info("segment_staged", src=tar_uri, dst=staged_uri, move=move)
        return staged_uri

    def compute_routing(self) -> dict[str, str]:
        push = self.spec.push
        deep_store_uri = normalize_dir_uri(push.deep_store_uri) if push.deep_store_uri else None

        mapping: dict[str, str] = {}
        for tar_uri in self.candidates:
            base_dir, published = self.output_dir_uri, tar_uri
            metadata_source = tar_uri
            if deep_store_uri:
                published = self._stage(tar_uri, deep_store_uri)
                base_dir = deep_store_uri
                if push.move_to_deep_store:
                    metadata_source = published

            segment_uri = generate_segment_tar_uri(
                base_dir,
                published,
                prefix=push.segment_uri_prefix,
                suffix=push.segment_uri_suffix,
            )
            if segment_uri in mapping:
                raise InvalidRequestError(
                    f"Archives {mapping[segment_uri]} and {metadata_source} map to the same segment URI {segment_uri}"
                ).with_context(push_mode=self.push_mode.value, uri=segment_uri)
            mapping[segment_uri] = metadata_source

        logger.debug("segment_uri_mapping_built", count=len(mapping))
        return mapping

    def work_items(self, routing: dict[str, str]) -> list:
        return [[segment_uri, tar_uri] for segment_uri, tar_uri in routing.items()]
