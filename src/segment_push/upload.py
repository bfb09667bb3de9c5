"""Upload executor.

Three primitives, one per push mode.  Each segment is sent to every
configured controller under the bounded retry policy; the first segment
that cannot be delivered stops the partition with an error naming the
segment, push mode and controller.
"""

import tempfile
from pathlib import Path

import structlog

from segment_push.context import PushContext
from segment_push.controller import ControlPlane
from segment_push.errors import MetadataError, SegmentPushError
from segment_push.filesystem import LocalFileSystem
from segment_push.metadata import SegmentMetadata, extract_segment_metadata
from segment_push.naming import segment_name_from_uri
from segment_push.retry import AttemptResult, RetryContext, attempt
from segment_push.spec import PushMode

logger = structlog.get_logger()


class SegmentUploader:
    """Sends segments to the control plane for one push partition."""

    def __init__(self, context: PushContext):
        self.context = context
        self.table = context.spec.table
        self.push = context.spec.push

    def _deliver(
        self,
        push_mode: PushMode,
        segment_name: str,
        uri: str,
        send,
    ) -> None:
        """Run ``send(controller)`` against every controller with retry."""
        for controller in self.context.controllers:
            retry = RetryContext(
                self.context.retry_policy,
                description=f"{push_mode.value} push of {segment_name} to {controller.uri}",
            )
            try:
                retry.run(lambda: send(controller))
            except SegmentPushError as e:
                raise e.with_context(
                    segment=segment_name,
                    push_mode=push_mode.value,
                    table=self.table.table_name,
                    controller_uri=controller.uri,
                    uri=uri,
                )
            logger.info(
                "segment_pushed",
                segment=segment_name,
                push_mode=push_mode.value,
                controller=controller.uri,
                attempts=retry.attempts,
            )

    def push_tar_segments(self, tar_uris: list[str]) -> list[str]:
        """Stream each archive to the controllers."""
        pushed = []
        for tar_uri in tar_uris:
            segment_name = segment_name_from_uri(tar_uri)
            fs = self.context.filesystems.for_uri(tar_uri)

            def send(controller: ControlPlane, tar_uri=tar_uri, segment_name=segment_name, fs=fs) -> AttemptResult:
                # Reopen per attempt, a failed attempt may have consumed the stream
                opened = attempt(fs.open_read, tar_uri)
                if not opened.ok:
                    return opened
                with opened.value as stream:
                    return controller.upload_segment(self.table, segment_name, stream, copy_to_deep_store=True)

            self._deliver(PushMode.TAR, segment_name, tar_uri, send)
            pushed.append(segment_name)
        return pushed

    def send_segment_uris(self, segment_uris: list[str]) -> list[str]:
        """Tell the controllers where to fetch each segment."""
        pushed = []
        for segment_uri in segment_uris:
            segment_name = segment_name_from_uri(segment_uri)
            self._deliver(
                PushMode.URI,
                segment_name,
                segment_uri,
                lambda controller, segment_uri=segment_uri: controller.send_segment_uri(self.table, segment_uri),
            )
            pushed.append(segment_name)
        return pushed

    def send_segment_uris_and_metadata(self, segment_uri_to_tar: dict[str, str]) -> list[str]:
        """Send each segment URI together with metadata read from its archive."""
        pushed = []
        with tempfile.TemporaryDirectory(prefix="segment-push-metadata-") as tmp:
            for segment_uri, tar_uri in segment_uri_to_tar.items():
                segment_name = segment_name_from_uri(segment_uri)
                try:
                    metadata = self._read_metadata(tar_uri, segment_name, Path(tmp))
                    if metadata.segment_name != segment_name:
                        raise MetadataError(
                            f"Archive {tar_uri} declares segment {metadata.segment_name}, expected {segment_name}"
                        )
                except SegmentPushError as e:
                    raise e.with_context(
                        segment=segment_name,
                        push_mode=PushMode.METADATA.value,
                        table=self.table.table_name,
                        uri=tar_uri,
                    )

                def send(controller: ControlPlane, segment_uri=segment_uri, metadata=metadata) -> AttemptResult:
                    return controller.send_segment_uri_and_metadata(
                        self.table,
                        segment_uri,
                        metadata,
                        copy_to_deep_store=self.push.copy_to_deep_store,
                    )

                self._deliver(PushMode.METADATA, segment_name, segment_uri, send)
                pushed.append(segment_name)
        return pushed

    def _read_metadata(self, tar_uri: str, segment_name: str, tmp: Path) -> SegmentMetadata:
        fs = self.context.filesystems.for_uri(tar_uri)
        if isinstance(fs, LocalFileSystem):
            return extract_segment_metadata(fs.to_path(tar_uri), expected_name=segment_name)

        local_path = tmp / f"{segment_name}.tar.gz"
        retry = RetryContext(self.context.retry_policy, description=f"download {tar_uri}")
        retry.run(lambda: attempt(fs.copy_to_local, tar_uri, local_path))
        try:
            return extract_segment_metadata(local_path, expected_name=segment_name)
        finally:
            local_path.unlink(missing_ok=True)

    def upload(self, push_mode: PushMode, items: list) -> list[str]:
        """Dispatch a partition of work items to the matching primitive."""
        if push_mode is PushMode.TAR:
            return self.push_tar_segments(items)
        if push_mode is PushMode.URI:
            return self.send_segment_uris(items)
        return self.send_segment_uris_and_metadata({segment_uri: tar_uri for segment_uri, tar_uri in items})
