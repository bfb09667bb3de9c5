"""HTTP control plane client."""

from typing import Any, BinaryIO, Callable

import httpx
import structlog

from segment_push.config import get_settings
from segment_push.errors import ControllerError, InvalidRequestError, TransientError
from segment_push.metadata import SegmentMetadata
from segment_push.models import LineageEntry
from segment_push.retry import AttemptResult
from segment_push.spec import TableSpec

logger = structlog.get_logger()

# Upload headers understood by the controller
UPLOAD_TYPE = "UPLOAD_TYPE"
DOWNLOAD_URI = "DOWNLOAD_URI"
COPY_SEGMENT_TO_DEEP_STORE = "COPY_SEGMENT_TO_DEEP_STORE"

RETRIABLE_STATUS_CODES = {408, 429}


def classify_response(response: httpx.Response, operation: str) -> AttemptResult:
    """Map an HTTP response onto an attempt outcome."""
    if response.is_success:
        return AttemptResult.success(response)

    detail = response.text[:500]
    reason = f"{operation} returned HTTP {response.status_code}: {detail}"
    if response.status_code >= 500 or response.status_code in RETRIABLE_STATUS_CODES:
        return AttemptResult.retriable(reason, error=TransientError(reason))
    return AttemptResult.fatal(reason, error=ControllerError(reason, status_code=response.status_code))


class HttpControlPlane:
    """
    Control plane reached over HTTP.

    Timeouts and transport failures are reported as retriable, as are
    408/429 and any 5xx response.  Other 4xx responses are fatal.
    """

    def __init__(
        self,
        controller_uri: str,
        auth_token: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        settings = get_settings()
        self.uri = controller_uri.rstrip("/")
        headers = {}
        token = auth_token or settings.auth_token
        if token:
            headers["Authorization"] = token

        self._client = httpx.Client(
            base_url=self.uri,
            headers=headers,
            timeout=timeout or settings.controller_timeout_seconds,
            transport=transport,
        )
        logger.debug("controller_client_created", controller=self.uri)

    def _call(
        self,
        operation: str,
        send: Callable[[httpx.Client], httpx.Response],
        parse: Callable[[httpx.Response], Any] | None = None,
    ) -> AttemptResult:
        try:
            response = send(self._client)
        except httpx.UnsupportedProtocol as e:
            reason = f"{operation}: unsupported controller URI {self.uri}: {e}"
            return AttemptResult.fatal(reason, error=InvalidRequestError(reason))
        except httpx.TransportError as e:
            # Timeouts, connection resets, DNS failures
            reason = f"{operation}: {type(e).__name__}: {e}"
            return AttemptResult.retriable(reason, error=TransientError(reason))

        result = classify_response(response, operation)
        if not result.ok or parse is None:
            return result

        try:
            return AttemptResult.success(parse(response))
        except (ValueError, KeyError, TypeError) as e:
            reason = f"{operation}: unexpected response body: {e}"
            return AttemptResult.fatal(reason, error=ControllerError(reason, status_code=response.status_code))

    @staticmethod
    def _upload_params(table: TableSpec) -> dict[str, str]:
        return {
            "tableName": table.raw_table_name,
            "tableType": table.table_type.value,
        }

    def upload_segment(
        self, table: TableSpec, segment_name: str, stream: BinaryIO, copy_to_deep_store: bool = True
    ) -> AttemptResult:
        headers = {
            UPLOAD_TYPE: "SEGMENT",
            COPY_SEGMENT_TO_DEEP_STORE: str(copy_to_deep_store).lower(),
        }
        return self._call(
            f"upload segment {segment_name}",
            lambda client: client.post(
                "/v2/segments",
                params=self._upload_params(table),
                headers=headers,
                files={segment_name: (f"{segment_name}.tar.gz", stream, "application/octet-stream")},
            ),
        )

    def send_segment_uri(self, table: TableSpec, segment_uri: str) -> AttemptResult:
        headers = {UPLOAD_TYPE: "URI", DOWNLOAD_URI: segment_uri}
        return self._call(
            f"send segment uri {segment_uri}",
            lambda client: client.post("/v2/segments", params=self._upload_params(table), headers=headers),
        )

    def send_segment_uri_and_metadata(
        self,
        table: TableSpec,
        segment_uri: str,
        metadata: SegmentMetadata,
        copy_to_deep_store: bool = False,
    ) -> AttemptResult:
        headers = {
            UPLOAD_TYPE: "METADATA",
            DOWNLOAD_URI: segment_uri,
            COPY_SEGMENT_TO_DEEP_STORE: str(copy_to_deep_store).lower(),
        }
        payload = metadata.to_archive_bytes()
        return self._call(
            f"send segment metadata {metadata.segment_name}",
            lambda client: client.post(
                "/v2/segments",
                params=self._upload_params(table),
                headers=headers,
                files={metadata.segment_name: (f"{metadata.segment_name}.tar.gz", payload, "application/octet-stream")},
            ),
        )

    def list_segments(self, table: TableSpec) -> AttemptResult:
        def parse(response: httpx.Response) -> set[str]:
            # [{"OFFLINE": ["seg_0", "seg_1"]}]
            names: set[str] = set()
            for item in response.json():
                names.update(item.get(table.table_type.value, []))
            return names

        return self._call(
            f"list segments {table.raw_table_name}",
            lambda client: client.get(
                f"/segments/{table.raw_table_name}",
                params={"type": table.table_type.value, "excludeReplacedSegments": "true"},
            ),
            parse,
        )

    def get_table_config(self, table: TableSpec) -> AttemptResult:
        def parse(response: httpx.Response) -> dict:
            body = response.json()
            config = body.get(table.table_type.value, body)
            if not isinstance(config, dict):
                raise ValueError("table config is not an object")
            return config

        return self._call(
            f"get table config {table.raw_table_name}",
            lambda client: client.get(f"/tables/{table.raw_table_name}", params={"type": table.table_type.value}),
            parse,
        )

    def start_replace_segments(
        self, table: TableSpec, segments_from: list[str], segments_to: list[str]
    ) -> AttemptResult:
        return self._call(
            f"start replace segments {table.raw_table_name}",
            lambda client: client.post(
                f"/segments/{table.raw_table_name}/startReplaceSegments",
                params={"type": table.table_type.value},
                json={"segmentsFrom": list(segments_from), "segmentsTo": list(segments_to)},
            ),
            lambda response: str(response.json()["segmentLineageEntryId"]),
        )

    def end_replace_segments(self, table: TableSpec, entry_id: str) -> AttemptResult:
        return self._call(
            f"end replace segments {entry_id}",
            lambda client: client.post(
                f"/segments/{table.raw_table_name}/endReplaceSegments",
                params={"type": table.table_type.value, "segmentLineageEntryId": entry_id},
            ),
        )

    def revert_replace_segments(self, table: TableSpec, entry_id: str) -> AttemptResult:
        return self._call(
            f"revert replace segments {entry_id}",
            lambda client: client.post(
                f"/segments/{table.raw_table_name}/revertReplaceSegments",
                params={
                    "type": table.table_type.value,
                    "segmentLineageEntryId": entry_id,
                    "forceRevert": "true",
                },
            ),
        )

    def list_lineage(self, table: TableSpec) -> AttemptResult:
        def parse(response: httpx.Response) -> list[LineageEntry]:
            body = response.json()
            if isinstance(body, dict):
                body = [dict(entry, entryId=entry_id) for entry_id, entry in body.items()]
            entries = [LineageEntry.from_dict(item) for item in body]
            return sorted(entries, key=lambda e: e.timestamp_ms)

        return self._call(
            f"list lineage {table.raw_table_name}",
            lambda client: client.get(
                f"/segments/{table.raw_table_name}/lineage",
                params={"type": table.table_type.value},
            ),
            parse,
        )

    def close(self) -> None:
        self._client.close()

    def __repr__(self) -> str:
        return f"HttpControlPlane({self.uri!r})"
