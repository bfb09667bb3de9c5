"""S3-compatible object storage backend."""

from contextlib import contextmanager
from pathlib import Path
from typing import Any, BinaryIO
from urllib.parse import urlsplit

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from segment_push.config import get_settings
from segment_push.errors import FileSystemError, InvalidRequestError
from segment_push.filesystem.base import FileSystem

logger = structlog.get_logger()


class S3FileSystem(FileSystem):
    """
    ``s3`` scheme backed by S3, MinIO, LocalStack or any S3-compatible service.

    Config keys: ``region``, ``endpoint``, ``access_key``, ``secret_key``.
    Missing keys fall back to process settings.
    """

    scheme = "s3"

    def __init__(self, config: dict[str, Any] | None = None, client: Any = None):
        super().__init__(config)
        settings = get_settings()

        if client is None:
            region = self.config.get("region", settings.s3_region)
            endpoint_url = self.config.get("endpoint", settings.s3_endpoint)
            access_key = self.config.get("access_key", settings.s3_access_key)
            secret_key = self.config.get("secret_key", settings.s3_secret_key)

            client_kwargs = {
                "service_name": "s3",
                "region_name": region,
                "config": Config(signature_version="s3v4", retries={"max_attempts": 1}),
            }
            if endpoint_url:
                client_kwargs["endpoint_url"] = endpoint_url
            if access_key and secret_key:
                client_kwargs["aws_access_key_id"] = access_key
                client_kwargs["aws_secret_access_key"] = secret_key

            client = boto3.client(**client_kwargs)
            logger.info("s3_filesystem_initialized", endpoint=endpoint_url, region=region)

        self.client = client

    @staticmethod
    def split(uri: str) -> tuple[str, str]:
        """``s3://bucket/key`` -> ``(bucket, key)``."""
        parts = urlsplit(uri)
        if parts.scheme.lower() not in ("s3", "s3a") or not parts.netloc:
            raise InvalidRequestError(f"Not an S3 URI: {uri}")
        return parts.netloc, parts.path.lstrip("/")

    def list(self, dir_uri: str, recursive: bool = True) -> list[str]:
        """List objects under a prefix."""
        bucket, prefix = self.split(dir_uri)
        if prefix and not prefix.endswith("/"):
            prefix += "/"

        paginate_kwargs = {"Bucket": bucket, "Prefix": prefix}
        if not recursive:
            paginate_kwargs["Delimiter"] = "/"

        paginator = self.client.get_paginator("list_objects_v2")
        uris = []
        with _s3_errors(dir_uri):
            for page in paginator.paginate(**paginate_kwargs):
                for obj in page.get("Contents", []):
                    if obj["Key"].endswith("/"):
                        continue
                    uris.append(f"s3://{bucket}/{obj['Key']}")
        return sorted(uris)

    def copy(self, src_uri: str, dst_uri: str) -> None:
        src_bucket, src_key = self.split(src_uri)
        dst_bucket, dst_key = self.split(dst_uri)
        with _s3_errors(src_uri):
            self.client.copy_object(
                Bucket=dst_bucket,
                Key=dst_key,
                CopySource={"Bucket": src_bucket, "Key": src_key},
            )
        logger.debug("s3_object_copied", src=src_uri, dst=dst_uri)

    def move(self, src_uri: str, dst_uri: str) -> None:
        self.copy(src_uri, dst_uri)
        bucket, key = self.split(src_uri)
        with _s3_errors(src_uri):
            self.client.delete_object(Bucket=bucket, Key=key)
        logger.debug("s3_object_moved", src=src_uri, dst=dst_uri)

    def exists(self, uri: str) -> bool:
        bucket, key = self.split(uri)
        try:
            self.client.head_object(Bucket=bucket, Key=key)
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] in _NOT_FOUND_CODES:
                return False
            raise _translate(e, uri) from None

    def delete(self, uri: str) -> bool:
        if not self.exists(uri):
            return False
        bucket, key = self.split(uri)
        with _s3_errors(uri):
            self.client.delete_object(Bucket=bucket, Key=key)
        logger.info("s3_object_deleted", uri=uri)
        return True

    def open_read(self, uri: str) -> BinaryIO:
        bucket, key = self.split(uri)
        with _s3_errors(uri):
            response = self.client.get_object(Bucket=bucket, Key=key)
        return response["Body"]

    def copy_to_local(self, uri: str, local_path: Path) -> Path:
        bucket, key = self.split(uri)
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        with _s3_errors(uri):
            self.client.download_file(bucket, key, str(local_path))
        return local_path

    def copy_from_local(self, local_path: Path, uri: str) -> None:
        bucket, key = self.split(uri)
        with _s3_errors(uri):
            self.client.upload_file(str(local_path), bucket, key)


_NOT_FOUND_CODES = ("404", "NoSuchKey", "NotFound")
_THROTTLE_CODES = ("SlowDown", "Throttling", "RequestTimeout", "InternalError", "ServiceUnavailable")


def _translate(error: ClientError, uri: str) -> Exception:
    """Turn a botocore client error into a file-system error."""
    code = error.response.get("Error", {}).get("Code", "")
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
    if code in _NOT_FOUND_CODES:
        return FileNotFoundError(f"File not found: {uri}")
    retryable = status >= 500 or code in _THROTTLE_CODES
    return FileSystemError(f"S3 request for {uri} failed ({code or status}): {error}", retryable=retryable)


@contextmanager
def _s3_errors(uri: str):
    try:
        yield
    except ClientError as e:
        raise _translate(e, uri) from None
    except BotoCoreError as e:
        # Connection and endpoint failures
        raise FileSystemError(f"S3 request for {uri} failed: {e}", retryable=True) from None
