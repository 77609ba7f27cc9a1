# src/bulk_transfer/clients.py

"""
Client wrapper for interacting with S3.

This class provides a clean, abstracted interface over a raw boto3 client,
making the transfer engine easier to read, test, and maintain. Every boto3
error is translated into the engine's own exception types so callers can
decide on abort/retry behaviour without knowing botocore error codes.
"""

import json
import logging
from typing import TYPE_CHECKING, Any, BinaryIO, cast

import boto3
from botocore.config import Config as BotocoreConfig
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from .exceptions import (
    BulkTransferError,
    S3AccessDeniedError,
    S3ObjectNotFoundError,
    S3ThrottlingError,
    S3TimeoutError,
    S3UploadNotFoundError,
    UploadError,
)

if TYPE_CHECKING:
    from mypy_boto3_s3.client import S3Client as S3ClientType

    from .config import AppConfig

logger = logging.getLogger(__name__)

NDJSON_CONTENT_TYPE = "application/fhir+ndjson"

_THROTTLING_CODES = {"Throttling", "ThrottlingException", "RequestLimitExceeded", "SlowDown"}
_TIMEOUT_CODES = {"RequestTimeout", "RequestTimeoutException"}


def build_boto3_s3_client(config: "AppConfig") -> "S3ClientType":
    """Creates a boto3 S3 client whose calls are bounded by the configured budget."""
    botocore_config = BotocoreConfig(
        connect_timeout=min(10, config.s3_operation_timeout_seconds),
        read_timeout=config.s3_operation_timeout_seconds,
        retries={"max_attempts": 3, "mode": "standard"},
    )
    kwargs: dict[str, Any] = {"config": botocore_config}
    if config.s3_endpoint_url:
        kwargs["endpoint_url"] = config.s3_endpoint_url
    return boto3.client("s3", **kwargs)


class S3Client:
    """
    A wrapper for S3 client operations, focused on multi-part uploads and
    streaming reads.
    """

    def __init__(
        self,
        s3_client: "S3ClientType",
        kms_key_id: str | None = None,
        operation_timeout_seconds: float = 30.0,
    ):
        """
        Initializes the S3Client.

        Args:
            s3_client: A typed boto3 S3 client.
            kms_key_id: Optional KMS key ID for server-side encryption.
            operation_timeout_seconds: Reported in timeout errors; the
                actual bound is set on the boto3 client's botocore config.
        """
        self._client = s3_client
        self._kms_key_id = kms_key_id
        self._timeout = operation_timeout_seconds
        if self._kms_key_id:
            logger.debug(
                "S3Client initialized with SSE-KMS enabled.",
                extra={"kms_key_id": self._kms_key_id},
            )

    # --- Error translation ---

    def _translate(
        self,
        e: Exception,
        operation: str,
        bucket: str,
        key: str,
        upload_id: str | None = None,
    ) -> BulkTransferError:
        """Map a boto3/botocore error to our specific exception types."""
        context: dict[str, Any] = {"bucket": bucket, "key": key}
        if upload_id:
            context["upload_id"] = upload_id

        if isinstance(e, ClientError):
            error_code = e.response["Error"]["Code"]
            error_message = e.response["Error"]["Message"]
            context.update(
                {"aws_error_code": error_code, "aws_error_message": error_message}
            )

            if error_code in ("NoSuchKey", "404"):
                return S3ObjectNotFoundError(bucket=bucket, key=key, context=context)
            if error_code == "NoSuchUpload" and upload_id:
                return S3UploadNotFoundError(
                    bucket=bucket, key=key, upload_id=upload_id, context=context
                )
            if error_code in ("AccessDenied", "403"):
                return S3AccessDeniedError(bucket=bucket, key=key, context=context)
            if error_code in _THROTTLING_CODES:
                return S3ThrottlingError(operation, context=context)
            if error_code in _TIMEOUT_CODES:
                return S3TimeoutError(operation, self._timeout, context=context)
            # For other client errors, wrap in a generic upload error
            return UploadError(
                f"S3 client error during {operation}: {error_message}",
                error_code="S3_CLIENT_ERROR",
                context=context,
            )

        if isinstance(e, (ReadTimeoutError, ConnectTimeoutError)):
            context["timeout_error"] = str(e)
            return S3TimeoutError(operation, self._timeout, context=context)

        if isinstance(e, EndpointConnectionError):
            context["connection_error"] = str(e)
            return S3TimeoutError(operation, self._timeout, context=context)

        return UploadError(
            f"Unexpected error during {operation}: {e}",
            error_code="S3_UNEXPECTED_ERROR",
            context=context,
        )

    # --- Multi-part upload ---

    def create_multipart_upload(self, bucket: str, key: str) -> str:
        """Starts a multi-part upload and returns its upload id."""
        extra_args: dict[str, Any] = {"ContentType": NDJSON_CONTENT_TYPE}
        if self._kms_key_id:
            extra_args.update(
                {"ServerSideEncryption": "aws:kms", "SSEKMSKeyId": self._kms_key_id}
            )
        try:
            response = self._client.create_multipart_upload(
                Bucket=bucket, Key=key, **extra_args
            )
        except (ClientError, ReadTimeoutError, ConnectTimeoutError, EndpointConnectionError) as e:
            raise self._translate(e, "CreateMultipartUpload", bucket, key) from e

        upload_id = response["UploadId"]
        logger.debug(
            "Multi-part upload started",
            extra={"bucket": bucket, "key": key, "upload_id": upload_id},
        )
        return upload_id

    def upload_part(
        self, bucket: str, key: str, upload_id: str, part_number: int, body: bytes
    ) -> str:
        """Uploads one part and returns its ETag."""
        try:
            response = self._client.upload_part(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                PartNumber=part_number,
                Body=body,
            )
        except (ClientError, ReadTimeoutError, ConnectTimeoutError, EndpointConnectionError) as e:
            raise self._translate(e, "UploadPart", bucket, key, upload_id) from e
        return response["ETag"]

    def complete_multipart_upload(
        self, bucket: str, key: str, upload_id: str, parts: list[tuple[int, str]]
    ) -> None:
        """Completes an upload from ordered (part_number, etag) pairs."""
        try:
            self._client.complete_multipart_upload(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={
                    "Parts": [
                        {"PartNumber": number, "ETag": etag} for number, etag in parts
                    ]
                },
            )
        except (ClientError, ReadTimeoutError, ConnectTimeoutError, EndpointConnectionError) as e:
            raise self._translate(e, "CompleteMultipartUpload", bucket, key, upload_id) from e
        logger.debug(
            "Multi-part upload completed",
            extra={"bucket": bucket, "key": key, "parts": len(parts)},
        )

    def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        try:
            self._client.abort_multipart_upload(
                Bucket=bucket, Key=key, UploadId=upload_id
            )
        except (ClientError, ReadTimeoutError, ConnectTimeoutError, EndpointConnectionError) as e:
            raise self._translate(e, "AbortMultipartUpload", bucket, key, upload_id) from e

    def list_parts(
        self, bucket: str, key: str, upload_id: str
    ) -> list[tuple[int, str, int]]:
        """Returns every committed (part_number, etag, size) of an open upload."""
        parts: list[tuple[int, str, int]] = []
        marker = 0
        try:
            while True:
                response = self._client.list_parts(
                    Bucket=bucket,
                    Key=key,
                    UploadId=upload_id,
                    PartNumberMarker=marker,
                )
                for part in response.get("Parts", []):
                    parts.append((part["PartNumber"], part["ETag"], part["Size"]))
                if not response.get("IsTruncated"):
                    break
                marker = response["NextPartNumberMarker"]
        except (ClientError, ReadTimeoutError, ConnectTimeoutError, EndpointConnectionError) as e:
            raise self._translate(e, "ListParts", bucket, key, upload_id) from e
        return parts

    # --- Whole objects ---

    def get_object_stream(self, bucket: str, key: str, start_byte: int = 0) -> BinaryIO:
        """
        Retrieves an S3 object's body as a file-like streaming object,
        optionally starting at *start_byte*.
        """
        kwargs: dict[str, Any] = {"Bucket": bucket, "Key": key}
        if start_byte > 0:
            kwargs["Range"] = f"bytes={start_byte}-"
        try:
            response = self._client.get_object(**kwargs)
        except (ClientError, ReadTimeoutError, ConnectTimeoutError, EndpointConnectionError) as e:
            raise self._translate(e, "GetObject", bucket, key) from e
        return cast(BinaryIO, response["Body"])

    def put_json(self, bucket: str, key: str, data: dict[str, Any]) -> int:
        """Writes *data* as a JSON object. Returns size in bytes."""
        body = json.dumps(data, separators=(",", ":")).encode("utf-8")
        extra_args: dict[str, Any] = {"ContentType": "application/json"}
        if self._kms_key_id:
            extra_args.update(
                {"ServerSideEncryption": "aws:kms", "SSEKMSKeyId": self._kms_key_id}
            )
        try:
            self._client.put_object(Bucket=bucket, Key=key, Body=body, **extra_args)
        except (ClientError, ReadTimeoutError, ConnectTimeoutError, EndpointConnectionError) as e:
            raise self._translate(e, "PutObject", bucket, key) from e
        return len(body)

    def get_json(self, bucket: str, key: str) -> dict[str, Any] | None:
        """Reads a JSON object, or returns None when the key does not exist."""
        try:
            stream = self.get_object_stream(bucket, key)
        except S3ObjectNotFoundError:
            return None
        try:
            return json.loads(stream.read())
        finally:
            stream.close()
