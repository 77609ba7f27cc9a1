"""
Shared fixtures for unit tests.
"""

from __future__ import annotations

import hashlib
import io
import itertools
import math
import os
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from bulk_transfer.clients import S3Client
from bulk_transfer.config import AppConfig
from bulk_transfer.fetcher import Page


@pytest.fixture(scope="session", autouse=True)
def _env_vars():
    """
    Ensures a deterministic environment for every test run.
    Overwrite *only* the variables needed by the handler.
    """
    original = os.environ.copy()
    os.environ.setdefault("POWERTOOLS_SERVICE_NAME", "bulk-transfer-test")
    os.environ.setdefault("POWERTOOLS_LOG_LEVEL", "INFO")
    os.environ.setdefault("POWERTOOLS_TRACE_DISABLED", "true")
    os.environ.setdefault("AWS_DEFAULT_REGION", "eu-west-1")
    yield
    os.environ.clear()
    os.environ.update(original)


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeS3:
    """
    In-memory stand-in for a boto3 S3 client, covering the multi-part and
    object calls the engine makes. Completed objects land in ``objects``.
    """

    def __init__(self):
        self.objects: dict[tuple[str, str], bytes] = {}
        self.uploads: dict[str, dict] = {}
        self.aborted: list[str] = []
        self.completed: list[str] = []
        self.fail_next: dict[str, str] = {}
        self._ids = itertools.count(1)

    def _maybe_fail(self, operation: str) -> None:
        code = self.fail_next.pop(operation, None)
        if code is not None:
            raise _client_error(code, operation)

    def _upload(self, upload_id: str, operation: str) -> dict:
        upload = self.uploads.get(upload_id)
        if upload is None:
            raise _client_error("NoSuchUpload", operation)
        return upload

    def create_multipart_upload(self, Bucket, Key, **kwargs):
        self._maybe_fail("CreateMultipartUpload")
        upload_id = f"upload-{next(self._ids)}"
        self.uploads[upload_id] = {"bucket": Bucket, "key": Key, "parts": {}, "args": kwargs}
        return {"UploadId": upload_id, "Bucket": Bucket, "Key": Key}

    def upload_part(self, Bucket, Key, UploadId, PartNumber, Body):
        self._maybe_fail("UploadPart")
        upload = self._upload(UploadId, "UploadPart")
        etag = '"%s"' % hashlib.md5(Body).hexdigest()
        upload["parts"][PartNumber] = (etag, bytes(Body))
        return {"ETag": etag}

    def complete_multipart_upload(self, Bucket, Key, UploadId, MultipartUpload):
        self._maybe_fail("CompleteMultipartUpload")
        upload = self._upload(UploadId, "CompleteMultipartUpload")
        body = b""
        for part in MultipartUpload["Parts"]:
            etag, data = upload["parts"][part["PartNumber"]]
            if etag != part["ETag"]:
                raise _client_error("InvalidPart", "CompleteMultipartUpload")
            body += data
        self.objects[(Bucket, Key)] = body
        del self.uploads[UploadId]
        self.completed.append(UploadId)
        return {"Bucket": Bucket, "Key": Key}

    def abort_multipart_upload(self, Bucket, Key, UploadId):
        self._maybe_fail("AbortMultipartUpload")
        self._upload(UploadId, "AbortMultipartUpload")
        del self.uploads[UploadId]
        self.aborted.append(UploadId)
        return {}

    def list_parts(self, Bucket, Key, UploadId, PartNumberMarker=0):
        upload = self._upload(UploadId, "ListParts")
        parts = [
            {"PartNumber": n, "ETag": etag, "Size": len(data)}
            for n, (etag, data) in sorted(upload["parts"].items())
            if n > PartNumberMarker
        ]
        return {"Parts": parts, "IsTruncated": False}

    def get_object(self, Bucket, Key, Range=None):
        if (Bucket, Key) not in self.objects:
            raise _client_error("NoSuchKey", "GetObject")
        body = self.objects[(Bucket, Key)]
        if Range:
            start = int(Range.removeprefix("bytes=").rstrip("-"))
            body = body[start:]
        return {"Body": io.BytesIO(body)}

    def put_object(self, Bucket, Key, Body, **kwargs):
        self.objects[(Bucket, Key)] = bytes(Body)
        return {}

    def lines(self, bucket: str, key: str) -> list[bytes]:
        return self.objects[(bucket, key)].splitlines()


class ListSource:
    """A PageSource over fixed, stably ordered record lists."""

    def __init__(self, records: dict[str, list], filtered: dict | None = None):
        self._records = records
        self._filtered = filtered or {}
        self.calls: list[tuple[str, tuple[str, ...], int, int]] = []

    def page(self, category, filters, page_number, page_size):
        self.calls.append((category, filters, page_number, page_size))
        if filters:
            records = self._filtered[(category, filters[0])]
        else:
            records = self._records.get(category, [])
        last = math.ceil(len(records) / page_size)
        start = (page_number - 1) * page_size
        return Page(records=records[start : start + page_size], last_page_number=last)


@pytest.fixture
def fake_s3() -> FakeS3:
    return FakeS3()


@pytest.fixture
def s3_client(fake_s3: FakeS3) -> S3Client:
    return S3Client(s3_client=fake_s3)


@pytest.fixture
def make_records():
    def _make(category: str, count: int, start: int = 1) -> list[dict]:
        return [
            {"resourceType": category, "id": f"{category.lower()}-{i}"}
            for i in range(start, start + count)
        ]

    return _make


@pytest.fixture
def lambda_context():
    """A stand-in for the LambdaContext object with plenty of time left."""
    context = MagicMock()
    context.function_name = "bulk-transfer-test"
    context.memory_limit_in_mb = 512
    context.invoked_function_arn = "arn:aws:lambda:eu-west-1:000000000000:function:bulk-transfer"
    context.aws_request_id = "52fdfc07-2182-154f-163f-5f0f9a621d72"
    context.get_remaining_time_in_millis.return_value = 600_000
    return context


@pytest.fixture
def list_source():
    """The ListSource class, for tests that build their own sources."""
    return ListSource


@pytest.fixture
def app_config() -> AppConfig:
    """A configuration built directly, with small rollover limits."""
    return AppConfig(
        export_bucket="export-bucket",
        service_name="bulk-transfer-test",
        environment="test",
        log_level="INFO",
        page_size=2,
        part_upload_min_mb=5,
        object_rollover_mb=200,
        object_rollover_resources=3,
        max_workers=4,
        import_batch_size=2,
        fetch_timeout_seconds=5,
        s3_operation_timeout_seconds=5,
        timeout_guard_threshold_seconds=30,
        retry_max_attempts=2,
        retry_backoff_base_seconds=0.0,
        retry_backoff_max_seconds=0.0,
        kms_key_id=None,
        s3_endpoint_url=None,
        export_base_url="https://s3.amazonaws.com",
    )
