"""
The reverse direction: NDJSON objects in S3 into a persistence sink.

Each step reads one batch of lines from the current input, starting at the
checkpoint's byte offset, and hands the parsed records to the sink. The
checkpoint only advances after the sink has accepted the batch, so a
restart re-reads exactly the lines whose outcome was not recorded.
"""

import json
import logging
import threading
from typing import Any, BinaryIO, Callable, Iterator, Protocol
from urllib.parse import urlparse

from .clients import S3Client
from .exceptions import ValidationError
from .schemas import ImportCheckpoint, ImportInput

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 64 * 1024


class PersistenceSink(Protocol):
    def write(self, category: str, records: list[dict[str, Any]]) -> tuple[int, int]:
        """Persists *records*; returns (succeeded, failed)."""
        ...


def _iter_lines(stream: BinaryIO) -> Iterator[bytes]:
    """Yields raw lines including their terminator; the last line may lack one."""
    pending = b""
    for chunk in iter(lambda: stream.read(_READ_CHUNK_BYTES), b""):
        pending += chunk
        *lines, pending = pending.split(b"\n")
        for line in lines:
            yield line + b"\n"
    if pending:
        yield pending


def import_summary(checkpoint: ImportCheckpoint) -> str:
    """Per-input outcome, ``[ok:fail]`` for each completed input, comma joined."""
    return ",".join(f"[{counts}]" for counts in checkpoint.completed_counts)


class NdjsonImporter:
    def __init__(
        self,
        s3_client: S3Client,
        sink: PersistenceSink,
        inputs: list[ImportInput],
        default_bucket: str,
        batch_size: int = 500,
        category_field: str = "resourceType",
        stop_event: threading.Event | None = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        if not inputs:
            raise ValidationError("import requires at least one input", error_code="NO_IMPORT_INPUTS")
        self._s3 = s3_client
        self._sink = sink
        self._inputs = inputs
        self._default_bucket = default_bucket
        self._batch_size = batch_size
        self._category_field = category_field
        self._stop_event = stop_event or threading.Event()

    def _locate(self, item: ImportInput) -> tuple[str, str]:
        parsed = urlparse(item.url)
        if parsed.scheme == "s3":
            bucket, key = parsed.netloc, parsed.path.lstrip("/")
        elif not parsed.scheme:
            bucket, key = self._default_bucket, item.url.lstrip("/")
        else:
            raise ValidationError(
                "import inputs must be S3 URLs or keys",
                error_code="INVALID_IMPORT_URL",
                context={"url": item.url},
            )
        if not bucket or not key:
            raise ValidationError(
                "import input does not name an object",
                error_code="INVALID_IMPORT_URL",
                context={"url": item.url},
            )
        return bucket, key

    def run(
        self,
        checkpoint: ImportCheckpoint | None = None,
        on_checkpoint: Callable[[ImportCheckpoint], None] | None = None,
    ) -> ImportCheckpoint:
        checkpoint = checkpoint or ImportCheckpoint()
        while not checkpoint.exhausted and not self._stop_event.is_set():
            checkpoint = self.step(checkpoint)
            if on_checkpoint is not None:
                on_checkpoint(checkpoint)
        return checkpoint

    def step(self, checkpoint: ImportCheckpoint) -> ImportCheckpoint:
        """Processes one batch of the current input and returns the advanced checkpoint."""
        if checkpoint.exhausted:
            return checkpoint
        if checkpoint.input_index >= len(self._inputs):
            return checkpoint.model_copy(update={"exhausted": True})

        item = self._inputs[checkpoint.input_index]
        bucket, key = self._locate(item)

        records: list[dict[str, Any]] = []
        bad_lines = 0
        consumed_bytes = 0
        consumed_lines = 0
        at_end = True

        stream = self._s3.get_object_stream(bucket, key, start_byte=checkpoint.byte_offset)
        try:
            for raw in _iter_lines(stream):
                if len(records) + bad_lines >= self._batch_size:
                    at_end = False
                    break
                consumed_bytes += len(raw)
                consumed_lines += 1
                text = raw.strip()
                if not text:
                    continue
                record = self._parse(text, item.type, checkpoint.line_number + consumed_lines)
                if record is None:
                    bad_lines += 1
                else:
                    records.append(record)
        finally:
            stream.close()

        ok, failed = self._sink.write(item.type, records) if records else (0, 0)
        failed += bad_lines
        success_count = checkpoint.success_count + ok
        failure_count = checkpoint.failure_count + failed

        if not at_end:
            return checkpoint.model_copy(
                update={
                    "byte_offset": checkpoint.byte_offset + consumed_bytes,
                    "line_number": checkpoint.line_number + consumed_lines,
                    "success_count": success_count,
                    "failure_count": failure_count,
                }
            )

        logger.info(
            "Finished import input",
            extra={
                "url": item.url,
                "category": item.type,
                "succeeded": success_count,
                "failed": failure_count,
            },
        )
        next_index = checkpoint.input_index + 1
        return ImportCheckpoint(
            input_index=next_index,
            completed_counts=checkpoint.completed_counts
            + (f"{success_count}:{failure_count}",),
            exhausted=next_index >= len(self._inputs),
        )

    def _parse(self, text: bytes, category: str, line_number: int) -> dict[str, Any] | None:
        try:
            record = json.loads(text)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning(
                "Skipping unparseable import line",
                extra={"category": category, "line_number": line_number, "error": str(e)},
            )
            return None
        if not isinstance(record, dict):
            logger.warning(
                "Skipping import line that is not an object",
                extra={"category": category, "line_number": line_number},
            )
            return None
        found = record.get(self._category_field, category)
        if found != category:
            logger.warning(
                "Skipping record of the wrong category",
                extra={"category": category, "found": found, "line_number": line_number},
            )
            return None
        return record
