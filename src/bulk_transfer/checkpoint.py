"""
Checkpoint snapshot, resume and persistence.

The manager is the only place that turns live partition state into its
durable form and back. A resume never trusts the live page cursor: it
restarts at the first record that is not yet part of an uploaded part.
"""

import json
import logging
import threading
from typing import Any, Protocol

import pydantic

from .buffer import DEFAULT_PART_FLUSH_BYTES, ChunkBuffer
from .clients import S3Client
from .exceptions import CheckpointCorruptionError, S3UploadNotFoundError
from .schemas import CheckpointState, TransientState
from .security import build_object_key, sanitize_path_prefix, validate_label
from .summary import summary_total
from .uploader import ObjectStoreUploader

logger = logging.getLogger(__name__)


def encode_checkpoint(state: CheckpointState) -> str:
    return state.model_dump_json(by_alias=True)


def decode_checkpoint(data: str | bytes | dict[str, Any]) -> CheckpointState:
    """
    Parses a persisted checkpoint. Anything malformed or internally
    inconsistent raises CheckpointCorruptionError.
    """
    try:
        if isinstance(data, dict):
            state = CheckpointState.model_validate(data)
        else:
            state = CheckpointState.model_validate_json(data)
    except pydantic.ValidationError as e:
        raise CheckpointCorruptionError(
            "checkpoint failed validation",
            context={"errors": str(e)},
        ) from e

    try:
        completed = summary_total(state.object_summary)
    except ValueError as e:
        raise CheckpointCorruptionError(
            str(e), context={"object_summary": state.object_summary}
        ) from e
    if completed + state.current_object_resource_count != state.total_resource_count:
        raise CheckpointCorruptionError(
            "objectSummary does not add up to totalResourceCount",
            context={
                "summary_total": completed,
                "current_object": state.current_object_resource_count,
                "total_resource_count": state.total_resource_count,
            },
        )
    return state


class CheckpointManager:
    """Snapshots and resumes one partition's state."""

    def __init__(
        self,
        uploader: ObjectStoreUploader,
        bucket: str,
        prefix: str,
        label: str,
        spool_threshold: int = DEFAULT_PART_FLUSH_BYTES,
    ):
        self._uploader = uploader
        self._bucket = bucket
        self._prefix = sanitize_path_prefix(prefix)
        self._label = validate_label(label)
        self._spool_threshold = spool_threshold

    @property
    def label(self) -> str:
        return self._label

    def object_key(self, state: CheckpointState) -> str:
        """Key of the object currently being written: one past the completed ones."""
        return build_object_key(self._prefix, self._label, state.upload_count + 1)

    def open_session(self, state: CheckpointState) -> CheckpointState:
        upload_id = self._uploader.start_session(self._bucket, self.object_key(state))
        return state.model_copy(update={"upload_id": upload_id})

    def snapshot(self, transient: TransientState) -> CheckpointState:
        """
        The durable view of *transient*. Buffered records are deliberately
        absent: they are fetched again on resume.
        """
        data = transient.checkpoint.model_dump()
        data["page_number"] = max(
            transient.page_number, transient.checkpoint.last_flushed_page
        )
        data["last_page_number"] = transient.last_page_number
        try:
            return CheckpointState.model_validate(data)
        except pydantic.ValidationError as e:
            raise CheckpointCorruptionError(
                "live state violates checkpoint invariants",
                context={
                    "label": self._label,
                    "errors": str(e),
                },
            ) from e

    def resume(self, checkpoint: CheckpointState | None = None) -> TransientState:
        """
        Rebuilds live state from *checkpoint* (a fresh partition when None).

        The fetch cursor is placed at ``last_flushed_page + 1`` with
        ``page_record_offset`` records skipped. An open session is re-attached
        after checking that every recorded part is committed; if the session
        has vanished, the partition rewinds to the start of the current
        object and writes it again from a new session.
        """
        state = checkpoint or CheckpointState()
        if state.exhausted:
            return TransientState(
                checkpoint=state,
                next_page=state.last_flushed_page + 1,
                page_number=state.page_number,
                last_page_number=state.last_page_number,
            )

        if state.upload_id is not None:
            try:
                self._uploader.resume_session(
                    self._bucket, self.object_key(state), state.upload_id, state.parts
                )
            except S3UploadNotFoundError:
                logger.warning(
                    "Upload session vanished; rewinding to the start of the current object",
                    extra={
                        "label": self._label,
                        "upload_id": state.upload_id,
                        "object_start_page": state.object_start_page,
                        "object_start_offset": state.object_start_offset,
                        "discarded_records": state.current_object_resource_count,
                    },
                )
                state = state.rewound_to_object_start()

        if state.upload_id is None:
            state = self.open_session(state)

        logger.info(
            "Resumed partition",
            extra={
                "label": self._label,
                "next_page": state.last_flushed_page + 1,
                "skip_records": state.page_record_offset,
                "upload_count": state.upload_count,
                "total_resource_count": state.total_resource_count,
            },
        )
        return TransientState(
            checkpoint=state,
            next_page=state.last_flushed_page + 1,
            skip_records=state.page_record_offset,
            page_number=state.last_flushed_page,
            last_page_number=state.last_page_number,
            buffer=ChunkBuffer(self._spool_threshold),
        )

    encode = staticmethod(encode_checkpoint)
    decode = staticmethod(decode_checkpoint)


# --- Persistence (owned by the surrounding runtime) ---


class CheckpointStore(Protocol):
    def load(self, label: str) -> CheckpointState | None: ...

    def save(self, label: str, state: CheckpointState) -> None: ...


class InMemoryCheckpointStore:
    """Keeps encoded checkpoints in process, e.g. across step-level retries."""

    def __init__(self, initial: dict[str, CheckpointState] | None = None):
        self._lock = threading.Lock()
        self._data: dict[str, str] = {
            label: encode_checkpoint(state) for label, state in (initial or {}).items()
        }

    def load(self, label: str) -> CheckpointState | None:
        with self._lock:
            encoded = self._data.get(label)
        return decode_checkpoint(encoded) if encoded is not None else None

    def save(self, label: str, state: CheckpointState) -> None:
        encoded = encode_checkpoint(state)
        with self._lock:
            self._data[label] = encoded


class S3CheckpointStore:
    """Stores each partition's checkpoint as ``{prefix}/_checkpoints/{label}.json``."""

    def __init__(self, s3_client: S3Client, bucket: str, prefix: str):
        self._s3 = s3_client
        self._bucket = bucket
        self._prefix = sanitize_path_prefix(prefix)

    def _key(self, label: str) -> str:
        name = f"_checkpoints/{validate_label(label)}.json"
        return f"{self._prefix}/{name}" if self._prefix else name

    def load(self, label: str) -> CheckpointState | None:
        try:
            data = self._s3.get_json(self._bucket, self._key(label))
        except json.JSONDecodeError as e:
            raise CheckpointCorruptionError(
                "stored checkpoint is not valid JSON", context={"label": label}
            ) from e
        return decode_checkpoint(data) if data is not None else None

    def save(self, label: str, state: CheckpointState) -> None:
        size = self._s3.put_json(
            self._bucket, self._key(label), json.loads(encode_checkpoint(state))
        )
        logger.debug(
            "Persisted checkpoint",
            extra={"label": label, "bytes": size, "exhausted": state.exhausted},
        )
