"""
Multi-part upload sessions, one per output object.

The uploader guarantees that a session is never left orphaned: any error
while uploading a part or completing the session is followed by exactly one
abort before the error reaches the caller, and an aborted session can never
be completed afterwards.
"""

import logging
from dataclasses import dataclass, field

from .clients import S3Client
from .exceptions import BulkTransferError, CheckpointCorruptionError, UploadError

logger = logging.getLogger(__name__)

# S3 rejects non-final parts smaller than 5 MiB at completion time.
S3_MIN_PART_SIZE = 5 * 1_048_576


@dataclass
class UploadSession:
    bucket: str
    key: str
    upload_id: str
    parts: list[tuple[int, str]] = field(default_factory=list)
    part_sizes: dict[int, int] = field(default_factory=dict)
    aborted: bool = False
    completed: bool = False

    @property
    def is_open(self) -> bool:
        return not (self.aborted or self.completed)


class ObjectStoreUploader:
    """Owns the multi-part sessions opened by a single partition worker."""

    def __init__(self, s3_client: S3Client, min_part_size: int = S3_MIN_PART_SIZE):
        self._s3 = s3_client
        self._min_part_size = min_part_size
        self._sessions: dict[str, UploadSession] = {}

    def session(self, upload_id: str) -> UploadSession:
        try:
            return self._sessions[upload_id]
        except KeyError:
            raise UploadError(
                "unknown upload session",
                error_code="UNKNOWN_UPLOAD_SESSION",
                context={"upload_id": upload_id},
            ) from None

    def _open_session(self, upload_id: str) -> UploadSession:
        session = self.session(upload_id)
        if not session.is_open:
            raise UploadError(
                "upload session is no longer open",
                error_code="UPLOAD_SESSION_CLOSED",
                context={
                    "upload_id": upload_id,
                    "aborted": session.aborted,
                    "completed": session.completed,
                },
            )
        return session

    def start_session(self, bucket: str, key: str) -> str:
        upload_id = self._s3.create_multipart_upload(bucket, key)
        self._sessions[upload_id] = UploadSession(bucket=bucket, key=key, upload_id=upload_id)
        logger.info(
            "Opened upload session",
            extra={"bucket": bucket, "key": key, "upload_id": upload_id},
        )
        return upload_id

    def resume_session(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        expected_parts: list[tuple[int, str]],
    ) -> UploadSession:
        """
        Re-attaches to an upload opened before a restart.

        Raises S3UploadNotFoundError when the session no longer exists, and
        CheckpointCorruptionError when the store lacks a part the checkpoint
        says was committed. Parts the store holds beyond the checkpoint were
        uploaded after the last persisted step and are overwritten later.
        """
        committed = {
            number: (etag, size)
            for number, etag, size in self._s3.list_parts(bucket, key, upload_id)
        }
        for number, tag in expected_parts:
            stored = committed.get(number)
            if stored is None or stored[0] != tag:
                raise CheckpointCorruptionError(
                    "checkpoint references a part the object store does not hold",
                    context={
                        "upload_id": upload_id,
                        "part_number": number,
                        "expected_tag": tag,
                        "stored_tag": stored[0] if stored else None,
                    },
                )

        session = UploadSession(
            bucket=bucket,
            key=key,
            upload_id=upload_id,
            parts=list(expected_parts),
            part_sizes={number: committed[number][1] for number, _ in expected_parts},
        )
        self._sessions[upload_id] = session
        logger.info(
            "Resumed upload session",
            extra={"key": key, "upload_id": upload_id, "parts": len(expected_parts)},
        )
        return session

    def upload_part(self, upload_id: str, part_number: int, data: bytes) -> str:
        session = self._open_session(upload_id)
        expected = len(session.parts) + 1
        if part_number != expected:
            error = UploadError(
                "part numbers must be gap-free",
                error_code="PART_NUMBER_GAP",
                context={"upload_id": upload_id, "expected": expected, "got": part_number},
            )
            self._abort_after_failure(session, error)
            raise error

        try:
            tag = self._s3.upload_part(
                session.bucket, session.key, upload_id, part_number, data
            )
        except BulkTransferError as e:
            self._abort_after_failure(session, e)
            raise

        session.parts.append((part_number, tag))
        session.part_sizes[part_number] = len(data)
        logger.debug(
            "Uploaded part",
            extra={"key": session.key, "part_number": part_number, "bytes": len(data)},
        )
        return tag

    def complete_session(self, upload_id: str, parts: list[tuple[int, str]]) -> None:
        session = self._open_session(upload_id)

        problem = self._validate_parts(session, parts)
        if problem is not None:
            self._abort_after_failure(session, problem)
            raise problem

        try:
            self._s3.complete_multipart_upload(
                session.bucket, session.key, upload_id, list(parts)
            )
        except BulkTransferError as e:
            self._abort_after_failure(session, e)
            raise

        session.completed = True
        logger.info(
            "Completed upload session",
            extra={"key": session.key, "upload_id": upload_id, "parts": len(parts)},
        )

    def abort_session(self, upload_id: str) -> None:
        """Aborts an open session. A session is aborted at most once."""
        session = self.session(upload_id)
        if not session.is_open:
            return
        session.aborted = True
        self._s3.abort_multipart_upload(session.bucket, session.key, upload_id)
        logger.warning(
            "Aborted upload session",
            extra={"key": session.key, "upload_id": upload_id},
        )

    def _abort_after_failure(self, session: UploadSession, cause: Exception) -> None:
        # The original error is what the caller sees; an abort failure is logged only.
        try:
            self.abort_session(session.upload_id)
        except BulkTransferError:
            logger.exception(
                "Failed to abort upload session after error",
                extra={
                    "key": session.key,
                    "upload_id": session.upload_id,
                    "cause": str(cause),
                },
            )

    def _validate_parts(
        self, session: UploadSession, parts: list[tuple[int, str]]
    ) -> UploadError | None:
        if not parts:
            return UploadError(
                "cannot complete a session without parts",
                error_code="EMPTY_UPLOAD_SESSION",
                context={"upload_id": session.upload_id},
            )
        if list(parts) != session.parts:
            return UploadError(
                "completion parts do not match uploaded parts",
                error_code="PART_LIST_MISMATCH",
                context={"upload_id": session.upload_id, "parts": len(parts)},
            )
        for number, _ in parts[:-1]:
            size = session.part_sizes.get(number, 0)
            if size < self._min_part_size:
                return UploadError(
                    "only the final part may be smaller than the minimum part size",
                    error_code="PART_TOO_SMALL",
                    context={
                        "upload_id": session.upload_id,
                        "part_number": number,
                        "size": size,
                        "min_part_size": self._min_part_size,
                    },
                )
        return None
