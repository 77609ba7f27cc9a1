"""
The per-partition transfer loop.

Each call to ``Orchestrator.step()`` fetches one page, pushes its records
through the serializer into the chunk buffer, applies the rollover policy
after every record, and returns the checkpoint the runtime must persist
before calling ``step()`` again.

Positions in the source are tracked as ``(page, offset)`` pairs meaning
"every record of pages up to *page*, plus the first *offset* records of the
page after it". The durable position only moves when a part upload
succeeds, so a crash at any point re-reads exactly the records that are not
yet in an uploaded part.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from .buffer import RolloverPolicy
from .checkpoint import CheckpointManager
from .exceptions import BulkTransferError, SerializationError, StopRequested
from .fetcher import PageFetcher
from .planner import PartitionJob, PartitionUnit
from .schemas import CheckpointState, TransientState, UploadedPart
from .serializer import RecordSerializer
from .summary import append_count
from .uploader import ObjectStoreUploader

logger = logging.getLogger(__name__)


class OrchestratorState(str, Enum):
    FETCHING = "FETCHING"
    SERIALIZING = "SERIALIZING"
    BUFFERING = "BUFFERING"
    PART_FLUSH = "PART_FLUSH"
    OBJECT_ROLLOVER = "OBJECT_ROLLOVER"
    CHECKPOINTING = "CHECKPOINTING"
    DRAINED = "DRAINED"
    FINALIZING = "FINALIZING"
    DONE = "DONE"
    FAILED = "FAILED"
    STOPPED = "STOPPED"


TERMINAL_STATES = frozenset(
    {OrchestratorState.DONE, OrchestratorState.FAILED, OrchestratorState.STOPPED}
)


@dataclass
class TransferContext:
    """Everything a partition loop needs besides its live state, passed explicitly."""

    job: PartitionJob
    page_size: int
    policy: RolloverPolicy = field(default_factory=RolloverPolicy)
    stop_event: threading.Event = field(default_factory=threading.Event)
    correlation_id: str | None = None

    @property
    def label(self) -> str:
        return self.job.label


@dataclass
class StepStats:
    """Live counters that are reported but never checkpointed."""

    pages_fetched: int = 0
    records_skipped: int = 0
    parts_uploaded: int = 0
    objects_completed: int = 0


class Orchestrator:
    def __init__(
        self,
        context: TransferContext,
        transient: TransientState,
        fetcher: PageFetcher,
        manager: CheckpointManager,
        uploader: ObjectStoreUploader,
        serializer: RecordSerializer | None = None,
    ):
        self.context = context
        self._live = transient
        self._fetcher = fetcher
        self._manager = manager
        self._uploader = uploader
        self._serializer = serializer or RecordSerializer()
        self.stats = StepStats()
        self.state = (
            OrchestratorState.DONE
            if transient.checkpoint.exhausted
            else OrchestratorState.FETCHING
        )
        cp = transient.checkpoint
        self._consumed = (cp.last_flushed_page, cp.page_record_offset)
        self._last_checkpoint = manager.snapshot(transient)

    @property
    def last_checkpoint(self) -> CheckpointState:
        return self._last_checkpoint

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    def _log_extra(self, **kwargs) -> dict:
        extra = {
            "label": self.context.label,
            "correlation_id": self.context.correlation_id,
        }
        extra.update(kwargs)
        return extra

    # --- Driving ---

    def run(
        self, on_checkpoint: Callable[[CheckpointState], None] | None = None
    ) -> CheckpointState:
        """Steps until a terminal state, handing every checkpoint to *on_checkpoint*."""
        while not self.done:
            checkpoint = self.step()
            if on_checkpoint is None:
                continue
            try:
                on_checkpoint(checkpoint)
            except Exception as e:
                self._fail(e)
                raise
        return self._last_checkpoint

    def step(self) -> CheckpointState:
        if self.done:
            return self._last_checkpoint

        if self.context.stop_event.is_set():
            return self._stop()

        try:
            self._advance()
        except StopRequested:
            return self._stop()
        except Exception as e:
            self._fail(e)
            raise

        self._last_checkpoint = self._manager.snapshot(self._live)
        if self.state is OrchestratorState.CHECKPOINTING:
            self.state = OrchestratorState.FETCHING
        return self._last_checkpoint

    def _advance(self) -> None:
        self.state = OrchestratorState.FETCHING
        unit = self._current_unit()
        if unit is None:
            self._finalize()
            return

        live = self._live
        page_number = live.next_page
        if live.last_page_number is not None and page_number > live.last_page_number:
            records: tuple = ()
        else:
            page = self._fetcher.fetch(
                unit.category, unit.filters, page_number, self.context.page_size
            )
            self.stats.pages_fetched += 1
            records = tuple(page.records)
            live.last_page_number = max(page.last_page_number, live.page_number)

        if not records:
            self._end_unit()
        else:
            live.page_number = page_number
            live.last_page_number = max(live.last_page_number or 0, page_number)
            self._consume(page_number, records)
            live.next_page = page_number + 1
            self.state = OrchestratorState.CHECKPOINTING

    def _current_unit(self) -> PartitionUnit | None:
        index = self._live.checkpoint.partition_cursor_index
        units = self.context.job.units
        return units[index] if index < len(units) else None

    # --- Records ---

    def _consume(self, page_number: int, records: tuple) -> None:
        live = self._live
        assert live.buffer is not None
        policy = self.context.policy
        skip = live.skip_records
        live.skip_records = 0
        total = len(records)

        def position_after(index: int) -> tuple[int, int]:
            return (page_number, 0) if index + 1 >= total else (page_number - 1, index + 1)

        if skip:
            self._consumed = position_after(min(skip, total) - 1)

        for index in range(skip, total):
            record = records[index]
            self.state = OrchestratorState.SERIALIZING
            try:
                line = self._serializer.serialize(record)
            except SerializationError as e:
                self.stats.records_skipped += 1
                logger.warning(
                    "Skipping record that could not be serialized",
                    extra=self._log_extra(page_number=page_number, error=e.to_dict()),
                )
                self._consumed = position_after(index)
                continue

            self.state = OrchestratorState.BUFFERING
            if policy.would_overflow(live.object_bytes, live.object_resources, len(line)):
                self._roll_object(open_next=True)

            live.buffer.append(line)
            self._consumed = position_after(index)

            if policy.should_flush_part(live.buffer):
                self._flush_part()
            if policy.should_roll_object(live.object_bytes, live.object_resources):
                self._roll_object(open_next=True)

    # --- Uploads ---

    def _flush_part(self) -> None:
        """Uploads the buffer as the next part and makes the consumed position durable."""
        live = self._live
        assert live.buffer is not None
        if live.buffer.is_empty():
            return
        self.state = OrchestratorState.PART_FLUSH
        cp = live.checkpoint
        assert cp.upload_id is not None
        data, count = live.buffer.drain()
        tag = self._uploader.upload_part(cp.upload_id, cp.part_number, data)
        self.stats.parts_uploaded += 1
        flushed_page, offset = self._consumed
        live.checkpoint = cp.model_copy(
            update={
                "uploaded_parts": cp.uploaded_parts
                + (UploadedPart(part_number=cp.part_number, part_tag=tag),),
                "part_number": cp.part_number + 1,
                "current_object_resource_count": cp.current_object_resource_count + count,
                "current_object_byte_size": cp.current_object_byte_size + len(data),
                "total_resource_count": cp.total_resource_count + count,
                "last_flushed_page": flushed_page,
                "page_record_offset": offset,
                "page_number": max(cp.page_number, live.page_number),
            }
        )

    def _complete_object(self) -> None:
        live = self._live
        cp = live.checkpoint
        assert cp.upload_id is not None
        self._uploader.complete_session(cp.upload_id, cp.parts)
        self.stats.objects_completed += 1
        logger.info(
            "Completed output object",
            extra=self._log_extra(
                key=self._manager.object_key(cp),
                resources=cp.current_object_resource_count,
                bytes=cp.current_object_byte_size,
                parts=len(cp.uploaded_parts),
            ),
        )
        live.checkpoint = cp.model_copy(
            update={
                "upload_id": None,
                "uploaded_parts": (),
                "part_number": 1,
                "upload_count": cp.upload_count + 1,
                "current_object_resource_count": 0,
                "current_object_byte_size": 0,
                "object_summary": append_count(
                    cp.object_summary, self.context.label, cp.current_object_resource_count
                ),
                "object_start_page": cp.last_flushed_page,
                "object_start_offset": cp.page_record_offset,
            }
        )

    def _roll_object(self, open_next: bool) -> None:
        self.state = OrchestratorState.OBJECT_ROLLOVER
        self._flush_part()
        if not self._live.checkpoint.uploaded_parts:
            return
        self._complete_object()
        if open_next:
            self._live.checkpoint = self._manager.open_session(self._live.checkpoint)

    def _end_unit(self) -> None:
        """Closes the object of a drained unit and moves the cursor to the next unit."""
        self._roll_object(open_next=False)
        live = self._live
        cp = live.checkpoint
        next_index = cp.partition_cursor_index + 1
        live.checkpoint = cp.model_copy(
            update={
                "partition_cursor_index": next_index,
                "page_number": 0,
                "last_page_number": None,
                "last_flushed_page": 0,
                "page_record_offset": 0,
                "object_start_page": 0,
                "object_start_offset": 0,
            }
        )
        live.next_page = 1
        live.skip_records = 0
        live.page_number = 0
        live.last_page_number = None
        self._consumed = (0, 0)

        if next_index < len(self.context.job.units):
            if live.checkpoint.upload_id is None:
                live.checkpoint = self._manager.open_session(live.checkpoint)
            self.state = OrchestratorState.CHECKPOINTING
        else:
            self._finalize()

    def _finalize(self) -> None:
        self.state = OrchestratorState.DRAINED
        logger.debug("Partition drained", extra=self._log_extra())
        self.state = OrchestratorState.FINALIZING
        self._roll_object(open_next=False)
        cp = self._live.checkpoint
        if cp.upload_id is not None:
            # Nothing was written since the last rollover.
            self._uploader.abort_session(cp.upload_id)
            cp = cp.model_copy(update={"upload_id": None})
        self._live.checkpoint = cp.model_copy(update={"exhausted": True})
        self._release_buffer()
        self.state = OrchestratorState.DONE
        logger.info(
            "Partition finished",
            extra=self._log_extra(
                total_resource_count=cp.total_resource_count,
                upload_count=cp.upload_count,
                object_summary=cp.object_summary,
                records_skipped=self.stats.records_skipped,
            ),
        )

    # --- Termination ---

    def _abort_open_session(self) -> None:
        upload_id = self._live.checkpoint.upload_id
        if upload_id is None:
            return
        try:
            self._uploader.abort_session(upload_id)
        except BulkTransferError:
            logger.exception(
                "Failed to abort upload session",
                extra=self._log_extra(upload_id=upload_id),
            )

    def _release_buffer(self) -> None:
        if self._live.buffer is not None:
            self._live.buffer.close()
            self._live.buffer = None

    def _stop(self) -> CheckpointState:
        """Graceful stop: the open session is aborted and the partition rewound to its start."""
        self._abort_open_session()
        self._release_buffer()
        self.state = OrchestratorState.STOPPED
        cp = self._live.checkpoint
        self._live.checkpoint = cp.rewound_to_object_start()
        self._last_checkpoint = self._manager.snapshot(self._live)
        logger.warning(
            "Partition stopped on request",
            extra=self._log_extra(
                total_resource_count=self._last_checkpoint.total_resource_count,
                object_summary=self._last_checkpoint.object_summary,
            ),
        )
        return self._last_checkpoint

    def _fail(self, error: Exception) -> None:
        previous = self.state
        self.state = OrchestratorState.FAILED
        self._abort_open_session()
        self._release_buffer()
        progress = {
            "label": self.context.label,
            "total_resource_count": self._last_checkpoint.total_resource_count,
            "object_summary": self._last_checkpoint.object_summary,
            "failed_in_state": previous.value,
        }
        if isinstance(error, BulkTransferError):
            error.context.setdefault("partial_progress", progress)
            if error.correlation_id is None:
                error.correlation_id = self.context.correlation_id
        logger.error(
            "Partition failed",
            extra=self._log_extra(error=str(error), **progress),
        )
