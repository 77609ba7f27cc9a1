"""
The job runtime: a bounded worker pool with one partition loop per worker.

Partitions share nothing but the stop flag and the checkpoint store, which
is keyed by partition label. A retryable failure restarts the partition from
its last persisted checkpoint after a backoff, as a fresh resume, so the
restart goes through exactly the same path as a process restart.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .buffer import RolloverPolicy
from .checkpoint import CheckpointManager, CheckpointStore, InMemoryCheckpointStore
from .clients import S3Client
from .exceptions import BulkTransferError, get_error_context
from .fetcher import ChildPageSource, PageFetcher, PageSource
from .orchestrator import Orchestrator, OrchestratorState, TransferContext
from .planner import PartitionJob, PartitionPlan
from .retry import RetryPolicy
from .schemas import CheckpointState
from .serializer import RecordSerializer
from .summary import merge_summaries
from .uploader import S3_MIN_PART_SIZE, ObjectStoreUploader

if TYPE_CHECKING:
    from .config import AppConfig

logger = logging.getLogger(__name__)


@dataclass
class PartitionResult:
    label: str
    status: str
    checkpoint: CheckpointState | None
    attempts: int
    records_skipped: int = 0
    error: dict[str, Any] | None = None

    @property
    def total_resource_count(self) -> int:
        return self.checkpoint.total_resource_count if self.checkpoint else 0

    @property
    def object_summary(self) -> str:
        return self.checkpoint.object_summary if self.checkpoint else ""


def job_summary(results: list[PartitionResult]) -> str:
    """The job's exit status string, ``Category[c1,c2]:Category2[...]``."""
    return merge_summaries(r.object_summary for r in results)


class PartitionRunner:
    def __init__(
        self,
        page_source: PageSource,
        s3_client: S3Client,
        bucket: str,
        prefix: str,
        *,
        page_size: int = 1000,
        policy: RolloverPolicy | None = None,
        retry_policy: RetryPolicy | None = None,
        store: CheckpointStore | None = None,
        stop_event: threading.Event | None = None,
        fetch_timeout_seconds: float | None = None,
        child_source: ChildPageSource | None = None,
        serializer: RecordSerializer | None = None,
        min_part_size: int = S3_MIN_PART_SIZE,
        correlation_id: str | None = None,
    ):
        self._source = page_source
        self._s3 = s3_client
        self._bucket = bucket
        self._prefix = prefix
        self._page_size = page_size
        self._policy = policy or RolloverPolicy()
        self._retry = retry_policy or RetryPolicy()
        self.store: CheckpointStore = store or InMemoryCheckpointStore()
        self.stop_event = stop_event or threading.Event()
        self._fetch_timeout = fetch_timeout_seconds
        self._child_source = child_source
        self._serializer = serializer or RecordSerializer()
        self._min_part_size = min_part_size
        self._correlation_id = correlation_id

    @classmethod
    def from_config(
        cls,
        config: "AppConfig",
        page_source: PageSource,
        s3_client: S3Client,
        prefix: str,
        **kwargs: Any,
    ) -> "PartitionRunner":
        kwargs.setdefault("page_size", config.page_size)
        kwargs.setdefault(
            "policy",
            RolloverPolicy(
                part_flush_bytes=config.part_upload_min_bytes,
                object_max_bytes=config.object_rollover_bytes,
                object_max_resources=config.object_rollover_resources,
            ),
        )
        kwargs.setdefault("retry_policy", RetryPolicy.from_config(config))
        kwargs.setdefault("fetch_timeout_seconds", config.fetch_timeout_seconds)
        return cls(page_source, s3_client, config.export_bucket, prefix, **kwargs)

    def run(
        self,
        plan: PartitionPlan,
        checkpoints: dict[str, CheckpointState] | None = None,
    ) -> list[PartitionResult]:
        """Runs every partition of *plan*; results come back in plan order."""
        checkpoints = checkpoints or {}
        with ThreadPoolExecutor(
            max_workers=plan.worker_count, thread_name_prefix="partition"
        ) as pool:
            futures = [
                pool.submit(self.run_partition, job, checkpoints.get(job.label))
                for job in plan.jobs
            ]
            results = [future.result() for future in futures]

        logger.info(
            "Job finished",
            extra={
                "partitions": {r.label: r.status for r in results},
                "object_summary": job_summary(results),
            },
        )
        return results

    def run_partition(
        self, job: PartitionJob, checkpoint: CheckpointState | None = None
    ) -> PartitionResult:
        if checkpoint is not None:
            self.store.save(job.label, checkpoint)

        attempt = 0
        while True:
            attempt += 1
            try:
                return self._attempt(job, self.store.load(job.label), attempt)
            except BulkTransferError as e:
                if not self._retry.should_retry(attempt, e):
                    logger.error(
                        "Partition gave up",
                        extra={"label": job.label, "attempts": attempt, **_error_extra(e)},
                    )
                    return PartitionResult(
                        label=job.label,
                        status=OrchestratorState.FAILED.value,
                        checkpoint=self._last_known(job.label),
                        attempts=attempt,
                        error=get_error_context(e),
                    )

                delay = self._retry.delay(attempt)
                logger.warning(
                    "Retrying partition from its last checkpoint",
                    extra={
                        "label": job.label,
                        "attempt": attempt,
                        "delay_seconds": delay,
                        **_error_extra(e),
                    },
                )
                if self.stop_event.wait(delay):
                    return PartitionResult(
                        label=job.label,
                        status=OrchestratorState.STOPPED.value,
                        checkpoint=self._last_known(job.label),
                        attempts=attempt,
                    )

    def _last_known(self, label: str) -> CheckpointState | None:
        try:
            return self.store.load(label)
        except BulkTransferError:
            logger.exception("Could not reload the last checkpoint", extra={"label": label})
            return None

    def _attempt(
        self, job: PartitionJob, checkpoint: CheckpointState | None, attempt: int
    ) -> PartitionResult:
        uploader = ObjectStoreUploader(self._s3, min_part_size=self._min_part_size)
        manager = CheckpointManager(
            uploader,
            self._bucket,
            self._prefix,
            job.label,
            spool_threshold=self._policy.part_flush_bytes,
        )
        context = TransferContext(
            job=job,
            page_size=self._page_size,
            policy=self._policy,
            stop_event=self.stop_event,
            correlation_id=self._correlation_id,
        )
        with PageFetcher(
            self._source,
            self._page_size,
            timeout_seconds=self._fetch_timeout,
            stop_event=self.stop_event,
            child_source=self._child_source,
        ) as fetcher:
            transient = manager.resume(checkpoint)
            orchestrator = Orchestrator(
                context, transient, fetcher, manager, uploader, self._serializer
            )
            final = orchestrator.run(
                on_checkpoint=lambda state: self.store.save(job.label, state)
            )

        return PartitionResult(
            label=job.label,
            status=orchestrator.state.value,
            checkpoint=final,
            attempts=attempt,
            records_skipped=orchestrator.stats.records_skipped,
        )


def _error_extra(error: BulkTransferError) -> dict[str, Any]:
    return {"error_code": error.error_code, "error": error.message}
