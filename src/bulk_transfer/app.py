"""
The Lambda Adapter for the bulk transfer engine.

This module is the runtime edge of the engine. It is responsible for:
1.  Initializing AWS Lambda Powertools (Logger, Tracer, Metrics).
2.  Parsing and validating the invocation event (export or import request).
3.  Planning partitions once per job and resuming them from their last
    persisted checkpoints.
4.  Guarding the Lambda timeout: when the remaining time drops under the
    configured threshold the shared stop flag is set, every partition stops
    cooperatively and returns a resumable checkpoint.
5.  Reporting per-partition status, the job's object summary and, once the
    job is complete, the download descriptors for every output object.

The query source and the persistence sink are collaborators supplied by the
deployment through ``create_handler``.
"""

import json
import threading
from typing import Any, Callable, cast

import pydantic
from aws_lambda_powertools import Logger, Metrics, Tracer
from aws_lambda_powertools.metrics import MetricUnit
from aws_lambda_powertools.utilities.typing import LambdaContext

from .checkpoint import S3CheckpointStore, decode_checkpoint, encode_checkpoint
from .clients import S3Client, build_boto3_s3_client
from .config import AppConfig, get_config
from .exceptions import BulkTransferError, NonRetryableError, get_error_context
from .fetcher import ChildPageSource, PageSource
from .importer import NdjsonImporter, PersistenceSink, import_summary
from .orchestrator import OrchestratorState
from .planner import (
    PartitionPlanner,
    normalize_output_format,
    parse_type_filters,
    parse_types,
    random_path_prefix,
)
from .runner import PartitionResult, PartitionRunner, job_summary
from .schemas import CheckpointDict, ExportRequest, ImportCheckpoint, ImportRequest
from .security import sanitize_path_prefix
from .summary import build_output_descriptors

METRICS_NAMESPACE = "BulkTransfer"

Handler = Callable[[dict, LambdaContext], dict[str, Any]]


class TimeoutGuard:
    """
    Sets *stop_event* once the invocation's remaining time falls below
    *threshold_ms*. Checks once on entry, then polls from a daemon thread
    while the context is open.
    """

    def __init__(
        self,
        context: LambdaContext,
        threshold_ms: int,
        stop_event: threading.Event,
        poll_seconds: float = 1.0,
    ):
        self._context = context
        self._threshold_ms = threshold_ms
        self._stop_event = stop_event
        self._poll_seconds = poll_seconds
        self._finished = threading.Event()
        self._thread = threading.Thread(
            target=self._watch, name="timeout-guard", daemon=True
        )
        self.triggered = False

    def __enter__(self) -> "TimeoutGuard":
        if not self._expired():
            self._thread.start()
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self._finished.set()
        if self._thread.is_alive():
            self._thread.join()

    def _expired(self) -> bool:
        if self._context.get_remaining_time_in_millis() < self._threshold_ms:
            self.triggered = True
            self._stop_event.set()
            return True
        return False

    def _watch(self) -> None:
        while not self._expired():
            if self._finished.wait(self._poll_seconds):
                return


def create_handler(
    page_source: PageSource,
    *,
    child_source: ChildPageSource | None = None,
    sink: PersistenceSink | None = None,
    config: AppConfig | None = None,
    s3_client: S3Client | None = None,
) -> Handler:
    """Builds the Lambda handler around the deployment's collaborators."""
    config = config or get_config()

    logger = Logger(service=config.service_name, level=config.log_level)
    tracer = Tracer(service=config.service_name)
    metrics = Metrics(namespace=METRICS_NAMESPACE, service=config.service_name)

    s3 = s3_client or S3Client(
        build_boto3_s3_client(config),
        kms_key_id=config.kms_key_id,
        operation_timeout_seconds=config.s3_operation_timeout_seconds,
    )

    def _failure(error: Exception) -> dict[str, Any]:
        details = get_error_context(error)
        metrics.add_metric(name="FailedJobs", unit=MetricUnit.Count, value=1)
        logger.error(f"Job rejected: {error}", extra={"error": details})
        return {"status": "FAILED", "error": details}

    def _partition_report(result: PartitionResult) -> dict[str, Any]:
        return {
            "label": result.label,
            "status": result.status,
            "attempts": result.attempts,
            "totalResourceCount": result.total_resource_count,
            "objectSummary": result.object_summary,
            "recordsSkipped": result.records_skipped,
            "error": result.error,
        }

    @tracer.capture_method
    def _run_export(event: dict, context: LambdaContext) -> dict[str, Any]:
        try:
            request = ExportRequest.model_validate(event)
            output_format = normalize_output_format(request.output_format)
            plan = PartitionPlanner(
                config.max_workers,
                split_filters=request.split_filters,
                require_filter_match=request.require_filter_match,
            ).plan(parse_types(request.types), parse_type_filters(request.type_filters))
            prefix = sanitize_path_prefix(request.prefix or random_path_prefix())
            checkpoints = {
                label: decode_checkpoint(data)
                for label, data in request.checkpoints.items()
            }
        except pydantic.ValidationError as e:
            logger.error("Invalid export request", extra={"errors": str(e)})
            return {"status": "FAILED", "error": {"message": str(e), "retryable": False}}
        except NonRetryableError as e:
            return _failure(e)

        stop_event = threading.Event()
        runner = PartitionRunner.from_config(
            config,
            page_source,
            s3,
            prefix,
            store=S3CheckpointStore(s3, config.export_bucket, prefix),
            stop_event=stop_event,
            child_source=child_source,
            correlation_id=request.job_id or context.aws_request_id,
        )

        logger.info(
            "Starting export",
            extra={
                "partitions": plan.labels,
                "worker_count": plan.worker_count,
                "prefix": prefix,
                "resumed": sorted(checkpoints),
            },
        )
        with TimeoutGuard(context, config.timeout_guard_threshold_ms, stop_event) as guard:
            results = runner.run(plan, checkpoints)
        if guard.triggered:
            logger.warning("Timeout threshold reached. Partitions stopped for resume.")

        statuses = {r.status for r in results}
        if OrchestratorState.FAILED.value in statuses:
            status = "FAILED"
        elif statuses == {OrchestratorState.DONE.value}:
            status = "COMPLETED"
        else:
            status = "PAUSED"

        summary = job_summary(results)
        metrics.add_metric(
            name="ExportedResources",
            unit=MetricUnit.Count,
            value=sum(r.total_resource_count for r in results),
        )
        metrics.add_metric(
            name="CompletedObjects",
            unit=MetricUnit.Count,
            value=sum(r.checkpoint.upload_count for r in results if r.checkpoint),
        )
        metrics.add_metric(
            name="SkippedRecords",
            unit=MetricUnit.Count,
            value=sum(r.records_skipped for r in results),
        )
        for name, state in (
            ("FailedPartitions", OrchestratorState.FAILED),
            ("StoppedPartitions", OrchestratorState.STOPPED),
        ):
            count = sum(1 for r in results if r.status == state.value)
            if count:
                metrics.add_metric(name=name, unit=MetricUnit.Count, value=count)

        response: dict[str, Any] = {
            "status": status,
            "prefix": prefix,
            "outputFormat": output_format,
            "objectSummary": summary,
            "partitions": [_partition_report(r) for r in results],
            "checkpoints": {
                r.label: _checkpoint_payload(r) for r in results if r.checkpoint
            },
        }
        if status == "COMPLETED":
            response["output"] = [
                d.model_dump()
                for d in build_output_descriptors(
                    summary, config.export_base_url, config.export_bucket, prefix
                )
            ]
        logger.info(
            "Export invocation finished",
            extra={"status": status, "object_summary": summary},
        )
        return response

    @tracer.capture_method
    def _run_import(event: dict, context: LambdaContext) -> dict[str, Any]:
        if sink is None:
            return _failure(
                NonRetryableError(
                    "No persistence sink is configured for imports",
                    error_code="IMPORT_NOT_SUPPORTED",
                )
            )
        try:
            request = ImportRequest.model_validate(event)
        except pydantic.ValidationError as e:
            logger.error("Invalid import request", extra={"errors": str(e)})
            return {"status": "FAILED", "error": {"message": str(e), "retryable": False}}

        stop_event = threading.Event()
        importer = NdjsonImporter(
            s3,
            sink,
            request.inputs,
            default_bucket=config.export_bucket,
            batch_size=config.import_batch_size,
            stop_event=stop_event,
        )
        progress: list[ImportCheckpoint] = []
        try:
            with TimeoutGuard(context, config.timeout_guard_threshold_ms, stop_event):
                checkpoint = importer.run(request.checkpoint, on_checkpoint=progress.append)
        except BulkTransferError as e:
            response = _failure(e)
            last = progress[-1] if progress else request.checkpoint
            if last is not None:
                response["checkpoint"] = last.model_dump(by_alias=True)
            return response

        metrics.add_metric(
            name="ImportedInputs",
            unit=MetricUnit.Count,
            value=len(checkpoint.completed_counts),
        )
        return {
            "status": "COMPLETED" if checkpoint.exhausted else "PAUSED",
            "summary": import_summary(checkpoint),
            "checkpoint": checkpoint.model_dump(by_alias=True),
        }

    @logger.inject_lambda_context()
    @tracer.capture_lambda_handler
    @metrics.log_metrics(capture_cold_start_metric=True)
    def handler(event: dict, context: LambdaContext) -> dict[str, Any]:
        """Entry point for export and import invocations."""
        metrics.add_dimension("environment", config.environment)
        if event.get("operation", "export") == "import":
            return _run_import(event, context)
        return _run_export(event, context)

    return handler


def _checkpoint_payload(result: PartitionResult) -> CheckpointDict:
    assert result.checkpoint is not None
    return cast(CheckpointDict, json.loads(encode_checkpoint(result.checkpoint)))
