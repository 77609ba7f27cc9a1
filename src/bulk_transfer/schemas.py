# In src/bulk_transfer/schemas.py

from dataclasses import dataclass
from typing import Any, Literal, TypedDict

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .buffer import ChunkBuffer

CHECKPOINT_VERSION = 1

# --- Static Type Hinting (for mypy and IDEs) ---


class UploadedPartDict(TypedDict):
    partNumber: int
    partTag: str


class CheckpointDict(TypedDict, total=False):
    """
    The JSON shape of a persisted checkpoint, as handed to the runtime.
    Used for static type analysis of event payloads.
    """

    version: int
    pageNumber: int
    lastPageNumber: int | None
    partNumber: int
    uploadId: str | None
    uploadedParts: list[UploadedPartDict]
    uploadCount: int
    currentObjectResourceCount: int
    currentObjectByteSize: int
    totalResourceCount: int
    partitionCursorIndex: int
    objectSummary: str
    exhausted: bool
    lastFlushedPage: int
    pageRecordOffset: int
    objectStartPage: int
    objectStartOffset: int


# --- Runtime Validation (using Pydantic) ---


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="forbid",
    )


class UploadedPart(_WireModel):
    part_number: int = Field(..., ge=1)
    part_tag: str = Field(..., min_length=1)


class CheckpointState(_WireModel):
    """
    Durable snapshot of one partition's progress.

    Counters only ever reflect bytes that are committed as upload parts;
    records that were fetched but still sat in the buffer are re-fetched on
    resume, starting at page ``last_flushed_page + 1`` and skipping
    ``page_record_offset`` records of that page.
    """

    version: int = CHECKPOINT_VERSION
    page_number: int = Field(0, ge=0)
    last_page_number: int | None = Field(None, ge=0)
    part_number: int = Field(1, ge=1)
    upload_id: str | None = None
    uploaded_parts: tuple[UploadedPart, ...] = ()
    upload_count: int = Field(0, ge=0)
    current_object_resource_count: int = Field(0, ge=0)
    current_object_byte_size: int = Field(0, ge=0)
    total_resource_count: int = Field(0, ge=0)
    partition_cursor_index: int = Field(0, ge=0)
    object_summary: str = ""
    exhausted: bool = False
    last_flushed_page: int = Field(0, ge=0)
    page_record_offset: int = Field(0, ge=0)
    object_start_page: int = Field(0, ge=0)
    object_start_offset: int = Field(0, ge=0)

    @model_validator(mode="after")
    def _check_invariants(self) -> "CheckpointState":
        if self.version != CHECKPOINT_VERSION:
            raise ValueError(f"unsupported checkpoint version {self.version}")

        numbers = [part.part_number for part in self.uploaded_parts]
        if numbers != list(range(1, len(numbers) + 1)):
            raise ValueError(f"uploadedParts must be gap-free from 1, got {numbers}")
        if self.part_number != len(numbers) + 1:
            raise ValueError("partNumber must follow the last uploaded part")
        if self.upload_id is None and numbers:
            raise ValueError("uploadedParts present without an open uploadId")

        if bool(numbers) != (self.current_object_resource_count > 0):
            raise ValueError("current object counters disagree with uploadedParts")
        if (self.current_object_byte_size > 0) != (self.current_object_resource_count > 0):
            raise ValueError("current object byte size and resource count disagree")
        if self.current_object_resource_count > self.total_resource_count:
            raise ValueError("current object count exceeds the partition total")

        if self.last_flushed_page > self.page_number:
            raise ValueError("lastFlushedPage is ahead of pageNumber")
        if self.last_page_number is not None and self.page_number > self.last_page_number:
            raise ValueError("pageNumber is beyond lastPageNumber")
        if (self.object_start_page, self.object_start_offset) > (
            self.last_flushed_page,
            self.page_record_offset,
        ):
            raise ValueError("current object starts after the flushed position")

        if self.exhausted and self.upload_id is not None:
            raise ValueError("an exhausted partition cannot hold an open upload")
        return self

    @property
    def parts(self) -> list[tuple[int, str]]:
        return [(part.part_number, part.part_tag) for part in self.uploaded_parts]

    def rewound_to_object_start(self) -> "CheckpointState":
        """
        The state to restart from when the current object's session is gone:
        its parts are discarded and the source position moves back to the
        object's first record.
        """
        return self.model_copy(
            update={
                "upload_id": None,
                "uploaded_parts": (),
                "part_number": 1,
                "total_resource_count": self.total_resource_count
                - self.current_object_resource_count,
                "current_object_resource_count": 0,
                "current_object_byte_size": 0,
                "last_flushed_page": self.object_start_page,
                "page_record_offset": self.object_start_offset,
            }
        )


@dataclass
class TransientState:
    """
    A live partition: the durable checkpoint plus what only exists in this
    process. Never persisted; rebuilt by CheckpointManager.resume().
    """

    checkpoint: CheckpointState
    next_page: int
    skip_records: int = 0
    page_number: int = 0
    last_page_number: int | None = None
    buffer: ChunkBuffer | None = None

    @property
    def object_bytes(self) -> int:
        buffered = self.buffer.size if self.buffer else 0
        return self.checkpoint.current_object_byte_size + buffered

    @property
    def object_resources(self) -> int:
        buffered = self.buffer.record_count if self.buffer else 0
        return self.checkpoint.current_object_resource_count + buffered


class OutputDescriptor(BaseModel):
    """One downloadable output object, as reported by the status interface."""

    type: str
    url: str
    count: int = Field(..., ge=0)


# --- Import (object storage -> persistence sink) ---


class ImportInput(BaseModel):
    type: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)


class ImportCheckpoint(_WireModel):
    """Resume position within one NDJSON input object."""

    version: int = CHECKPOINT_VERSION
    input_index: int = Field(0, ge=0)
    byte_offset: int = Field(0, ge=0)
    line_number: int = Field(0, ge=0)
    success_count: int = Field(0, ge=0)
    failure_count: int = Field(0, ge=0)
    completed_counts: tuple[str, ...] = ()
    exhausted: bool = False


# --- Runtime requests ---


class ExportRequest(_WireModel):
    """Event payload that starts or resumes an export job."""

    operation: Literal["export"] = "export"
    job_id: str | None = None
    types: str | None = Field(None, alias="_type")
    type_filters: str | None = Field(None, alias="_typeFilter")
    output_format: str | None = Field(None, alias="_outputFormat")
    split_filters: bool = False
    require_filter_match: bool = True
    prefix: str | None = None
    checkpoints: dict[str, dict[str, Any]] = Field(default_factory=dict)


class ImportRequest(_WireModel):
    """Event payload that starts or resumes an import job."""

    operation: Literal["import"]
    job_id: str | None = None
    inputs: list[ImportInput] = Field(..., min_length=1)
    checkpoint: ImportCheckpoint | None = None
