"""
In-memory chunk buffering and the two rollover thresholds.

ChunkBuffer accumulates serialized lines until they are flushed as one
upload part. RolloverPolicy decides when that flush must happen and when
the whole output object must be closed so a new one can begin.
"""

from dataclasses import dataclass
from tempfile import SpooledTemporaryFile
from typing import BinaryIO, cast

DEFAULT_PART_FLUSH_BYTES = 10 * 1_048_576
DEFAULT_OBJECT_MAX_BYTES = 200 * 1_048_576
DEFAULT_OBJECT_MAX_RESOURCES = 200_000


class ChunkBuffer:
    """
    Accumulates serialized records for the part currently being built.

    Bytes are held in a SpooledTemporaryFile: in RAM up to *spool_threshold*,
    then on local disk, so a part threshold close to the function's memory
    limit does not exhaust it.
    """

    def __init__(self, spool_threshold: int = DEFAULT_PART_FLUSH_BYTES):
        self._spool_threshold = spool_threshold
        self._file: BinaryIO = self._new_file()
        self._size = 0
        self._record_count = 0

    def _new_file(self) -> BinaryIO:
        return cast(
            BinaryIO,
            SpooledTemporaryFile(max_size=self._spool_threshold, mode="w+b"),
        )

    @property
    def size(self) -> int:
        return self._size

    @property
    def record_count(self) -> int:
        return self._record_count

    def is_empty(self) -> bool:
        return self._record_count == 0

    def append(self, line: bytes) -> None:
        self._file.write(line)
        self._size += len(line)
        self._record_count += 1

    def drain(self) -> tuple[bytes, int]:
        """Returns (buffered bytes, record count) and resets the buffer."""
        self._file.seek(0)
        data = self._file.read()
        count = self._record_count
        self.clear()
        return data, count

    def clear(self) -> None:
        self._file.close()
        self._file = self._new_file()
        self._size = 0
        self._record_count = 0

    def close(self) -> None:
        self._file.close()
        self._size = 0
        self._record_count = 0


@dataclass(frozen=True, slots=True)
class RolloverPolicy:
    """Part-flush and object-rollover thresholds."""

    part_flush_bytes: int = DEFAULT_PART_FLUSH_BYTES
    object_max_bytes: int = DEFAULT_OBJECT_MAX_BYTES
    object_max_resources: int = DEFAULT_OBJECT_MAX_RESOURCES

    def __post_init__(self):
        if self.part_flush_bytes <= 0:
            raise ValueError("part_flush_bytes must be positive")
        if self.object_max_bytes <= 0 or self.object_max_resources <= 0:
            raise ValueError("object rollover limits must be positive")

    def should_flush_part(self, buffer: ChunkBuffer) -> bool:
        return buffer.size >= self.part_flush_bytes

    def would_overflow(self, object_bytes: int, object_resources: int, line_size: int) -> bool:
        """
        True when appending a line of *line_size* bytes would push a non-empty
        object past the byte limit. A lone oversized record is still allowed.
        """
        return object_resources > 0 and object_bytes + line_size > self.object_max_bytes

    def should_roll_object(self, object_bytes: int, object_resources: int) -> bool:
        return (
            object_bytes >= self.object_max_bytes
            or object_resources >= self.object_max_resources
        )
