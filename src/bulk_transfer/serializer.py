"""
Line-framed record serialization.

Each record becomes one compact JSON document followed by ``\\n`` so that
output objects are append-only NDJSON streams.
"""

import json
from collections.abc import Mapping
from typing import Any

import pydantic
from pydantic_core import PydanticSerializationError

from .exceptions import SerializationError

LINE_SEPARATOR = b"\n"


class RecordSerializer:
    """Converts one domain record to its NDJSON line."""

    def __init__(self, ensure_ascii: bool = False):
        self._ensure_ascii = ensure_ascii

    def serialize(self, record: Any) -> bytes:
        """
        Returns the UTF-8 encoded line for *record*, terminated by
        LINE_SEPARATOR. Raises SerializationError for anything that cannot be
        represented as a single JSON object.
        """
        try:
            if isinstance(record, pydantic.BaseModel):
                payload = record.model_dump(mode="json", by_alias=True)
            elif isinstance(record, Mapping):
                payload = dict(record)
            else:
                raise TypeError(
                    f"records must be mappings or models, not {type(record).__name__}"
                )

            text = json.dumps(
                payload,
                separators=(",", ":"),
                ensure_ascii=self._ensure_ascii,
                allow_nan=False,
            )
            return text.encode("utf-8") + LINE_SEPARATOR
        except (TypeError, ValueError, UnicodeEncodeError, PydanticSerializationError) as e:
            raise SerializationError(
                str(e),
                context={
                    "record_type": type(record).__name__,
                    "record_id": _record_id(record),
                },
            ) from e


def _record_id(record: Any) -> str | None:
    """Best-effort identifier for log context; never raises."""
    if isinstance(record, Mapping):
        value = record.get("id")
    else:
        value = getattr(record, "id", None)
    return str(value) if value is not None else None
