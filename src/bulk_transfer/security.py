"""
Security utilities for the bulk transfer engine.

Every output object key is assembled from caller-supplied pieces: the job's
bucket path prefix and the partition label derived from a record category.
This module validates those pieces so that a crafted category or prefix can
never produce a key outside the job's prefix, or one that is unsafe to
materialise on a consumer's file system after download.

The primary focus is preventing:
- Path traversal in prefixes (../../other-tenant/)
- Control or invisible Unicode characters in keys
- Labels that would break the object summary format (`Category[1,2]:...`)
"""

import re
import unicodedata
import urllib.parse
from pathlib import PurePosixPath

from .exceptions import ValidationError

# Module-level constants for improved performance
_INVALID_CONTROL_CHARS: set[int] = set(range(0x00, 0x20)) | {0x7F}  # includes DEL

_UNICODE_INVISIBLES: set[int] = {
    0x200B,  # Zero Width Space
    0x200C,  # Zero Width Non-Joiner
    0x200D,  # Zero Width Joiner
    0xFEFF,  # Zero Width No-Break Space (BOM)
    0x202E,  # Right-to-Left Override
    0x202D,  # Left-to-Right Override
    0x202C,  # Pop Directional Formatting
    0x2028,  # Line Separator
    0x2029,  # Paragraph Separator
    0x00A0,  # Non-breaking space
}

# Labels end up inside object keys and inside the summary string, where
# '[', ']', ',' and ':' are delimiters.
_LABEL_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]{0,63}(-[1-9][0-9]{0,3})?$")

_MAX_KEY_BYTES = 1024


def validate_label(label: str) -> str:
    """
    Validate a partition label (a record category, optionally suffixed with
    ``-<n>`` when a category is split per filter expression).

    Returns the label unchanged, or raises ValidationError.
    """
    if not isinstance(label, str) or not _LABEL_PATTERN.match(label):
        raise ValidationError(
            "Partition label is not a safe category name",
            error_code="INVALID_LABEL",
            context={"label": label},
        )
    return label


def sanitize_path_prefix(prefix: str) -> str:
    """
    Sanitize the bucket path prefix that all of a job's objects live under.

    Args:
        prefix: The raw prefix, e.g. ``"exports/job-42/"``.

    Returns:
        A normalized POSIX prefix without leading or trailing slashes.
        An empty prefix is allowed and returned as ``""``.

    Raises:
        ValidationError: If the prefix contains traversal segments or
            invalid characters.

    Examples:
        >>> sanitize_path_prefix("/exports//job-42/")
        'exports/job-42'

        >>> sanitize_path_prefix("exports/../other")
        ValidationError: Path prefix contains path traversal...
    """
    if not isinstance(prefix, str):
        raise ValidationError(
            "Path prefix is not a valid string",
            error_code="INVALID_PREFIX_TYPE",
            context={"prefix": prefix, "type": type(prefix).__name__},
        )

    if not prefix.strip("/"):
        return ""

    if len(prefix.encode("utf-8")) > _MAX_KEY_BYTES // 2:
        raise ValidationError(
            "Path prefix exceeds byte length limit",
            error_code="INVALID_PREFIX_FORMAT",
            context={"prefix": prefix},
        )

    for char in prefix:
        char_code = ord(char)
        if (
            char_code in _INVALID_CONTROL_CHARS
            or char_code in _UNICODE_INVISIBLES
            or unicodedata.category(char) == "Cf"
        ):
            raise ValidationError(
                "Path prefix contains invalid characters",
                error_code="INVALID_PREFIX_FORMAT",
                context={"prefix": prefix, "char_code": hex(char_code)},
            )

    posix = prefix.replace("\\", "/")

    # Recursively decode URL encoding until stable to catch nested encodings
    decoded = posix
    for _ in range(5):
        new_decoded = urllib.parse.unquote(decoded)
        if new_decoded == decoded:
            break
        decoded = new_decoded

    for candidate in {posix, decoded.replace("\\", "/")}:
        if any(part == ".." for part in candidate.split("/")):
            raise ValidationError(
                "Path prefix contains path traversal",
                error_code="UNSAFE_PREFIX_PATH",
                context={"prefix": prefix},
            )

    if any(part != part.strip() for part in posix.split("/")):
        raise ValidationError(
            "Path prefix contains leading or trailing whitespace",
            error_code="INVALID_PREFIX_FORMAT",
            context={"prefix": prefix},
        )

    safe = str(PurePosixPath(posix)).strip("/")
    if safe in {"", "."}:
        return ""
    return safe


def build_object_key(prefix: str, label: str, object_index: int) -> str:
    """Build ``{prefix}/{label}_{object_index}.ndjson`` from validated parts."""
    if object_index < 1:
        raise ValidationError(
            "Object index must be 1-based",
            error_code="INVALID_OBJECT_INDEX",
            context={"object_index": object_index},
        )
    name = f"{validate_label(label)}_{object_index}.ndjson"
    safe_prefix = sanitize_path_prefix(prefix)
    return f"{safe_prefix}/{name}" if safe_prefix else name
