"""
The object summary string and the download descriptors built from it.

A partition records how many resources went into each completed object as
``Label[count_1,count_2,...]``; a job joins its partitions' groups with
``:``. The status interface turns that string back into one download
descriptor per object, ``{base_url}/{bucket}/{prefix}/{label}_{i}.ndjson``.
"""

import re
from collections.abc import Iterable

from .schemas import OutputDescriptor
from .security import build_object_key

_GROUP_PATTERN = re.compile(r"^([^\[\]:,]+)\[(\d+(?:,\d+)*)?\]$")


def parse_summary(summary: str) -> dict[str, list[int]]:
    """
    Parses ``A[1,2]:B[3]`` into ``{"A": [1, 2], "B": [3]}``, preserving order.
    Raises ValueError for anything malformed.
    """
    groups: dict[str, list[int]] = {}
    if not summary:
        return groups
    for chunk in summary.split(":"):
        match = _GROUP_PATTERN.match(chunk.strip())
        if match is None:
            raise ValueError(f"malformed object summary group: {chunk!r}")
        label, counts = match.group(1), match.group(2)
        bucket = groups.setdefault(label, [])
        if counts:
            bucket.extend(int(c) for c in counts.split(","))
    return groups


def format_summary(groups: dict[str, list[int]]) -> str:
    return ":".join(
        f"{label}[{','.join(str(c) for c in counts)}]" for label, counts in groups.items()
    )


def append_count(summary: str, label: str, count: int) -> str:
    """Returns *summary* with one more completed object of *count* under *label*."""
    groups = parse_summary(summary)
    groups.setdefault(label, []).append(count)
    return format_summary(groups)


def summary_total(summary: str) -> int:
    return sum(sum(counts) for counts in parse_summary(summary).values())


def merge_summaries(summaries: Iterable[str]) -> str:
    """Joins partition summaries into the job-level exit status string."""
    merged: dict[str, list[int]] = {}
    for summary in summaries:
        for label, counts in parse_summary(summary).items():
            merged.setdefault(label, []).extend(counts)
    return format_summary(merged)


def category_of(label: str) -> str:
    """``Observation-2`` -> ``Observation``; plain categories are returned as-is."""
    return label.split("-", 1)[0]


def build_output_descriptors(
    summary: str, base_url: str, bucket: str, prefix: str
) -> list[OutputDescriptor]:
    descriptors: list[OutputDescriptor] = []
    for label, counts in parse_summary(summary).items():
        for index, count in enumerate(counts, start=1):
            key = build_object_key(prefix, label, index)
            descriptors.append(
                OutputDescriptor(
                    type=category_of(label),
                    url=f"{base_url.rstrip('/')}/{bucket}/{key}",
                    count=count,
                )
            )
    return descriptors
