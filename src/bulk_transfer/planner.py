"""
Partition planning and export request parameter parsing.

A job is split into independent partitions, normally one per record
category. Each partition walks one or more units (category plus filter
expressions) in order and owns its own checkpoint.
"""

import logging
import uuid
from dataclasses import dataclass

from .exceptions import PartitionPlanningError, ValidationError
from .security import validate_label

logger = logging.getLogger(__name__)

NDJSON_FORMAT = "application/fhir+ndjson"

# A '+' in an unencoded query string arrives as a space.
_NDJSON_ALIASES = {
    "application/fhir+ndjson",
    "application/fhir ndjson",
    "application/ndjson",
    "ndjson",
}


@dataclass(frozen=True)
class PartitionUnit:
    category: str
    filters: tuple[str, ...] = ()


@dataclass(frozen=True)
class PartitionJob:
    label: str
    units: tuple[PartitionUnit, ...]

    @property
    def category(self) -> str:
        return self.units[0].category


@dataclass(frozen=True)
class PartitionPlan:
    jobs: tuple[PartitionJob, ...]
    worker_count: int

    @property
    def labels(self) -> list[str]:
        return [job.label for job in self.jobs]


def parse_types(value: str | None) -> list[str]:
    """Parses a ``_type`` parameter: comma separated, blanks ignored, duplicates collapsed."""
    categories: list[str] = []
    if not value:
        return categories
    for raw in value.split(","):
        category = raw.strip()
        if category and category not in categories:
            categories.append(_checked_category(category))
    return categories


def parse_type_filters(value: str | None) -> dict[str, list[str]]:
    """
    Parses a ``_typeFilter`` parameter of comma separated ``Category?query``
    expressions into the queries for each category, in request order.
    """
    filters: dict[str, list[str]] = {}
    if not value:
        return filters
    for raw in value.split(","):
        expression = raw.strip()
        if not expression:
            continue
        category, sep, query = expression.partition("?")
        if not sep or not category.strip() or not query.strip():
            raise PartitionPlanningError(
                f"Type filter must look like 'Category?query': {expression!r}",
                context={"type_filter": expression},
            )
        queries = filters.setdefault(_checked_category(category.strip()), [])
        if query.strip() not in queries:
            queries.append(query.strip())
    return filters


def normalize_output_format(value: str | None) -> str:
    """Maps the accepted NDJSON spellings to ``application/fhir+ndjson``."""
    if value is None or value.strip().lower() in _NDJSON_ALIASES:
        return NDJSON_FORMAT
    raise PartitionPlanningError(
        f"Unsupported output format: {value!r}",
        error_code="UNSUPPORTED_OUTPUT_FORMAT",
        context={"output_format": value},
    )


def random_path_prefix() -> str:
    """A fresh, URL-safe bucket path prefix so that jobs never share keys."""
    return uuid.uuid4().hex


def _checked_category(category: str) -> str:
    try:
        return validate_label(category)
    except ValidationError as e:
        raise PartitionPlanningError(
            f"Invalid record category: {category!r}",
            error_code="INVALID_CATEGORY",
            context=e.context,
        ) from e


class PartitionPlanner:
    """
    Builds the partition plan for one job.

    Args:
        max_workers: Upper bound for the worker pool.
        split_filters: One partition per category x filter expression
            (labelled ``{category}-{n}``) instead of one partition per
            category that walks its filters in sequence.
        require_filter_match: When any filter targets a requested category,
            drop requested categories that have none of their own instead of
            exporting them unfiltered.
    """

    def __init__(
        self,
        max_workers: int,
        split_filters: bool = False,
        require_filter_match: bool = True,
    ):
        if max_workers < 1:
            raise PartitionPlanningError(
                "max_workers must be at least 1", context={"max_workers": max_workers}
            )
        self.max_workers = max_workers
        self.split_filters = split_filters
        self.require_filter_match = require_filter_match

    def plan(
        self,
        categories: list[str],
        type_filters: dict[str, list[str]] | None = None,
    ) -> PartitionPlan:
        type_filters = type_filters or {}
        if not categories:
            categories = list(type_filters)

        ignored = [c for c in type_filters if c not in categories]
        matched = len(ignored) < len(type_filters)
        if ignored:
            logger.warning(
                "Ignoring type filters for categories outside the request",
                extra={"categories": ignored},
            )

        jobs: list[PartitionJob] = []
        for category in categories:
            queries = type_filters.get(category, [])
            if not queries:
                if matched and self.require_filter_match:
                    logger.info(
                        "Skipping category without a matching filter",
                        extra={"category": category},
                    )
                    continue
                jobs.append(PartitionJob(category, (PartitionUnit(category),)))
            elif self.split_filters:
                for n, query in enumerate(queries, start=1):
                    label = validate_label(f"{category}-{n}")
                    jobs.append(PartitionJob(label, (PartitionUnit(category, (query,)),)))
            else:
                units = tuple(PartitionUnit(category, (query,)) for query in queries)
                jobs.append(PartitionJob(category, units))

        if not jobs:
            raise PartitionPlanningError(
                "Export request selects no partitions",
                context={
                    "categories": list(categories),
                    "filtered_categories": list(type_filters),
                },
            )

        plan = PartitionPlan(
            jobs=tuple(jobs), worker_count=min(self.max_workers, len(jobs))
        )
        logger.info(
            "Planned partitions",
            extra={"partitions": plan.labels, "worker_count": plan.worker_count},
        )
        return plan
