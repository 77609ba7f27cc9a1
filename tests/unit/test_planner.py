# tests/unit/test_planner.py

import logging
import re

import pytest

from bulk_transfer.exceptions import PartitionPlanningError
from bulk_transfer.planner import (
    NDJSON_FORMAT,
    PartitionPlanner,
    PartitionUnit,
    normalize_output_format,
    parse_type_filters,
    parse_types,
    random_path_prefix,
)


class TestParameterParsing:
    def test_parse_types_skips_blanks_and_duplicates(self):
        assert parse_types("Patient, ,Observation,Patient,") == ["Patient", "Observation"]
        assert parse_types(None) == []
        assert parse_types("") == []

    def test_parse_types_rejects_unsafe_category(self):
        with pytest.raises(PartitionPlanningError) as exc_info:
            parse_types("Patient,../Observation")
        assert exc_info.value.error_code == "INVALID_CATEGORY"

    def test_parse_type_filters_groups_by_category(self):
        filters = parse_type_filters(
            "Observation?status=final,Observation?code=1234,Patient?active=true"
        )
        assert filters == {
            "Observation": ["status=final", "code=1234"],
            "Patient": ["active=true"],
        }

    @pytest.mark.parametrize("bad", ["Observation", "?status=final", "Observation?"])
    def test_parse_type_filters_rejects_malformed(self, bad):
        with pytest.raises(PartitionPlanningError):
            parse_type_filters(bad)

    @pytest.mark.parametrize(
        "value",
        [
            None,
            "application/fhir+ndjson",
            "application/fhir ndjson",
            "application/ndjson",
            "NDJSON",
        ],
    )
    def test_normalize_output_format(self, value):
        assert normalize_output_format(value) == NDJSON_FORMAT

    def test_unsupported_output_format(self):
        with pytest.raises(PartitionPlanningError) as exc_info:
            normalize_output_format("text/csv")
        assert exc_info.value.error_code == "UNSUPPORTED_OUTPUT_FORMAT"

    def test_random_path_prefix_is_url_safe_and_unique(self):
        first, second = random_path_prefix(), random_path_prefix()
        assert re.fullmatch(r"[0-9a-f]{32}", first)
        assert first != second


class TestPartitionPlanner:
    def test_one_partition_per_category(self):
        plan = PartitionPlanner(max_workers=4).plan(["Patient", "Observation"])

        assert plan.labels == ["Patient", "Observation"]
        assert plan.jobs[0].units == (PartitionUnit("Patient"),)
        assert plan.worker_count == 2

    def test_worker_count_is_capped(self):
        plan = PartitionPlanner(max_workers=2).plan(["Patient", "Observation", "Encounter"])
        assert plan.worker_count == 2

    def test_filters_run_in_sequence_within_one_partition(self):
        plan = PartitionPlanner(max_workers=4).plan(
            ["Observation"], {"Observation": ["status=final", "code=1234"]}
        )

        assert plan.labels == ["Observation"]
        assert plan.jobs[0].units == (
            PartitionUnit("Observation", ("status=final",)),
            PartitionUnit("Observation", ("code=1234",)),
        )

    def test_split_filters_gives_one_partition_per_filter(self):
        plan = PartitionPlanner(
            max_workers=4, split_filters=True, require_filter_match=False
        ).plan(
            ["Observation", "Patient"], {"Observation": ["status=final", "code=1234"]}
        )

        assert plan.labels == ["Observation-1", "Observation-2", "Patient"]
        assert plan.jobs[1].category == "Observation"
        assert plan.worker_count == 3

    def test_categories_default_to_filtered_ones(self):
        plan = PartitionPlanner(max_workers=4).plan([], {"Patient": ["active=true"]})
        assert plan.labels == ["Patient"]

    def test_filters_outside_the_request_are_ignored(self, caplog):
        plan = PartitionPlanner(max_workers=4).plan(
            ["Patient"], {"Observation": ["status=final"]}
        )

        assert plan.labels == ["Patient"]
        assert plan.jobs[0].units == (PartitionUnit("Patient"),)
        assert "Ignoring type filters" in caplog.text

    def test_categories_without_a_matching_filter_are_skipped(self, caplog):
        caplog.set_level(logging.INFO)
        plan = PartitionPlanner(max_workers=4).plan(
            ["Patient", "Observation"], {"Observation": ["status=final"]}
        )

        assert plan.labels == ["Observation"]
        assert plan.worker_count == 1
        assert "Skipping category without a matching filter" in caplog.text

    def test_unmatched_categories_can_be_kept_unfiltered(self):
        plan = PartitionPlanner(max_workers=4, require_filter_match=False).plan(
            ["Patient", "Observation"], {"Observation": ["status=final"]}
        )

        assert plan.labels == ["Patient", "Observation"]
        assert plan.jobs[0].units == (PartitionUnit("Patient"),)

    def test_empty_plan_is_an_error(self):
        with pytest.raises(PartitionPlanningError):
            PartitionPlanner(max_workers=4).plan([])

    def test_invalid_worker_count(self):
        with pytest.raises(PartitionPlanningError):
            PartitionPlanner(max_workers=0)
