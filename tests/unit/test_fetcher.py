# tests/unit/test_fetcher.py

import threading

import pytest

from bulk_transfer.exceptions import FetchError, FetchTimeoutError, StopRequested
from bulk_transfer.fetcher import Page, PageFetcher

@pytest.fixture
def source(list_source, make_records):
    return list_source({"Patient": make_records("Patient", 5)})


def test_fetches_pages_in_order(source):
    fetcher = PageFetcher(source, page_size=2)

    first = fetcher.fetch("Patient", (), 1)
    second = fetcher.fetch("Patient", (), 2)
    third = fetcher.fetch("Patient", (), 3)

    assert [r["id"] for r in first.records] == ["patient-1", "patient-2"]
    assert [r["id"] for r in second.records] == ["patient-3", "patient-4"]
    assert [r["id"] for r in third.records] == ["patient-5"]
    assert third.last_page_number == 3


def test_page_past_the_last_is_empty_without_calling_source(source):
    fetcher = PageFetcher(source, page_size=5)
    fetcher.fetch("Patient", (), 1)
    calls = len(source.calls)

    page = fetcher.fetch("Patient", (), 2)

    assert page.records == ()
    assert page.last_page_number == 1
    assert len(source.calls) == calls


@pytest.mark.parametrize("sequence", [[1, 1], [2, 1], [0]])
def test_page_numbers_must_strictly_increase(source, sequence):
    fetcher = PageFetcher(source, page_size=2)

    with pytest.raises(FetchError) as exc_info:
        for number in sequence:
            fetcher.fetch("Patient", (), number)

    assert exc_info.value.error_code == "PAGE_ORDER_VIOLATION"


def test_cursors_are_independent_per_filter(list_source, make_records):
    source = list_source(
        {},
        filtered={
            ("Observation", "status=final"): make_records("Observation", 2),
            ("Observation", "status=draft"): make_records("Observation", 1, start=10),
        },
    )
    fetcher = PageFetcher(source, page_size=10)

    final = fetcher.fetch("Observation", ("status=final",), 1)
    draft = fetcher.fetch("Observation", ("status=draft",), 1)

    assert len(final.records) == 2
    assert [r["id"] for r in draft.records] == ["observation-10"]


def test_source_errors_become_retryable_fetch_errors():
    class Broken:
        def page(self, category, filters, page_number, page_size):
            raise ConnectionError("connection reset")

    with pytest.raises(FetchError) as exc_info:
        PageFetcher(Broken(), page_size=2).fetch("Patient", (), 1)

    assert exc_info.value.retryable
    assert exc_info.value.context["source_error"] == "ConnectionError"


def test_malformed_page_is_rejected():
    class Wrong:
        def page(self, category, filters, page_number, page_size):
            return {"records": []}

    with pytest.raises(FetchError) as exc_info:
        PageFetcher(Wrong(), page_size=2).fetch("Patient", (), 1)

    assert exc_info.value.error_code == "MALFORMED_PAGE"


def test_slow_source_times_out(caplog):
    release = threading.Event()

    class Slow:
        def page(self, category, filters, page_number, page_size):
            release.wait(5)
            return Page(records=(), last_page_number=0)

    fetcher = PageFetcher(Slow(), page_size=2, timeout_seconds=0.05)
    try:
        with pytest.raises(FetchTimeoutError) as exc_info:
            fetcher.fetch("Patient", (), 1)
    finally:
        release.set()
        fetcher.close()

    assert exc_info.value.context["timeout_seconds"] == 0.05
    [record] = [r for r in caplog.records if r.name == "bulk_transfer.fetcher"]
    assert record.getMessage() == "Abandoned a source call that exceeded its time budget"
    assert record.still_running is True


def test_stop_flag_is_checked_before_each_call(source):
    stop = threading.Event()
    fetcher = PageFetcher(source, page_size=2, stop_event=stop)
    fetcher.fetch("Patient", (), 1)
    stop.set()

    with pytest.raises(StopRequested):
        fetcher.fetch("Patient", (), 2)

    assert len(source.calls) == 1


def test_children_follow_their_parent(source):
    class Children:
        def __init__(self):
            self.calls = []

        def children(self, parent, page_number, page_size):
            self.calls.append((parent["id"], page_number))
            if parent["id"] != "patient-1":
                return Page(records=(), last_page_number=0)
            kids = [{"resourceType": "Encounter", "id": f"enc-{i}"} for i in range(3)]
            start = (page_number - 1) * page_size
            return Page(records=kids[start : start + page_size], last_page_number=2)

    child_source = Children()
    fetcher = PageFetcher(source, page_size=2, child_source=child_source)

    page = fetcher.fetch("Patient", (), 1)

    assert [r["id"] for r in page.records] == [
        "patient-1",
        "enc-0",
        "enc-1",
        "enc-2",
        "patient-2",
    ]
    assert child_source.calls == [("patient-1", 1), ("patient-1", 2), ("patient-2", 1)]
