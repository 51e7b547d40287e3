from datetime import date

from healthcast.services.aggregation import EventRecord, ImportedAggregateRecord
from healthcast.services.history_summary import summarize_sources

from _helpers import utc


def _events():
    return [
        EventRecord(completed_at=utc(2023, 3, 5), location_id=1),
        EventRecord(completed_at=utc(2024, 1, 9, hour=23), location_id=2),
        EventRecord(completed_at=utc(2023, 11, 20), location_id=1),
    ]


def _imports():
    return [
        ImportedAggregateRecord(period=date(2019, 6, 1), count=40, location_id=1),
        ImportedAggregateRecord(period=date(2020, 2, 1), count=15, location_id=2),
        ImportedAggregateRecord(period=date(2021, 1, 1), count=-3, location_id=1),
    ]


def test_summary_reports_each_source_and_combined():
    s = summarize_sources("hiv", _events(), _imports())

    assert s.events.record_count == 3
    assert s.events.total == 3
    assert s.events.earliest == date(2023, 3, 5)
    assert s.events.latest == date(2024, 1, 9)

    # negative counts are dropped just like the aggregator drops them
    assert s.imports.record_count == 2
    assert s.imports.total == 55
    assert s.imports.earliest == date(2019, 6, 1)
    assert s.imports.latest == date(2020, 2, 1)

    assert s.combined.record_count == 5
    assert s.combined.total == 58
    assert s.combined.earliest == date(2019, 6, 1)
    assert s.combined.latest == date(2024, 1, 9)
    assert s.available_years == [2019, 2020, 2023, 2024]


def test_summary_filters_by_location():
    s = summarize_sources("hiv", _events(), _imports(), location_id=1)

    assert s.location_id == 1
    assert s.events.record_count == 2
    assert s.imports.total == 40
    assert s.combined.total == 42
    assert s.available_years == [2019, 2023]


def test_empty_sources_have_no_dates():
    s = summarize_sources("tb", [], [])

    assert s.combined.record_count == 0
    assert s.combined.total == 0
    assert s.combined.earliest is None
    assert s.combined.latest is None
    assert s.available_years == []
