from datetime import datetime, date
from types import SimpleNamespace

import pytest

import reporting


def person(user_id, name):
    return SimpleNamespace(id=user_id, name=name, email=f"{name.lower()}@helpers.org")


def log(day, hours=1, minutes=0, user=None, group=None, description=None):
    return SimpleNamespace(date=day, hours=hours, minutes=minutes, user=user, group=group,
                           description=description)


def test_month_period():
    start, end, prev_start, prev_end, labels = reporting.report_period("month", datetime(2025, 5, 20, 14, 0))
    assert start == datetime(2025, 5, 1)
    assert end == datetime(2025, 5, 20, 14, 0)
    assert prev_start == datetime(2025, 4, 1)
    assert prev_end == start
    assert labels == ["Week 1", "Week 2", "Week 3", "Week 4"]


def test_quarter_period():
    start, _, prev_start, _, labels = reporting.report_period("quarter", datetime(2025, 5, 20))
    assert start == datetime(2025, 4, 1)
    assert prev_start == datetime(2025, 1, 1)
    assert labels == ["April", "May", "June"]

    _, _, prev_start, _, _ = reporting.report_period("quarter", datetime(2025, 2, 3))
    assert prev_start == datetime(2024, 10, 1)


def test_year_period_and_unknown_timeframe():
    start, _, prev_start, _, labels = reporting.report_period("year", datetime(2025, 8, 1))
    assert start == datetime(2025, 1, 1)
    assert prev_start == datetime(2024, 1, 1)
    assert labels == ["Q1", "Q2", "Q3", "Q4"]
    with pytest.raises(ValueError):
        reporting.report_period("decade", datetime(2025, 8, 1))


def test_bucket_hours_month():
    logs = [
        log(date(2025, 5, 3), hours=2),
        log(date(2025, 5, 10), hours=1, minutes=30),
        log(date(2025, 5, 28), hours=4),
        log(date(2025, 5, 31), hours=0, minutes=15),
    ]
    assert reporting.bucket_hours(logs, "month", datetime(2025, 5, 1)) == [2.0, 1.5, 0.0, 4.25]


def test_bucket_hours_quarter_and_year():
    logs = [log(date(2025, 4, 2), hours=1), log(date(2025, 5, 9), hours=3), log(date(2025, 11, 9), hours=2)]
    assert reporting.bucket_hours(logs[:2], "quarter", datetime(2025, 4, 1)) == [1.0, 3.0, 0.0]
    assert reporting.bucket_hours(logs, "year", datetime(2025, 1, 1)) == [0.0, 4.0, 0.0, 2.0]


def test_percent_change():
    assert reporting.percent_change(150, 100) == 50.0
    assert reporting.percent_change(50, 200) == -75.0
    assert reporting.percent_change(10, 0) == 0.0


def test_group_distribution_folds_remainder_into_other():
    names = ["Food Bank", "Parks", "Reading", "Shelter", "Choir", "Garden"]
    entries = [
        ("Food Bank", 10), ("Parks", 8), ("Reading", 6), ("Shelter", 5),
        ("Choir", 2), ("Garden", 1), (None, 1.5),
    ]
    result = reporting.group_distribution(entries, names)
    assert result == [("Food Bank", 10), ("Parks", 8), ("Reading", 6), ("Shelter", 5), ("Other", 4.5)]


def test_group_distribution_without_other():
    result = reporting.group_distribution([("Parks", 2.0)], ["Parks", "Reading"])
    assert result == [("Parks", 2.0), ("Reading", 0.0)]


def test_top_volunteers():
    ann, bob, cy = person(1, "Ann"), person(2, "Bob"), person(3, "Cy")
    logs = [
        log(date(2025, 5, 1), hours=2, user=ann),
        log(date(2025, 5, 2), hours=5, minutes=20, user=bob),
        log(date(2025, 5, 3), hours=1, user=ann),
    ]
    signups = [SimpleNamespace(user=ann), SimpleNamespace(user=ann), SimpleNamespace(user=cy)]

    rows = reporting.top_volunteers(logs, signups, limit=2)
    assert [row["name"] for row in rows] == ["Bob", "Ann"]
    assert rows[0]["total_hours"] == 5.3
    assert rows[1]["recent_shifts"] == 2


def test_hours_report_csv():
    ann = person(1, "Ann")
    payload = reporting.hours_report_csv([log(date(2025, 5, 3), hours=2, minutes=15, user=ann, description="Sorting")])
    lines = payload.strip().splitlines()
    assert lines[0] == "VolunteerName,Email,Date,Hours,Minutes,Description"
    assert lines[1] == "Ann,ann@helpers.org,2025-05-03,2,15,Sorting"


def test_shifts_csv_lists_roster():
    ann, bob = person(1, "Ann"), person(2, "Bob")
    item = SimpleNamespace(
        id=7, title="Sorting", description=None, location="Warehouse",
        start_time=datetime(2025, 5, 3, 9), end_time=datetime(2025, 5, 3, 12),
        max_volunteers=4, current_volunteers=2, status="OPEN",
        group=SimpleNamespace(name="Food Bank"),
        signups=[SimpleNamespace(user=ann), SimpleNamespace(user=bob)],
    )
    lines = reporting.shifts_csv([item]).strip().splitlines()
    assert lines[0].startswith("ID,Title,Description")
    assert lines[1] == "7,Sorting,,Warehouse,2025-05-03 09:00,2025-05-03 12:00,4,2,OPEN,Food Bank,Ann; Bob"


def test_monthly_pdf_spans_pages():
    ann = person(1, "Ann")
    food_bank = SimpleNamespace(name="Food Bank")
    logs = [log(date(2025, 5, 1 + i % 28), hours=1, user=ann, group=food_bank) for i in range(80)]
    pdf = reporting.monthly_hours_pdf(2025, 5, logs, generated_at=datetime(2025, 6, 1))
    assert pdf.startswith(b"%PDF")
    assert len(pdf) > len(reporting.monthly_hours_pdf(2025, 5, logs[:5]))


def test_monthly_pdf_empty_month():
    pdf = reporting.monthly_hours_pdf(2025, 2, [])
    assert pdf.startswith(b"%PDF")
