from datetime import date, datetime
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from models import LedgerEntry, RecurringTemplate, RepeatType
from recurrence import (
    RecurrenceProcessor,
    format_day_key,
    is_due,
    month_abbreviation,
    parse_day_key,
)
from schemas import RecurringTemplateIn
from services import LedgerService, TemplateService, UserService

KL = ZoneInfo("Asia/Kuala_Lumpur")


def _at(year, month, day, hour=0, minute=0):
    return datetime(year, month, day, hour, minute, tzinfo=KL)


def _memory_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def _seed(factory, user_id, **doc):
    with factory() as session:
        UserService(session).ensure(user_id)
        template = TemplateService(session, user_id).create(
            RecurringTemplateIn(**doc)
        )
        session.commit()
        return template.id


def test_format_day_key_zero_pads():
    assert format_day_key(date(2024, 3, 5)) == "05-03-2024"
    assert format_day_key(_at(2024, 12, 31, 23, 59)) == "31-12-2024"


def test_month_abbreviation():
    assert month_abbreviation(1) == "Jan"
    assert month_abbreviation(3) == "Mar"
    assert month_abbreviation(12) == "Dec"
    with pytest.raises(ValueError):
        month_abbreviation(13)


@pytest.mark.parametrize(
    "value",
    [None, "", "2024-03-01x", "01-03", "01/03/2024", "aa-03-2024", "31-02-2024"],
)
def test_parse_day_key_rejects_malformed(value):
    assert parse_day_key(value, KL) is None


def test_parse_day_key_is_midnight_in_zone():
    assert parse_day_key("01-03-2024", KL) == _at(2024, 3, 1)


def test_markers_at_calendar_edges_count_as_never_fired():
    # Midnight on 01-01-0001 in UTC+8 falls before datetime.min in UTC.
    assert parse_day_key("01-01-0001", KL) is None
    utc = ZoneInfo("UTC")
    assert parse_day_key("01-01-0001", utc) == datetime(1, 1, 1, tzinfo=utc)
    assert is_due("Weekly", "01-01-0001", _at(2024, 3, 15)) is True
    assert is_due("Monthly", "01-01-0001", _at(2024, 3, 15)) is True


@pytest.mark.parametrize("repeat", [None, "", "None", RepeatType.none])
@pytest.mark.parametrize("last", [None, "01-01-2000", "15-03-2024", "garbage"])
def test_inert_templates_never_due(repeat, last):
    assert is_due(repeat, last, _at(2024, 3, 15)) is False


def test_unknown_repeat_is_never_due():
    assert is_due("Yearly", None, _at(2024, 3, 15)) is False


def test_daily_due_unless_marker_is_today():
    now = _at(2024, 3, 15, 8)
    assert is_due("Daily", "15-03-2024", now) is False
    assert is_due("Daily", "14-03-2024", now) is True
    assert is_due("Daily", None, now) is True
    assert is_due("Daily", "not-a-date", now) is True


def test_weekly_counts_whole_days():
    assert is_due("Weekly", "01-03-2024", _at(2024, 3, 8)) is True
    assert is_due("Weekly", "01-03-2024", _at(2024, 3, 20)) is True
    assert is_due("Weekly", "01-03-2024", _at(2024, 3, 7, 23, 59)) is False


def test_weekly_without_valid_marker_is_due():
    assert is_due("Weekly", None, _at(2024, 3, 8)) is True
    assert is_due("Weekly", "99-99-2024", _at(2024, 3, 8)) is True


def test_weekly_future_marker_is_not_due():
    assert is_due("Weekly", "20-03-2024", _at(2024, 3, 8)) is False


def test_monthly_compares_calendar_month_and_year():
    assert is_due("Monthly", "20-02-2024", _at(2024, 3, 1)) is True
    assert is_due("Monthly", "01-03-2024", _at(2024, 3, 31)) is False
    assert is_due("Monthly", "15-03-2023", _at(2024, 3, 15)) is True
    assert is_due("Monthly", None, _at(2024, 3, 15)) is True


def test_daily_fire_appends_entry_and_advances_marker():
    factory = _memory_factory()
    template_id = _seed(
        factory,
        "alice",
        repeat="Daily",
        lastRepeated="14-03-2024",
        amount=12.5,
        category="Food",
        description="Lunch",
    )

    report = RecurrenceProcessor(factory, tz=KL).run(_at(2024, 3, 15))
    assert (report.users, report.templates, report.fired, report.failed) == (
        1,
        1,
        1,
        0,
    )

    with factory() as session:
        entries = LedgerService(session, "alice").list_entries("Mar", "15-03-2024")
        assert len(entries) == 1
        entry = entries[0]
        assert entry.template_id == template_id
        assert entry.data["amount"] == 12.5
        assert entry.data["category"] == "Food"
        assert entry.data["repeat"] == "Daily"
        assert entry.data["date"] == _at(2024, 3, 15).isoformat()

        template = TemplateService(session, "alice").get(template_id)
        assert template.last_repeated == "15-03-2024"


def test_second_run_same_day_does_not_fire_again():
    factory = _memory_factory()
    _seed(factory, "alice", repeat="Daily", lastRepeated="14-03-2024")
    processor = RecurrenceProcessor(factory, tz=KL)

    assert processor.run(_at(2024, 3, 15, 0, 0)).fired == 1
    second = processor.run(_at(2024, 3, 15, 18, 30))
    assert second.fired == 0
    assert second.skipped == 1

    with factory() as session:
        assert session.query(LedgerEntry).count() == 1


def test_weekly_and_monthly_scenarios():
    factory = _memory_factory()
    _seed(factory, "bob", repeat="Weekly", lastRepeated="01-03-2024", note="gym")
    _seed(factory, "bob", repeat="Monthly", lastRepeated="20-02-2024", note="rent")
    _seed(factory, "bob", repeat="Monthly", lastRepeated="01-03-2024", note="phone")
    _seed(factory, "bob", repeat="None", note="inert")

    report = RecurrenceProcessor(factory, tz=KL).run(_at(2024, 3, 8))
    assert report.fired == 2
    assert report.skipped == 2

    with factory() as session:
        buckets = LedgerService(session, "bob").day_buckets("Mar")
        assert list(buckets) == ["08-03-2024"]
        assert sorted(d["note"] for d in buckets["08-03-2024"]) == ["gym", "rent"]


def test_monthly_same_month_end_of_month_not_due():
    factory = _memory_factory()
    _seed(factory, "carol", repeat="Monthly", lastRepeated="01-03-2024")

    report = RecurrenceProcessor(factory, tz=KL).run(_at(2024, 3, 31))
    assert report.fired == 0


def test_naive_now_is_read_in_ledger_timezone():
    factory = _memory_factory()
    _seed(factory, "dave", repeat="Daily")

    RecurrenceProcessor(factory, tz=KL).run(datetime(2024, 1, 2, 0, 5))

    with factory() as session:
        entry = session.query(LedgerEntry).one()
        assert (entry.month, entry.day_key) == ("Jan", "02-01-2024")


def test_utc_now_is_converted_to_ledger_timezone():
    factory = _memory_factory()
    _seed(factory, "dave", repeat="Daily")

    # 16:00 UTC on the 1st is midnight on the 2nd in Kuala Lumpur.
    now = datetime(2024, 1, 1, 16, 0, tzinfo=ZoneInfo("UTC"))
    RecurrenceProcessor(factory, tz=KL).run(now)

    with factory() as session:
        template = session.query(RecurringTemplate).one()
        assert template.last_repeated == "02-01-2024"


def test_early_marker_fires_weekly_template():
    factory = _memory_factory()
    _seed(factory, "hank", repeat="Weekly", lastRepeated="01-01-0001")

    report = RecurrenceProcessor(factory, tz=KL).run(_at(2024, 3, 15))
    assert report.fired == 1
    assert report.failed == 0


def test_template_listing_failure_is_isolated_to_user(monkeypatch):
    factory = _memory_factory()
    _seed(factory, "ivan", repeat="Daily")
    other_id = _seed(factory, "judy", repeat="Daily")

    real = RecurrenceProcessor._list_work_items

    def listing(self, user_id):
        if user_id == "ivan":
            raise RuntimeError("listing timed out")
        return real(self, user_id)

    monkeypatch.setattr(RecurrenceProcessor, "_list_work_items", listing)

    report = RecurrenceProcessor(factory, tz=KL).run(_at(2024, 3, 15))
    assert report.users == 2
    assert report.templates == 1
    assert report.fired == 1
    assert len(report.failures) == 1
    failure = report.failures[0]
    assert (failure.user_id, failure.template_id) == ("ivan", None)
    assert "listing timed out" in failure.error

    with factory() as session:
        assert [e.template_id for e in session.query(LedgerEntry)] == [other_id]


def test_user_listing_failure_propagates(monkeypatch):
    factory = _memory_factory()
    _seed(factory, "kate", repeat="Daily")

    def broken(self):
        raise RuntimeError("store unreachable")

    monkeypatch.setattr(RecurrenceProcessor, "_list_user_ids", broken)

    with pytest.raises(RuntimeError, match="store unreachable"):
        RecurrenceProcessor(factory, tz=KL).run(_at(2024, 3, 15))

    with factory() as session:
        assert session.query(LedgerEntry).count() == 0


def test_failing_template_does_not_abort_run(monkeypatch):
    import recurrence

    factory = _memory_factory()
    good_id = _seed(factory, "erin", repeat="Daily", description="ok")
    bad_id = _seed(factory, "erin", repeat="Daily", description="broken")
    other_id = _seed(factory, "frank", repeat="Monthly", description="ok")

    real = recurrence.materialize_payload

    def flaky(data, now):
        if data.get("description") == "broken":
            raise RuntimeError("store unavailable")
        return real(data, now)

    monkeypatch.setattr(recurrence, "materialize_payload", flaky)

    report = RecurrenceProcessor(factory, tz=KL).run(_at(2024, 3, 15))
    assert report.fired == 2
    assert report.failed == 1
    assert report.failures[0].template_id == bad_id
    assert "store unavailable" in report.failures[0].error

    with factory() as session:
        fired = {e.template_id for e in session.query(LedgerEntry)}
        assert fired == {good_id, other_id}
        assert session.get(RecurringTemplate, bad_id).last_repeated is None


def test_append_and_marker_roll_back_together(monkeypatch):
    factory = _memory_factory()
    template_id = _seed(factory, "gina", repeat="Daily", lastRepeated="14-03-2024")

    def boom(self, day_key):
        raise RuntimeError("marker write failed")

    monkeypatch.setattr(RecurringTemplate, "mark_repeated", boom)

    report = RecurrenceProcessor(factory, tz=KL).run(_at(2024, 3, 15))
    assert report.fired == 0
    assert report.failed == 1

    with factory() as session:
        assert session.query(LedgerEntry).count() == 0
        assert session.get(RecurringTemplate, template_id).last_repeated == "14-03-2024"


def test_bounded_pool_processes_every_template(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    with Session(engine) as session:
        for n in range(3):
            user_id = f"user-{n}"
            UserService(session).ensure(user_id)
            service = TemplateService(session, user_id)
            for i in range(4):
                service.create(RecurringTemplateIn(repeat="Daily", index=i))
        session.commit()

    report = RecurrenceProcessor(factory, tz=KL, concurrency=4).run(_at(2024, 3, 15))
    assert report.users == 3
    assert report.templates == 12
    assert report.fired == 12
    assert report.failed == 0

    with Session(engine) as session:
        assert session.query(LedgerEntry).count() == 12
        markers = {t.last_repeated for t in session.query(RecurringTemplate)}
        assert markers == {"15-03-2024"}
    engine.dispose()
