import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional, Union
from zoneinfo import ZoneInfo

from sqlalchemy import select

from config import get_settings
from database import SessionFactory, session_scope
from models import LedgerEntry, RecurringTemplate, RepeatType, User
from worker_pool import map_isolated

logger = logging.getLogger(__name__)

MONTH_ABBREVIATIONS = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)
WEEKLY_INTERVAL_DAYS = 7

TzLike = Union[str, ZoneInfo, None]


def _resolve_tz(tz: TzLike) -> ZoneInfo:
    if tz is None:
        return get_settings().tzinfo
    if isinstance(tz, str):
        return ZoneInfo(tz)
    return tz


def local_now(tz: TzLike = None) -> datetime:
    return datetime.now(_resolve_tz(tz))


def format_day_key(value: date) -> str:
    """Render ``value`` as the ``DD-MM-YYYY`` key used for markers and buckets."""
    return f"{value.day:02d}-{value.month:02d}-{value.year:04d}"


def month_abbreviation(month: int) -> str:
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month number: {month}")
    return MONTH_ABBREVIATIONS[month - 1]


def parse_day_key(value: Optional[str], tz=None) -> Optional[datetime]:
    """Parse a ``DD-MM-YYYY`` marker into midnight of that day in ``tz``.

    Returns ``None`` for anything that is not three ASCII-numeric parts naming
    a real calendar date, or a date too close to ``datetime.min``/``max`` to
    convert to UTC; callers treat that as "never fired".
    """
    if not value or not isinstance(value, str):
        return None
    parts = value.split("-")
    if len(parts) != 3 or not all(p.isascii() and p.isdigit() for p in parts):
        return None
    day, month, year = (int(p) for p in parts)
    try:
        parsed = datetime(year, month, day, tzinfo=tz)
        if tz is not None:
            parsed.astimezone(timezone.utc)
    except (ValueError, OverflowError):
        return None
    return parsed


def _elapsed(prior: datetime, now: datetime) -> timedelta:
    if now.tzinfo is None or prior.tzinfo is None:
        return now - prior
    # Same-zone aware subtraction is wall-clock; compare real instants instead.
    return now.astimezone(timezone.utc) - prior.astimezone(timezone.utc)


def is_due(repeat: Any, last_repeated: Optional[str], now: datetime) -> bool:
    """Decide whether a template with ``repeat``/``last_repeated`` fires at ``now``.

    ``now`` should be an aware datetime in the ledger timezone; the prior
    firing is read as midnight of its day in the same zone.
    """
    if not repeat or repeat == RepeatType.none:
        return False

    if repeat == RepeatType.daily:
        return format_day_key(now) != last_repeated

    prior = parse_day_key(last_repeated, now.tzinfo)
    if repeat == RepeatType.weekly:
        if prior is None:
            return True
        whole_days = _elapsed(prior, now) // timedelta(days=1)
        return whole_days >= WEEKLY_INTERVAL_DAYS
    if repeat == RepeatType.monthly:
        if prior is None:
            return True
        return now.month != prior.month or now.year != prior.year
    return False


def materialize_payload(data: dict[str, Any], now: datetime) -> dict[str, Any]:
    return {**data, "date": now.isoformat()}


@dataclass(frozen=True)
class WorkItem:
    user_id: str
    template_id: str


@dataclass(frozen=True)
class RunFailure:
    user_id: str
    template_id: Optional[str]
    error: str


@dataclass
class RunReport:
    started_at: datetime
    users: int = 0
    templates: int = 0
    fired: int = 0
    skipped: int = 0
    failures: list[RunFailure] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)


class RecurrenceProcessor:
    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        tz: TzLike = None,
        concurrency: int = 1,
    ) -> None:
        self.session_factory = session_factory
        self.tz = _resolve_tz(tz)
        self.concurrency = concurrency

    def run(self, now: Optional[datetime] = None) -> RunReport:
        now = now or local_now(self.tz)
        if now.tzinfo is None:
            now = now.replace(tzinfo=self.tz)
        else:
            now = now.astimezone(self.tz)

        report = RunReport(started_at=now)
        user_ids = self._list_user_ids()
        report.users = len(user_ids)

        items: list[WorkItem] = []
        for user_id in user_ids:
            try:
                items.extend(self._list_work_items(user_id))
            except Exception as exc:
                logger.exception(f"recurring_run: listing failed user={user_id}")
                report.failures.append(RunFailure(user_id, None, repr(exc)))
        report.templates = len(items)

        results = map_isolated(
            items,
            lambda item: self.process_item(item, now),
            concurrency=self.concurrency,
        )
        for result in results:
            item = result.item
            if not result.ok:
                logger.error(
                    f"recurring_run: item failed user={item.user_id} "
                    f"template={item.template_id}",
                    exc_info=result.error,
                )
                report.failures.append(
                    RunFailure(item.user_id, item.template_id, repr(result.error))
                )
            elif result.value:
                report.fired += 1
            else:
                report.skipped += 1

        logger.info(
            f"recurring_run: day={format_day_key(now)} users={report.users} "
            f"templates={report.templates} fired={report.fired} "
            f"skipped={report.skipped} failed={report.failed}"
        )
        return report

    def process_item(self, item: WorkItem, now: datetime) -> bool:
        """Fire one template if due. Returns ``True`` when a ledger entry was added.

        The append and the marker update share one transaction, and the
        template row is locked while deciding.
        """
        with session_scope(self.session_factory) as session:
            stmt = (
                select(RecurringTemplate)
                .where(
                    RecurringTemplate.id == item.template_id,
                    RecurringTemplate.user_id == item.user_id,
                )
                .with_for_update()
            )
            template = session.scalars(stmt).one_or_none()
            if template is None:
                return False
            if not is_due(template.repeat, template.last_repeated, now):
                return False

            day_key = format_day_key(now)
            session.add(
                LedgerEntry(
                    user_id=item.user_id,
                    month=month_abbreviation(now.month),
                    day_key=day_key,
                    date=now,
                    template_id=template.id,
                    data=materialize_payload(template.data, now),
                )
            )
            template.mark_repeated(day_key)
            logger.debug(
                f"recurring_fire: user={item.user_id} template={template.id} "
                f"repeat={template.repeat} day={day_key}"
            )
            return True

    def _list_user_ids(self) -> list[str]:
        with session_scope(self.session_factory) as session:
            return list(session.scalars(select(User.id).order_by(User.id)))

    def _list_work_items(self, user_id: str) -> list[WorkItem]:
        with session_scope(self.session_factory) as session:
            stmt = (
                select(RecurringTemplate.id)
                .where(RecurringTemplate.user_id == user_id)
                .order_by(RecurringTemplate.created_at, RecurringTemplate.id)
            )
            return [WorkItem(user_id, tid) for tid in session.scalars(stmt)]
