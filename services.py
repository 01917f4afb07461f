from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import LedgerEntry, RecurringTemplate, User
from schemas import RecurringTemplateIn


class UserNotFound(ValueError):
    pass


class TemplateNotFound(ValueError):
    pass


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def ensure(self, user_id: str) -> User:
        user = self.session.get(User, user_id)
        if user is None:
            user = User(id=user_id)
            self.session.add(user)
            self.session.flush()
        return user


class TemplateService:
    """Recurring templates under ``expenses/{user}/Recurring``."""

    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _require_user(self) -> None:
        if self.session.get(User, self.user_id) is None:
            raise UserNotFound(f"User not found: {self.user_id}")

    def get(self, template_id: str) -> RecurringTemplate:
        template = self.session.get(RecurringTemplate, template_id)
        if not template or template.user_id != self.user_id:
            raise TemplateNotFound("Template not found")
        return template

    def list(self) -> list[RecurringTemplate]:
        stmt = (
            select(RecurringTemplate)
            .where(RecurringTemplate.user_id == self.user_id)
            .order_by(RecurringTemplate.created_at, RecurringTemplate.id)
        )
        return list(self.session.scalars(stmt))

    def create(
        self, payload: RecurringTemplateIn, template_id: Optional[str] = None
    ) -> RecurringTemplate:
        self._require_user()
        template = RecurringTemplate(user_id=self.user_id, data=payload.to_document())
        if template_id:
            template.id = template_id
        self.session.add(template)
        self.session.flush()
        return template

    def update(self, template_id: str, payload: RecurringTemplateIn) -> RecurringTemplate:
        template = self.get(template_id)
        template.data = payload.to_document()
        self.session.flush()
        return template

    def delete(self, template_id: str) -> None:
        template = self.get(template_id)
        self.session.delete(template)
        self.session.flush()


class LedgerService:
    """Realized transactions under ``expenses/{user}/Months/{month}/{day_key}``."""

    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list_entries(
        self, month: Optional[str] = None, day_key: Optional[str] = None
    ) -> list[LedgerEntry]:
        stmt = select(LedgerEntry).where(LedgerEntry.user_id == self.user_id)
        if month:
            stmt = stmt.where(LedgerEntry.month == month)
        if day_key:
            stmt = stmt.where(LedgerEntry.day_key == day_key)
        stmt = stmt.order_by(LedgerEntry.date, LedgerEntry.created_at)
        return list(self.session.scalars(stmt))

    def day_buckets(self, month: str) -> dict[str, list[dict[str, Any]]]:
        buckets: dict[str, list[dict[str, Any]]] = {}
        for entry in self.list_entries(month=month):
            buckets.setdefault(entry.day_key, []).append(entry.data)
        return buckets
