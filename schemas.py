from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from models import RepeatType


class RecurringTemplateIn(BaseModel):
    """A template document as written by clients.

    Unknown keys (amount, category, description, ...) are kept as payload.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    repeat: RepeatType = RepeatType.none
    last_repeated: Optional[str] = Field(
        None, alias="lastRepeated", pattern=r"^\d{2}-\d{2}-\d{4}$"
    )

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")
