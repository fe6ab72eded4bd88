"""
Tender Commands

Payloads for the manual actions. Shape validation happens here; every
rule that depends on the stored tender or the clock is checked by the
lifecycle engine.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from tenderdesk.tender.models import (
    TenderCategory,
    VisibilityRules,
    WorkflowType,
)


class ModerationAction(str, Enum):
    FLAG = "flag"
    APPROVE = "approve"


class CreateTender(BaseModel):
    """
    Create a tender in draft

    Drafts may be incomplete; publish checks the required fields.
    """

    title: str = ""
    description: str = ""
    category: TenderCategory = TenderCategory.PROFESSIONAL
    workflow_type: WorkflowType = WorkflowType.OPEN
    deadline: datetime | None = None
    budget: Decimal | None = None
    visibility: VisibilityRules = Field(default_factory=VisibilityRules)

    @field_validator("title", "description")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip()


class EditTender(BaseModel):
    """Partial update; unset fields are left alone. Status and timestamps are not editable."""

    title: str | None = None
    description: str | None = None
    category: TenderCategory | None = None
    workflow_type: WorkflowType | None = None
    deadline: datetime | None = None
    budget: Decimal | None = None
    visibility: VisibilityRules | None = None

    def changes(self) -> dict[str, Any]:
        return {
            name: getattr(self, name)
            for name in sorted(self.model_fields_set)
            if getattr(self, name) is not None
        }
