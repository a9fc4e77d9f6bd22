from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator


class EntityKind(StrEnum):
    COMPANY = "company"
    BRANCH = "branch"
    CONTACT = "contact"
    USER = "user"
    OPPORTUNITY = "opportunity"
    STAGE_HISTORY = "stage_history"
    PROPOSAL = "proposal"
    ACTIVITY = "activity"
    NOTE = "note"
    PROJECT = "project"


class OpportunityStage(StrEnum):
    QUALIFYING = "QUALIFYING"
    NEEDS_ANALYSIS = "NEEDS_ANALYSIS"
    PROPOSAL = "PROPOSAL"
    NEGOTIATION = "NEGOTIATION"
    CLOSED_WON = "CLOSED_WON"
    CLOSED_LOST = "CLOSED_LOST"


class ProposalStatus(StrEnum):
    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    SENT = "SENT"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class ActivityType(StrEnum):
    CALL = "CALL"
    EMAIL = "EMAIL"
    MEETING = "MEETING"
    NOTE = "NOTE"


class ProjectStatus(StrEnum):
    PLANNING = "PLANNING"
    IN_PROGRESS = "IN_PROGRESS"
    ON_HOLD = "ON_HOLD"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


FUNNEL_STAGES: tuple[str, ...] = (
    OpportunityStage.QUALIFYING,
    OpportunityStage.NEEDS_ANALYSIS,
    OpportunityStage.PROPOSAL,
    OpportunityStage.NEGOTIATION,
    OpportunityStage.CLOSED_WON,
)
CLOSED_STAGES: frozenset[str] = frozenset({OpportunityStage.CLOSED_WON, OpportunityStage.CLOSED_LOST})
PROPOSAL_STATUS_ORDER: tuple[str, ...] = tuple(item.value for item in ProposalStatus)
ACTIVE_PROJECT_STATUSES: frozenset[str] = frozenset({ProjectStatus.PLANNING, ProjectStatus.IN_PROGRESS})


def is_open(stage: str) -> bool:
    return stage not in CLOSED_STAGES


def stage_rank(stage: str) -> int:
    """Position of a stage in reporting order; stages outside the enum sort after known ones."""
    order = [item.value for item in OpportunityStage]
    try:
        return order.index(stage)
    except ValueError:
        return len(order)


class _Record(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    @field_validator("*")
    @classmethod
    def _assume_utc(cls, value: Any) -> Any:
        # SQLite drops tzinfo on read; stored timestamps are UTC.
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class CompanyRecord(_Record):
    id: uuid.UUID
    name: str
    code: str | None = None
    industry: str | None = None
    website: str | None = None
    employee_count: int | None = None
    created_at: datetime
    health_score: int | None = None
    churn_risk: float | None = None


class BranchRecord(_Record):
    id: uuid.UUID
    company_id: uuid.UUID
    name: str
    created_at: datetime


class ContactRecord(_Record):
    id: uuid.UUID
    company_id: uuid.UUID
    branch_id: uuid.UUID | None = None
    first_name: str
    last_name: str
    email: str | None = None
    job_title: str | None = None
    is_key_contact: bool = False


class UserRecord(_Record):
    id: uuid.UUID
    first_name: str
    last_name: str
    email: str | None = None


class OpportunityRecord(_Record):
    id: uuid.UUID
    company_id: uuid.UUID
    account_manager_id: uuid.UUID | None = None
    sales_team_id: uuid.UUID | None = None
    title: str = ""
    stage: str
    amount: Decimal = Decimal("0")
    expected_amount: Decimal | None = Field(default=None, validate_default=True)
    probability: int | None = None
    created_at: datetime
    updated_at: datetime | None = None
    expected_close_date: date | None = None
    actual_close_date: datetime | None = None

    @field_validator("expected_amount")
    @classmethod
    def _default_expected_amount(cls, value: Decimal | None, info: ValidationInfo) -> Decimal:
        if value is None:
            return info.data.get("amount", Decimal("0"))
        return value


class StageHistoryRecord(_Record):
    id: uuid.UUID
    opportunity_id: uuid.UUID
    from_stage: str | None = None
    to_stage: str
    duration_days: int | None = None
    created_at: datetime


class ProposalRecord(_Record):
    id: uuid.UUID
    opportunity_id: uuid.UUID
    template_id: uuid.UUID | None = None
    status: str
    total_amount: Decimal = Decimal("0")
    discount_percent: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0")
    created_at: datetime
    approved_at: datetime | None = None


class ActivityRecord(_Record):
    id: uuid.UUID
    company_id: uuid.UUID
    contact_id: uuid.UUID | None = None
    user_id: uuid.UUID | None = None
    opportunity_id: uuid.UUID | None = None
    activity_type: str
    subject: str | None = None
    description: str | None = None
    start_time: datetime


class NoteRecord(_Record):
    id: uuid.UUID
    company_id: uuid.UUID
    user_id: uuid.UUID | None = None
    content: str
    created_at: datetime


class ProjectRecord(_Record):
    id: uuid.UUID
    company_id: uuid.UUID
    name: str
    status: str
    created_at: datetime


Record = (
    CompanyRecord
    | BranchRecord
    | ContactRecord
    | UserRecord
    | OpportunityRecord
    | StageHistoryRecord
    | ProposalRecord
    | ActivityRecord
    | NoteRecord
    | ProjectRecord
)

RECORD_TYPES: dict[EntityKind, type[_Record]] = {
    EntityKind.COMPANY: CompanyRecord,
    EntityKind.BRANCH: BranchRecord,
    EntityKind.CONTACT: ContactRecord,
    EntityKind.USER: UserRecord,
    EntityKind.OPPORTUNITY: OpportunityRecord,
    EntityKind.STAGE_HISTORY: StageHistoryRecord,
    EntityKind.PROPOSAL: ProposalRecord,
    EntityKind.ACTIVITY: ActivityRecord,
    EntityKind.NOTE: NoteRecord,
    EntityKind.PROJECT: ProjectRecord,
}
