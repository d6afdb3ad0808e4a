"""Profile entity - credit balance and subscription plan of a user."""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from sqlmodel import Field, SQLModel

UNLIMITED_CREDITS = -1


class PlanType(str, Enum):
    """Subscription plan."""

    FREE = "free"
    STARTER = "starter"
    PRO = "pro"


@dataclass(frozen=True)
class PlanDetails:
    name: PlanType
    credits_per_month: int
    video: bool
    video_max_seconds: int
    priority: int  # lower value = dequeued first
    prompt_enhancement: bool


PLANS: dict[PlanType, PlanDetails] = {
    PlanType.FREE: PlanDetails(
        name=PlanType.FREE,
        credits_per_month=50,
        video=False,
        video_max_seconds=0,
        priority=10,
        prompt_enhancement=False,
    ),
    PlanType.STARTER: PlanDetails(
        name=PlanType.STARTER,
        credits_per_month=200,
        video=True,
        video_max_seconds=5,
        priority=5,
        prompt_enhancement=True,
    ),
    PlanType.PRO: PlanDetails(
        name=PlanType.PRO,
        credits_per_month=UNLIMITED_CREDITS,
        video=True,
        video_max_seconds=15,
        priority=1,
        prompt_enhancement=True,
    ),
}


def priority_for_plan(plan: PlanType | str) -> int:
    """Map a subscription plan to a queue priority (unknown plans get the lowest)."""
    try:
        return PLANS[PlanType(plan)].priority
    except ValueError:
        return PLANS[PlanType.FREE].priority


class Profile(SQLModel, table=True):
    """Profile holds the mutable credit balance (-1 = unlimited)."""

    __tablename__ = "profiles"  # type: ignore[assignment]

    id: str = Field(primary_key=True, max_length=64)
    plan: PlanType = Field(default=PlanType.FREE)
    credits: int = Field(default=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_unlimited(self) -> bool:
        return self.credits == UNLIMITED_CREDITS
