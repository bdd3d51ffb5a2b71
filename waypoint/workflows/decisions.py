"""Approval decisions shared by the reference workflows."""

from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class ApprovalPayload(BaseModel):
    """Body an approver posts to resolve an approval hook."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    approved: bool
    comment: Optional[str] = None
    by: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN)

    def to_decision(self) -> "Decision":
        if self.approved:
            return Approved(by=self.by, comment=self.comment)
        return Rejected(by=self.by, comment=self.comment)


class Approved(BaseModel):
    kind: Literal["approved"] = "approved"
    by: Optional[str] = None
    comment: Optional[str] = None
    alternative_supplier_id: Optional[str] = None


class Rejected(BaseModel):
    kind: Literal["rejected"] = "rejected"
    by: Optional[str] = None
    comment: Optional[str] = None


class TimedOut(BaseModel):
    kind: Literal["timed_out"] = "timed_out"
    after: str


Decision = Annotated[Union[Approved, Rejected, TimedOut], Field(discriminator="kind")]


def describe_decision(decision: Decision) -> str:
    if isinstance(decision, Approved):
        return "approved"
    if isinstance(decision, Rejected):
        return f"rejected ({decision.comment or 'no reason'})"
    return f"timed out after {decision.after}"
