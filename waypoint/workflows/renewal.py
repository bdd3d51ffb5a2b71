"""Commercial insurance renewal with broker approval.

Extracts the statement of values, pulls loss trends, quotes every carrier
in parallel, checks compliance and then waits for the broker to approve
the plan before compiling a market summary.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, List, Optional
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field

from ..context import WorkflowContext
from ..hooks import define_hook
from ..steps import step
from ..workflow import workflow
from . import http
from .decisions import ApprovalPayload, Decision, TimedOut, describe_decision

logger = logging.getLogger(__name__)

NAMESPACE = "Renewal"
APPROVAL_TIMEOUT = "1m"
APP_BASE_URL = "http://localhost:3000"


class RenewalInput(BaseModel):
    account_id: str
    effective_date: date
    sov_file_id: str
    state: str
    broker_email: str
    carriers: List[str] = Field(min_length=1)


class StatementOfValues(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_id: str = Field(alias="fileId")
    rows: int = 0
    total_insured_value: Optional[float] = Field(default=None, alias="tIv")


class CarrierQuote(BaseModel):
    carrier: str
    premium: float
    terms: str


class ComplianceResult(BaseModel):
    ok: bool
    reasons: List[str] = Field(default_factory=list)


class RenewalResult(BaseModel):
    account_id: str
    quotes: List[CarrierQuote]
    compliance: ComplianceResult
    decision: Decision
    summary_url: str


broker_approval = define_hook(ApprovalPayload, name="broker_approval")


@step(max_retries=3)
async def extract_sov(file_id: str) -> StatementOfValues:
    data = await http.get_json(f"/sov/{file_id}", "extract_sov")
    return StatementOfValues.model_validate(data)


@step(max_retries=3)
async def get_loss_trends(account_id: str) -> dict:
    return await http.get_json(f"/losses/{account_id}", "get_loss_trends")


@step(max_retries=5)
async def quote_carrier(carrier: str, sov: StatementOfValues, loss: Any) -> CarrierQuote:
    """Request a quote; an unsupported product (404) is not worth retrying."""
    data = await http.post_json(
        f"/quote/carrier/{carrier}",
        {"sov": sov.model_dump(by_alias=True), "loss": loss},
        f"quote_carrier[{carrier}]",
        retry_after="45s",
    )
    return CarrierQuote.model_validate(data)


@step
def compliance_check(quotes: List[CarrierQuote], state: str) -> ComplianceResult:
    if quotes:
        return ComplianceResult(ok=True)
    return ComplianceResult(ok=False, reasons=[f"No bindable quotes in {state}"])


@step
async def send_broker_approval_request(token: str, broker_email: str) -> str:
    approval_url = f"{APP_BASE_URL}/renewals/approve?token={quote(token, safe='')}"
    await http.post_json(
        "/notify/email",
        {"to": broker_email, "subject": "Approve Renewal Plan", "url": approval_url},
        "send_broker_approval_request",
    )
    return approval_url


@step
async def compile_market_summary(account_id: str, quotes: List[CarrierQuote]) -> str:
    data = await http.post_json(
        "/summary/compile",
        {"accountId": account_id, "quotes": quotes},
        "compile_market_summary",
    )
    return data["url"]


@workflow(name="renewal")
async def renewal(ctx: WorkflowContext, request: RenewalInput) -> RenewalResult:
    await ctx.emit(NAMESPACE, "Started", "Starting the renewal workflow")

    sov = await ctx.step(extract_sov, request.sov_file_id)
    await ctx.emit(NAMESPACE, "Extracted SoV", f"Parsed SoV rows: {sov.rows}")

    loss = await ctx.step(get_loss_trends, request.account_id)
    await ctx.emit(
        NAMESPACE, "Loaded loss trends", f"Loaded loss trends for {request.account_id}"
    )

    quotes = await ctx.gather(
        *(ctx.step(quote_carrier, carrier, sov, loss) for carrier in request.carriers)
    )
    await ctx.emit(NAMESPACE, "Received quotes", f"Received {len(quotes)} carrier quotes")

    compliance = await ctx.step(compliance_check, quotes, request.state)
    await ctx.emit(
        NAMESPACE,
        "Checked compliance",
        f"Compliance checked: {'ok' if compliance.ok else 'failed'}",
    )

    token = f"renewal:{request.account_id}:{request.effective_date.isoformat()}"
    approval = await ctx.create_hook(broker_approval, token=token)
    approval_url = await ctx.step(send_broker_approval_request, token, request.broker_email)
    await ctx.emit(
        NAMESPACE,
        "Requested approval",
        f"Emailed {request.broker_email} a secure approval link",
        {"token": token, "approvalUrl": approval_url},
    )

    outcome = await ctx.wait_for(
        approval, timeout=APPROVAL_TIMEOUT, on_timeout=TimedOut(after=APPROVAL_TIMEOUT)
    )
    decision = outcome if isinstance(outcome, TimedOut) else outcome.to_decision()
    await ctx.emit(
        NAMESPACE,
        "Checked approval",
        f"Approval: {describe_decision(decision)}",
        decision.model_dump(),
    )

    summary_url = await ctx.step(compile_market_summary, request.account_id, quotes)
    await ctx.emit(
        NAMESPACE, "Compiled market summary", f"Market summary compiled: {summary_url}"
    )

    return RenewalResult(
        account_id=request.account_id,
        quotes=quotes,
        compliance=compliance,
        decision=decision,
        summary_url=summary_url,
    )
