"""Marketing campaign analysis with budget-aware approval.

Pulls campaign performance, checks the requested budget, forecasts the next
period when history is available and asks marketing leadership to approve
the recommendations before the report is generated and mailed out.
"""

from __future__ import annotations

import logging
from typing import Any, List, Literal, Optional
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..context import WorkflowContext
from ..errors import StepFailed
from ..hooks import define_hook
from ..steps import step
from ..workflow import workflow
from . import http
from .decisions import (
    ApprovalPayload,
    Approved,
    Decision,
    TimedOut,
    describe_decision,
)

logger = logging.getLogger(__name__)

NAMESPACE = "Campaigns"
APP_BASE_URL = "http://localhost:3000"
HIGH_IMPACT_BUDGET = 100000
HIGH_IMPACT_APPROVAL_TIMEOUT = "15m"
ROUTINE_APPROVAL_TIMEOUT = "1h"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DateRange(_CamelModel):
    start: str
    end: str


class CampaignAnalysisInput(_CamelModel):
    analyst_id: str
    campaign_name: str
    campaign_id: Optional[str] = None
    date_range: DateRange
    channels: Optional[List[str]] = None
    budget_threshold: Optional[float] = Field(default=None, gt=0)
    requester_email: str


class Performance(_CamelModel):
    total_spend: float
    total_revenue: float
    roi: float
    cac: float
    conversions: int
    conversion_rate: float


class ChannelResult(_CamelModel):
    channel: str
    spend: float
    revenue: float
    roi: float
    conversions: int


class Recommendation(_CamelModel):
    type: Literal["scale", "pause", "optimize", "reallocate"]
    channel: Optional[str] = None
    reason: str
    expected_impact: str
    suggested_channels: Optional[List[str]] = None


class CampaignData(_CamelModel):
    campaign_id: str
    performance: Optional[Performance] = None
    channel_breakdown: List[ChannelResult] = Field(default_factory=list)
    recommendations: List[Recommendation] = Field(default_factory=list)
    historical_data: Optional[dict[str, Any]] = None


class BudgetCheck(_CamelModel):
    available: bool
    available_amount: Optional[float] = None
    total_budget: Optional[float] = None
    reason: Optional[str] = None
    warning: Optional[str] = None


class Forecast(_CamelModel):
    projected_revenue: float
    projected_cac: float = Field(alias="projectedCAC")
    projected_roi: Optional[float] = Field(default=None, alias="projectedROI")
    confidence: float


class Report(_CamelModel):
    report_id: str
    download_url: Optional[str] = None


class CampaignApproval(ApprovalPayload):
    budget_adjustment: Optional[float] = Field(default=None, gt=0)
    alternative_channels: Optional[List[str]] = None


class CampaignAnalysisResult(_CamelModel):
    analysis_id: str
    campaign_performance: Optional[Performance] = None
    channel_breakdown: List[ChannelResult] = Field(default_factory=list)
    recommendations: List[Recommendation] = Field(default_factory=list)
    budget_check: Optional[BudgetCheck] = None
    budget_threshold: Optional[float] = None
    forecast: Optional[Forecast] = None
    decision: Optional[Decision] = None
    report: Optional[Report] = None
    report_url: Optional[str] = None
    error: Optional[str] = None


campaign_approval = define_hook(CampaignApproval, name="campaign_approval")


@step(max_retries=3)
async def fetch_campaign_data(request: CampaignAnalysisInput) -> CampaignData:
    data = await http.post_json(
        "/greenlight/campaigns/data",
        {
            "campaignName": request.campaign_name,
            "campaignId": request.campaign_id,
            "dateRange": request.date_range.model_dump(),
            "channels": request.channels,
        },
        "fetch_campaign_data",
    )
    return CampaignData.model_validate(data)


@step(max_retries=3)
async def check_budget_constraints(
    campaign_id: str, requested_budget: float, date_range: DateRange
) -> BudgetCheck:
    data = await http.post_json(
        "/greenlight/budgets/check",
        {
            "campaignId": campaign_id,
            "requestedBudget": requested_budget,
            "dateRange": date_range.model_dump(),
        },
        "check_budget_constraints",
    )
    return BudgetCheck.model_validate(data)


@step(max_retries=5)
async def generate_forecast(
    campaign_id: str, historical_data: dict, proposed_changes: List[Recommendation]
) -> Forecast:
    data = await http.post_json(
        "/greenlight/forecasts/generate",
        {
            "campaignId": campaign_id,
            "historicalData": historical_data,
            "proposedChanges": [r.model_dump(by_alias=True) for r in proposed_changes],
        },
        "generate_forecast",
        fatal_statuses=(400,),
    )
    return Forecast.model_validate(data)


@step(max_retries=3)
async def generate_report(
    analysis_id: str,
    performance: Performance,
    recommendations: List[Recommendation],
    forecast: Optional[Forecast],
) -> Report:
    data = await http.post_json(
        "/greenlight/reports/generate",
        {
            "analysisId": analysis_id,
            "campaignData": performance.model_dump(by_alias=True),
            "recommendations": [r.model_dump(by_alias=True) for r in recommendations],
            "forecast": forecast.model_dump(by_alias=True) if forecast else None,
        },
        "generate_report",
        fatal_statuses=(409,),
    )
    return Report.model_validate(data)


@step
async def send_approval_request(token: str, approver_email: str, details: Any) -> str:
    approval_url = f"{APP_BASE_URL}/greenlight/campaigns/approve?token={quote(token, safe='')}"
    await http.post_json(
        "/notify/email",
        {
            "to": approver_email,
            "subject": "Campaign Analysis & Budget Approval Required",
            "url": approval_url,
            "details": details,
        },
        "send_approval_request",
    )
    return approval_url


@step
async def send_report_email(token: str, requester_email: str, details: Any) -> str:
    report_url = f"{APP_BASE_URL}/greenlight/campaigns/report?token={quote(token, safe='')}"
    await http.post_json(
        "/notify/email",
        {
            "to": requester_email,
            "subject": "Campaign Analysis Report Ready",
            "url": report_url,
            "details": details,
        },
        "send_report_email",
    )
    return report_url


def is_high_impact(request: CampaignAnalysisInput) -> bool:
    return (request.budget_threshold or 0) > HIGH_IMPACT_BUDGET


def approver_for(request: CampaignAnalysisInput) -> str:
    if is_high_impact(request):
        return "cmo@greenlight.com"
    return "marketing-manager@greenlight.com"


def apply_channel_suggestions(
    recommendations: List[Recommendation], channels: List[str]
) -> List[Recommendation]:
    return [
        r.model_copy(update={"suggested_channels": channels}) if r.type == "reallocate" else r
        for r in recommendations
    ]


@workflow(name="campaign_analysis")
async def campaign_analysis(
    ctx: WorkflowContext, request: CampaignAnalysisInput
) -> CampaignAnalysisResult:
    analysis_id = f"analysis:{request.analyst_id}:{ctx.run_id}"

    await ctx.emit(NAMESPACE, "Fetching data", "Fetching campaign data and performance metrics")
    data = await ctx.step(fetch_campaign_data, request)
    if data.performance is None:
        await ctx.emit(
            NAMESPACE,
            "Campaign not found",
            f"Unable to fetch campaign data for {request.campaign_name!r}",
        )
        return CampaignAnalysisResult(analysis_id=analysis_id, error="Campaign data not found")

    result = CampaignAnalysisResult(
        analysis_id=analysis_id,
        campaign_performance=data.performance,
        channel_breakdown=data.channel_breakdown,
        recommendations=data.recommendations,
        budget_threshold=request.budget_threshold,
    )

    if request.budget_threshold and request.campaign_id:
        await ctx.emit(NAMESPACE, "Checking budget", "Checking budget constraints")
        budget = await ctx.step(
            check_budget_constraints,
            request.campaign_id,
            request.budget_threshold,
            request.date_range,
        )
        result.budget_check = budget
        if not budget.available:
            await ctx.emit(
                NAMESPACE,
                "Budget constraint",
                f"Budget constraint: {budget.reason or 'Budget limit exceeded'}",
            )
            result.error = "Budget constraint violation"
            return result
        if budget.warning:
            await ctx.emit(NAMESPACE, "Budget warning", f"Budget warning: {budget.warning}")

    if data.historical_data:
        await ctx.emit(NAMESPACE, "Forecasting", "Generating performance forecast")
        try:
            result.forecast = await ctx.step(
                generate_forecast,
                request.campaign_id or request.campaign_name,
                data.historical_data,
                data.recommendations,
            )
        except StepFailed as e:
            logger.warning(f"Forecast unavailable for {analysis_id}: {e}")
            await ctx.emit(
                NAMESPACE,
                "Forecast skipped",
                "Forecast generation failed; continuing without it",
            )
        else:
            await ctx.emit(
                NAMESPACE,
                "Forecast ready",
                f"Projected revenue ${result.forecast.projected_revenue:,.0f} "
                f"with {result.forecast.confidence:g}% confidence",
            )

    timeout = HIGH_IMPACT_APPROVAL_TIMEOUT if is_high_impact(request) else ROUTINE_APPROVAL_TIMEOUT
    approval = await ctx.create_hook(campaign_approval, token=analysis_id)
    await ctx.step(
        send_approval_request,
        analysis_id,
        approver_for(request),
        {
            "analysisId": analysis_id,
            "campaignName": request.campaign_name,
            "campaignPerformance": data.performance,
            "recommendations": data.recommendations,
            "forecast": result.forecast,
            "budgetThreshold": request.budget_threshold,
        },
    )
    outcome = await ctx.wait_for(approval, timeout=timeout, on_timeout=TimedOut(after=timeout))
    result.decision = outcome if isinstance(outcome, TimedOut) else outcome.to_decision()
    await ctx.emit(
        NAMESPACE,
        "Checked approval",
        f"Approval: {describe_decision(result.decision)}",
        result.decision.model_dump(),
    )
    if not isinstance(result.decision, Approved):
        result.error = "Approval denied or timeout"
        return result

    if outcome.budget_adjustment:
        result.budget_threshold = outcome.budget_adjustment
    if outcome.alternative_channels:
        result.recommendations = apply_channel_suggestions(
            result.recommendations, outcome.alternative_channels
        )

    await ctx.emit(NAMESPACE, "Generating report", "Generating campaign analysis report")
    result.report = await ctx.step(
        generate_report, analysis_id, data.performance, result.recommendations, result.forecast
    )
    result.report_url = await ctx.step(
        send_report_email,
        f"report:{analysis_id}",
        request.requester_email,
        {"analysisId": analysis_id, "reportId": result.report.report_id},
    )
    await ctx.emit(
        NAMESPACE,
        "Analysis complete",
        f"Report {result.report.report_id} generated. "
        f"Total ROI: {data.performance.roi:.2f}%",
    )
    return result
