import json

import httpx
import pytest

from waypoint.persistence.models import HookState, RunStatus
from waypoint.workflows import campaigns, contracts

from tests.fixtures.harness import drain, run_until_idle

pytestmark = pytest.mark.integration


CAMPAIGN_INPUT = {
    "analystId": "AN1",
    "campaignName": "Spring Launch",
    "campaignId": "C1",
    "dateRange": {"start": "2025-03-01", "end": "2025-03-31"},
    "channels": ["search", "social"],
    "budgetThreshold": 50000,
    "requesterEmail": "analyst@greenlight.com",
}

CAMPAIGN_DATA = {
    "campaignId": "C1",
    "performance": {
        "totalSpend": 40000,
        "totalRevenue": 120000,
        "roi": 200.0,
        "cac": 80.0,
        "conversions": 500,
        "conversionRate": 3.2,
    },
    "channelBreakdown": [
        {"channel": "search", "spend": 25000, "revenue": 90000, "roi": 260.0, "conversions": 350},
        {"channel": "social", "spend": 15000, "revenue": 30000, "roi": 100.0, "conversions": 150},
    ],
    "recommendations": [
        {"type": "scale", "channel": "search", "reason": "Best ROI", "expectedImpact": "+20% revenue"},
        {"type": "reallocate", "channel": "social", "reason": "Below target", "expectedImpact": "+5% ROI"},
    ],
    "historicalData": {"months": 6},
}


@pytest.fixture
def campaign_services(services):
    services.add("POST", "/greenlight/campaigns/data", CAMPAIGN_DATA)
    services.add(
        "POST",
        "/greenlight/budgets/check",
        {"available": True, "availableAmount": 80000, "warning": "Q2 budget 70% committed"},
    )
    services.add(
        "POST",
        "/greenlight/forecasts/generate",
        {"projectedRevenue": 150000, "projectedCAC": 75.0, "projectedROI": 220.0, "confidence": 85},
    )
    services.add(
        "POST", "/greenlight/reports/generate", {"reportId": "R1", "downloadUrl": "https://reports.test/R1"}
    )
    services.add("POST", "/notify/email", {"sent": True})
    return services


@pytest.mark.asyncio
async def test_campaign_approval_adjusts_budget_and_channels(
    scheduler, transport, campaign_services, event_sink
):
    handle = await scheduler.start("campaign_analysis", CAMPAIGN_INPUT)
    await drain(scheduler, transport)

    run = await scheduler.get_run(handle.run_id)
    assert run.status == RunStatus.WAITING
    token = run.waiting_on
    assert token == f"analysis:AN1:{handle.run_id}"
    (approval_email,) = campaign_services.calls[("POST", "/notify/email")]
    assert approval_email["to"] == "marketing-manager@greenlight.com"
    assert approval_email["subject"] == "Campaign Analysis & Budget Approval Required"
    assert approval_email["details"]["forecast"]["projectedCAC"] == 75.0
    assert [e.step for e in event_sink.events(handle.run_id)] == [
        "Fetching data",
        "Checking budget",
        "Budget warning",
        "Forecasting",
        "Forecast ready",
    ]

    await scheduler.resolve_hook(
        token,
        {
            "approved": True,
            "by": "lead@greenlight.com",
            "budgetAdjustment": 60000,
            "alternativeChannels": ["email", "display"],
        },
    )
    await drain(scheduler, transport)

    result = await handle.result(timeout=1)
    assert result["error"] is None
    assert result["decision"]["kind"] == "approved"
    assert result["budgetThreshold"] == 60000
    assert [r["suggestedChannels"] for r in result["recommendations"]] == [
        None,
        ["email", "display"],
    ]
    assert result["report"] == {"reportId": "R1", "downloadUrl": "https://reports.test/R1"}
    assert result["reportUrl"].startswith(
        "http://localhost:3000/greenlight/campaigns/report?token=report%3Aanalysis%3AAN1%3A"
    )
    report_email = campaign_services.calls[("POST", "/notify/email")][1]
    assert report_email["to"] == "analyst@greenlight.com"
    assert report_email["details"]["reportId"] == "R1"
    (report_request,) = campaign_services.calls[("POST", "/greenlight/reports/generate")]
    assert report_request["recommendations"][1]["suggestedChannels"] == ["email", "display"]
    assert event_sink.events(handle.run_id)[-1].step == "Analysis complete"
    # the approval replay served every earlier step from the log
    assert len(campaign_services.calls[("POST", "/greenlight/campaigns/data")]) == 1
    assert len(campaign_services.calls[("POST", "/greenlight/forecasts/generate")]) == 1


@pytest.mark.asyncio
async def test_campaign_budget_constraint_stops_before_approval(
    scheduler, transport, campaign_services
):
    campaign_services.add(
        "POST",
        "/greenlight/budgets/check",
        {"available": False, "availableAmount": 1000, "reason": "Quarterly budget exhausted"},
    )
    handle = await scheduler.start("campaign_analysis", CAMPAIGN_INPUT)
    await drain(scheduler, transport)

    result = await handle.result(timeout=1)
    assert result["error"] == "Budget constraint violation"
    assert result["budgetCheck"]["reason"] == "Quarterly budget exhausted"
    assert result["decision"] is None
    assert ("POST", "/notify/email") not in campaign_services.calls
    assert ("POST", "/greenlight/forecasts/generate") not in campaign_services.calls


@pytest.mark.asyncio
async def test_campaign_without_performance_data_reports_not_found(
    scheduler, transport, campaign_services
):
    campaign_services.add("POST", "/greenlight/campaigns/data", {"campaignId": "C1"})
    handle = await scheduler.start("campaign_analysis", CAMPAIGN_INPUT)
    await drain(scheduler, transport)

    result = await handle.result(timeout=1)
    assert result["error"] == "Campaign data not found"
    assert ("POST", "/greenlight/budgets/check") not in campaign_services.calls


@pytest.mark.asyncio
async def test_campaign_forecast_failure_still_asks_for_high_impact_approval(
    scheduler, transport, repository, campaign_services, event_sink, retry_delays
):
    campaign_services.add(
        "POST", "/greenlight/forecasts/generate", httpx.Response(400, json={"error": "bad history"})
    )
    handle = await scheduler.start(
        "campaign_analysis", {**CAMPAIGN_INPUT, "budgetThreshold": 150000}
    )
    await drain(scheduler, transport)

    assert (await handle.status()) == RunStatus.WAITING
    assert retry_delays == []
    assert len(campaign_services.calls[("POST", "/greenlight/forecasts/generate")]) == 1
    assert "Forecast skipped" in [e.step for e in event_sink.events(handle.run_id)]
    (approval_email,) = campaign_services.calls[("POST", "/notify/email")]
    assert approval_email["to"] == "cmo@greenlight.com"
    assert approval_email["details"]["forecast"] is None

    hook = await repository.get_hook(f"analysis:AN1:{handle.run_id}")
    assert hook.state == HookState.PENDING
    assert hook.expires_at is not None
    await scheduler.close()


@pytest.mark.asyncio
async def test_campaign_approval_times_out(
    scheduler, transport, campaign_services, monkeypatch
):
    monkeypatch.setattr(campaigns, "ROUTINE_APPROVAL_TIMEOUT", "50ms")
    handle = await scheduler.start("campaign_analysis", CAMPAIGN_INPUT)

    run = await run_until_idle(scheduler, transport, handle.run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.output["decision"] == {"kind": "timed_out", "after": "50ms"}
    assert run.output["error"] == "Approval denied or timeout"
    assert run.output["report"] is None
    assert ("POST", "/greenlight/reports/generate") not in campaign_services.calls


CONTRACT_INPUT = {
    "requesterId": "U1",
    "requesterRole": "requester",
    "contractType": "msa",
    "jurisdiction": "CA",
    "product": "cyber",
    "parties": {
        "party1": {"name": "Newfront", "role": "broker"},
        "party2": {"name": "Initech", "role": "client"},
    },
    "keyTerms": {"amount": 250000, "startDate": "2025-01-01", "endDate": "2025-12-31"},
    "requesterEmail": "u1@newfront.com",
}

CLAUSES = {
    "indemnification": "Each party indemnifies the other",
    "governing_law": "California law governs",
}


def _lookup_clause(request: httpx.Request) -> dict:
    name = json.loads(request.content)["clauseName"]
    return {"definition": {"name": name, "description": CLAUSES[name], "required": True}}


@pytest.fixture
def contract_services(services):
    services.add("POST", "/newfront/contracts/policies", {"allowed": True})
    services.add(
        "POST",
        "/newfront/contracts/templates",
        {"contractText": "MASTER SERVICES AGREEMENT", "templateId": "T-msa"},
    )
    services.add(
        "POST",
        "/newfront/contracts/extract",
        {"parties": [{"name": "Initech"}], "dates": [{"start": "2025-01-01"}], "amounts": []},
    )
    services.add(
        "POST",
        "/newfront/contracts/clauses/jurisdiction",
        {"required": list(CLAUSES), "optional": ["audit"], "jurisdictionSpecific": ["ccpa"]},
    )
    services.add("POST", "/newfront/contracts/clauses/lookup", _lookup_clause)
    services.add(
        "POST",
        "/newfront/contracts/clauses",
        {"required": [], "optional": [], "detected": ["indemnification"], "missing": ["governing_law"]},
    )
    services.add(
        "POST",
        "/newfront/contracts/redline",
        {"changes": [{"section": "Payment"}], "changeCount": 1, "diffUrl": "https://diff.test/1"},
    )
    services.add(
        "POST",
        "/newfront/contracts/archive",
        {"contractId": "ignored", "storageLocation": "s3://contracts/msa", "success": True},
    )
    services.add("POST", "/notify/email", {"sent": True})
    return services


@pytest.mark.asyncio
async def test_contract_goes_through_manager_and_legal_before_archive(
    scheduler, transport, contract_services, event_sink
):
    handle = await scheduler.start("contract_management", CONTRACT_INPUT)
    await drain(scheduler, transport)

    contract_id = f"contract:U1:{handle.run_id[:8]}"
    run = await scheduler.get_run(handle.run_id)
    assert run.waiting_on == f"{contract_id}:manager-review"
    (manager_email,) = contract_services.calls[("POST", "/notify/email")]
    assert manager_email["to"] == "contract-manager@newfront.com"
    assert manager_email["details"]["role"] == "contract_manager"

    # one lookup per required clause, each with its own step record
    lookups = contract_services.calls[("POST", "/newfront/contracts/clauses/lookup")]
    assert sorted(body["clauseName"] for body in lookups) == sorted(CLAUSES)
    steps = await scheduler.list_steps(handle.run_id)
    assert len([s for s in steps if s.step_name == "lookup_clause"]) == 2

    await scheduler.resolve_hook(
        f"{contract_id}:manager-review", {"approved": True, "by": "cm@newfront.com"}
    )
    await drain(scheduler, transport)
    assert (await scheduler.get_run(handle.run_id)).waiting_on == f"{contract_id}:legal-approval"
    assert contract_services.calls[("POST", "/notify/email")][1]["to"] == "legal@newfront.com"

    await scheduler.resolve_hook(
        f"{contract_id}:legal-approval", {"approved": True, "by": "counsel@newfront.com"}
    )
    await drain(scheduler, transport)

    result = await handle.result(timeout=1)
    assert result["error"] is None
    assert result["managerReview"]["kind"] == "approved"
    assert result["legalApproval"]["by"] == "counsel@newfront.com"
    coverage = result["clauseCoverage"]
    assert coverage["required"] == list(CLAUSES)
    assert coverage["missing"] == ["governing_law"]
    assert coverage["jurisdictionSpecific"] == ["ccpa"]
    assert coverage["definitions"]["governing_law"]["description"] == "California law governs"
    assert result["archive"]["storageLocation"] == "s3://contracts/msa"
    assert result["contractUrl"] == (
        f"http://localhost:3000/newfront/contracts/contract%3AU1%3A{handle.run_id[:8]}"
    )
    (archived,) = contract_services.calls[("POST", "/newfront/contracts/archive")]
    assert archived["contractId"] == contract_id
    assert archived["metadata"]["approvals"]["legal"]["kind"] == "approved"
    assert [e.step for e in event_sink.events(handle.run_id)][-1] == "Archived"
    assert len(contract_services.calls[("POST", "/newfront/contracts/templates")]) == 1


@pytest.mark.asyncio
async def test_contract_manager_edits_produce_redline(scheduler, transport, contract_services):
    handle = await scheduler.start("contract_management", CONTRACT_INPUT)
    await drain(scheduler, transport)
    token = (await scheduler.get_run(handle.run_id)).waiting_on

    await scheduler.resolve_hook(
        token,
        {
            "approved": False,
            "comment": "fix payment terms",
            "edits": [{"section": "Payment", "text": "Net 30", "reason": "finance-policy"}],
        },
    )
    await drain(scheduler, transport)

    result = await handle.result(timeout=1)
    assert result["error"] == "Manager review not approved"
    assert result["managerReview"]["comment"] == "fix payment terms"
    assert result["redline"]["changeCount"] == 1
    (redline_request,) = contract_services.calls[("POST", "/newfront/contracts/redline")]
    assert redline_request["reasonCodes"] == ["finance-policy"]
    assert redline_request["revisedText"].endswith("REVISIONS\n\n[Payment] Net 30")
    assert ("POST", "/newfront/contracts/archive") not in contract_services.calls


@pytest.mark.asyncio
async def test_contract_policy_violation_stops_before_drafting(
    scheduler, transport, contract_services
):
    contract_services.add(
        "POST", "/newfront/contracts/policies", {"allowed": False, "reason": "Drafting restricted"}
    )
    handle = await scheduler.start("contract_management", CONTRACT_INPUT)
    await drain(scheduler, transport)

    result = await handle.result(timeout=1)
    assert result["error"] == "Policy violation"
    assert result["policy"] == {"allowed": False, "reason": "Drafting restricted"}
    assert ("POST", "/newfront/contracts/templates") not in contract_services.calls


@pytest.mark.asyncio
async def test_legal_drafted_contract_skips_manager_and_can_time_out(
    scheduler, transport, contract_services, monkeypatch
):
    monkeypatch.setattr(contracts, "LEGAL_APPROVAL_TIMEOUT", "50ms")
    handle = await scheduler.start(
        "contract_management", {**CONTRACT_INPUT, "requesterRole": "legal"}
    )

    run = await run_until_idle(scheduler, transport, handle.run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.output["managerReview"] is None
    assert run.output["legalApproval"] == {"kind": "timed_out", "after": "50ms"}
    assert run.output["error"] == "Legal approval denied or timeout"
    (legal_email,) = contract_services.calls[("POST", "/notify/email")]
    assert legal_email["to"] == "legal@newfront.com"
