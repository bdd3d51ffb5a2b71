"""Contract lifecycle: draft, analyse, review and archive.

The requester's persona is checked against the contract policy before a
draft is generated from a template. Structured data is extracted from the
draft and its clauses are validated against the jurisdiction's rules, with
every required clause looked up in parallel. Contracts drafted by plain
requesters go to a contract manager first; legal approves every contract
before it is archived.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal, Optional
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..context import WorkflowContext
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

NAMESPACE = "Contracts"
APP_BASE_URL = "http://localhost:3000"
MANAGER_REVIEW_TIMEOUT = "1h"
LEGAL_APPROVAL_TIMEOUT = "2h"
CONTRACT_MANAGER_EMAIL = "contract-manager@newfront.com"
LEGAL_EMAIL = "legal@newfront.com"

Persona = Literal["requester", "contract_manager", "legal"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Party(_CamelModel):
    name: str
    role: str


class Parties(_CamelModel):
    party1: Party
    party2: Party


class KeyTerms(_CamelModel):
    amount: Optional[float] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    payment_terms: Optional[str] = None


class ContractInput(_CamelModel):
    requester_id: str
    requester_role: Persona
    contract_type: str
    jurisdiction: str
    product: str
    parties: Parties
    key_terms: Optional[KeyTerms] = None
    requester_email: str


class PolicyDecision(_CamelModel):
    allowed: bool
    reason: Optional[str] = None


class Draft(_CamelModel):
    contract_text: str
    template_id: Optional[str] = None


class StructuredData(_CamelModel):
    parties: List[Dict[str, Any]] = Field(default_factory=list)
    dates: List[Dict[str, Any]] = Field(default_factory=list)
    amounts: List[Dict[str, Any]] = Field(default_factory=list)


class JurisdictionRules(_CamelModel):
    required: List[str]
    optional: List[str] = Field(default_factory=list)
    jurisdiction_specific: List[str] = Field(default_factory=list)


class ClauseDefinition(_CamelModel):
    name: str
    description: str
    required: bool = False


class ClauseValidation(_CamelModel):
    required: List[str]
    optional: List[str] = Field(default_factory=list)
    detected: List[str] = Field(default_factory=list)
    missing: List[str] = Field(default_factory=list)
    jurisdiction_specific: List[str] = Field(default_factory=list)
    definitions: Dict[str, ClauseDefinition] = Field(default_factory=dict)


class Edit(_CamelModel):
    section: Optional[str] = None
    text: Optional[str] = None
    reason: str


class ManagerReview(ApprovalPayload):
    edits: List[Edit] = Field(default_factory=list)


class Redline(_CamelModel):
    changes: List[Dict[str, Any]] = Field(default_factory=list)
    change_count: int = 0
    diff_url: Optional[str] = None


class ArchiveRecord(_CamelModel):
    contract_id: str
    storage_location: str


class ContractResult(_CamelModel):
    contract_id: str
    policy: PolicyDecision
    draft: Optional[str] = None
    structured_data: Optional[StructuredData] = None
    clause_coverage: Optional[ClauseValidation] = None
    manager_review: Optional[Decision] = None
    redline: Optional[Redline] = None
    legal_approval: Optional[Decision] = None
    archive: Optional[ArchiveRecord] = None
    contract_url: Optional[str] = None
    error: Optional[str] = None


manager_review = define_hook(ManagerReview, name="contract_manager_review")
legal_approval = define_hook(ApprovalPayload, name="contract_legal_approval")


@step(max_retries=3)
async def check_policy(persona: str, action: str) -> PolicyDecision:
    data = await http.post_json(
        "/newfront/contracts/policies",
        {"persona": persona, "action": action},
        "check_policy",
        fatal_statuses=(403, 404),
    )
    return PolicyDecision.model_validate(data)


@step(max_retries=3)
async def draft_contract(request: ContractInput) -> Draft:
    data = await http.post_json(
        "/newfront/contracts/templates",
        {
            "contractType": request.contract_type,
            "jurisdiction": request.jurisdiction,
            "product": request.product,
            "parties": request.parties.model_dump(by_alias=True),
            "keyTerms": request.key_terms.model_dump(by_alias=True) if request.key_terms else None,
        },
        "draft_contract",
    )
    return Draft.model_validate(data)


@step(max_retries=5)
async def extract_structured_data(contract_text: str) -> StructuredData:
    data = await http.post_json(
        "/newfront/contracts/extract", {"text": contract_text}, "extract_structured_data"
    )
    return StructuredData.model_validate(data)


@step(max_retries=3)
async def lookup_jurisdiction_rules(jurisdiction: str, contract_type: str) -> JurisdictionRules:
    data = await http.post_json(
        "/newfront/contracts/clauses/jurisdiction",
        {"jurisdiction": jurisdiction, "contractType": contract_type},
        "lookup_jurisdiction_rules",
    )
    return JurisdictionRules.model_validate(data)


@step(max_retries=3)
async def lookup_clause(clause_name: str, contract_type: str) -> ClauseDefinition:
    data = await http.post_json(
        "/newfront/contracts/clauses/lookup",
        {"clauseName": clause_name, "contractType": contract_type},
        "lookup_clause",
    )
    return ClauseDefinition.model_validate(data["definition"])


@step(max_retries=3)
async def validate_clauses(request: ContractInput, contract_text: str) -> ClauseValidation:
    data = await http.post_json(
        "/newfront/contracts/clauses",
        {
            "contractText": contract_text,
            "contractType": request.contract_type,
            "jurisdiction": request.jurisdiction,
            "product": request.product,
        },
        "validate_clauses",
        fatal_statuses=(400, 404),
    )
    return ClauseValidation.model_validate(data)


@step(max_retries=3)
async def generate_redline(
    original_text: str, revised_text: str, reason_codes: List[str]
) -> Redline:
    data = await http.post_json(
        "/newfront/contracts/redline",
        {"originalText": original_text, "revisedText": revised_text, "reasonCodes": reason_codes},
        "generate_redline",
    )
    return Redline.model_validate(data)


@step
async def send_approval_request(
    token: str, approver_email: str, approver_role: str, details: Any
) -> str:
    approval_url = f"{APP_BASE_URL}/newfront/contracts/approve?token={quote(token, safe='')}"
    await http.post_json(
        "/notify/email",
        {
            "to": approver_email,
            "subject": f"Contract Approval Required - {approver_role} Review",
            "url": approval_url,
            "details": {**details, "role": approver_role},
        },
        "send_approval_request",
    )
    return approval_url


@step(max_retries=3)
async def archive_contract(contract_id: str, final_version: str, metadata: Any) -> ArchiveRecord:
    data = await http.post_json(
        "/newfront/contracts/archive",
        {"contractId": contract_id, "finalVersion": final_version, "metadata": metadata},
        "archive_contract",
        fatal_statuses=(404, 409),
    )
    return ArchiveRecord.model_validate(data)


def apply_edits(text: str, edits: List[Edit]) -> str:
    """Append the reviewer's replacement text for each edited section."""
    revisions = [f"[{e.section or 'General'}] {e.text}" for e in edits if e.text]
    if not revisions:
        return text
    return "\n\n".join([text, "REVISIONS", *revisions])


async def _validate_clauses(
    ctx: WorkflowContext, request: ContractInput, contract_text: str
) -> ClauseValidation:
    rules = await ctx.step(lookup_jurisdiction_rules, request.jurisdiction, request.contract_type)
    definitions = await ctx.gather(
        *(ctx.step(lookup_clause, name, request.contract_type) for name in rules.required)
    )
    validation = await ctx.step(validate_clauses, request, contract_text)
    validation.required = rules.required
    validation.jurisdiction_specific = rules.jurisdiction_specific
    validation.definitions = dict(zip(rules.required, definitions))
    return validation


@workflow(name="contract_management")
async def contract_management(ctx: WorkflowContext, request: ContractInput) -> ContractResult:
    contract_id = f"contract:{request.requester_id}:{ctx.run_id[:8]}"

    await ctx.emit(NAMESPACE, "Checking policy", f"Checking {request.requester_role} may draft")
    policy = await ctx.step(check_policy, request.requester_role, "draft")
    result = ContractResult(contract_id=contract_id, policy=policy)
    if not policy.allowed:
        await ctx.emit(
            NAMESPACE,
            "Policy violation",
            f"Policy violation: {request.requester_role} cannot draft contracts. "
            f"{policy.reason or ''}".strip(),
        )
        result.error = "Policy violation"
        return result

    draft = await ctx.step(draft_contract, request)
    result.draft = draft.contract_text
    await ctx.emit(NAMESPACE, "Drafted", f"Drafted {request.contract_type} from template")

    result.structured_data = await ctx.step(extract_structured_data, draft.contract_text)
    result.clause_coverage = await _validate_clauses(ctx, request, draft.contract_text)
    await ctx.emit(
        NAMESPACE,
        "Validated clauses",
        f"{len(result.clause_coverage.required)} required clauses, "
        f"{len(result.clause_coverage.missing)} missing",
    )

    details = {
        "contractId": contract_id,
        "contractType": request.contract_type,
        "draft": draft.contract_text,
        "structuredData": result.structured_data,
        "clauseValidation": result.clause_coverage,
    }

    if request.requester_role == "requester":
        token = f"{contract_id}:manager-review"
        review = await ctx.create_hook(manager_review, token=token)
        await ctx.step(
            send_approval_request, token, CONTRACT_MANAGER_EMAIL, "contract_manager", details
        )
        outcome = await ctx.wait_for(
            review,
            timeout=MANAGER_REVIEW_TIMEOUT,
            on_timeout=TimedOut(after=MANAGER_REVIEW_TIMEOUT),
        )
        result.manager_review = (
            outcome if isinstance(outcome, TimedOut) else outcome.to_decision()
        )
        await ctx.emit(
            NAMESPACE,
            "Manager review",
            f"Manager review: {describe_decision(result.manager_review)}",
            result.manager_review.model_dump(),
        )
        if not isinstance(result.manager_review, Approved):
            if isinstance(outcome, ManagerReview) and outcome.edits:
                result.redline = await ctx.step(
                    generate_redline,
                    draft.contract_text,
                    apply_edits(draft.contract_text, outcome.edits),
                    [e.reason for e in outcome.edits],
                )
                await ctx.emit(
                    NAMESPACE,
                    "Redline generated",
                    f"Redline generated with {result.redline.change_count} change(s)",
                )
            result.error = "Manager review not approved"
            return result

    token = f"{contract_id}:legal-approval"
    approval = await ctx.create_hook(legal_approval, token=token)
    await ctx.step(send_approval_request, token, LEGAL_EMAIL, "legal", details)
    outcome = await ctx.wait_for(
        approval,
        timeout=LEGAL_APPROVAL_TIMEOUT,
        on_timeout=TimedOut(after=LEGAL_APPROVAL_TIMEOUT),
    )
    result.legal_approval = outcome if isinstance(outcome, TimedOut) else outcome.to_decision()
    await ctx.emit(
        NAMESPACE,
        "Legal approval",
        f"Legal approval: {describe_decision(result.legal_approval)}",
        result.legal_approval.model_dump(),
    )
    if not isinstance(result.legal_approval, Approved):
        result.error = "Legal approval denied or timeout"
        return result

    result.archive = await ctx.step(
        archive_contract,
        contract_id,
        draft.contract_text,
        {
            "contractType": request.contract_type,
            "jurisdiction": request.jurisdiction,
            "product": request.product,
            "structuredData": result.structured_data,
            "clauseValidation": result.clause_coverage,
            "approvals": {"legal": result.legal_approval},
        },
    )
    result.contract_url = f"{APP_BASE_URL}/newfront/contracts/{quote(contract_id, safe='')}"
    await ctx.emit(
        NAMESPACE,
        "Archived",
        f"Contract archived at {result.archive.storage_location}",
        {"contractUrl": result.contract_url},
    )
    return result
