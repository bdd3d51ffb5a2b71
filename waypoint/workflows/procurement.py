"""Procurement request: policy, budget and supplier checks with optional approval."""

from __future__ import annotations

import logging
from typing import Any, List, Literal, Optional
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

NAMESPACE = "Procurement"
APP_BASE_URL = "http://localhost:3000"
CRITICAL_APPROVAL_TIMEOUT = "5m"
ROUTINE_APPROVAL_TIMEOUT = "1h"
APPROVAL_THRESHOLD = 5000
FINANCE_APPROVAL_THRESHOLD = 10000


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProcurementRequest(_CamelModel):
    employee_id: str
    item_description: str
    quantity: int = Field(gt=0)
    estimated_cost: float = 0
    department: str
    budget_code: Optional[str] = None
    urgency: Literal["routine", "urgent", "critical"] = "routine"
    preferred_supplier: Optional[str] = None
    justification: Optional[str] = None
    requester_email: str


class PolicyCheck(_CamelModel):
    ok: bool
    violations: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class BudgetCheck(_CamelModel):
    available: bool
    available_amount: Optional[float] = None
    total_budget: Optional[float] = None
    reason: Optional[str] = None
    warning: Optional[str] = None


class Supplier(_CamelModel):
    supplier_id: str
    name: str
    price: float
    delivery_days: int
    rating: float
    contract_exists: bool


class PurchaseOrder(_CamelModel):
    po_number: str
    supplier_id: str
    total_amount: float
    estimated_delivery: str


class ProcurementApproval(ApprovalPayload):
    alternative_supplier_id: Optional[str] = None

    def to_decision(self) -> Decision:
        decision = super().to_decision()
        if isinstance(decision, Approved):
            decision.alternative_supplier_id = self.alternative_supplier_id
        return decision


class ProcurementResult(_CamelModel):
    request_id: str
    compliance: PolicyCheck
    suppliers: List[Supplier] = Field(default_factory=list)
    decision: Optional[Decision] = None
    purchase_order: Optional[PurchaseOrder] = None
    po_url: Optional[str] = None
    error: Optional[str] = None


procurement_approval = define_hook(ProcurementApproval, name="procurement_approval")


@step(max_retries=3)
async def check_policy_compliance(request: ProcurementRequest) -> PolicyCheck:
    data = await http.post_json(
        "/coupa/policies/check",
        {
            "itemDescription": request.item_description,
            "estimatedCost": request.estimated_cost,
            "department": request.department,
            "budgetCode": request.budget_code,
        },
        "check_policy_compliance",
    )
    return PolicyCheck.model_validate({k: v for k, v in data.items() if v is not None})


@step(max_retries=3)
async def check_budget_availability(
    department: str, budget_code: Optional[str], amount: float
) -> BudgetCheck:
    data = await http.post_json(
        "/coupa/budgets/check",
        {"department": department, "budgetCode": budget_code, "amount": amount},
        "check_budget_availability",
    )
    return BudgetCheck.model_validate(data)


@step(max_retries=5)
async def search_suppliers(
    item_description: str, quantity: int, preferred_supplier: Optional[str]
) -> List[Supplier]:
    data = await http.post_json(
        "/coupa/suppliers/search",
        {
            "itemDescription": item_description,
            "quantity": quantity,
            "preferredSupplier": preferred_supplier,
        },
        "search_suppliers",
        fatal_statuses=(),
    )
    return [Supplier.model_validate(s) for s in data]


@step(max_retries=3)
async def create_purchase_order(
    request_id: str, request: ProcurementRequest, supplier: Supplier
) -> PurchaseOrder:
    """Create the PO. A 409 means one already exists for this request."""
    data = await http.post_json(
        "/coupa/purchase-orders/create",
        {
            "supplierId": supplier.supplier_id,
            "itemDescription": request.item_description,
            "quantity": request.quantity,
            "unitPrice": supplier.price,
            "totalAmount": supplier.price * request.quantity,
            "department": request.department,
            "budgetCode": request.budget_code,
            "requestId": request_id,
        },
        "create_purchase_order",
        fatal_statuses=(409,),
    )
    return PurchaseOrder.model_validate(data)


@step
async def send_approval_request(token: str, approver_email: str, details: Any) -> str:
    approval_url = f"{APP_BASE_URL}/coupa/procurement/approve?token={quote(token, safe='')}"
    await http.post_json(
        "/notify/email",
        {
            "to": approver_email,
            "subject": "Procurement Request Approval Required",
            "url": approval_url,
            "details": details,
        },
        "send_approval_request",
    )
    return approval_url


@step
async def send_confirmation_email(token: str, requester_email: str, details: Any) -> str:
    confirmation_url = (
        f"{APP_BASE_URL}/coupa/procurement/confirm?token={quote(token, safe='')}"
    )
    await http.post_json(
        "/notify/email",
        {
            "to": requester_email,
            "subject": "Purchase Order Confirmed",
            "url": confirmation_url,
            "details": details,
        },
        "send_confirmation_email",
    )
    return confirmation_url


def requires_approval(request: ProcurementRequest, compliance: PolicyCheck) -> bool:
    return (
        request.estimated_cost > APPROVAL_THRESHOLD
        or bool(compliance.warnings)
        or request.urgency == "critical"
    )


def approver_for(request: ProcurementRequest) -> str:
    if request.estimated_cost > FINANCE_APPROVAL_THRESHOLD:
        return "finance-manager@company.com"
    return f"department-manager-{request.department}@company.com"


@workflow(name="procurement")
async def procurement(ctx: WorkflowContext, request: ProcurementRequest) -> ProcurementResult:
    started = await ctx.now()
    request_id = f"procurement:{request.employee_id}:{int(started.timestamp() * 1000)}"

    await ctx.emit(NAMESPACE, "Checking policy", "Checking procurement policies")
    compliance = await ctx.step(check_policy_compliance, request)
    if not compliance.ok:
        await ctx.emit(
            NAMESPACE,
            "Policy violation",
            f"Request violates procurement policies: {', '.join(compliance.violations)}",
        )
        return ProcurementResult(
            request_id=request_id, compliance=compliance, error="Policy violation"
        )
    if compliance.warnings:
        await ctx.emit(
            NAMESPACE, "Policy warnings", f"Policy warnings: {', '.join(compliance.warnings)}"
        )

    if request.estimated_cost > 0:
        budget = await ctx.step(
            check_budget_availability,
            request.department,
            request.budget_code,
            request.estimated_cost,
        )
        if not budget.available:
            await ctx.emit(
                NAMESPACE,
                "Insufficient budget",
                f"Insufficient budget: {budget.reason or 'Budget limit exceeded'}",
            )
            return ProcurementResult(
                request_id=request_id, compliance=compliance, error="Insufficient budget"
            )
        if budget.warning:
            await ctx.emit(NAMESPACE, "Budget warning", f"Budget warning: {budget.warning}")

    suppliers = await ctx.step(
        search_suppliers,
        request.item_description,
        request.quantity,
        request.preferred_supplier,
    )
    if not suppliers:
        await ctx.emit(
            NAMESPACE, "No suppliers", f"No suppliers found for {request.item_description!r}"
        )
        return ProcurementResult(
            request_id=request_id, compliance=compliance, error="No suppliers found"
        )

    decision: Optional[Decision] = None
    if requires_approval(request, compliance):
        timeout = (
            CRITICAL_APPROVAL_TIMEOUT
            if request.urgency == "critical"
            else ROUTINE_APPROVAL_TIMEOUT
        )
        approval = await ctx.create_hook(procurement_approval, token=request_id)
        await ctx.step(
            send_approval_request,
            request_id,
            approver_for(request),
            {
                "requestId": request_id,
                "itemDescription": request.item_description,
                "quantity": request.quantity,
                "estimatedCost": request.estimated_cost,
                "department": request.department,
                "suppliers": suppliers[:3],
                "urgency": request.urgency,
                "justification": request.justification,
            },
        )

        outcome = await ctx.wait_for(
            approval, timeout=timeout, on_timeout=TimedOut(after=timeout)
        )
        decision = outcome if isinstance(outcome, TimedOut) else outcome.to_decision()
        await ctx.emit(
            NAMESPACE,
            "Checked approval",
            f"Approval: {describe_decision(decision)}",
            decision.model_dump(),
        )
        if not isinstance(decision, Approved):
            return ProcurementResult(
                request_id=request_id,
                compliance=compliance,
                suppliers=suppliers,
                decision=decision,
                error="Approval denied or timeout",
            )
        if decision.alternative_supplier_id:
            alternative = next(
                (s for s in suppliers if s.supplier_id == decision.alternative_supplier_id),
                None,
            )
            if alternative is not None:
                suppliers.remove(alternative)
                suppliers.insert(0, alternative)

    selected = suppliers[0]
    await ctx.emit(
        NAMESPACE, "Creating purchase order", f"Creating purchase order with {selected.name}"
    )
    purchase_order = await ctx.step(create_purchase_order, request_id, request, selected)

    confirmation_token = f"confirmation:{request_id}"
    po_url = await ctx.step(
        send_confirmation_email,
        confirmation_token,
        request.requester_email,
        {"requestId": request_id, "purchaseOrder": purchase_order, "supplier": selected},
    )
    await ctx.emit(
        NAMESPACE,
        "Purchase order created",
        f"Purchase order {purchase_order.po_number} created. "
        f"Total: ${purchase_order.total_amount:,.2f}",
    )

    return ProcurementResult(
        request_id=request_id,
        compliance=compliance,
        suppliers=suppliers,
        decision=decision,
        purchase_order=purchase_order,
        po_url=po_url,
    )
