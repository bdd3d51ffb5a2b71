"""Workflows, steps and hooks used across the test suite."""

from collections import Counter
from typing import List, Optional

from pydantic import BaseModel

from waypoint import FatalError, RetryableError, define_hook, step, workflow

# Body invocation counts per step name
CALLS: Counter = Counter()

# Knobs tests flip between passes
SWITCHES = {"broken": True, "flaky_failures": 0}

# Short timeouts so timer paths run in milliseconds
TIMEOUTS = {"approval": "300ms", "nap": "50ms"}


def reset() -> None:
    CALLS.clear()
    SWITCHES.update(broken=True, flaky_failures=0)
    TIMEOUTS.update(approval="300ms", nap="50ms")


class OrderApproval(BaseModel):
    approved: bool
    comment: Optional[str] = None


class Order(BaseModel):
    order_id: str
    amount: float


order_approval = define_hook(OrderApproval, name="order_approval")


@step
async def fetch_order(order_id: str) -> Order:
    CALLS["fetch_order"] += 1
    return Order(order_id=order_id, amount=120.0)


@step(max_retries=0)
async def charge(order: Order) -> str:
    CALLS["charge"] += 1
    return f"charged:{order.order_id}:{order.amount:.2f}"


@step(max_retries=3)
async def declined_card() -> None:
    CALLS["declined_card"] += 1
    raise FatalError("card declined")


@step(max_retries=2)
async def busy_service() -> None:
    CALLS["busy_service"] += 1
    raise RetryableError("service busy", retry_after="10ms")


@step(max_retries=4)
async def flaky_service() -> str:
    CALLS["flaky_service"] += 1
    if SWITCHES["flaky_failures"] > 0:
        SWITCHES["flaky_failures"] -= 1
        raise ConnectionError("connection reset")
    return "ok"


@step
def prepare(label: str) -> str:
    CALLS["prepare"] += 1
    return f"prepared:{label}"


@step(max_retries=0)
async def guarded() -> str:
    CALLS["guarded"] += 1
    if SWITCHES["broken"]:
        raise FatalError("downstream unavailable")
    return "guarded-ok"


@step
async def square(n: int) -> int:
    CALLS["square"] += 1
    return n * n


@workflow(name="order_approval_flow")
async def order_approval_flow(ctx, order_id: str) -> dict:
    order = await ctx.step(fetch_order, order_id)
    approval = await ctx.create_hook(order_approval, token=f"order:{order_id}")
    decision = await ctx.wait_for(
        approval, timeout=TIMEOUTS["approval"], on_timeout="timed_out"
    )
    if decision == "timed_out":
        return {"status": "timed_out", "order_id": order.order_id}
    if not decision.approved:
        return {"status": "rejected", "comment": decision.comment}
    receipt = await ctx.step(charge, order)
    return {"status": "approved", "receipt": receipt}


@workflow(name="untimed_approval_flow")
async def untimed_approval_flow(ctx) -> str:
    approval = await ctx.create_hook(order_approval)
    decision = await ctx.wait_for(approval)
    return "yes" if decision.approved else "no"


@workflow(name="declined_flow")
async def declined_flow(ctx) -> None:
    await ctx.step(fetch_order, "o-declined")
    await ctx.step(declined_card)


@workflow(name="busy_flow")
async def busy_flow(ctx) -> None:
    await ctx.step(busy_service)


@workflow(name="flaky_flow")
async def flaky_flow(ctx) -> str:
    return await ctx.step(flaky_service)


@workflow(name="restartable_flow")
async def restartable_flow(ctx, label: str) -> List[str]:
    first = await ctx.step(prepare, label)
    second = await ctx.step(guarded)
    return [first, second]


@workflow(name="napping_flow")
async def napping_flow(ctx) -> str:
    before = await ctx.step(prepare, "before")
    await ctx.sleep(TIMEOUTS["nap"])
    after = await ctx.step(prepare, "after")
    return f"{before}|{after}"


@workflow(name="fan_out_flow")
async def fan_out_flow(ctx, numbers: List[int]) -> int:
    squares = await ctx.gather(*(ctx.step(square, n) for n in numbers))
    return sum(squares)


@workflow(name="chatty_flow")
async def chatty_flow(ctx) -> str:
    await ctx.emit("Chatty", "Started", "hello")
    approval = await ctx.create_hook(order_approval, token="chatty")
    await ctx.wait_for(approval)
    await ctx.emit("Chatty", "Finished", "bye", {"done": True})
    return "done"
