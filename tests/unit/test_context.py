from datetime import datetime, timedelta, timezone

import pytest

from waypoint import FatalError, HookExpired, StepFailed, step
from waypoint.config import RetryConfig
from waypoint.context import WorkflowContext
from waypoint.errors import HookNotFound, WorkflowSuspended
from waypoint.hooks import HookRegistry
from waypoint.persistence.models import HookState, Run
from waypoint.steps import StepExecutor

from tests.fixtures.workflows import order_approval


class FakeClock:
    def __init__(self):
        self.now = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def hooks(repository, clock):
    return HookRegistry(repository, clock=clock)


@pytest.fixture
def run():
    return Run(workflow_name="wf")


@pytest.fixture
def make_ctx(repository, hooks, event_sink, clock, run):
    executor = StepExecutor(repository, RetryConfig(max_retries=0))

    def _make():
        # a fresh context per pass, like a replay
        return WorkflowContext(
            run,
            repository=repository,
            executor=executor,
            hooks=hooks,
            event_sink=event_sink,
            clock=clock,
        )

    return _make


@pytest.mark.asyncio
async def test_step_keys_are_allocated_at_call_time(make_ctx):
    @step
    async def echo(value: str) -> str:
        return value

    ctx = make_ctx()
    first = ctx.step(echo, "a")
    second = ctx.step(echo, "b")
    # awaited out of order, keys still follow call order
    assert await second == "b"
    assert await first == "a"
    assert ctx._next_key("ping") == "3:ping"


def test_step_rejects_plain_functions(make_ctx):
    async def not_a_step():
        return None

    with pytest.raises(TypeError):
        make_ctx().step(not_a_step)


@pytest.mark.asyncio
async def test_sleep_suspends_until_wake_time(make_ctx, clock):
    with pytest.raises(WorkflowSuspended) as excinfo:
        await make_ctx().sleep("30s")
    assert excinfo.value.resume_at == clock.now + timedelta(seconds=30)

    clock.advance(seconds=10)
    with pytest.raises(WorkflowSuspended) as excinfo:
        await make_ctx().sleep("30s")
    # the wake time is recorded once, not recomputed per pass
    assert excinfo.value.resume_at == datetime(2025, 1, 1, 9, 0, 30, tzinfo=timezone.utc)

    clock.advance(seconds=25)
    await make_ctx().sleep("30s")


@pytest.mark.asyncio
async def test_now_is_recorded(make_ctx, clock):
    first = await make_ctx().now()
    clock.advance(hours=1)
    assert await make_ctx().now() == first


@pytest.mark.asyncio
async def test_emit_delivers_once_across_replays(make_ctx, event_sink, run):
    for _ in range(3):
        ctx = make_ctx()
        await ctx.emit("Renewal", "Started", "Starting", {"n": 1})

    events = event_sink.events(run.run_id)
    assert len(events) == 1
    assert events[0].namespace == "Renewal"
    assert events[0].data == {"n": 1}


@pytest.mark.asyncio
async def test_wait_for_returns_typed_payload_when_hook_wins(make_ctx, hooks, clock):
    ctx = make_ctx()
    hook = await ctx.create_hook(order_approval, token="tok-win")
    with pytest.raises(WorkflowSuspended) as excinfo:
        await ctx.wait_for(hook, timeout="1m", on_timeout="late")
    assert excinfo.value.waiting_on == "tok-win"
    assert excinfo.value.resume_at == clock.now + timedelta(minutes=1)

    await hooks.resolve("tok-win", {"approved": True, "comment": "ship it"})
    clock.advance(minutes=5)

    ctx = make_ctx()
    hook = await ctx.create_hook(order_approval, token="tok-win")
    decision = await ctx.wait_for(hook, timeout="1m", on_timeout="late")
    assert decision.approved is True
    assert decision.comment == "ship it"


@pytest.mark.asyncio
async def test_wait_for_timeout_expires_hook(make_ctx, hooks, repository, clock):
    ctx = make_ctx()
    hook = await ctx.create_hook(order_approval, token="tok-late")
    with pytest.raises(WorkflowSuspended):
        await ctx.wait_for(hook, timeout="1m", on_timeout="late")

    clock.advance(minutes=1)
    ctx = make_ctx()
    hook = await ctx.create_hook(order_approval, token="tok-late")
    assert await ctx.wait_for(hook, timeout="1m", on_timeout="late") == "late"
    assert (await repository.get_hook("tok-late")).state == HookState.EXPIRED

    with pytest.raises(HookNotFound):
        await hooks.resolve("tok-late", {"approved": True})

    # replay keeps the recorded outcome
    ctx = make_ctx()
    hook = await ctx.create_hook(order_approval, token="tok-late")
    assert await ctx.wait_for(hook, timeout="1m", on_timeout="late") == "late"


@pytest.mark.asyncio
async def test_wait_without_timeout_raises_when_expired(make_ctx, hooks):
    ctx = make_ctx()
    hook = await ctx.create_hook(order_approval, token="tok-x")
    with pytest.raises(WorkflowSuspended) as excinfo:
        await ctx.wait_for(hook)
    assert excinfo.value.resume_at is None

    await hooks.expire("tok-x")
    ctx = make_ctx()
    hook = await ctx.create_hook(order_approval, token="tok-x")
    with pytest.raises(HookExpired):
        await ctx.wait_for(hook)


@pytest.mark.asyncio
async def test_gather_prefers_failures_over_suspension(make_ctx):
    @step
    async def fine() -> int:
        return 1

    @step
    async def fatal() -> int:
        raise FatalError("nope")

    ctx = make_ctx()
    with pytest.raises(StepFailed):
        await ctx.gather(ctx.sleep("1h"), ctx.step(fine), ctx.step(fatal))

    ctx = make_ctx()
    with pytest.raises(WorkflowSuspended):
        await ctx.gather(ctx.step(fine), ctx.sleep("1h"))
