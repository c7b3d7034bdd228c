import asyncio

import pytest

from helpers import StubProvider, awaiting, ctx
from opsrouter.errors import ProviderNotFoundError, ProviderRegistrationError
from opsrouter.registry import NO_PROVIDER_MESSAGE, ServiceRegistry
from opsrouter.schemas import Decision


def test_duplicate_registration_rejected():
    reg = ServiceRegistry()
    reg.register(StubProvider("a"))
    with pytest.raises(ProviderRegistrationError):
        reg.register(StubProvider("a"))
    assert [p.id for p in reg.get_providers()] == ["a"]


def test_unregister_unknown_raises():
    reg = ServiceRegistry()
    with pytest.raises(ProviderNotFoundError):
        asyncio.run(reg.unregister("missing"))


def test_get_providers_sorted_by_priority():
    reg = ServiceRegistry()
    reg.register(StubProvider("late", priority=50))
    reg.register(StubProvider("early", priority=5))
    assert [p.id for p in reg.get_providers()] == ["early", "late"]
    assert reg.get_provider("late").priority == 50
    assert reg.get_provider("nope") is None


def test_all_zero_scores_yield_error_decision():
    reg = ServiceRegistry()
    a = StubProvider("a", score=0.0)
    reg.register(a)
    decision = asyncio.run(reg.dispatch(ctx("hello")))
    assert decision.type == "error"
    assert decision.success is False
    assert decision.content == NO_PROVIDER_MESSAGE
    assert a.processed == []


def test_highest_score_wins():
    reg = ServiceRegistry()
    low, high = StubProvider("low", score=0.4), StubProvider("high", score=0.7)
    reg.register(low)
    reg.register(high)
    decision = asyncio.run(reg.dispatch(ctx("hello")))
    assert decision.content == "handled by high"
    assert low.processed == []


def test_raising_a_score_never_loses_selection():
    async def run(score):
        reg = ServiceRegistry()
        reg.register(StubProvider("other", score=0.5))
        reg.register(StubProvider("p", score=score))
        return await reg.dispatch(ctx("x"))

    assert asyncio.run(run(0.6)).content == "handled by p"
    assert asyncio.run(run(0.9)).content == "handled by p"


def test_tie_breaks_on_priority_then_id():
    reg = ServiceRegistry()
    reg.register(StubProvider("b", score=0.5, priority=10))
    reg.register(StubProvider("a", score=0.5, priority=20))
    reg.register(StubProvider("c", score=0.5, priority=10))
    decision = asyncio.run(reg.dispatch(ctx("x")))
    assert decision.content == "handled by b"


def test_scores_are_clamped_and_failures_count_as_zero():
    reg = ServiceRegistry()
    reg.register(StubProvider("broken", score=RuntimeError("boom")))
    reg.register(StubProvider("huge", score=7.0))
    reg.register(StubProvider("nan", score=float("nan")))
    decision = asyncio.run(reg.dispatch(ctx("x")))
    assert decision.content == "handled by huge"


def test_slow_scorer_is_treated_as_zero():
    reg = ServiceRegistry(score_timeout_s=0.05)
    reg.register(StubProvider("slow", score=1.0, score_delay=1.0))
    reg.register(StubProvider("fast", score=0.3))
    decision = asyncio.run(reg.dispatch(ctx("x")))
    assert decision.content == "handled by fast"


def test_process_timeout_returns_error_decision():
    reg = ServiceRegistry(process_timeout_s=0.05)
    reg.register(StubProvider("slow", score=0.9, process_delay=1.0))
    decision = asyncio.run(reg.dispatch(ctx("x")))
    assert decision.type == "error"
    assert decision.success is False
    assert "timed out" in decision.content


def test_process_exception_returns_error_decision():
    class Exploding(StubProvider):
        async def process(self, context):
            raise ValueError("kaput")

    reg = ServiceRegistry()
    reg.register(Exploding("x", score=0.9))
    decision = asyncio.run(reg.dispatch(ctx("x")))
    assert decision.success is False
    assert "kaput" in decision.content


def test_confirmation_resolves_pending_once():
    async def run():
        reg = ServiceRegistry()
        p = StubProvider("risky", score=0.9, decision=awaiting())
        reg.register(p)
        first = await reg.dispatch(ctx("rm -rf /tmp/x"))
        assert first.awaiting_confirmation
        assert reg.pending_count("s1") == 1

        second = await reg.dispatch(ctx("y"))
        assert second.content == "confirmed"
        assert reg.pending_count("s1") == 0
        original, confirmed = p.confirmations[0]
        assert confirmed is True
        assert original.input == "rm -rf /tmp/x"
        assert original.additional_context["confirmationInput"] == "y"

        # nothing pending any more: "y" is dispatched like any other turn
        p.decision = Decision(type="text", content="plain")
        third = await reg.dispatch(ctx("y"))
        assert third.content == "plain"
        assert len(p.confirmations) == 1

    asyncio.run(run())


def test_rejection_consumes_pending():
    async def run():
        reg = ServiceRegistry()
        p = StubProvider("risky", score=0.9, decision=awaiting())
        reg.register(p)
        await reg.dispatch(ctx("dangerous"))
        decision = await reg.dispatch(ctx("no"))
        assert decision.content == "cancelled"
        assert p.confirmations[0][1] is False
        assert reg.pending_count() == 0

    asyncio.run(run())


def test_unrelated_turn_leaves_pending_in_place():
    async def run():
        reg = ServiceRegistry()
        p = StubProvider("risky", score=0.9, decision=awaiting())
        reg.register(p)
        await reg.dispatch(ctx("dangerous"))
        await reg.dispatch(ctx("what time is it"))
        assert len(p.processed) == 2
        assert p.confirmations == []
        assert reg.pending_count("s1") == 1  # the newer prompt replaced the first

    asyncio.run(run())


def test_pending_is_scoped_to_session():
    async def run():
        reg = ServiceRegistry()
        p = StubProvider("risky", score=0.9, decision=awaiting())
        reg.register(p)
        await reg.dispatch(ctx("dangerous", session="a"))
        await reg.dispatch(ctx("y", session="b"))
        assert p.confirmations == []
        assert reg.pending_count("a") == 1
        assert reg.pending_count("b") == 1  # b's own "y" was processed and also awaits

    asyncio.run(run())


def test_routing_follows_one_hop():
    async def run():
        reg = ServiceRegistry()
        router = StubProvider(
            "router",
            score=0.6,
            decision=Decision(
                type="routing_decision",
                content="looks like weather",
                should_route=True,
                metadata={"targetServiceId": "weather", "confidence": 0.9, "intentCategory": "weather_inquiry"},
            ),
        )
        weather = StubProvider("weather", score=0.0)
        reg.register(router)
        reg.register(weather)
        decision = await reg.dispatch(ctx("weather in Oslo"))
        assert decision.content == "handled by weather"
        assert decision.metadata["routedBy"] == "router"
        assert decision.metadata["originalCategory"] == "weather_inquiry"
        record = weather.processed[0].additional_context["routingDecision"]
        assert record["originalServiceId"] == "router"
        assert record["targetServiceId"] == "weather"
        assert record["confidence"] == 0.9

    asyncio.run(run())


def test_unknown_routing_target_keeps_original_decision():
    reg = ServiceRegistry()
    reg.register(StubProvider(
        "router",
        score=0.6,
        decision=Decision(type="routing_decision", content="go", should_route=True, metadata={"targetServiceId": "ghost"}),
    ))
    decision = asyncio.run(reg.dispatch(ctx("x")))
    assert decision.type == "routing_decision"
    assert decision.content == "go"


def test_routed_confirmation_is_owned_by_target():
    async def run():
        reg = ServiceRegistry()
        reg.register(StubProvider(
            "router",
            score=0.6,
            decision=Decision(type="routing_decision", content="go", should_route=True, metadata={"targetServiceId": "t"}),
        ))
        target = StubProvider("t", score=0.0, decision=awaiting())
        reg.register(target)
        await reg.dispatch(ctx("do it"))
        decision = await reg.dispatch(ctx("yes"))
        assert decision.content == "confirmed"
        assert target.confirmations[0][1] is True

    asyncio.run(run())


def test_failed_init_scores_zero_until_retried():
    async def run():
        reg = ServiceRegistry(init_retry_s=3600)
        p = StubProvider("flaky", score=0.9, fail_init=1)
        reg.register(p)
        first = await reg.dispatch(ctx("x"))
        assert first.content == NO_PROVIDER_MESSAGE
        assert not reg.is_available("flaky")

        reg.init_retry_s = 0
        second = await reg.dispatch(ctx("x"))
        assert second.content == "handled by flaky"
        assert p.init_calls == 2
        assert reg.is_available("flaky")

    asyncio.run(run())


def test_initialize_is_idempotent():
    async def run():
        reg = ServiceRegistry()
        p = StubProvider("a")
        reg.register(p)
        await reg.initialize()
        await reg.initialize()
        assert p.init_calls == 1

    asyncio.run(run())


def test_shutdown_clears_pending_and_providers():
    async def run():
        reg = ServiceRegistry()
        reg.register(StubProvider("risky", score=0.9, decision=awaiting()))
        await reg.dispatch(ctx("dangerous"))
        assert reg.pending_count() == 1
        await reg.shutdown()
        assert reg.pending_count() == 0
        assert reg.get_providers() == []
        assert not reg.initialized

    asyncio.run(run())


def test_confirmation_for_unregistered_provider_is_dropped():
    async def run():
        reg = ServiceRegistry()
        reg.register(StubProvider("risky", score=0.9, decision=awaiting()))
        fallback = StubProvider("fallback", score=0.1)
        reg.register(fallback)
        await reg.dispatch(ctx("dangerous"))
        await reg.unregister("risky")
        decision = await reg.dispatch(ctx("y"))
        assert decision.content == "handled by fallback"
        assert reg.pending_count() == 0

    asyncio.run(run())


def test_shutdown_collects_late_init_tasks():
    class SlowInit(StubProvider):
        cancelled = False

        async def initialize(self):
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                self.cancelled = True
                raise

    async def run():
        reg = ServiceRegistry()
        reg.register(StubProvider("a"))
        await reg.initialize()
        late = SlowInit("late")
        reg.register(late)
        await asyncio.sleep(0)
        await reg.shutdown()
        assert late.cancelled

    asyncio.run(run())
