import asyncio

from helpers import StubProvider, ctx
from opsrouter.confirmation import answer_to_bool, classify, extract_answer, is_confirmation
from opsrouter.pending import PendingStore
from opsrouter.schemas import Confirmation


def test_exact_words():
    assert classify("y") is Confirmation.AFFIRMATIVE
    assert classify(" YES ") is Confirmation.AFFIRMATIVE
    assert classify("确认") is Confirmation.AFFIRMATIVE
    assert classify("no") is Confirmation.NEGATIVE
    assert classify("取消") is Confirmation.NEGATIVE


def test_echoed_prompt():
    assert classify("Execute this command anyway? (y/n) yes") is Confirmation.AFFIRMATIVE
    assert classify("Continue? (Y/N) n") is Confirmation.NEGATIVE


def test_prefix_heuristic():
    assert classify("yeah go ahead") is Confirmation.AFFIRMATIVE
    assert classify("nope") is Confirmation.NEGATIVE
    assert classify("不要") is Confirmation.NEGATIVE


def test_not_a_confirmation():
    assert classify("") is Confirmation.NONE
    assert classify(None) is Confirmation.NONE
    assert classify("ls -la") is Confirmation.NONE
    assert not is_confirmation("what is the weather")


def test_extract_answer():
    assert extract_answer("yes") == "yes"
    assert extract_answer("(y/n) n") == "n"
    assert extract_answer("yep") == "y"
    assert extract_answer("I guess no") == "no"
    assert extract_answer("maybe later") is None
    assert extract_answer("") is None
    assert answer_to_bool("yes") is True
    assert answer_to_bool("n") is False
    assert answer_to_bool(None) is None


def test_pending_store_latest_and_remove():
    async def run():
        store = PendingStore()
        p = StubProvider("p")
        first = ctx("first", session="a")
        key = await store.add(p, first)
        assert key.startswith("a_")
        latest = await store.latest("a")
        assert latest.context is first
        assert await store.latest("b") is None
        assert store.count() == 1
        assert await store.remove("a", key)
        assert not await store.remove("a", key)
        assert store.count("a") == 0

    asyncio.run(run())


def test_mixed_language_prompts():
    assert classify("是否执行? (y/n) y") is Confirmation.AFFIRMATIVE
    assert classify("否，不要") is Confirmation.NEGATIVE
    assert classify("maybe later") is Confirmation.NONE


def test_pending_store_keeps_one_entry_per_session():
    async def run():
        store = PendingStore()
        p, q = StubProvider("p"), StubProvider("q")
        await store.add(p, ctx("old", session="a"))
        await asyncio.sleep(0.002)
        await store.add(q, ctx("new", session="a"))
        await store.add(p, ctx("other", session="b"))
        assert store.count("a") == 1
        assert (await store.latest("a")).context.input == "new"

        assert not await store.discard("a", "p")
        assert await store.discard("a", "q")
        assert await store.latest("a") is None
        assert store.count() == 1

    asyncio.run(run())
