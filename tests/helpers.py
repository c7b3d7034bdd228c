import asyncio
from typing import List, Optional

from opsrouter.bootstrap import new_context
from opsrouter.provider import CapabilityProvider
from opsrouter.schemas import Decision, RequestContext


def ctx(text: str, session: str = "s1", **kwargs) -> RequestContext:
    return new_context(session, text, **kwargs)


class StubProvider(CapabilityProvider):
    def __init__(
        self,
        provider_id: str,
        score=0.5,
        decision: Optional[Decision] = None,
        priority: int = 50,
        score_delay: float = 0.0,
        process_delay: float = 0.0,
        fail_init: int = 0,
    ):
        super().__init__(provider_id, provider_id.title(), priority=priority)
        self.score = score
        self.decision = decision or Decision(type="text", content=f"handled by {provider_id}")
        self.score_delay = score_delay
        self.process_delay = process_delay
        self.fail_init = fail_init
        self.init_calls = 0
        self.processed: List[RequestContext] = []
        self.confirmations: List[tuple] = []

    async def initialize(self) -> None:
        self.init_calls += 1
        if self.fail_init > 0:
            self.fail_init -= 1
            raise RuntimeError("init failed")
        await super().initialize()

    async def can_handle(self, context: RequestContext) -> float:
        if self.score_delay:
            await asyncio.sleep(self.score_delay)
        if isinstance(self.score, Exception):
            raise self.score
        return self.score

    async def process(self, context: RequestContext) -> Decision:
        self.processed.append(context)
        if self.process_delay:
            await asyncio.sleep(self.process_delay)
        return self.decision

    async def handle_confirmation(self, context: RequestContext, confirmed: bool) -> Decision:
        self.confirmations.append((context, confirmed))
        return self.create_response("info", "confirmed" if confirmed else "cancelled")


class FakeCompletionClient:
    """Returns scripted replies in order; an Exception entry is raised instead."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    async def complete(self, system_prompt, messages, temperature=None, max_tokens=None):
        self.calls.append({"system": system_prompt, "messages": list(messages)})
        reply = self.replies.pop(0) if self.replies else "{}"
        if isinstance(reply, Exception):
            raise reply
        return reply


def awaiting(content: str = "proceed? (y/n) ") -> Decision:
    return Decision(
        type="bash_execution",
        content=content,
        require_confirmation=True,
        is_awaiting_confirmation=True,
        confirmation_message=content,
    )
