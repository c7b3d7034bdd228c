"""
ServiceRegistry: owns the capability providers and routes each turn.

dispatch() order per turn:
  1. lazy initialize (and lazy re-initialize of providers whose init failed)
  2. resolve a pending confirmation for the session if the turn is a yes/no
  3. score every provider concurrently, pick the highest score
  4. process, follow at most one routing hop, park the turn if it awaits confirmation

No exception crosses dispatch(); failures come back as success=False Decisions.
"""
import asyncio
import logging
import math
import time
from typing import Any, Awaitable, Dict, List, Optional, Set, Tuple

from opsrouter.confirmation import classify
from opsrouter.errors import ProviderNotFoundError, ProviderRegistrationError
from opsrouter.log_utils import preview
from opsrouter.pending import PendingStore
from opsrouter.provider import CapabilityProvider
from opsrouter.schemas import Confirmation, Decision, RequestContext, RoutingRecord

logger = logging.getLogger(__name__)

NO_PROVIDER_MESSAGE = "No provider can handle this request. Try a different command or question."


async def _with_deadline(awaitable: Awaitable[Any], timeout_s: Optional[float]) -> Any:
    if timeout_s is None or timeout_s <= 0:
        return await awaitable
    return await asyncio.wait_for(awaitable, timeout=timeout_s)


class ServiceRegistry:
    def __init__(
        self,
        score_timeout_s: Optional[float] = 5.0,
        process_timeout_s: Optional[float] = 120.0,
        init_retry_s: float = 60.0,
    ):
        self.score_timeout_s = score_timeout_s
        self.process_timeout_s = process_timeout_s
        self.init_retry_s = init_retry_s
        self.pending = PendingStore()
        self._providers: Dict[str, CapabilityProvider] = {}
        self._failed_init: Dict[str, float] = {}  # provider id -> monotonic time of last failed init
        self._init_tasks: Set[asyncio.Task] = set()
        self._initialized = False

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "ServiceRegistry":
        reg = cfg.get("registry", {}) or {}
        return cls(
            score_timeout_s=reg.get("score_timeout_s", 5.0),
            process_timeout_s=reg.get("process_timeout_s", 120.0),
            init_retry_s=float(reg.get("init_retry_s", 60.0)),
        )

    @property
    def initialized(self) -> bool:
        return self._initialized

    # --- registration ---

    def register(self, provider: CapabilityProvider) -> None:
        if provider.id in self._providers:
            raise ProviderRegistrationError(f"Provider with id {provider.id} is already registered")
        self._providers[provider.id] = provider
        logger.info(
            "Registered provider: %s (%s), priority: %s, system: %s",
            provider.name, provider.id, provider.priority, provider.is_system_service,
        )
        if not self._initialized:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop to run on; the next dispatch retries it
            self._failed_init[provider.id] = float("-inf")
            return
        task = loop.create_task(self._init_provider(provider))
        self._init_tasks.add(task)
        task.add_done_callback(self._init_tasks.discard)

    async def unregister(self, provider_id: str) -> None:
        provider = self._providers.get(provider_id)
        if provider is None:
            raise ProviderNotFoundError(f"No provider with id {provider_id} is registered")
        if self._initialized:
            try:
                await provider.shutdown()
            except Exception as e:
                logger.error("Failed to shut down provider %s (%s) during unregistration: %s", provider.name, provider_id, e)
        del self._providers[provider_id]
        self._failed_init.pop(provider_id, None)
        logger.info("Unregistered provider: %s (%s)", provider.name, provider_id)

    def get_providers(self) -> List[CapabilityProvider]:
        return sorted(self._providers.values(), key=lambda p: (p.priority, p.id))

    def get_provider(self, provider_id: str) -> Optional[CapabilityProvider]:
        return self._providers.get(provider_id)

    def is_available(self, provider_id: str) -> bool:
        return provider_id in self._providers and provider_id not in self._failed_init

    def pending_count(self, session_id: Optional[str] = None) -> int:
        return self.pending.count(session_id)

    # --- lifecycle ---

    async def _init_provider(self, provider: CapabilityProvider) -> bool:
        try:
            await provider.initialize()
        except Exception as e:
            self._failed_init[provider.id] = time.monotonic()
            logger.error("Failed to initialize provider %s (%s): %s", provider.name, provider.id, e)
            return False
        self._failed_init.pop(provider.id, None)
        logger.info("Initialized provider: %s (%s)", provider.name, provider.id)
        return True

    async def initialize(self) -> None:
        if self._initialized:
            return
        logger.info("Initializing registry with %d providers", len(self._providers))
        await asyncio.gather(*(self._init_provider(p) for p in list(self._providers.values())))
        self._initialized = True
        logger.info("Registry initialization complete")

    async def _retry_failed_inits(self) -> None:
        if not self._failed_init:
            return
        now = time.monotonic()
        due = [
            self._providers[pid]
            for pid, failed_at in list(self._failed_init.items())
            if pid in self._providers and now - failed_at >= self.init_retry_s
        ]
        if due:
            logger.info("Retrying initialization for %d providers", len(due))
            await asyncio.gather(*(self._init_provider(p) for p in due))

    async def shutdown(self) -> None:
        if self._initialized:
            logger.info("Shutting down registry with %d providers", len(self._providers))

            async def _stop(provider: CapabilityProvider) -> None:
                try:
                    await provider.shutdown()
                    logger.info("Shut down provider: %s (%s)", provider.name, provider.id)
                except Exception as e:
                    logger.error("Failed to shut down provider %s (%s): %s", provider.name, provider.id, e)

            await asyncio.gather(*(_stop(p) for p in list(self._providers.values())))
        tasks = list(self._init_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._initialized = False
        self._providers.clear()
        self._failed_init.clear()
        await self.pending.clear()
        logger.info("Registry shutdown complete")

    # --- dispatch ---

    async def dispatch(self, context: RequestContext) -> Decision:
        try:
            return await self._dispatch(context)
        except Exception as e:
            logger.exception("Unexpected failure dispatching request %s", context.request_id)
            return Decision(type="error", content=f"Error while processing request: {e}", success=False)

    async def _dispatch(self, context: RequestContext) -> Decision:
        if not self._initialized:
            await self.initialize()
        await self._retry_failed_inits()

        resolved = await self._check_confirmation(context)
        if resolved is not None:
            return resolved

        logger.info("Processing request %s, input: %r", context.request_id, preview(context.input))
        selected, score = await self._select(context)
        if selected is None:
            logger.warning("No provider can handle request %s", context.request_id)
            return Decision(type="error", content=NO_PROVIDER_MESSAGE, success=False)
        logger.info(
            "Selected provider for request %s: %s (%s) with score %.2f",
            context.request_id, selected.name, selected.id, score,
        )

        try:
            decision = await self._run_process(selected, context)
            decision, owner = await self._follow_route(selected, decision, context)
        except asyncio.TimeoutError:
            logger.error("Provider %s timed out processing request %s", selected.id, context.request_id)
            return Decision(type="error", content=f"Provider {selected.id} timed out while processing the request", success=False)
        except Exception as e:
            logger.error("Error processing request %s with provider %s: %s", context.request_id, selected.name, e)
            return Decision(type="error", content=f"Error while processing request: {e}", success=False)

        if decision.metadata.get("resolvedConfirmation"):
            if await self.pending.discard(context.session_id, owner.id):
                logger.info("Provider %s answered the pending confirmation for session %s", owner.id, context.session_id)
        if decision.awaiting_confirmation:
            key = await self.pending.add(owner, context)
            logger.info("Request %s requires confirmation, stored with key %s", context.request_id, key)
        return decision

    async def _score(self, provider: CapabilityProvider, context: RequestContext) -> float:
        if provider.id in self._failed_init:
            return 0.0
        try:
            raw = await _with_deadline(provider.can_handle(context), self.score_timeout_s)
            score = float(raw)
        except asyncio.TimeoutError:
            logger.warning("Provider %s exceeded the scoring deadline; treating as 0", provider.id)
            return 0.0
        except Exception as e:
            logger.error("Error when checking if provider %s can handle request: %s", provider.name, e)
            return 0.0
        if math.isnan(score):
            return 0.0
        return min(max(score, 0.0), 1.0)

    async def _select(self, context: RequestContext) -> Tuple[Optional[CapabilityProvider], float]:
        providers = list(self._providers.values())
        scores = await asyncio.gather(*(self._score(p, context) for p in providers))
        candidates = [(p, s) for p, s in zip(providers, scores) if s > 0]
        if not candidates:
            return None, 0.0
        # highest score, then lowest priority number, then id
        return min(candidates, key=lambda c: (-c[1], c[0].priority, c[0].id))

    async def _run_process(self, provider: CapabilityProvider, context: RequestContext) -> Decision:
        decision = await _with_deadline(provider.process(context), self.process_timeout_s)
        if not isinstance(decision, Decision):
            raise TypeError(f"provider {provider.id} returned {type(decision).__name__}, expected Decision")
        return decision

    async def _follow_route(
        self,
        selected: CapabilityProvider,
        decision: Decision,
        context: RequestContext,
    ) -> Tuple[Decision, CapabilityProvider]:
        target_id = decision.target_service_id
        if not decision.should_route or not target_id:
            return decision, selected
        target = self._providers.get(target_id)
        if target is None:
            logger.warning("Routing target %s from %s is not registered; keeping original decision", target_id, selected.id)
            return decision, selected

        category = decision.metadata.get("intentCategory")
        logger.info(
            "Routing request %s from %s to %s, confidence: %s, reason: %s",
            context.request_id, selected.id, target_id, decision.metadata.get("confidence"), decision.content,
        )
        record = RoutingRecord(
            original_service_id=selected.id,
            target_service_id=target_id,
            category=category,
            confidence=decision.metadata.get("confidence"),
            explanation=decision.content,
        )
        context.additional_context["routingDecision"] = record.model_dump(by_alias=True)
        routed = await self._run_process(target, context)
        return routed.with_metadata(routedBy=selected.id, originalCategory=category), target

    async def _check_confirmation(self, context: RequestContext) -> Optional[Decision]:
        pending = await self.pending.latest(context.session_id)
        if pending is None:
            return None
        verdict = classify(context.input)
        if verdict is Confirmation.NONE:
            return None
        if pending.provider.id not in self._providers:
            await self.pending.remove(context.session_id, pending.key)
            logger.warning("Dropping confirmation %s: provider %s is no longer registered", pending.key, pending.provider.id)
            return None

        confirmed = verdict is Confirmation.AFFIRMATIVE
        original = pending.context
        original.additional_context["confirmationInput"] = context.input
        original.additional_context["confirmationRequestId"] = context.request_id
        logger.info("Processing confirmation for request %s, confirmed: %s", original.request_id, confirmed)
        try:
            decision = await _with_deadline(
                pending.provider.handle_confirmation(original, confirmed),
                self.process_timeout_s,
            )
            if not isinstance(decision, Decision):
                raise TypeError(f"provider {pending.provider.id} returned {type(decision).__name__}, expected Decision")
        except Exception as e:
            logger.error("Error processing confirmation with provider %s: %s", pending.provider.name, e)
            decision = Decision(type="error", content=f"Error while processing confirmation: {e}", success=False)
        await self.pending.remove(context.session_id, pending.key)
        return decision
