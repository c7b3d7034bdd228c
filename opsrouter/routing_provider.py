"""Rule-based intent router: classifies a turn and hands it to another provider."""
import re
from typing import Any, Dict, Optional, Tuple

from opsrouter.command_utils import is_weather_query
from opsrouter.log_utils import preview
from opsrouter.provider import CapabilityProvider
from opsrouter.schemas import Decision, RequestContext

EXEC_VERB_RE = re.compile(r"执行|运行|启动|command|run|exec", re.IGNORECASE)
EXEC_NOUN_RE = re.compile(r"命令|指令|process|task", re.IGNORECASE)

DEFAULT_TARGET = "command-analysis"
WEATHER_TARGET = "weather-mcp-service"


class IntentRoutingProvider(CapabilityProvider):
    """
    Scores every turn at a flat 0.6 and answers with a routing Decision.

    Providers that recognize a turn outright score above 0.6 and win; the
    router picks up what remains and forwards it by intent category.
    """

    def __init__(
        self,
        default_target: str = DEFAULT_TARGET,
        weather_target: str = WEATHER_TARGET,
        base_score: float = 0.6,
    ):
        super().__init__(
            "ai-routing",
            "Intent Routing",
            "Analyzes user input and routes it to the appropriate provider",
            priority=10,
            is_system_service=True,
        )
        self.default_target = default_target
        self.weather_target = weather_target
        self.base_score = base_score

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "IntentRoutingProvider":
        routing = cfg.get("routing", {}) or {}
        return cls(
            default_target=routing.get("default_target", DEFAULT_TARGET),
            weather_target=routing.get("weather_target", WEATHER_TARGET),
            base_score=float(routing.get("base_score", 0.6)),
        )

    async def can_handle(self, context: RequestContext) -> float:
        return self.base_score

    def classify_intent(self, text: str) -> Tuple[str, float, str, str]:
        """Return (target id, confidence, category, explanation)."""
        if is_weather_query(text):
            return self.weather_target, 0.9, "weather_inquiry", "Detected a weather inquiry"
        if EXEC_VERB_RE.search(text) and EXEC_NOUN_RE.search(text):
            return self.default_target, 0.8, "command_execution", "Detected a command execution request"
        return (
            self.default_target,
            0.6,
            "general_question",
            "No clear intent category, handing over to command analysis",
        )

    async def process(self, context: RequestContext) -> Decision:
        text = context.input.strip()
        self.logger.info("Routing analysis for request %s, input: %r", context.request_id, preview(text))
        try:
            target, confidence, category, explanation = self.classify_intent(text)
        except Exception as e:
            self.logger.error("Error in routing analysis: %s", e)
            return self._route(
                self.default_target,
                0.5,
                "error_fallback",
                f"Intent analysis failed, handing over to command analysis: {e}",
            )
        if category == "general_question":
            self.logger.info("No clear intent for %r, routing to %s", preview(text, 30), target)
        return self._route(target, confidence, category, explanation)

    def _route(self, target: str, confidence: float, category: Optional[str], explanation: str) -> Decision:
        return Decision(
            type="routing_decision",
            content=explanation,
            success=True,
            should_route=True,
            metadata={"targetServiceId": target, "confidence": confidence, "intentCategory": category},
        )

    async def handle_confirmation(self, context: RequestContext, confirmed: bool) -> Decision:
        return self.create_response("text", "Confirmation handled.")
