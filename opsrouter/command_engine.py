"""
Command analysis provider: the default handler for terminal turns.

A turn is either executed directly (bypass policy), or sent to the completion
model, whose JSON answer is repaired if needed and turned into a Decision.
Risky answers are parked until the user replies y/n.
"""
import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from opsrouter.command_utils import BypassPolicy, classify_command_risk, is_weather_query, looks_like_command
from opsrouter.completion import CompletionClient, Message
from opsrouter.confirmation import answer_to_bool, extract_answer, is_confirmation
from opsrouter.errors import AnalysisParseError
from opsrouter.json_repair import fallback_analysis, parse_model_json
from opsrouter.log_utils import preview
from opsrouter.provider import CapabilityProvider
from opsrouter.schemas import CommandAnalysis, Decision, RequestContext

logger = logging.getLogger(__name__)

SCRIPT_PREVIEW_LINES = 5

SYSTEM_PROMPT = """You are the assistant built into a terminal environment.
Your job is to:
1. Decide whether the user's input is a bash command or a request for the assistant.
2. For bash commands, decide whether they should run as-is or need explanation or changes.
3. For assistant requests, answer accurately from your own knowledge.
4. For complex requests, produce a shell script or a sequence of commands.

You MUST answer with exactly one JSON object with this structure:
{
  "type": "bash_execution" | "ai_response" | "script_execution",
  "content": "your detailed answer or an explanation of the command",
  "success": true | false,
  "command": "the unix shell command to run, when applicable",
  "commands": ["command 1", "command 2"],
  "script": "#!/bin/bash\\n\\n# full script body\\n...",
  "scriptType": "bash" | "python" | "node" | "ruby",
  "shouldExecute": true | false,
  "securityRisk": "none" | "low" | "medium" | "high" | "critical",
  "requireConfirmation": true | false
}

Do not write anything outside the JSON object. No markdown, no XML tags.

bash_execution:
- set shouldExecute to true when the command should run
- set shouldExecute to false when the command is dangerous or needs changes, and explain alternatives in content
- set requireConfirmation to true for risky commands (deleting files, changing permissions or system
  configuration, sudo/root, running downloaded code)

ai_response:
- put your answer in content, and the user's original input in command
- shouldExecute and requireConfirmation are always false

script_execution:
- for multi-step work; put the full script in script and its language in scriptType
- summarize what the script does in content, with comments and error handling inside the script
- requireConfirmation is always true"""


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class RiskyCommandRecord:
    key: str
    session_id: str
    analysis: CommandAnalysis


class CommandAnalysisEngine(CapabilityProvider):
    def __init__(
        self,
        client: CompletionClient,
        policy: Optional[BypassPolicy] = None,
        temperature: float = 0.3,
        max_tokens: int = 4096,
        completion_timeout_s: Optional[float] = 60.0,
    ):
        super().__init__(
            "command-analysis",
            "Command Analysis",
            "Analyzes terminal input and proposes execution with a safety assessment",
            priority=10,
            is_system_service=True,
        )
        self.client = client
        self.policy = policy or BypassPolicy()
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.completion_timeout_s = completion_timeout_s
        self._risky: "OrderedDict[str, RiskyCommandRecord]" = OrderedDict()

    @classmethod
    def from_config(cls, cfg: Dict[str, Any], client: CompletionClient) -> "CommandAnalysisEngine":
        ca = cfg.get("command_analysis", {}) or {}
        ollama = (cfg.get("ai", {}) or {}).get("ollama", {}) or {}
        return cls(
            client,
            policy=BypassPolicy.from_config(cfg),
            temperature=float(ca.get("temperature", 0.3)),
            max_tokens=int(ca.get("max_tokens", 4096)),
            completion_timeout_s=ca.get("completion_timeout_s", ollama.get("timeout_s", 60.0)),
        )

    async def initialize(self) -> None:
        await super().initialize()
        self.logger.info("Command analysis initialized, bypass mode: %s", self.policy.mode)
        if self.policy.mode == "common":
            self.logger.info("Bypass commands: %s", ", ".join(self.policy.allow))

    async def shutdown(self) -> None:
        self._risky.clear()
        await super().shutdown()

    # --- scoring ---

    async def can_handle(self, context: RequestContext) -> float:
        text = context.input.strip()
        if self._latest_risky(context.session_id) is not None and is_confirmation(text):
            return 0.9
        if is_weather_query(text):
            return 0.1  # leave it to a weather provider
        if not text:
            return 0.1
        if looks_like_command(text):
            return 0.8
        return 0.5

    # --- processing ---

    async def process(self, context: RequestContext) -> Decision:
        text = context.input.strip()
        resolved = self._resolve_inline_answer(context.session_id, text)
        if resolved is not None:
            # tells the registry to drop its own entry for this session
            return self._to_decision(resolved).with_metadata(resolvedConfirmation=True)

        history = context.additional_context.get("history")
        analysis = await self.analyze(
            text,
            context.path or "~",
            history if isinstance(history, list) else None,
            session_id=context.session_id,
        )
        return self._to_decision(analysis)

    async def handle_confirmation(self, context: RequestContext, confirmed: bool) -> Decision:
        record = self._pop_latest_risky(context.session_id)
        if record is None:
            return self.create_error_response("No command is awaiting confirmation.")
        return self._to_decision(self._resolve(record, confirmed))

    def pending_commands(self, session_id: Optional[str] = None) -> List[str]:
        return [r.key for r in self._risky.values() if session_id is None or r.session_id == session_id]

    async def analyze(
        self,
        command: str,
        path: str = "~",
        history: Optional[List[Message]] = None,
        session_id: str = "",
    ) -> CommandAnalysis:
        logger.info("Analyzing command %r, path: %s", preview(command), path)

        if self.policy.should_bypass(command):
            logger.info("Command %r bypassed AI analysis", preview(command))
            return CommandAnalysis(
                type="bash_execution",
                content="",
                success=True,
                command=command,
                should_execute=True,
                bypassed_ai=True,
                require_confirmation=False,
            )

        messages: List[Message] = list(history or [])
        messages.append({"role": "user", "content": f"Command: {command}\nCurrent path: {path}\nAnalyze this input."})
        try:
            raw = await self._complete(messages)
        except Exception as e:
            logger.error("AI analysis failed: %s", e)
            return CommandAnalysis(
                type="ai_response",
                content=f"Command analysis failed: {e}",
                success=False,
                command=command,
                should_execute=False,
                require_confirmation=False,
            )
        logger.debug("Raw AI response: %s...", raw[:100])

        try:
            analysis = self._parse(command, raw)
        except AnalysisParseError as e:
            logger.error("Failed to parse AI response as JSON: %s", e)
            return self._parse_failure(command, e)

        if analysis.require_confirmation:
            analysis = self._prepare_confirmation(analysis)
            self._park(command, session_id, analysis)

        logger.info(
            "Command analysis complete: type=%s, execute=%s, confirm=%s",
            analysis.type, analysis.should_execute, analysis.require_confirmation,
        )
        return analysis

    async def _complete(self, messages: List[Message]) -> str:
        call = self.client.complete(SYSTEM_PROMPT, messages, temperature=self.temperature, max_tokens=self.max_tokens)
        if not self.completion_timeout_s:
            return (await call).strip()
        try:
            raw = await asyncio.wait_for(call, timeout=self.completion_timeout_s)
        except asyncio.TimeoutError:
            raise TimeoutError(f"no answer from the completion model within {self.completion_timeout_s}s")
        return raw.strip()

    def _parse(self, command: str, raw: str) -> CommandAnalysis:
        result = parse_model_json(raw)
        data = result.data if result.data is not None else fallback_analysis(command, result.cleaned)
        if not data.get("type"):
            raise AnalysisParseError("AI returned an invalid response structure")

        data = {k: v for k, v in data.items() if v is not None}
        for key in ("type", "content"):
            if key in data and not isinstance(data[key], str):
                data[key] = str(data[key])
        if isinstance(data.get("commands"), str):
            data["commands"] = [data["commands"]]
        elif isinstance(data.get("commands"), list):
            data["commands"] = [str(c) for c in data["commands"]]
        data.setdefault("command", command)
        # only the engine may put a command into the awaiting state
        data.pop("isAwaitingConfirmation", None)
        data.pop("bypassedAI", None)
        try:
            return CommandAnalysis.model_validate(data)
        except ValidationError as e:
            raise AnalysisParseError(str(e))

    def _parse_failure(self, command: str, error: Exception) -> CommandAnalysis:
        return CommandAnalysis(
            type="ai_response",
            content=(
                "The AI could not interpret this command. You may need to enter the shell command directly.\n\n"
                f"Original command: {command}\n\nError: {error}"
            ),
            success=False,
            command=command,
            should_execute=False,
            require_confirmation=False,
        )

    def _prepare_confirmation(self, analysis: CommandAnalysis) -> CommandAnalysis:
        risk = analysis.security_risk
        if not risk:
            local = classify_command_risk(analysis.command or "")["level"]
            risk = local if local != "none" else None
        risk_label = risk or "unknown"

        if analysis.type == "script_execution":
            script_type = analysis.script_type or "bash"
            if analysis.script:
                lines = analysis.script.split("\n")
                script_preview = "\n".join(lines[:SCRIPT_PREVIEW_LINES])
                if len(lines) > SCRIPT_PREVIEW_LINES:
                    script_preview += "\n...(more lines)"
            else:
                script_preview = "No script content"
            message = (
                f"Operation: script execution ({script_type})\n"
                f"Risk level: {risk_label}\n"
                f"{analysis.content}\n\n"
                f"Script preview:\n{script_preview}\n\n"
                "Execute this script? (y/n) "
            )
            logger.info("Script awaiting confirmation: %s, %d lines", script_type, len((analysis.script or "").split("\n")))
        elif analysis.commands:
            numbered = "\n".join(f"{i}. {cmd}" for i, cmd in enumerate(analysis.commands, 1))
            message = (
                "Operation: multi-command execution\n"
                f"Risk level: {risk_label}\n"
                f"{analysis.content}\n\n"
                f"The following commands will run:\n{numbered}\n\n"
                "Continue? (y/n) "
            )
            logger.info("Command sequence awaiting confirmation, count: %d", len(analysis.commands))
        else:
            message = f"Command risk level: {risk_label}\n{analysis.content}\nExecute this command anyway? (y/n) "

        return analysis.model_copy(update={
            "security_risk": risk,
            "confirmation_message": message,
            "is_awaiting_confirmation": True,
        })

    # --- local pending risky commands ---

    def _park(self, command: str, session_id: str, analysis: CommandAnalysis) -> str:
        # one awaiting command per session; the newest prompt wins
        stale = [k for k, r in self._risky.items() if r.session_id == session_id]
        for k in stale:
            self.logger.info("Dropping unanswered command %s", preview(self._risky.pop(k).analysis.command))
        key = f"{command}_{_now_ms()}"
        self._risky[key] = RiskyCommandRecord(key=key, session_id=session_id, analysis=analysis)
        return key

    def _latest_risky(self, session_id: str) -> Optional[RiskyCommandRecord]:
        for record in reversed(self._risky.values()):
            if record.session_id == session_id:
                return record
        return None

    def _pop_latest_risky(self, session_id: str) -> Optional[RiskyCommandRecord]:
        record = self._latest_risky(session_id)
        if record is not None:
            del self._risky[record.key]
        return record

    def _resolve(self, record: RiskyCommandRecord, confirmed: bool) -> CommandAnalysis:
        analysis = record.analysis
        if confirmed:
            self.logger.info("User confirmed execution of command: %s", preview(analysis.command))
            return analysis.model_copy(update={
                "should_execute": True,
                "is_awaiting_confirmation": False,
                "require_confirmation": False,
            })
        self.logger.info("User rejected execution of command: %s", preview(analysis.command))
        return analysis.model_copy(update={
            "should_execute": False,
            "is_awaiting_confirmation": False,
            "require_confirmation": False,
            "content": f"Command cancelled: {analysis.command}",
        })

    def _resolve_inline_answer(self, session_id: str, text: str) -> Optional[CommandAnalysis]:
        """Answer to our own pending command that reached process() without a registry-level entry."""
        if self._latest_risky(session_id) is None:
            return None
        confirmed = answer_to_bool(extract_answer(text))
        if confirmed is None:
            return None
        record = self._pop_latest_risky(session_id)
        return self._resolve(record, confirmed)

    def _to_decision(self, analysis: CommandAnalysis) -> Decision:
        metadata: Dict[str, Any] = {}
        if analysis.command:
            metadata["command"] = analysis.command
        if analysis.commands:
            metadata["commands"] = list(analysis.commands)
        if analysis.script:
            metadata["script"] = analysis.script
        if analysis.script_type:
            metadata["scriptType"] = analysis.script_type
        if analysis.security_risk:
            metadata["securityRisk"] = analysis.security_risk
        if analysis.bypassed_ai:
            metadata["bypassedAI"] = True

        if analysis.require_confirmation and analysis.is_awaiting_confirmation:
            return Decision(
                type=analysis.type,
                content=analysis.confirmation_message or analysis.content,
                success=analysis.success,
                metadata=metadata,
                require_confirmation=True,
                is_awaiting_confirmation=True,
                confirmation_message=analysis.confirmation_message,
            )
        return Decision(
            type=analysis.type,
            content=analysis.content,
            success=analysis.success,
            metadata=metadata,
            should_process=analysis.should_execute,
            require_confirmation=analysis.require_confirmation,
            is_awaiting_confirmation=False,
        )
