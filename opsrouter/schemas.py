from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ProviderState(str, Enum):
    """Provider lifecycle state"""
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    SHUTTING_DOWN = "shutting_down"
    SHUTDOWN = "shutdown"


class Confirmation(str, Enum):
    AFFIRMATIVE = "affirmative"
    NEGATIVE = "negative"
    NONE = "none"


class RequestContext(BaseModel):
    """One inbound turn. Only additional_context is appended to while it travels the pipeline."""
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId")
    request_id: str = Field(..., alias="requestId")
    input: str = ""
    user_id: Optional[str] = Field(None, alias="userId")
    path: Optional[str] = None
    timestamp: int = Field(0, description="Epoch milliseconds")
    additional_context: Dict[str, Any] = Field(default_factory=dict, alias="additionalContext")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Decision(BaseModel):
    """Structured outcome of one provider call."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    type: str
    content: str = ""
    success: bool = True
    metadata: Dict[str, Any] = Field(default_factory=dict)
    should_process: Optional[bool] = Field(None, alias="shouldProcess")
    require_confirmation: Optional[bool] = Field(None, alias="requireConfirmation")
    confirmation_message: Optional[str] = Field(None, alias="confirmationMessage")
    is_awaiting_confirmation: Optional[bool] = Field(None, alias="isAwaitingConfirmation")
    should_route: Optional[bool] = Field(None, alias="shouldRoute")

    @property
    def awaiting_confirmation(self) -> bool:
        return bool(self.require_confirmation and self.is_awaiting_confirmation)

    @property
    def target_service_id(self) -> Optional[str]:
        target = self.metadata.get("targetServiceId")
        return str(target) if target else None

    def with_metadata(self, **extra: Any) -> "Decision":
        merged = dict(self.metadata)
        merged.update(extra)
        return self.model_copy(update={"metadata": merged})

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class RoutingRecord(BaseModel):
    """Injected into additional_context["routingDecision"] when a turn is re-routed."""
    model_config = ConfigDict(populate_by_name=True)

    original_service_id: str = Field(..., alias="originalServiceId")
    target_service_id: str = Field(..., alias="targetServiceId")
    category: Optional[str] = None
    confidence: Optional[float] = None
    explanation: str = ""


class CommandAnalysis(BaseModel):
    """The JSON object the completion model is asked to return for one command."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: str
    content: str = ""
    success: bool = True
    command: Optional[str] = None
    commands: Optional[List[str]] = None
    script: Optional[str] = None
    script_type: Optional[str] = Field(None, alias="scriptType")
    should_execute: bool = Field(False, alias="shouldExecute")
    security_risk: Optional[str] = Field(None, alias="securityRisk")
    bypassed_ai: bool = Field(False, alias="bypassedAI")
    require_confirmation: bool = Field(False, alias="requireConfirmation")
    confirmation_message: Optional[str] = Field(None, alias="confirmationMessage")
    is_awaiting_confirmation: bool = Field(False, alias="isAwaitingConfirmation")
