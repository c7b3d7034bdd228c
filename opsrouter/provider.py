"""
Base class for capability providers.

A provider scores each turn with can_handle (0 = cannot handle, 1 = certain),
turns the selected turn into a Decision with process, and resumes or cancels
an action when the user answers a confirmation prompt.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from opsrouter.schemas import Decision, ProviderState, RequestContext


class CapabilityProvider(ABC):
    """Abstract base class for all capability providers"""

    def __init__(
        self,
        provider_id: str,
        name: str,
        description: str = "",
        priority: int = 50,
        is_system_service: bool = False,
    ):
        self._id = provider_id
        self._name = name
        self._description = description
        self._priority = priority  # lower number = higher priority; used as a tie-break
        self._is_system_service = is_system_service
        self.state = ProviderState.UNINITIALIZED
        self.logger = logging.getLogger(f"opsrouter.provider.{provider_id}")

    @property
    def id(self) -> str:
        return self._id

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def priority(self) -> int:
        return self._priority

    @property
    def is_system_service(self) -> bool:
        return self._is_system_service

    async def initialize(self) -> None:
        self.logger.info("Initializing provider: %s", self.name)
        self.state = ProviderState.INITIALIZED

    async def shutdown(self) -> None:
        """Subclasses holding pending actions must clear them here."""
        self.state = ProviderState.SHUTTING_DOWN
        self.logger.info("Shutting down provider: %s", self.name)
        self.state = ProviderState.SHUTDOWN

    @abstractmethod
    async def can_handle(self, context: RequestContext) -> float:
        """
        Score how well this provider fits the turn.

        Must not touch shared routing state.
        """

    @abstractmethod
    async def process(self, context: RequestContext) -> Decision:
        """Handle the turn. Always returns a Decision."""

    async def handle_confirmation(self, context: RequestContext, confirmed: bool) -> Decision:
        self.logger.info("Handling confirmation for request %s, confirmed: %s", context.request_id, confirmed)
        if not confirmed:
            return self.create_response("info", "Operation cancelled.")
        return self.create_response("info", "Operation confirmed.")

    def create_response(
        self,
        type: str,
        content: str,
        success: bool = True,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Decision:
        return Decision(type=type, content=content, success=success, metadata=metadata or {})

    def create_confirmation_request(
        self,
        type: str,
        content: str,
        confirmation_message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Decision:
        return Decision(
            type=type,
            content=content,
            success=True,
            metadata=metadata or {},
            require_confirmation=True,
            is_awaiting_confirmation=True,
            confirmation_message=confirmation_message,
        )

    def create_error_response(self, message: str, metadata: Optional[Dict[str, Any]] = None) -> Decision:
        return self.create_response("error", message, success=False, metadata=metadata)

    def describe(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "priority": self.priority,
            "isSystemService": self.is_system_service,
            "state": self.state.value,
        }

    def __repr__(self) -> str:
        return f"<{type(self).__name__} id={self.id!r} priority={self.priority}>"
