"""Wiring: build a registry from config and submit turns to it."""
import logging
import time
import uuid
from typing import Any, Dict, Optional

from opsrouter.command_engine import CommandAnalysisEngine
from opsrouter.completion import CompletionClient, create_completion_client
from opsrouter.config_loader import ensure_dirs
from opsrouter.log_utils import setup_logger
from opsrouter.registry import ServiceRegistry
from opsrouter.remote_provider import RemoteCapabilityProvider
from opsrouter.routing_provider import IntentRoutingProvider
from opsrouter.schemas import Decision, RequestContext

logger = logging.getLogger(__name__)


def setup_logging(cfg: Dict[str, Any]) -> logging.Logger:
    ensure_dirs(cfg)
    return setup_logger(cfg.get("logging", {}) or {})


def build_registry(cfg: Dict[str, Any], client: Optional[CompletionClient] = None) -> ServiceRegistry:
    """
    Register the command analysis engine, the intent router when routing is
    enabled, and every enabled remote service. Providers are initialized on
    the first dispatch.
    """
    registry = ServiceRegistry.from_config(cfg)
    registry.register(CommandAnalysisEngine.from_config(cfg, client or create_completion_client(cfg)))

    if (cfg.get("routing", {}) or {}).get("enabled"):
        registry.register(IntentRoutingProvider.from_config(cfg))

    for svc in cfg.get("remote_services", []) or []:
        if not svc.get("enabled") or not svc.get("url") or not svc.get("id"):
            continue
        registry.register(RemoteCapabilityProvider.from_config(svc))
    logger.info("Registry built with providers: %s", ", ".join(p.id for p in registry.get_providers()))
    return registry


def new_context(
    session_id: str,
    text: str,
    path: Optional[str] = None,
    user_id: Optional[str] = None,
    additional_context: Optional[Dict[str, Any]] = None,
) -> RequestContext:
    return RequestContext(
        session_id=session_id,
        request_id=str(uuid.uuid4()),
        input=text,
        user_id=user_id,
        path=path,
        timestamp=int(time.time() * 1000),
        additional_context=dict(additional_context or {}),
    )


async def process_command(
    registry: ServiceRegistry,
    session_id: str,
    text: str,
    path: Optional[str] = None,
    user_id: Optional[str] = None,
    additional_context: Optional[Dict[str, Any]] = None,
) -> Decision:
    context = new_context(session_id, text, path=path, user_id=user_id, additional_context=additional_context)
    return await registry.dispatch(context)


async def confirm(registry: ServiceRegistry, session_id: str, confirmed: bool) -> Decision:
    """Answer the session's pending confirmation without the user typing y/n."""
    return await process_command(
        registry,
        session_id,
        "yes" if confirmed else "no",
        additional_context={"isConfirmationResponse": True},
    )
