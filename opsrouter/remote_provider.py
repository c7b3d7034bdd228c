"""
Adapter for capability providers served over HTTP.

The remote server exposes:
  GET  /api/status                                  -> {"status", "version", ...}
  POST /api/can-handle          {context}           -> {"score": float}
  POST /api/process             {context}           -> Decision
  POST /api/handle-confirmation {context, isConfirmed} -> Decision
"""
import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

import requests
from pydantic import ValidationError

from opsrouter.provider import CapabilityProvider
from opsrouter.schemas import Decision, RequestContext

STATUS_CACHE_S = 60.0


@dataclass
class RemoteConfig:
    url: str
    api_key: str = ""
    timeout_s: float = 10.0
    headers: Dict[str, str] = field(default_factory=dict)
    verify_ssl: bool = True

    @property
    def secure(self) -> bool:
        return self.url.startswith("https://")


@dataclass
class RemoteStatus:
    available: bool = False
    last_checked: Optional[datetime] = None
    version: Optional[str] = None
    error: Optional[str] = None


def is_valid_decision(data: Any) -> bool:
    return (
        isinstance(data, dict)
        and isinstance(data.get("type"), str)
        and isinstance(data.get("content"), str)
        and isinstance(data.get("success"), bool)
    )


class RemoteCapabilityProvider(CapabilityProvider):
    def __init__(
        self,
        provider_id: str,
        name: str,
        config: RemoteConfig,
        description: str = "",
        priority: int = 50,
    ):
        super().__init__(provider_id, name, description, priority=priority, is_system_service=False)
        self.config = config
        self.status = RemoteStatus()
        self._checked_at: Optional[float] = None  # monotonic

    @classmethod
    def from_config(cls, svc: Dict[str, Any]) -> "RemoteCapabilityProvider":
        config = RemoteConfig(
            url=str(svc.get("url", "")).rstrip("/"),
            api_key=svc.get("api_key") or "",
            timeout_s=float(svc.get("timeout_s", 10)),
            headers=dict(svc.get("headers") or {}),
            verify_ssl=bool(svc.get("verify_ssl", True)),
        )
        return cls(
            svc["id"],
            svc.get("name") or svc["id"],
            config,
            description=svc.get("description", ""),
            priority=int(svc.get("priority", 50)),
        )

    # --- HTTP ---

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        headers.update(self.config.headers)
        if self.config.api_key:
            headers["X-API-Key"] = self.config.api_key
        return headers

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.config.url}{path}"
        self.logger.debug("Sending %s request to %s", method, url)
        r = requests.request(
            method,
            url,
            json=payload,
            headers=self._headers(),
            timeout=self.config.timeout_s,
            verify=self.config.verify_ssl,
        )
        if r.status_code != 200:
            self.logger.error("Error response from remote provider: %s %s", r.status_code, (r.text or "")[:200])
        r.raise_for_status()
        self.logger.debug("Received response from %s: %s", url, r.status_code)
        return r.json()

    async def _call(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        return await asyncio.to_thread(self._request, method, path, payload)

    def _mark_unavailable(self, error: Exception) -> None:
        self.status = RemoteStatus(available=False, last_checked=datetime.now(), error=str(error))
        self._checked_at = time.monotonic()

    # --- status ---

    async def test_connection(self) -> bool:
        try:
            data = await self._call("GET", "/api/status")
        except (requests.RequestException, ValueError) as e:
            self.logger.error("Error testing connection to remote provider: %s", e)
            self._mark_unavailable(e)
            return False
        version = data.get("version") if isinstance(data, dict) else None
        self.status = RemoteStatus(available=True, last_checked=datetime.now(), version=version)
        self._checked_at = time.monotonic()
        return True

    async def _refresh_status(self) -> None:
        if self._checked_at is not None and time.monotonic() - self._checked_at < STATUS_CACHE_S:
            return
        await self.test_connection()

    async def get_status(self) -> RemoteStatus:
        await self._refresh_status()
        return self.status

    async def update_config(self, **changes: Any) -> None:
        """Merge changes into the config (headers are merged, not replaced), then re-test."""
        headers = changes.pop("headers", None)
        for key, value in changes.items():
            if not hasattr(self.config, key):
                raise ValueError(f"Unknown remote config field: {key}")
            if value is not None:
                setattr(self.config, key, value)
        if headers:
            self.config.headers = {**self.config.headers, **headers}
        self.config.url = self.config.url.rstrip("/")
        await self.test_connection()
        self.logger.info("Updated remote configuration for %s", self.name)

    async def _ensure_available(self) -> bool:
        if not self.status.available:
            await self._refresh_status()
        return self.status.available

    # --- provider contract ---

    async def initialize(self) -> None:
        await super().initialize()
        self.logger.info("Remote provider URL: %s", self.config.url)
        if await self.test_connection():
            self.logger.info("Connected to remote provider: %s", self.config.url)
        else:
            self.logger.warning("Failed to connect to remote provider: %s", self.config.url)

    async def can_handle(self, context: RequestContext) -> float:
        if not await self._ensure_available():
            return 0.0
        try:
            data = await self._call("POST", "/api/can-handle", {"context": context.to_wire()})
        except (requests.RequestException, ValueError) as e:
            self.logger.error("Error checking whether remote provider can handle request: %s", e)
            self._mark_unavailable(e)
            return 0.0
        score = data.get("score") if isinstance(data, dict) else None
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            return 0.0
        return float(score)

    async def _post_decision(self, path: str, payload: Dict[str, Any], action: str) -> Decision:
        if not await self._ensure_available():
            return self.create_error_response(f"Remote provider unavailable: {self.status.error or 'unknown error'}")
        try:
            data = await self._call("POST", path, payload)
        except (requests.RequestException, ValueError) as e:
            self.logger.error("Error %s with remote provider: %s", action, e)
            self._mark_unavailable(e)
            return self.create_error_response(f"Error {action}: {e}")
        if not is_valid_decision(data):
            self.logger.error("Invalid response from remote provider: %r", data)
            return self.create_error_response("Remote provider returned an invalid response")
        try:
            return Decision.model_validate(data)
        except ValidationError as e:
            self.logger.error("Invalid response from remote provider: %s", e)
            return self.create_error_response("Remote provider returned an invalid response")

    async def process(self, context: RequestContext) -> Decision:
        return await self._post_decision("/api/process", {"context": context.to_wire()}, "processing request")

    async def handle_confirmation(self, context: RequestContext, confirmed: bool) -> Decision:
        return await self._post_decision(
            "/api/handle-confirmation",
            {"context": context.to_wire(), "isConfirmed": confirmed},
            "handling confirmation",
        )

    def describe(self) -> Dict[str, Any]:
        info = super().describe()
        info["url"] = self.config.url
        info["available"] = self.status.available
        return info
