import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Protocol

import requests

from opsrouter.errors import CompletionError

logger = logging.getLogger(__name__)

Message = Dict[str, str]  # {"role": "system" | "user" | "assistant", "content": str}


class CompletionClient(Protocol):
    async def complete(
        self,
        system_prompt: str,
        messages: List[Message],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        ...


def _to_prompt(system_prompt: str, messages: List[Message]) -> str:
    lines = []
    if system_prompt:
        lines.append(f"System: {system_prompt}")
    for msg in messages:
        role = msg.get("role", "")
        content = msg.get("content", "")
        if role == "system":
            lines.append(f"System: {content}")
        elif role == "user":
            lines.append(f"User: {content}")
        elif role == "assistant":
            lines.append(f"Assistant: {content}")
        else:
            lines.append(content)
    return "\n".join(lines)


class OllamaCompletionClient:
    """Blocking Ollama /api/generate calls, run off the event loop."""

    def __init__(
        self,
        api_url: str = "http://localhost:11434",
        model: str = "llama2",
        timeout_s: float = 60,
        max_tokens: int = 2048,
        temperature: float = 0.7,
        max_retries: int = 3,
        backoff_s: float = 0.75,
        show_progress: bool = False,
    ):
        self.api_url = api_url.rstrip("/")
        self.model = model
        self.timeout_s = timeout_s
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.max_retries = max(1, int(max_retries))
        self.backoff_s = backoff_s
        self.show_progress = show_progress

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "OllamaCompletionClient":
        o = (cfg.get("ai", {}) or {}).get("ollama", {}) or {}
        return cls(
            api_url=o.get("api_url", "http://localhost:11434"),
            model=o.get("model", "llama2"),
            timeout_s=float(o.get("timeout_s", 60)),
            max_tokens=int(o.get("max_tokens", 2048)),
            temperature=float(o.get("temperature", 0.7)),
            max_retries=int(o.get("max_retries", 3)),
            backoff_s=float(o.get("backoff_s", 0.75)),
            show_progress=bool(o.get("show_progress", False)),
        )

    def _post_generate(self, payload: Dict[str, Any]) -> str:
        url = f"{self.api_url}/api/generate"
        last_err = "unknown error"
        bar = None
        if self.show_progress:
            from tqdm import tqdm
            bar = tqdm(total=self.max_retries, desc="Completion", unit="try", leave=False)
        try:
            for attempt in range(1, self.max_retries + 1):
                try:
                    r = requests.post(url, json=payload, timeout=self.timeout_s)
                    if r.status_code == 200:
                        try:
                            data = r.json()
                        except ValueError as e:
                            raise CompletionError(f"Invalid JSON from completion endpoint: {e}")
                        text = data.get("response") if isinstance(data, dict) else None
                        if not isinstance(text, str):
                            raise CompletionError("Completion endpoint returned no text")
                        return text
                    last_err = f"HTTP {r.status_code}: {(r.text or '')[:200]}"
                    if r.status_code < 500 and r.status_code != 429:
                        break
                except requests.RequestException as e:
                    last_err = f"Network error: {e}"
                if bar:
                    bar.update(1)
                if attempt < self.max_retries:
                    time.sleep(self.backoff_s * (2 ** (attempt - 1)))
        finally:
            if bar:
                bar.close()
        raise CompletionError(f"Failed to generate response: {last_err}")

    async def complete(
        self,
        system_prompt: str,
        messages: List[Message],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        payload = {
            "model": self.model,
            "prompt": _to_prompt(system_prompt, messages),
            "stream": False,
            "options": {
                "temperature": self.temperature if temperature is None else temperature,
                "num_predict": self.max_tokens if max_tokens is None else max_tokens,
            },
        }
        logger.debug("Completion request to %s, model %s", self.api_url, self.model)
        return await asyncio.to_thread(self._post_generate, payload)

    async def list_models(self) -> List[str]:
        def _get() -> List[str]:
            try:
                r = requests.get(f"{self.api_url}/api/tags", timeout=self.timeout_s)
                r.raise_for_status()
                data = r.json()
            except (requests.RequestException, ValueError) as e:
                raise CompletionError(f"Failed to fetch models: {e}")
            return [m.get("name", "") for m in data.get("models", []) if isinstance(m, dict)]

        return await asyncio.to_thread(_get)


def create_completion_client(cfg: Dict[str, Any]) -> CompletionClient:
    provider = str((cfg.get("ai", {}) or {}).get("provider", "ollama")).lower()
    if provider == "ollama":
        return OllamaCompletionClient.from_config(cfg)
    raise ValueError(f"Unsupported AI provider: {provider}")
