import copy
import os
from pathlib import Path
from typing import Any, Dict, List

import yaml


DEFAULT_BYPASS_COMMANDS: List[str] = [
    "ls", "cd", "pwd", "clear", "history", "echo", "cat", "mkdir",
    "touch", "cp", "mv", "date", "whoami", "df", "du", "free",
    "ps", "top", "uname", "hostname", "ifconfig", "ip",
]

DEFAULT_DENY_FRAGMENTS: List[str] = ["sudo", "rm", ">", ">>", "|", ";", "&&", "||"]

BYPASS_MODES = ("none", "common", "all")

DEFAULT_CONFIG: Dict[str, Any] = {
    "command_analysis": {
        "bypass_mode": "common",
        "bypass_commands": list(DEFAULT_BYPASS_COMMANDS),
        "deny_fragments": list(DEFAULT_DENY_FRAGMENTS),
        "deny_match": "substring",  # or "token"
        "temperature": 0.3,
        "max_tokens": 4096,
    },
    "ai": {
        "provider": "ollama",
        "ollama": {
            "api_url": "http://localhost:11434",
            "model": "llama2",
            "timeout_s": 60,
            "max_tokens": 2048,
            "temperature": 0.7,
            "max_retries": 3,
            "backoff_s": 0.75,
            "show_progress": False,
        },
    },
    "registry": {
        "score_timeout_s": 5.0,
        "process_timeout_s": 120.0,
        "init_retry_s": 60.0,
    },
    "routing": {"enabled": False},
    "remote_services": [
        {
            "id": "weather-mcp-service",
            "name": "Weather Service",
            "description": "Weather lookups served by a remote capability server",
            "url": "http://localhost:5001",
            "api_key": "",
            "timeout_s": 10,
            "priority": 5,
            "headers": {"X-Service-Type": "weather"},
            "enabled": False,
        },
        {
            "id": "coinmarket-mcp-service",
            "name": "CoinMarket Data Service",
            "description": "Cryptocurrency price quotes and market information",
            "url": "http://localhost:5002",
            "api_key": "",
            "timeout_s": 10,
            "priority": 5,
            "headers": {"X-Service-Type": "coinmarket", "Accept-Language": "en-US,zh-CN"},
            "enabled": False,
        },
    ],
    "logging": {"level": "INFO", "path": "logs/opsrouter.log", "max_bytes": 2_000_000, "backups": 3, "stdout": False},
}


def _load_env_file(path: Path) -> None:
    """Minimal KEY=VALUE loader; variables already in the environment win."""
    if not path.exists():
        return
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except Exception:
        return
    for line in lines:
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _deep_merge(base: Dict[str, Any], loaded: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for key, value in loaded.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = value
    return out


def _env_float(name: str, scale: float = 1.0):
    raw = os.environ.get(name, "").strip()
    if not raw:
        return None
    try:
        return float(raw) * scale
    except ValueError:
        return None


def normalize_bypass_mode(mode: Any) -> str:
    mode = str(mode or "").strip().lower()
    return mode if mode in BYPASS_MODES else "common"


def _set_remote(cfg: Dict[str, Any], service_id: str, url_env: str, key_env: str) -> None:
    url = os.environ.get(url_env, "").strip()
    key = os.environ.get(key_env, "").strip()
    for svc in cfg.get("remote_services", []) or []:
        if svc.get("id") != service_id:
            continue
        if url:
            svc["url"] = url
            svc["enabled"] = True
        if key:
            svc["api_key"] = key


def apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    ca = cfg.setdefault("command_analysis", {})
    if os.environ.get("COMMAND_BYPASS_MODE"):
        ca["bypass_mode"] = os.environ["COMMAND_BYPASS_MODE"]
    ca["bypass_mode"] = normalize_bypass_mode(ca.get("bypass_mode"))
    if os.environ.get("BYPASS_COMMANDS"):
        ca["bypass_commands"] = [c.strip() for c in os.environ["BYPASS_COMMANDS"].split(",") if c.strip()]

    ai = cfg.setdefault("ai", {})
    if os.environ.get("AI_PROVIDER"):
        ai["provider"] = os.environ["AI_PROVIDER"]
    ollama = ai.setdefault("ollama", {})
    if os.environ.get("OLLAMA_API_URL"):
        ollama["api_url"] = os.environ["OLLAMA_API_URL"]
    if os.environ.get("OLLAMA_DEFAULT_MODEL"):
        ollama["model"] = os.environ["OLLAMA_DEFAULT_MODEL"]
    timeout_s = _env_float("OLLAMA_TIMEOUT", scale=0.001)
    if timeout_s is not None:
        ollama["timeout_s"] = timeout_s
    max_tokens = _env_float("OLLAMA_MAX_TOKENS")
    if max_tokens is not None:
        ollama["max_tokens"] = int(max_tokens)
    temperature = _env_float("OLLAMA_TEMPERATURE")
    if temperature is not None:
        ollama["temperature"] = temperature

    _set_remote(cfg, "weather-mcp-service", "WEATHER_MCP_URL", "WEATHER_MCP_API_KEY")
    _set_remote(cfg, "coinmarket-mcp-service", "COINMARKET_MCP_URL", "COINMARKET_MCP_API_KEY")

    if os.environ.get("LOG_LEVEL"):
        cfg.setdefault("logging", {})["level"] = os.environ["LOG_LEVEL"].upper()
    return cfg


def load_config(path: Path = Path("config/local.yaml"), env_file: Path = Path(".env")) -> Dict[str, Any]:
    _load_env_file(env_file)
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    if path.exists():
        try:
            with path.open("r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
            if isinstance(loaded, dict):
                cfg = _deep_merge(cfg, loaded)
        except Exception:
            cfg = copy.deepcopy(DEFAULT_CONFIG)
    return apply_env_overrides(cfg)


def ensure_dirs(cfg: Dict[str, Any]) -> None:
    log_path = (cfg.get("logging") or {}).get("path")
    if log_path:
        Path(log_path).parent.mkdir(parents=True, exist_ok=True)
