import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import yaml


_TRUTHY = ("1", "true", "yes")


def _load_file(path: Optional[str]) -> Dict[str, Any]:
    """Read the optional YAML config file; keys are the lower-cased env names."""
    if not path or not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        return {}
    return {str(k).lower(): v for k, v in data.items()}


class _Source:
    def __init__(self, environ: Mapping[str, str], file_values: Dict[str, Any]) -> None:
        self.environ = environ
        self.file_values = file_values

    def raw(self, name: str, default: Any = None) -> Any:
        if name in self.environ:
            return self.environ[name]
        return self.file_values.get(name.lower(), default)

    def get_str(self, name: str, default: str) -> str:
        val = self.raw(name, default)
        return default if val is None else str(val)

    def get_opt(self, name: str) -> Optional[str]:
        val = self.raw(name)
        if val is None or str(val).strip() == "":
            return None
        return str(val).strip()

    def get_bool(self, name: str, default: bool) -> bool:
        val = self.raw(name)
        if val is None:
            return default
        if isinstance(val, bool):
            return val
        return str(val).lower() in _TRUTHY

    def get_int(self, name: str, default: int, minimum: int = 0) -> int:
        try:
            return max(minimum, int(self.raw(name, default)))
        except (TypeError, ValueError):
            return default

    def get_float(self, name: str, default: float, minimum: float = 0.0) -> float:
        try:
            return max(minimum, float(self.raw(name, default)))
        except (TypeError, ValueError):
            return default

    def get_list(self, name: str, default: List[str]) -> List[str]:
        val = self.raw(name)
        if val is None:
            return list(default)
        if isinstance(val, str):
            try:
                val = json.loads(val)
            except ValueError:
                val = [p.strip() for p in val.split(",")]
        if not isinstance(val, list):
            return list(default)
        items = [str(v).strip() for v in val if str(v).strip()]
        return items or list(default)


@dataclass(frozen=True)
class Settings:
    # Reasoning ("thinking") provider
    reasoning_base_url: str = "https://api-sh.dangbei.net"
    reasoning_api_key: Optional[str] = None
    reasoning_user_agent: str = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7)"
    reasoning_origin: str = "https://ai.dangbei.com"
    reasoning_bootstrap_path: str = "/ai-search/conversationApi/v1/create"
    reasoning_chat_path: str = "/ai-search/chatApi/v1/chat"
    reasoning_timeout: float = 30.0
    # Wall-clock budget for the thinking stage of a hybrid session
    reasoning_stage_timeout: float = 15.0
    reasoning_bootstrap_retries: int = 2
    # Answering provider (OpenAI-compatible)
    answer_base_url: str = "https://api.anthropic.com"
    answer_api_key: Optional[str] = None
    answer_models: List[str] = field(
        default_factory=lambda: ["claude-3-7-sonnet-latest", "claude-3-5-sonnet-latest"]
    )
    answer_timeout: float = 120.0
    # Routing / composition
    hybrid_model_id: str = "deepclaude"
    reasoning_model_id: str = "deepseek-r1"
    phase_pause_seconds: float = 0.5
    default_max_tokens: int = 8192
    default_temperature: float = 1.0
    http2: bool = True
    debug: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        environ = os.environ if environ is None else environ
        src = _Source(environ, _load_file(environ.get("GATEWAY_CONFIG")))
        d = cls()
        return cls(
            reasoning_base_url=src.get_str("REASONING_BASE_URL", d.reasoning_base_url).rstrip("/"),
            reasoning_api_key=src.get_opt("REASONING_API_KEY"),
            reasoning_user_agent=src.get_str("REASONING_USER_AGENT", d.reasoning_user_agent),
            reasoning_origin=src.get_str("REASONING_ORIGIN", d.reasoning_origin),
            reasoning_bootstrap_path=src.get_str("REASONING_BOOTSTRAP_PATH", d.reasoning_bootstrap_path),
            reasoning_chat_path=src.get_str("REASONING_CHAT_PATH", d.reasoning_chat_path),
            reasoning_timeout=src.get_float("REASONING_TIMEOUT", d.reasoning_timeout, minimum=0.1),
            reasoning_stage_timeout=src.get_float("REASONING_STAGE_TIMEOUT", d.reasoning_stage_timeout, minimum=0.1),
            reasoning_bootstrap_retries=src.get_int("REASONING_BOOTSTRAP_RETRIES", d.reasoning_bootstrap_retries),
            answer_base_url=src.get_str("ANSWER_BASE_URL", d.answer_base_url).rstrip("/"),
            answer_api_key=src.get_opt("ANSWER_API_KEY"),
            answer_models=src.get_list("ANSWER_MODELS", d.answer_models),
            answer_timeout=src.get_float("ANSWER_TIMEOUT", d.answer_timeout, minimum=0.1),
            hybrid_model_id=src.get_str("HYBRID_MODEL_ID", d.hybrid_model_id).lower(),
            reasoning_model_id=src.get_str("REASONING_MODEL_ID", d.reasoning_model_id).lower(),
            phase_pause_seconds=src.get_float("PHASE_PAUSE_SECONDS", d.phase_pause_seconds),
            default_max_tokens=src.get_int("DEFAULT_MAX_TOKENS", d.default_max_tokens, minimum=1),
            default_temperature=src.get_float("DEFAULT_TEMPERATURE", d.default_temperature),
            http2=src.get_bool("PROXY_HTTP2", d.http2),
            debug=src.get_bool("DEBUG_PROXY", d.debug),
        )

    @property
    def default_answer_model(self) -> str:
        return self.answer_models[0]

    def map_answer_model(self, requested: str) -> str:
        """Known answer models pass through; anything else maps to the default one."""
        for m in self.answer_models:
            if m.lower() == (requested or "").lower():
                return m
        return self.default_answer_model


settings = Settings.from_env()
