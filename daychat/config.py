from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from .prompts import DEFAULT_SYSTEM_PROMPT

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".daychat" / "config.json"

DEFAULT_MODELS = {
    "openai": "gpt-4o",
    "gemini": "gemini-1.5-flash",
    "ollama": "llama3.2:3b",
    "demo": "demo",
}

PROVIDERS = tuple(DEFAULT_MODELS)

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


class Settings(BaseModel):
    """Process configuration. Built once at startup and handed to whoever needs it."""

    model_config = ConfigDict(frozen=True)

    provider: str = Field(default="openai", description="openai | gemini | ollama | demo")
    model: str = Field(default="", description="Model id; empty means the provider default")
    api_key: str = ""
    base_url: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 1000
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    history_dir: Path = DEFAULT_CONFIG_PATH.parent / "history"
    strict_reads: bool = False

    host: str = "127.0.0.1"
    port: int = 3478
    status_poll_timeout: float = 0.1

    fallback_reply: Optional[str] = None
    persist_fallback: bool = False

    ollama_path: str = "ollama"
    log_level: str = "INFO"

    def resolved_model(self) -> str:
        return self.model or DEFAULT_MODELS.get(self.provider, "")

    def public_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        if data.get("api_key"):
            data["api_key"] = data["api_key"][:4] + "..."
        return data


def _truthy(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def _checked(settings: Settings) -> Settings:
    if settings.provider not in PROVIDERS:
        raise ValueError(f"Unknown provider {settings.provider!r}; expected one of {', '.join(PROVIDERS)}")
    return settings


def config_file_path(config_path: Optional[Path] = None, env: Optional[Mapping[str, str]] = None) -> Path:
    env = os.environ if env is None else env
    return Path(config_path or env.get("DAYCHAT_CONFIG") or DEFAULT_CONFIG_PATH).expanduser()


def read_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable config file %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring config file %s: top level is not an object", path)
        return {}
    return data


def _from_env(env: Mapping[str, str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}

    if env.get("DAYCHAT_PROVIDER"):
        out["provider"] = env["DAYCHAT_PROVIDER"].strip().lower()
    elif _truthy(env.get("DEMO_MOCK")):
        out["provider"] = "demo"
    elif _truthy(env.get("LOCAL_ONLY")):
        out["provider"] = "ollama"

    model = env.get("DAYCHAT_MODEL") or env.get("OPENAI_MODEL") or env.get("GEMINI_MODEL")
    if model:
        out["model"] = model.strip()

    api_key = env.get("DAYCHAT_API_KEY") or env.get("OPENAI_API_KEY") or env.get("GEMINI_API_KEY")
    if api_key:
        out["api_key"] = api_key.strip()
    if env.get("OPENAI_BASE_URL"):
        out["base_url"] = env["OPENAI_BASE_URL"].strip()

    simple = {
        "DAYCHAT_TEMPERATURE": ("temperature", float),
        "DAYCHAT_MAX_TOKENS": ("max_tokens", int),
        "DAYCHAT_SYSTEM_PROMPT": ("system_prompt", str),
        "DAYCHAT_HISTORY_DIR": ("history_dir", Path),
        "DAYCHAT_HOST": ("host", str),
        "PORT": ("port", int),
        "DAYCHAT_PORT": ("port", int),
        "DAYCHAT_STATUS_TIMEOUT": ("status_poll_timeout", float),
        "DAYCHAT_FALLBACK_REPLY": ("fallback_reply", str),
        "OLLAMA_PATH": ("ollama_path", str),
        "LOG_LEVEL": ("log_level", str),
    }
    for key, (field, cast) in simple.items():
        if env.get(key):
            out[field] = cast(env[key])

    for key, field in (("DAYCHAT_STRICT_READS", "strict_reads"),
                       ("DAYCHAT_PERSIST_FALLBACK", "persist_fallback")):
        if key in env:
            out[field] = _truthy(env[key])
    return out


def load_settings(
    config_path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    use_dotenv: bool = True,
) -> Settings:
    """Defaults, then the JSON config file, then environment variables."""
    if env is None:
        if use_dotenv:
            load_dotenv()
        env = os.environ

    path = config_file_path(config_path, env)
    values: Dict[str, Any] = {"history_dir": path.parent / "history"}
    values.update(read_config_file(path))
    values.update(_from_env(env))

    return _checked(Settings(**values))


def set_config_value(path: Path, key: str, raw: str) -> Any:
    """Store ``key`` in the JSON config file and return the value written.

    ``raw`` is read as JSON when it parses (numbers, booleans, null) and kept
    as a plain string otherwise. The file is only written if the result is a
    valid configuration; anything else raises ``ValueError``.
    """
    if key not in Settings.model_fields:
        raise ValueError(f"Unknown config key {key!r}")
    try:
        parsed = json.loads(raw)
    except ValueError:
        parsed = raw

    data = read_config_file(path)
    try:
        _checked(Settings(**{**data, key: parsed}))
        value = parsed
    except ValueError:
        if parsed is raw:
            raise
        # `set model 4` means the string "4"
        _checked(Settings(**{**data, key: raw}))
        value = raw
    data[key] = value

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    logger.info("Config %s updated: %s", path, key)
    return data[key]


def reset_config_file(path: Path) -> bool:
    """Drop the config file so every setting falls back to its default."""
    if not path.exists():
        return False
    path.unlink()
    logger.info("Config %s removed", path)
    return True


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
