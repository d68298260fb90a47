"""
Per-pass LLM parameters for the extraction passes.

Each pass (skeleton, population_detail, validation) maps to a task type in
llm_config.yaml. Provider and model overrides refine the task settings and
LLM_* environment variables replace the defaults.

Usage:
    from extraction.llm_task_config import get_llm_task_config

    budget = get_llm_task_config("population_detail", model="claude-sonnet-4").max_tokens
"""

import os
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Any, Optional

import yaml

from providers import LLMConfig, LLMProviderFactory

logger = logging.getLogger(__name__)

CONFIG_FILENAMES = ("llm_config.yaml", "llm_config.yml", "llm_config.json")

# env var -> (defaults key, converter)
ENV_OVERRIDES = {
    "LLM_TEMPERATURE": ("temperature", float),
    "LLM_TOP_P": ("top_p", float),
    "LLM_TOP_K": ("top_k", int),
    "LLM_MAX_TOKENS": ("max_tokens", int),
}


@dataclass
class TaskConfig:
    """Sampling parameters and token budget for one pass."""
    temperature: Optional[float] = 0.0
    top_p: Optional[float] = 0.95
    top_k: Optional[int] = None
    max_tokens: Optional[int] = 8000
    json_mode: bool = True
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "temperature": self.temperature,
            "top_p": self.top_p,
            "top_k": self.top_k,
            "max_tokens": self.max_tokens,
            "json_mode": self.json_mode,
        }


def detect_provider(model_name: Optional[str]) -> Optional[str]:
    """Provider key ('openai', 'gemini', 'claude') for a model name, or None."""
    if not model_name:
        return None
    return LLMProviderFactory.detect_provider(model_name)


def default_config() -> Dict[str, Any]:
    """Configuration used when no file is found."""
    return {
        "task_types": {
            "structure": {
                "temperature": 0.0,
                "top_p": 0.95,
                "top_k": None,
                "max_tokens": 4000,
                "json_mode": True,
                "description": "Measure metadata and population outline",
            },
            "detail": {
                "temperature": 0.0,
                "top_p": 0.95,
                "top_k": None,
                "max_tokens": 8000,
                "json_mode": True,
                "description": "Criteria trees and value sets for one population",
            },
            "review": {
                "temperature": 0.1,
                "top_p": 0.9,
                "top_k": 40,
                "max_tokens": 4000,
                "json_mode": True,
                "description": "Cross-reference of extraction against the source",
            },
        },
        "pass_mapping": {
            "skeleton": "structure",
            "population_detail": "detail",
            "validation": "review",
        },
        "defaults": {
            "task_type": "detail",
            "temperature": 0.0,
            "top_p": 0.95,
            "top_k": None,
            "max_tokens": 8000,
            "json_mode": True,
        },
        "provider_overrides": {
            "openai": {
                "review": {"top_p": 0.85, "top_k": None},
            },
            "claude": {
                "detail": {"max_tokens": 12000},
            },
        },
        "model_overrides": {},
    }


class LLMTaskConfigManager:
    """Process-wide holder of the loaded pass configuration."""

    _instance: Optional["LLMTaskConfigManager"] = None
    _config: Optional[Dict[str, Any]] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._config is None:
            self._load_config()

    def _load_config(self) -> None:
        path = self._find_config_file()
        if path is None:
            logger.debug("No LLM config file found, using built-in pass settings")
            self._config = default_config()
        else:
            logger.debug(f"Loaded LLM task config from {path}")
            self._config = self._parse_config_file(path)
        self._apply_env_overrides()

    def _find_config_file(self) -> Optional[Path]:
        """LLM_CONFIG_PATH when it exists, otherwise the project-root file."""
        env_path = os.environ.get("LLM_CONFIG_PATH")
        if env_path and Path(env_path).exists():
            return Path(env_path)
        if env_path:
            logger.warning(f"LLM_CONFIG_PATH={env_path} does not exist; searching project root")

        project_root = Path(__file__).parent.parent
        for name in CONFIG_FILENAMES:
            if (project_root / name).exists():
                return project_root / name
        return None

    @staticmethod
    def _parse_config_file(path: Path) -> Dict[str, Any]:
        content = path.read_text(encoding="utf-8")
        if path.suffix in (".yaml", ".yml"):
            return yaml.safe_load(content) or {}
        return json.loads(content)

    def _apply_env_overrides(self) -> None:
        defaults = self._config.setdefault("defaults", {})
        for env_var, (key, convert) in ENV_OVERRIDES.items():
            raw = os.environ.get(env_var)
            if raw is None:
                continue
            try:
                defaults[key] = convert(raw)
            except ValueError:
                logger.warning(f"Ignoring {env_var}={raw!r}: not a valid {convert.__name__}")

    def get_config_for_pass(self, pass_name: str, model: Optional[str] = None) -> TaskConfig:
        """
        Resolve parameters for one extraction pass.

        Task-type settings fill in over the defaults; provider overrides and
        then model overrides are applied on top when a model is given.
        """
        task_type = self.get_task_type(pass_name)
        defaults = self._config.get("defaults", {})
        params = {**defaults, **self._config.get("task_types", {}).get(task_type, {})}

        config = TaskConfig()
        _apply_overrides(config, params)
        if model:
            provider = detect_provider(model)
            if provider:
                _apply_overrides(config, self._config.get("provider_overrides", {}).get(provider, {}).get(task_type, {}))
            _apply_overrides(config, self._config.get("model_overrides", {}).get(model, {}))
        return config

    def get_task_type(self, pass_name: str) -> str:
        default_task = self._config.get("defaults", {}).get("task_type", "detail")
        return self._config.get("pass_mapping", {}).get(pass_name, default_task)

    def reload(self) -> None:
        self._config = None
        self._load_config()


def _apply_overrides(config: TaskConfig, overrides: Dict[str, Any]) -> None:
    for key, value in overrides.items():
        if key in TaskConfig.__dataclass_fields__:
            setattr(config, key, value)


_manager: Optional[LLMTaskConfigManager] = None


def _get_manager() -> LLMTaskConfigManager:
    global _manager
    if _manager is None:
        _manager = LLMTaskConfigManager()
    return _manager


def get_llm_task_config(pass_name: str, model: Optional[str] = None) -> TaskConfig:
    return _get_manager().get_config_for_pass(pass_name, model)


def get_task_type(pass_name: str) -> str:
    """Get the task type name for a pass."""
    return _get_manager().get_task_type(pass_name)


def to_llm_config(task_config: TaskConfig) -> LLMConfig:
    """Convert TaskConfig to LLMConfig for use with provider.generate()."""
    return LLMConfig(
        temperature=task_config.temperature if task_config.temperature is not None else 0.0,
        top_p=task_config.top_p,
        top_k=task_config.top_k,
        max_tokens=task_config.max_tokens,
        json_mode=task_config.json_mode,
    )


def reload_config() -> None:
    _get_manager().reload()
