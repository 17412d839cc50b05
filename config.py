#!/usr/bin/env python3
"""
Configuration management for termpilot.

Two layers:
- the application config (JSON, deep-merged over DEFAULT_CONFIG), and
- the model config: a markdown-ish file with one ``## <StageName>`` section per
  pipeline stage and ``Key: Value`` lines underneath.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

GEMINI_OPENAI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"

DEFAULT_CONFIG = {
    "llm": {
        "model": "gemini-2.0-flash",
        "base_url": GEMINI_OPENAI_BASE_URL,
        "temperature": 1.0,
        "request_timeout_seconds": 120.0,
    },
    "pipeline": {
        "max_verification_retries": 3,
        "stage_timeout_seconds": 180.0,
        "model_config_file": "~/.config/termpilot/models.md",
    },
    "session": {
        "default_environment": "isolated",
        "chroot_dir": "/data/local/debian",
        "boot_script": "./boot-debian.sh",
        "boot_on_start": True,
        "initial_directory": "/home",
        "command_timeout_seconds": 600.0,
        "max_workers": 8,
        "su_binary": "su",
    },
    "paths": {
        "config_dir": "~/.config/termpilot",
        "knowledge_base_dir": "~/.config/termpilot/docs",
        "command_log": "~/.config/termpilot/command_log.jsonl",
    },
    "security": {
        "use_root_for_files": True,
        "prefer_keyring": True,
    },
}


@dataclass
class LLMConfig:
    model: str = "gemini-2.0-flash"
    base_url: Optional[str] = GEMINI_OPENAI_BASE_URL
    temperature: float = 1.0
    request_timeout_seconds: float = 120.0


@dataclass
class PipelineConfig:
    max_verification_retries: int = 3
    stage_timeout_seconds: float = 180.0
    model_config_file: str = "~/.config/termpilot/models.md"


@dataclass
class SessionConfig:
    default_environment: str = "isolated"
    chroot_dir: str = "/data/local/debian"
    boot_script: str = "./boot-debian.sh"
    boot_on_start: bool = True
    initial_directory: str = "/home"
    command_timeout_seconds: float = 600.0
    max_workers: int = 8
    su_binary: str = "su"


@dataclass
class PathsConfig:
    config_dir: str = "~/.config/termpilot"
    knowledge_base_dir: str = "~/.config/termpilot/docs"
    command_log: str = "~/.config/termpilot/command_log.jsonl"


@dataclass
class SecurityConfig:
    use_root_for_files: bool = True
    prefer_keyring: bool = True


@dataclass
class Config:
    llm: LLMConfig
    pipeline: PipelineConfig
    session: SessionConfig
    paths: PathsConfig
    security: SecurityConfig

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Config:
        return cls(
            llm=LLMConfig(**data.get("llm", {})),
            pipeline=PipelineConfig(**data.get("pipeline", {})),
            session=SessionConfig(**data.get("session", {})),
            paths=PathsConfig(**data.get("paths", {})),
            security=SecurityConfig(**data.get("security", {})),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "llm": asdict(self.llm),
            "pipeline": asdict(self.pipeline),
            "session": asdict(self.session),
            "paths": asdict(self.paths),
            "security": asdict(self.security),
        }


class ConfigManager:
    def __init__(self, config_file: Optional[Path] = None):
        if config_file is None:
            config_dir = Path(os.path.expanduser(DEFAULT_CONFIG["paths"]["config_dir"]))
            config_file = config_dir / "config.json"
        self.config_file = Path(config_file)
        self._config: Optional[Config] = None

    @property
    def config(self) -> Config:
        if self._config is None:
            self._config = self._load_config()
        return self._config

    def _load_config(self) -> Config:
        if self.config_file.exists():
            try:
                with open(self.config_file, "r", encoding="utf-8") as f:
                    data = json.load(f)
                merged = self._deep_merge(DEFAULT_CONFIG, data)
                return Config.from_dict(merged)
            except Exception as e:
                print(f"Warning: Failed to load config {self.config_file}: {e}")
        return Config.from_dict(DEFAULT_CONFIG)

    def save_config(self) -> None:
        try:
            self.config_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_file, "w", encoding="utf-8") as f:
                json.dump(self.config.to_dict(), f, indent=2)
            try:
                os.chmod(self.config_file, 0o600)
            except OSError:
                pass
        except Exception as e:
            print(f"Error saving config: {e}")

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        result = base.copy()
        for key, value in update.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value
        return result


# Global singleton
_config_manager: Optional[ConfigManager] = None


def get_config_manager() -> ConfigManager:
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager


def get_config() -> Config:
    return get_config_manager().config


# ---- Model config (## Stage sections) ---------------------------------------

@dataclass
class StageSettings:
    api_key: str = ""
    model_id: str = ""
    context_files: List[str] = field(default_factory=list)
    import_context: bool = True


def parse_stage_config(text: str) -> Dict[str, Dict[str, str]]:
    """Split the model config into ``{section: {key: value}}``.

    Lines before the first ``## `` header and lines without a colon are ignored.
    Only the first colon separates key from value.
    """
    sections: Dict[str, Dict[str, str]] = {}
    current: Optional[str] = None
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith("## "):
            current = stripped[3:].strip()
            sections[current] = {}
            logger.debug("Parsing model config: %s", current)
        elif current is not None and ":" in stripped:
            key, value = stripped.split(":", 1)
            sections[current][key.strip()] = value.strip()
    return sections


def stage_settings_from_section(section: Dict[str, str], base_dir: Optional[str] = None) -> StageSettings:
    settings = StageSettings(
        api_key=section.get("APIKey", ""),
        model_id=section.get("ModelID", ""),
    )
    if "Context" in section:
        paths = [p.strip() for p in section["Context"].split(",") if p.strip()]
        settings.context_files = [
            p if os.path.isabs(p) or base_dir is None else os.path.join(base_dir, p)
            for p in paths
        ]
    # Defaults to true; only the literal "false" turns it off
    settings.import_context = section.get("ImportContext", "").strip().lower() != "false"
    return settings


def load_stage_settings(path: str, files) -> Dict[str, StageSettings]:
    """Read the model config through *files* (a file accessor) and parse every section."""
    path = os.path.expanduser(path)
    text = files.read(path)
    if not text.strip():
        logger.error("Failed to read model config (empty or error): %s", path)
        return {}
    base_dir = os.path.dirname(path) or None
    return {
        name: stage_settings_from_section(section, base_dir)
        for name, section in parse_stage_config(text).items()
    }
