# config_store.py
import json
import logging
import os
from dataclasses import dataclass, field, replace
from typing import Dict, Optional

from backends import BackendConfig, BackendKind
from backends_factory import DESCRIPTORS
from storage import KeyValueStorage

log = logging.getLogger(__name__)

CONFIG_KEY = "ai_backend_config"
CONFIG_FIELDS = ("url", "token", "model")
CONFIGURABLE_KINDS = tuple(k for k in BackendKind if k is not BackendKind.NONE)

# Only variables that are actually set override stored values
ENV_OVERRIDES = {
    "OPENCLAW_URL": (BackendKind.OPENCLAW, "url"),
    "OPENCLAW_TOKEN": (BackendKind.OPENCLAW, "token"),
    "OPENCLAW_MODEL": (BackendKind.OPENCLAW, "model"),
    "OPENAI_API_KEY": (BackendKind.OPENAI, "token"),
    "OPENAI_MODEL": (BackendKind.OPENAI, "model"),
    "OLLAMA_BASE_URL": (BackendKind.OLLAMA, "url"),
    "OLLAMA_MODEL": (BackendKind.OLLAMA, "model"),
    "ANTHROPIC_API_KEY": (BackendKind.ANTHROPIC, "token"),
    "ANTHROPIC_MODEL": (BackendKind.ANTHROPIC, "model"),
    "CUSTOM_URL": (BackendKind.CUSTOM, "url"),
    "CUSTOM_TOKEN": (BackendKind.CUSTOM, "token"),
}


def default_configs() -> Dict[BackendKind, BackendConfig]:
    return {k: BackendConfig(model=DESCRIPTORS[k].default_model) for k in CONFIGURABLE_KINDS}


@dataclass
class BackendSettings:
    selected_backend: BackendKind = BackendKind.NONE
    auto_connect: bool = True
    configs: Dict[BackendKind, BackendConfig] = field(default_factory=default_configs)

    def config_for(self, kind: BackendKind) -> BackendConfig:
        return self.configs.get(BackendKind(kind), BackendConfig())

    def to_document(self) -> Dict[str, object]:
        """Flat key/value form: {"selected_backend": ..., "ollama_url": ..., ...}"""
        doc: Dict[str, object] = {
            "selected_backend": self.selected_backend.value,
            "auto_connect": self.auto_connect,
        }
        for kind in CONFIGURABLE_KINDS:
            cfg = self.config_for(kind)
            for name in CONFIG_FIELDS:
                doc[f"{kind.value}_{name}"] = getattr(cfg, name)
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, object]) -> "BackendSettings":
        if not isinstance(doc, dict):
            raise ValueError("settings document must be an object")
        defaults = cls()
        auto_connect = doc.get("auto_connect", defaults.auto_connect)
        if not isinstance(auto_connect, bool):
            raise ValueError("auto_connect must be a boolean")
        configs = {}
        for kind in CONFIGURABLE_KINDS:
            values = {}
            for name in CONFIG_FIELDS:
                value = doc.get(f"{kind.value}_{name}", getattr(defaults.configs[kind], name))
                if not isinstance(value, str):
                    raise ValueError(f"{kind.value}_{name} must be a string")
                values[name] = value
            configs[kind] = BackendConfig(**values)
        return cls(
            selected_backend=BackendKind(doc.get("selected_backend", BackendKind.NONE.value)),
            auto_connect=auto_connect,
            configs=configs,
        )


@dataclass
class LoadResult:
    settings: BackendSettings
    # True when something was stored but could not be decoded
    corrupted: bool = False


class ConfigStore:
    def __init__(self, storage: KeyValueStorage, key: str = CONFIG_KEY):
        self.storage = storage
        self.key = key

    def load(self) -> LoadResult:
        try:
            raw = self.storage.load(self.key)
        except (OSError, ValueError) as e:
            log.warning("Could not read backend settings (%s); using defaults", e)
            return LoadResult(BackendSettings(), corrupted=True)
        if raw is None:
            return LoadResult(BackendSettings())
        try:
            return LoadResult(BackendSettings.from_document(json.loads(raw)))
        except (ValueError, TypeError) as e:
            log.warning("Stored backend settings are corrupt (%s); using defaults", e)
            return LoadResult(BackendSettings(), corrupted=True)

    def save(self, settings: BackendSettings) -> None:
        data = json.dumps(settings.to_document(), indent=2, sort_keys=True).encode("utf-8")
        try:
            self.storage.save(self.key, data)
        except (OSError, ValueError) as e:
            log.error("Could not save backend settings: %s", e)


def settings_from_env(settings: BackendSettings, environ: Optional[Dict[str, str]] = None) -> BackendSettings:
    """Overlay environment variables (e.g. from a .env file) on stored settings."""
    env = os.environ if environ is None else environ
    configs = dict(settings.configs)
    for var, (kind, name) in ENV_OVERRIDES.items():
        value = env.get(var)
        if value:
            configs[kind] = replace(configs.get(kind, BackendConfig()), **{name: value})
    selected = settings.selected_backend
    if env.get("KRAB_BACKEND"):
        try:
            selected = BackendKind(env["KRAB_BACKEND"].lower())
        except ValueError:
            log.warning("Ignoring unknown KRAB_BACKEND=%r; keeping %s",
                        env["KRAB_BACKEND"], selected.value)
    return replace(settings, selected_backend=selected, configs=configs)
