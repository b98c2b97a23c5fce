# backends_factory.py
from dataclasses import dataclass
from typing import Dict, List, Tuple

from backends import BackendConfig, BackendKind, BaseBackend
from backends_openai import OpenAIBackend
from backends_openclaw import OpenClawBackend
from backends_ollama import OllamaBackend
from backends_anthropic import AnthropicBackend
from backends_custom import CustomBackend


@dataclass(frozen=True)
class BackendDescriptor:
    kind: BackendKind
    display_name: str
    icon: str
    description: str
    required_fields: Tuple[str, ...] = ()
    optional_fields: Tuple[str, ...] = ()
    default_url: str = ""
    default_model: str = ""


DESCRIPTORS: Dict[BackendKind, BackendDescriptor] = {
    BackendKind.NONE: BackendDescriptor(
        BackendKind.NONE, "Not Configured", "xmark.circle",
        "No AI backend configured",
    ),
    BackendKind.OPENCLAW: BackendDescriptor(
        BackendKind.OPENCLAW, "OpenClaw", "terminal",
        "Connect to your OpenClaw gateway for AI responses",
        required_fields=("url", "model"), optional_fields=("token",),
        default_url="http://localhost:3000", default_model="default",
    ),
    BackendKind.OPENAI: BackendDescriptor(
        BackendKind.OPENAI, "OpenAI", "brain",
        "Use OpenAI's GPT models (requires API key)",
        required_fields=("token", "model"),
        default_model="gpt-4o-mini",
    ),
    BackendKind.OLLAMA: BackendDescriptor(
        BackendKind.OLLAMA, "Ollama (Local)", "desktopcomputer",
        "Run AI locally with Ollama (free, private)",
        required_fields=("url", "model"),
        default_url="http://localhost:11434", default_model="llama3.2",
    ),
    BackendKind.ANTHROPIC: BackendDescriptor(
        BackendKind.ANTHROPIC, "Anthropic Claude", "sparkles",
        "Use Anthropic's Claude models (requires API key)",
        required_fields=("token", "model"),
        default_model="claude-3-haiku-20240307",
    ),
    BackendKind.CUSTOM: BackendDescriptor(
        BackendKind.CUSTOM, "Custom API", "gear",
        "Connect to any HTTP chat endpoint",
        required_fields=("url",), optional_fields=("token",),
    ),
}

_BACKENDS = {
    BackendKind.OPENCLAW: OpenClawBackend,
    BackendKind.OPENAI: OpenAIBackend,
    BackendKind.OLLAMA: OllamaBackend,
    BackendKind.ANTHROPIC: AnthropicBackend,
    BackendKind.CUSTOM: CustomBackend,
}


def describe(kind: BackendKind) -> BackendDescriptor:
    return DESCRIPTORS[BackendKind(kind)]


def missing_fields(kind: BackendKind, cfg: BackendConfig) -> List[str]:
    """Required fields of `kind` that are blank in `cfg`."""
    return [name for name in describe(kind).required_fields if not getattr(cfg, name).strip()]


def is_configured(kind: BackendKind, cfg: BackendConfig) -> bool:
    if BackendKind(kind) is BackendKind.NONE:
        return False
    return not missing_fields(kind, cfg)


def make_backend(kind: BackendKind) -> BaseBackend:
    kind = BackendKind(kind)
    if kind not in _BACKENDS:
        raise ValueError(f"No backend for kind: {kind.value}")
    return _BACKENDS[kind]()
