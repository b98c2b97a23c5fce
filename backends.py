# backends.py
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Dict, Any, Optional
from urllib.parse import urlsplit

Message = Dict[str, str]  # {"role": "system"|"user"|"assistant", "content": "..."}

SYSTEM_PROMPT = (
    "You are Krab, a friendly AI crab assistant. Be helpful, fun, and "
    "occasionally make crab-related jokes. Keep responses concise."
)

HEALTH_TIMEOUT = 10


class BackendKind(str, Enum):
    NONE = "none"
    OPENCLAW = "openclaw"
    OPENAI = "openai"
    OLLAMA = "ollama"
    ANTHROPIC = "anthropic"
    CUSTOM = "custom"


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class ErrorKind(str, Enum):
    NOT_CONNECTED = "not_connected"
    NOT_CONFIGURED = "not_configured"
    INVALID_URL = "invalid_url"
    INVALID_CREDENTIALS = "invalid_credentials"
    REQUEST_FAILED = "request_failed"
    INVALID_RESPONSE = "invalid_response"
    TRANSPORT_ERROR = "transport_error"


ERROR_MESSAGES = {
    ErrorKind.NOT_CONNECTED: "Not connected to AI backend",
    ErrorKind.NOT_CONFIGURED: "AI backend not configured",
    ErrorKind.INVALID_URL: "Invalid API URL",
    ErrorKind.INVALID_CREDENTIALS: "Invalid credentials",
    ErrorKind.REQUEST_FAILED: "Request failed",
    ErrorKind.INVALID_RESPONSE: "Invalid response from API",
    ErrorKind.TRANSPORT_ERROR: "Network error",
}


class BackendError(Exception):
    """Any failure of a backend operation; `kind` says which one."""

    def __init__(self, kind: ErrorKind, detail: str = ""):
        self.kind = kind
        self.detail = detail
        super().__init__(str(self))

    def __str__(self) -> str:
        base = ERROR_MESSAGES[self.kind]
        return f"{base}: {self.detail}" if self.detail else base


@dataclass(frozen=True)
class BackendConfig:
    url: str = ""
    token: str = ""
    model: str = ""


@dataclass(frozen=True)
class ChatMessage:
    content: str
    from_user: bool
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def role(self) -> str:
        return "user" if self.from_user else "assistant"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "from_user": self.from_user,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ChatMessage":
        ts = datetime.fromisoformat(d["timestamp"])
        if ts.tzinfo is None:
            # naive timestamps are taken as UTC so they compare with new messages
            ts = ts.replace(tzinfo=timezone.utc)
        return cls(
            content=str(d["content"]),
            from_user=bool(d["from_user"]),
            id=str(d["id"]),
            timestamp=ts,
        )


@dataclass
class HTTPRequestSpec:
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    json_body: Optional[Dict[str, Any]] = None
    timeout: float = HEALTH_TIMEOUT


def check_url(url: str) -> str:
    """Return `url` unchanged, or raise INVALID_URL if it is not an http(s) URL."""
    try:
        parts = urlsplit(url)
    except ValueError as e:
        raise BackendError(ErrorKind.INVALID_URL, url) from e
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise BackendError(ErrorKind.INVALID_URL, url or "<empty>")
    return url


def join_url(base: str, path: str) -> str:
    return check_url(base.rstrip("/") + path)


def with_new_message(history: List[Message], new_message: str) -> List[Message]:
    """Append the new user turn unless the context already ends with it."""
    messages = list(history)
    last = messages[-1] if messages else None
    if not (last and last["role"] == "user" and last["content"] == new_message):
        messages.append({"role": "user", "content": new_message})
    return messages


def require_status(status: int, accepted: range = range(200, 201)) -> None:
    if status not in accepted:
        raise BackendError(ErrorKind.REQUEST_FAILED, f"HTTP {status}")


def decode_json(body: bytes) -> Any:
    try:
        return json.loads(body)
    except (ValueError, TypeError) as e:
        raise BackendError(ErrorKind.INVALID_RESPONSE, "body is not JSON") from e


def dig(data: Any, *path) -> str:
    """Follow `path` (dict keys / list indexes) into decoded JSON and return the string found there."""
    node = data
    for step in path:
        try:
            node = node[step]
        except (KeyError, IndexError, TypeError):
            raise BackendError(ErrorKind.INVALID_RESPONSE, "missing " + ".".join(map(str, path)))
    if not isinstance(node, str):
        raise BackendError(ErrorKind.INVALID_RESPONSE, ".".join(map(str, path)) + " is not text")
    return node


class BaseBackend:
    kind: BackendKind = BackendKind.NONE
    chat_timeout: float = 60
    accepted_status: range = range(200, 201)

    def build_request(self, history: List[Message], new_message: str, cfg: BackendConfig) -> HTTPRequestSpec:
        raise NotImplementedError

    def parse_response(self, status: int, body: bytes) -> str:
        raise NotImplementedError

    def health_check(self, cfg: BackendConfig, http) -> None:
        """Raise BackendError if the backend is unreachable or misconfigured."""
        raise NotImplementedError

    def probe(self, url: str, http) -> None:
        status, _ = http.request("GET", url, {}, None, HEALTH_TIMEOUT)
        require_status(status, self.accepted_status)
