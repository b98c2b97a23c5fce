# backends_anthropic.py
from typing import List
from backends import (
    BaseBackend, BackendConfig, BackendError, BackendKind, ErrorKind, HTTPRequestSpec, Message,
    SYSTEM_PROMPT, decode_json, dig, require_status, with_new_message,
)

ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"


class AnthropicBackend(BaseBackend):
    kind = BackendKind.ANTHROPIC
    chat_timeout = 60
    max_tokens = 500

    def build_request(self, history: List[Message], new_message: str, cfg: BackendConfig) -> HTTPRequestSpec:
        # The system prompt travels in its own field; the conversation must open with a user turn
        converted = [m for m in with_new_message(history, new_message) if m["role"] in ("user", "assistant")]
        while converted and converted[0]["role"] != "user":
            converted.pop(0)

        return HTTPRequestSpec(
            method="POST",
            url=ANTHROPIC_MESSAGES_URL,
            headers={
                "Content-Type": "application/json",
                "x-api-key": cfg.token,
                "anthropic-version": ANTHROPIC_VERSION,
            },
            json_body={
                "model": cfg.model,
                "max_tokens": self.max_tokens,
                "system": SYSTEM_PROMPT,
                "messages": converted,
            },
            timeout=self.chat_timeout,
        )

    def parse_response(self, status: int, body: bytes) -> str:
        require_status(status, self.accepted_status)
        # Anthropic returns a list of content blocks; the reply is the first one
        return dig(decode_json(body), "content", 0, "text")

    def health_check(self, cfg: BackendConfig, http) -> None:
        if not cfg.token:
            raise BackendError(ErrorKind.INVALID_CREDENTIALS, "Anthropic API key is empty")
