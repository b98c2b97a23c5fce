# backends_openai.py
from typing import List
from backends import (
    BaseBackend, BackendConfig, BackendError, BackendKind, ErrorKind, HTTPRequestSpec, Message,
    SYSTEM_PROMPT, decode_json, dig, require_status, with_new_message,
)

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"


def chat_completions_reply(status: int, body: bytes, accepted: range) -> str:
    # Shared by every OpenAI-style endpoint: {"choices": [{"message": {"content": "..."}}]}
    require_status(status, accepted)
    return dig(decode_json(body), "choices", 0, "message", "content")


class OpenAIBackend(BaseBackend):
    kind = BackendKind.OPENAI
    chat_timeout = 30
    max_tokens = 500

    def build_request(self, history: List[Message], new_message: str, cfg: BackendConfig) -> HTTPRequestSpec:
        messages = [{"role": "system", "content": SYSTEM_PROMPT}]
        messages += with_new_message(history, new_message)
        return HTTPRequestSpec(
            method="POST",
            url=OPENAI_CHAT_URL,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {cfg.token}",
            },
            json_body={
                "model": cfg.model,
                "messages": messages,
                "max_tokens": self.max_tokens,
            },
            timeout=self.chat_timeout,
        )

    def parse_response(self, status: int, body: bytes) -> str:
        return chat_completions_reply(status, body, self.accepted_status)

    def health_check(self, cfg: BackendConfig, http) -> None:
        # OpenAI has no health endpoint, so only the key format is checked
        if not cfg.token or not cfg.token.startswith("sk-"):
            raise BackendError(ErrorKind.INVALID_CREDENTIALS, "OpenAI keys start with 'sk-'")
