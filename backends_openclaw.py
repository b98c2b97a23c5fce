# backends_openclaw.py
from typing import List
from backends import (
    BaseBackend, BackendConfig, BackendKind, HTTPRequestSpec, Message,
    SYSTEM_PROMPT, join_url, with_new_message,
)
from backends_openai import chat_completions_reply


class OpenClawBackend(BaseBackend):
    """OpenClaw gateway: an OpenAI-compatible chat endpoint plus a /health route."""

    kind = BackendKind.OPENCLAW
    chat_timeout = 60

    def build_request(self, history: List[Message], new_message: str, cfg: BackendConfig) -> HTTPRequestSpec:
        messages = [{"role": "system", "content": SYSTEM_PROMPT}]
        messages += with_new_message(history, new_message)
        return HTTPRequestSpec(
            method="POST",
            url=join_url(cfg.url, "/v1/chat/completions"),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {cfg.token}",
            },
            json_body={"model": cfg.model, "messages": messages},
            timeout=self.chat_timeout,
        )

    def parse_response(self, status: int, body: bytes) -> str:
        return chat_completions_reply(status, body, self.accepted_status)

    def health_check(self, cfg: BackendConfig, http) -> None:
        self.probe(join_url(cfg.url, "/health"), http)
