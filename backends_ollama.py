# backends_ollama.py
from typing import List
from backends import (
    BaseBackend, BackendConfig, BackendKind, HTTPRequestSpec, Message,
    decode_json, dig, join_url, require_status, with_new_message,
)

OLLAMA_SYSTEM_PROMPT = "You are Krab, a friendly AI crab assistant. Be helpful and fun."


class OllamaBackend(BaseBackend):
    kind = BackendKind.OLLAMA
    # Local models can be slow to load on first use
    chat_timeout = 120

    def _format_chat_as_prompt(self, messages: List[Message]) -> str:
        """
        Ollama's /api/generate takes a single prompt, so the system prompt and the
        conversation are folded into plain text ending with an open "Krab:" turn.
        """
        convo = [OLLAMA_SYSTEM_PROMPT]
        for m in messages:
            if m["role"] == "user":
                convo.append(f"User: {m['content']}")
            elif m["role"] == "assistant":
                convo.append(f"Krab: {m['content']}")
        convo.append("Krab:")
        return "\n\n".join(convo)

    def build_request(self, history: List[Message], new_message: str, cfg: BackendConfig) -> HTTPRequestSpec:
        payload = {
            "model": cfg.model,          # e.g., "llama3.2"
            "prompt": self._format_chat_as_prompt(with_new_message(history, new_message)),
            "stream": False,
        }
        return HTTPRequestSpec(
            method="POST",
            url=join_url(cfg.url, "/api/generate"),
            headers={"Content-Type": "application/json"},
            json_body=payload,
            timeout=self.chat_timeout,
        )

    def parse_response(self, status: int, body: bytes) -> str:
        require_status(status, self.accepted_status)
        # Ollama returns { "response": "...", "done": true, ... }
        return dig(decode_json(body), "response").strip()

    def health_check(self, cfg: BackendConfig, http) -> None:
        self.probe(join_url(cfg.url, "/api/tags"), http)
