# backends_custom.py
import json
from typing import List
from backends import (
    BaseBackend, BackendConfig, BackendError, BackendKind, ErrorKind, HTTPRequestSpec, Message,
    check_url, require_status,
)

CUSTOM_CONTEXT = "You are Krab, the meme crab! CLACK CLACK! Make crab puns, reference crab rave!"


class CustomBackend(BaseBackend):
    """
    Any HTTP endpoint that accepts {"message", "context"} and answers with
    {"response": ...}, {"message": ...} or plain text.
    """

    kind = BackendKind.CUSTOM
    chat_timeout = 60
    accepted_status = range(200, 300)

    def build_request(self, history: List[Message], new_message: str, cfg: BackendConfig) -> HTTPRequestSpec:
        headers = {"Content-Type": "application/json"}
        if cfg.token:
            headers["Authorization"] = f"Bearer {cfg.token}"
        return HTTPRequestSpec(
            method="POST",
            url=check_url(cfg.url),
            headers=headers,
            json_body={"message": new_message, "context": CUSTOM_CONTEXT},
            timeout=self.chat_timeout,
        )

    def parse_response(self, status: int, body: bytes) -> str:
        require_status(status, self.accepted_status)
        try:
            data = json.loads(body)
        except (ValueError, TypeError):
            data = None
        if isinstance(data, dict):
            for key in ("response", "message"):
                if isinstance(data.get(key), str):
                    return data[key]
        try:
            return body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise BackendError(ErrorKind.INVALID_RESPONSE, "body is not text") from e

    def health_check(self, cfg: BackendConfig, http) -> None:
        self.probe(check_url(cfg.url), http)
