# http_client.py
import logging
from typing import Any, Dict, Optional, Tuple

import requests

from backends import BackendError, ErrorKind

log = logging.getLogger(__name__)


class RequestsHTTPClient:
    """Blocking HTTP collaborator; the dispatcher runs it in a worker thread."""

    def __init__(self, session: Optional[requests.Session] = None):
        self.session = session or requests.Session()

    def request(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        json_body: Optional[Dict[str, Any]],
        timeout: float,
    ) -> Tuple[int, bytes]:
        log.debug("%s %s (timeout=%ss)", method, url, timeout)
        try:
            r = self.session.request(method, url, headers=headers, json=json_body, timeout=timeout)
        except requests.RequestException as e:
            raise BackendError(ErrorKind.TRANSPORT_ERROR, f"{type(e).__name__}: {e}") from e
        log.debug("%s %s -> %s (%d bytes)", method, url, r.status_code, len(r.content))
        return r.status_code, r.content

    def close(self) -> None:
        self.session.close()
