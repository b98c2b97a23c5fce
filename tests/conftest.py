import json
import threading

import pytest

from backends import BackendError, ErrorKind
from config_store import ConfigStore
from storage import MemoryStorage


class FakeHTTP:
    """In-memory HTTP collaborator: routes (method, url) to canned (status, body)."""

    def __init__(self):
        self.routes = {}
        self.calls = []
        self.entered = threading.Event()
        self.gate = None

    def route(self, method, url, status=200, body=b""):
        if isinstance(body, (dict, list)):
            body = json.dumps(body).encode("utf-8")
        elif isinstance(body, str):
            body = body.encode("utf-8")
        self.routes[(method, url)] = (status, body)

    def block(self):
        """Make the next requests wait until release() is called."""
        self.gate = threading.Event()

    def release(self):
        if self.gate is not None:
            self.gate.set()

    def request(self, method, url, headers, json_body, timeout):
        self.calls.append({
            "method": method, "url": url, "headers": headers,
            "json": json_body, "timeout": timeout,
        })
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        result = self.routes.get((method, url))
        if result is None:
            raise BackendError(ErrorKind.TRANSPORT_ERROR, f"no route for {method} {url}")
        if isinstance(result, Exception):
            raise result
        return result

    def chat_calls(self):
        return [c for c in self.calls if c["method"] == "POST"]


@pytest.fixture
def http():
    return FakeHTTP()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def config_store(storage):
    return ConfigStore(storage)
