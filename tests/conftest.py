import json
from types import SimpleNamespace

import pytest

import app as server


class FakeResponse:
    def __init__(self, status_code=200, content=b"", headers=None, json_data=None, reason="OK"):
        self.status_code = status_code
        self.content = content
        self.headers = headers or {}
        self.reason = reason
        self._json = json_data

    @property
    def ok(self):
        return self.status_code < 400

    @property
    def text(self):
        if self._json is not None:
            return json.dumps(self._json)
        return self.content.decode("utf-8", "replace")

    def json(self):
        if self._json is None:
            raise ValueError("no JSON body")
        return self._json


class FakeOpenAI:
    """Stands in for the OpenAI client; records every call."""

    def __init__(self, reply="", images=None, error=None):
        self.calls = []
        self._reply = reply
        self._images = images
        self._error = error
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._chat))
        self.images = SimpleNamespace(generate=self._generate)

    def _chat(self, **kwargs):
        self.calls.append(kwargs)
        if self._error is not None:
            raise self._error
        message = SimpleNamespace(content=self._reply)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])

    def _generate(self, **kwargs):
        self.calls.append(kwargs)
        if self._error is not None:
            raise self._error
        return SimpleNamespace(data=self._images or [])


@pytest.fixture
def client():
    server.app.config["TESTING"] = True
    with server.app.test_client() as c:
        yield c


@pytest.fixture
def fetched(monkeypatch):
    """Patch requests.get inside the app; returns the list of recorded calls."""
    calls = []

    def install(response):
        def fake_get(url, **kwargs):
            calls.append((url, kwargs))
            if isinstance(response, Exception):
                raise response
            return response

        monkeypatch.setattr(server.requests, "get", fake_get)
        return calls

    return install
