"""Tests for the ImageBanClient against a stubbed requests.get."""
import pytest
import requests
from logic_guard import guard as guard_module
from logic_guard.guard import (
    ClassificationUnavailable,
    ImageBanClient,
    Metrics,
    Verdict,
    fingerprint,
)

ENDPOINT = "http://ban.example:9999/bmi/check/"


class FakeResponse:
    def __init__(self, status_code=200, body=None, invalid_json=False):
        self.status_code = status_code
        self._body = body
        self._invalid_json = invalid_json

    def json(self):
        if self._invalid_json:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self._body


class StubService:
    """Stands in for requests.get and records every call's arguments."""

    def __init__(self):
        self.recorded = []
        self.response = FakeResponse(404)
        self.error = None

    def get(self, url, params=None, timeout=None, headers=None):
        self.recorded.append({"url": url, "params": params, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.response

    def respond(self, response):
        self.response = response
        self.error = None

    def fail(self, error):
        self.error = error


@pytest.fixture
def calls(monkeypatch):
    """Patches requests.get with a StubService."""
    service = StubService()
    monkeypatch.setattr(guard_module.requests, "get", service.get)
    return service


@pytest.fixture
def client():
    return ImageBanClient(ENDPOINT, timeout=1.0, metrics=Metrics())


def test_sends_fingerprint_as_query_parameter(calls, client):
    key = fingerprint("draw rect 0 0 8 8")
    client.classify(key)
    assert calls.recorded == [
        {"url": ENDPOINT, "params": {"b64hash": key}, "timeout": 1.0}
    ]


def test_not_found_is_clean(calls, client):
    calls.respond(FakeResponse(404))
    assert client.classify("abc=") is Verdict.CLEAN


def test_nudity_is_explicit(calls, client):
    calls.respond(FakeResponse(200, {"nudity": True}))
    assert client.classify("abc=") is Verdict.FLAGGED_EXPLICIT


def test_flag_without_nudity_is_suggestive(calls, client):
    calls.respond(FakeResponse(200, {"nudity": False}))
    assert client.classify("abc=") is Verdict.FLAGGED_SUGGESTIVE
    calls.respond(FakeResponse(200, {}))
    assert client.classify("abc=") is Verdict.FLAGGED_SUGGESTIVE


def test_timeout_fails_open(calls, client):
    calls.fail(requests.Timeout("read timed out"))
    assert client.classify("abc=") is Verdict.CLEAN
    assert client.metrics.summary()["remote_failures"] == {"timeout": 1}


def test_connection_error_fails_open(calls, client):
    calls.fail(requests.ConnectionError("connection refused"))
    assert client.classify("abc=") is Verdict.CLEAN
    assert client.metrics.summary()["remote_failures"] == {"connection": 1}


def test_query_raises_on_transport_failure(calls, client):
    calls.fail(requests.Timeout("connect timed out"))
    with pytest.raises(ClassificationUnavailable) as exc_info:
        client.query("abc=")
    assert exc_info.value.reason == "timeout"


def test_malformed_body_fails_open(calls, client):
    calls.respond(FakeResponse(200, invalid_json=True))
    assert client.classify("abc=") is Verdict.CLEAN
    calls.respond(FakeResponse(200, ["not", "an", "object"]))
    assert client.classify("abc=") is Verdict.CLEAN
    assert client.metrics.summary()["remote_failures"] == {"malformed": 2}


def test_no_retries(calls, client):
    calls.fail(requests.Timeout("read timed out"))
    client.classify("abc=")
    assert len(calls.recorded) == 1
    assert client.metrics.summary()["remote_queries"] == 1
