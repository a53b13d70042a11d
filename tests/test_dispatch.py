"""Tests for webhook dispatch and the in-process worker registry."""

from __future__ import annotations

import json
import logging

import httpx
import pytest

from edgewalker.core.dispatch import WebhookDispatcher, build_payload, callback_url
from edgewalker.core.errors import DispatchError
from edgewalker.core.registry import WorkerRegistry


def make_dispatcher(handler, timeout=5.0) -> WebhookDispatcher:
    return WebhookDispatcher(timeout=timeout, client=httpx.Client(transport=httpx.MockTransport(handler)))


PAYLOAD = build_payload("run-1", "work_2", {"model": "small"}, {"id": 7}, "https://engine.test/")


# =============================================================================
# Payload Tests
# =============================================================================


class TestPayload:
    """Dispatch payload and callback URL."""

    def test_callback_url(self):
        assert callback_url("https://engine.test/", "run-1", "work_2") == (
            "https://engine.test/api/callback/run-1/work_2"
        )

    def test_payload_fields(self):
        assert PAYLOAD == {
            "runId": "run-1",
            "nodeId": "work_2",
            "config": {"model": "small"},
            "input": {"id": 7},
            "callbackUrl": "https://engine.test/api/callback/run-1/work_2",
        }


# =============================================================================
# Webhook Dispatcher Tests
# =============================================================================


class TestWebhookDispatcher:
    """POSTing payloads to external workers."""

    def test_posts_json_payload(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202)

        make_dispatcher(handler).dispatch("https://workers.test/summarize", PAYLOAD)

        assert len(seen) == 1
        assert seen[0].method == "POST"
        assert str(seen[0].url) == "https://workers.test/summarize"
        assert json.loads(seen[0].content) == PAYLOAD

    def test_error_status(self):
        dispatcher = make_dispatcher(lambda request: httpx.Response(503))

        with pytest.raises(DispatchError, match="Webhook returned 503"):
            dispatcher.dispatch("https://workers.test/summarize", PAYLOAD)

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(DispatchError, match="timed out after 2.5s"):
            make_dispatcher(handler, timeout=2.5).dispatch("https://workers.test/slow", PAYLOAD)

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(DispatchError, match="Webhook request failed"):
            make_dispatcher(handler).dispatch("https://workers.test/down", PAYLOAD)

    @pytest.mark.parametrize("url", ["ftp://workers.test/job", "workers/job", "http:///job"])
    def test_malformed_url(self, url):
        dispatcher = make_dispatcher(lambda request: httpx.Response(200))

        with pytest.raises(DispatchError, match="Malformed webhook URL"):
            dispatcher.dispatch(url, PAYLOAD)


# =============================================================================
# Registry Tests
# =============================================================================


class TestWorkerRegistry:
    """In-process worker delegates."""

    def test_register_and_get(self):
        registry = WorkerRegistry()
        registry.register("upper", lambda input, config: {k: v.upper() for k, v in input.items()})

        assert "upper" in registry
        assert registry.get("upper")({"a": "x"}, {}) == {"a": "X"}
        assert registry.get("missing") is None
        assert registry.get(None) is None

    def test_types_sorted(self):
        registry = WorkerRegistry({"b": print, "a": print})

        assert registry.types() == ["a", "b"]
        assert sorted(registry) == ["a", "b"]

    def test_replacing_warns(self, caplog):
        registry = WorkerRegistry({"a": print})

        with caplog.at_level(logging.WARNING, logger="edgewalker.core.registry"):
            registry.register("a", repr)

        assert "Replacing delegate for worker type 'a'" in caplog.text
        assert registry.get("a") is repr
