"""Webhook dispatch for workers that run outside the engine.

The engine POSTs the dispatch payload to the node's ``webhook_url`` and
leaves the node ``running``. The external worker later reports back through
the callback URL included in the payload.
"""

import logging
from typing import Any, Protocol

import httpx

from edgewalker.core.errors import DispatchError

logger = logging.getLogger(__name__)

DEFAULT_DISPATCH_TIMEOUT = 30.0


def callback_url(base_url: str, run_id: str, node_key: str) -> str:
    """URL an external worker calls when it finishes."""
    return f"{base_url.rstrip('/')}/api/callback/{run_id}/{node_key}"


def build_payload(
    run_id: str, node_key: str, config: dict[str, Any], input: dict[str, Any], base_url: str
) -> dict[str, Any]:
    return {
        "runId": run_id,
        "nodeId": node_key,
        "config": config,
        "input": input,
        "callbackUrl": callback_url(base_url, run_id, node_key),
    }


class Dispatcher(Protocol):
    def dispatch(self, url: str, payload: dict[str, Any]) -> None: ...


class WebhookDispatcher:
    """Sends dispatch payloads over HTTP with httpx.

    Delivery is at-most-once: a timeout or transport error fails the node
    instead of retrying, since the remote side may or may not have started.
    """

    def __init__(self, timeout: float = DEFAULT_DISPATCH_TIMEOUT, client: httpx.Client | None = None):
        self.timeout = timeout
        self._client = client

    def dispatch(self, url: str, payload: dict[str, Any]) -> None:
        """POST the payload. Raises DispatchError on any failure."""
        try:
            parsed = httpx.URL(url)
        except (httpx.InvalidURL, TypeError) as e:
            raise DispatchError(f"Malformed webhook URL {url!r}: {e}") from e
        if parsed.scheme not in ("http", "https") or not parsed.host:
            raise DispatchError(f"Malformed webhook URL {url!r}: expected http(s)://host/...")

        try:
            if self._client is not None:
                response = self._client.post(url, json=payload, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(url, json=payload)
        except httpx.TimeoutException as e:
            raise DispatchError(f"Webhook timed out after {self.timeout}s: {url}") from e
        except httpx.HTTPError as e:
            raise DispatchError(f"Webhook request failed: {e}") from e

        if not response.is_success:
            raise DispatchError(
                f"Webhook returned {response.status_code} {response.reason_phrase}: {url}"
            )
        logger.info(f"Dispatched {payload.get('nodeId')} of run {payload.get('runId')} to {url}")
