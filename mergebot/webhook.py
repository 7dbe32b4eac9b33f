import hashlib
import hmac
import json
import logging
import threading
from typing import Dict, Optional, Protocol

from pydantic import ValidationError

from .dedup import DeliveryCache
from .events import Event, decode_event
from .metrics import (
    events_enqueued_total,
    webhook_duplicates_total,
    webhook_invalid_signatures_total,
    webhook_parse_failures_total,
    webhook_unroutable_total,
)
from .models import Repo, Webhook

logger = logging.getLogger(__name__)

EVENT_TYPE_HEADER = "X-GitHub-Event"
DELIVERY_ID_HEADER = "X-GitHub-Delivery"
SIGNATURE_HEADER = "X-Hub-Signature"
SIGNATURE_256_HEADER = "X-Hub-Signature-256"


class EventSink(Protocol):
    def submit(self, event: Event, delivery_id: str) -> None:
        ...


def _check(secret: str, body: bytes, header: str, algo: str, digestmod) -> bool:
    try:
        prefix, sig = header.split("=", 1)
    except ValueError:
        return False
    if prefix != algo:
        return False
    expected = hmac.new(secret.encode("utf-8"), msg=body, digestmod=digestmod).hexdigest()
    return hmac.compare_digest(expected, sig)


def verify_signature(
    secret: str, body: bytes, signature256: Optional[str], signature: Optional[str] = None
) -> bool:
    """Check the HMAC of ``body``: sha256 when present, legacy sha1 otherwise.

    With no secret configured nothing verifies; unsigned deliveries never pass.
    """
    if not secret:
        return False
    if signature256:
        return _check(secret, body, signature256, "sha256", hashlib.sha256)
    if signature:
        return _check(secret, body, signature, "sha1", hashlib.sha1)
    return False


def pretty_body(body: bytes) -> str:
    try:
        return json.dumps(json.loads(body), indent=2, sort_keys=True)
    except ValueError:
        return body.decode("utf-8", errors="replace")


class Ingestion:
    """Authenticates, deduplicates, decodes and routes webhook deliveries.

    Shared by the HTTP endpoint and the event-stream relay; it only ever hands
    events to a registered processor and never touches pull request state.
    """

    def __init__(self, secret: str, capacity: int = 10000):
        self.secret = secret
        self.deliveries = DeliveryCache(capacity)
        self.installations: Dict[Repo, EventSink] = {}
        self._requests = 0
        self._lock = threading.Lock()

    def register(self, repo: Repo, sink: EventSink) -> None:
        self.installations[repo] = sink

    def count_request(self) -> int:
        with self._lock:
            self._requests += 1
            return self._requests

    @property
    def request_count(self) -> int:
        with self._lock:
            return self._requests

    def handle_webhook(self, webhook: Webhook, source: str = "http") -> bool:
        """Run one delivery through the pipeline; True when it was enqueued."""
        logger.debug("Handling webhook %s (%s) from %s", webhook.delivery_id, webhook.event, source)

        if not self.secret:
            logger.warning("No webhook secret configured; dropping delivery %s", webhook.delivery_id)
            webhook_invalid_signatures_total.labels(source=source).inc()
            return False
        if not verify_signature(self.secret, webhook.body, webhook.signature256, webhook.signature):
            logger.warning("Signature check FAILED for delivery %s; skipping event", webhook.delivery_id)
            webhook_invalid_signatures_total.labels(source=source).inc()
            return False

        if not self.deliveries.add(webhook.delivery_id):
            logger.info("Dropping duplicate delivery %s", webhook.delivery_id)
            webhook_duplicates_total.labels(source=source).inc()
            return False

        try:
            event = decode_event(webhook.event, webhook.body)
        except ValidationError as e:
            webhook_parse_failures_total.labels(event=webhook.event).inc()
            logger.warning(
                "Webhook %s could not be decoded\n\nEventType: %s\n\nError: %s\n\nBody:\n%s",
                webhook.delivery_id,
                webhook.event,
                e,
                pretty_body(webhook.body),
            )
            return False
        if event is None:
            logger.debug("Ignoring unsupported event type %s", webhook.event)
            return False

        repository = getattr(event, "repository", None)
        sink = self.installations.get(repository.repo) if repository is not None else None
        if sink is None:
            webhook_unroutable_total.labels(event=webhook.event).inc()
            logger.debug("No installation for delivery %s (%s)", webhook.delivery_id, webhook.event)
            return False

        sink.submit(event, webhook.delivery_id)
        events_enqueued_total.labels(event=webhook.event).inc()
        return True
