import hashlib
import hmac
import json
import threading

import pytest

from mergebot.dedup import DeliveryCache
from mergebot.events import EventKind
from mergebot.models import Repo, Webhook
from mergebot.webhook import Ingestion, verify_signature

SECRET = "s3cret"


def sign(body: bytes, algo=hashlib.sha256, prefix="sha256") -> str:
    return f"{prefix}=" + hmac.new(SECRET.encode(), body, algo).hexdigest()


class FakeSink:
    def __init__(self):
        self.calls = []

    def submit(self, event, delivery_id):
        self.calls.append((event, delivery_id))


def review_body(repo="repo") -> bytes:
    return json.dumps(
        {
            "action": "submitted",
            "pull_request": {"number": 8},
            "review": {"id": 77, "node_id": "PRR_77", "body": "/approve", "state": "commented"},
            "sender": {"login": "alice"},
            "repository": {"name": repo, "owner": {"login": "octo"}},
        }
    ).encode()


def webhook(body: bytes, delivery="d-1", event="pull_request_review", **sigs) -> Webhook:
    if not sigs:
        sigs = {"signature256": sign(body)}
    return Webhook(event=event, delivery_id=delivery, body=body, **sigs)


@pytest.fixture
def pipeline():
    ingestion = Ingestion(SECRET, capacity=16)
    sink = FakeSink()
    ingestion.register(Repo(owner="octo", name="repo"), sink)
    return ingestion, sink


def test_verify_signature_variants():
    body = b'{"zen": "hi"}'
    assert verify_signature(SECRET, body, sign(body))
    assert verify_signature(SECRET, body, None, sign(body, hashlib.sha1, "sha1"))
    # sha256 wins when both are present
    assert not verify_signature(SECRET, body, "sha256=00", sign(body, hashlib.sha1, "sha1"))
    assert not verify_signature(SECRET, body, sign(body, hashlib.sha1, "sha1"))
    assert not verify_signature(SECRET, body, "garbage")
    assert not verify_signature(SECRET, body, None, None)
    assert not verify_signature("", body, sign(body))


def test_delivery_cache_is_bounded_lru():
    cache = DeliveryCache(capacity=2)
    assert cache.add("a") is True
    assert cache.add("b") is True
    assert cache.add("a") is False  # refreshes "a"
    assert cache.add("c") is True  # evicts "b"
    assert "a" in cache
    assert "b" not in cache
    assert len(cache) == 2


def test_delivery_cache_accepts_each_id_once_across_threads():
    cache = DeliveryCache(capacity=1000)
    accepted = []
    lock = threading.Lock()

    def worker():
        for i in range(200):
            if cache.add(f"id-{i}"):
                with lock:
                    accepted.append(i)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert sorted(accepted) == list(range(200))


def test_signed_event_is_routed(pipeline):
    ingestion, sink = pipeline
    assert ingestion.handle_webhook(webhook(review_body())) is True
    event, delivery = sink.calls[0]
    assert delivery == "d-1"
    assert event.kind is EventKind.PULL_REQUEST_REVIEW
    assert event.number == 8


def test_same_delivery_is_enqueued_once(pipeline):
    ingestion, sink = pipeline
    body = review_body()
    assert ingestion.handle_webhook(webhook(body, delivery="x")) is True
    assert ingestion.handle_webhook(webhook(body, delivery="x")) is False
    assert len(sink.calls) == 1


def test_bad_signature_does_not_consume_delivery_id(pipeline):
    ingestion, sink = pipeline
    body = review_body()
    assert ingestion.handle_webhook(webhook(body, delivery="y", signature256="sha256=00")) is False
    assert ingestion.handle_webhook(webhook(body, delivery="y")) is True
    assert len(sink.calls) == 1


def test_no_secret_drops_everything():
    ingestion = Ingestion("")
    sink = FakeSink()
    ingestion.register(Repo(owner="octo", name="repo"), sink)
    assert ingestion.handle_webhook(webhook(review_body())) is False
    assert sink.calls == []


def test_undecodable_body_is_dropped(pipeline):
    ingestion, sink = pipeline
    body = json.dumps({"action": "submitted", "sender": {"login": "alice"}}).encode()
    assert ingestion.handle_webhook(webhook(body)) is False
    assert sink.calls == []


def test_unsupported_event_type_is_dropped(pipeline):
    ingestion, sink = pipeline
    body = json.dumps({"ref": "refs/heads/main", "repository": {"name": "repo", "owner": {"login": "octo"}}}).encode()
    assert ingestion.handle_webhook(webhook(body, event="push")) is False
    assert sink.calls == []


def test_unroutable_repository_is_dropped(pipeline):
    ingestion, sink = pipeline
    assert ingestion.handle_webhook(webhook(review_body(repo="other"))) is False
    assert sink.calls == []
