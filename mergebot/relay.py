"""Event-stream relay client (smee.io style).

The relay re-publishes webhook deliveries as server-sent events. Each message
frame carries the delivery headers and the original JSON body, which goes
through the same ingestion pipeline as a direct HTTP delivery.
"""
import asyncio
import json
import logging
from typing import Dict, List, Optional, Tuple, Union

import httpx
from pydantic import BaseModel

from .metrics import relay_frames_total, relay_reconnects_total
from .models import Webhook
from .webhook import Ingestion

logger = logging.getLogger(__name__)

EVENT_TERMINATORS = (b"\n\n", b"\r\r", b"\r\n\r\n")


class ServerSentEvent(BaseModel):
    event: Optional[str] = None
    data: Optional[str] = None


class Ready(BaseModel):
    pass


class Ping(BaseModel):
    pass


RelayFrame = Union[Ready, Ping, Webhook]


class SSEParser:
    """Reassembles server-sent events from arbitrarily split chunks."""

    def __init__(self) -> None:
        self.buffer = bytearray()

    def _end_of_event(self) -> Optional[int]:
        ends = []
        for term in EVENT_TERMINATORS:
            idx = self.buffer.find(term)
            if idx != -1:
                ends.append(idx + len(term))
        return min(ends) if ends else None

    def feed(self, chunk: bytes) -> List[ServerSentEvent]:
        self.buffer.extend(chunk)
        events = []
        while True:
            end = self._end_of_event()
            if end is None:
                return events
            raw = bytes(self.buffer[:end])
            del self.buffer[:end]
            events.append(parse_server_sent_event(raw))


def parse_server_sent_event(raw: bytes) -> ServerSentEvent:
    event = None
    data: Optional[str] = None
    for line in raw.decode("utf-8", errors="replace").splitlines():
        if not line or line.startswith(":"):
            continue
        field, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        if field == "event" and sep:
            event = value
        elif field == "data" and sep:
            data = value if data is None else data + "\n" + value
        # other fields (id, retry) are ignored
    return ServerSentEvent(event=event, data=data)


def _skip_ws(text: str, idx: int) -> int:
    while idx < len(text) and text[idx] in " \t\r\n":
        idx += 1
    return idx


def top_level_spans(text: str) -> Dict[str, Tuple[int, int]]:
    """Map each key of a top-level JSON object to the (start, end) of its raw value."""
    decoder = json.JSONDecoder()
    spans: Dict[str, Tuple[int, int]] = {}
    idx = _skip_ws(text, 0)
    if text[idx:idx + 1] != "{":
        raise ValueError("expected a JSON object")
    idx = _skip_ws(text, idx + 1)
    if text[idx:idx + 1] == "}":
        return spans
    while True:
        key, idx = decoder.raw_decode(text, idx)
        idx = _skip_ws(text, idx)
        if text[idx:idx + 1] != ":":
            raise ValueError(f"expected ':' at offset {idx}")
        start = _skip_ws(text, idx + 1)
        _, end = decoder.raw_decode(text, start)
        spans[key] = (start, end)
        idx = _skip_ws(text, end)
        if text[idx:idx + 1] == ",":
            idx = _skip_ws(text, idx + 1)
            continue
        if text[idx:idx + 1] == "}":
            return spans
        raise ValueError(f"expected ',' or '}}' at offset {idx}")


def parse_relay_frame(sse: ServerSentEvent) -> Optional[RelayFrame]:
    if sse.data is None:
        return None
    if sse.event == "ready":
        return Ready()
    if sse.event == "ping":
        return Ping()
    if sse.event is not None:
        return None
    message = json.loads(sse.data)
    spans = top_level_spans(sse.data)
    if "body" not in spans:
        raise ValueError("relay message has no body")
    start, end = spans["body"]
    return Webhook(
        event=message["x-github-event"],
        delivery_id=message["x-github-delivery"],
        signature=message.get("x-hub-signature"),
        signature256=message.get("x-hub-signature-256"),
        # Keep the body byte-for-byte so the signature still verifies
        body=sse.data[start:end].encode("utf-8"),
    )


class RelayClient:
    def __init__(
        self,
        uri: str,
        ingestion: Ingestion,
        reconnect_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.uri = uri
        self.ingestion = ingestion
        self.reconnect_seconds = reconnect_seconds
        self._client = client

    async def start(self) -> None:
        """Stream forever, restarting the whole session after any error."""
        while True:
            try:
                await self.run_once()
                logger.warning("Relay stream %s closed", self.uri)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Relay error: %r", e)
            relay_reconnects_total.inc()
            await asyncio.sleep(self.reconnect_seconds)

    async def run_once(self) -> None:
        logger.info("Starting relay client with %s", self.uri)
        if self._client is not None:
            await self._stream(self._client)
            return
        timeout = httpx.Timeout(30.0, read=None)
        async with httpx.AsyncClient(timeout=timeout) as client:
            await self._stream(client)

    async def _stream(self, client: httpx.AsyncClient) -> None:
        async with client.stream("GET", self.uri, headers={"Accept": "text/event-stream"}) as response:
            logger.debug("relay response status = %s", response.status_code)
            response.raise_for_status()
            parser = SSEParser()
            async for chunk in response.aiter_bytes():
                for sse in parser.feed(chunk):
                    self._dispatch(sse)

    def _dispatch(self, sse: ServerSentEvent) -> None:
        try:
            frame = parse_relay_frame(sse)
        except (ValueError, KeyError) as e:
            relay_frames_total.labels(kind="malformed").inc()
            logger.warning("Dropping malformed relay frame (%r): %s", e, sse.data)
            return
        if isinstance(frame, Ready):
            relay_frames_total.labels(kind="ready").inc()
            logger.debug("relay ready")
        elif isinstance(frame, Ping):
            relay_frames_total.labels(kind="ping").inc()
            logger.debug("relay ping")
        elif isinstance(frame, Webhook):
            relay_frames_total.labels(kind="message").inc()
            self.ingestion.handle_webhook(frame, source="relay")
