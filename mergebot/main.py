import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional

import uvicorn
from fastapi import FastAPI, Header, HTTPException, Request, Response
from fastapi.responses import PlainTextResponse

from .config import SETTINGS
from .git import GitRepository
from .github import GitHubClient
from .metrics import metrics_response, webhook_requests_total
from .models import Repo, Webhook
from .processor import EventProcessor
from .relay import RelayClient
from .webhook import Ingestion

logger = logging.getLogger(__name__)


def _log_task_exit(task: "asyncio.Task[None]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background task %s stopped: %r", task.get_name(), exc, exc_info=exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    tasks: List["asyncio.Task[None]"] = []
    ingestion: Ingestion = app.state.ingestion
    if SETTINGS.repo_owner and SETTINGS.repo_name:
        repo = Repo(owner=SETTINGS.repo_owner, name=SETTINGS.repo_name)
        gh = GitHubClient()
        git = GitRepository(repo)
        # A missing or mismatched clone is fatal: refuse to serve the repository
        await asyncio.to_thread(git.ensure)
        processor = EventProcessor(repo, gh, git)
        ingestion.register(repo, processor)
        tasks.append(asyncio.create_task(processor.run(), name=f"processor:{repo.full_name}"))
        logger.info("Serving %s", repo.full_name)
    else:
        logger.warning("REPO_OWNER/REPO_NAME not set; deliveries will be verified but not routed")
    if SETTINGS.smee_url:
        relay = RelayClient(SETTINGS.smee_url, ingestion, SETTINGS.relay_reconnect_seconds)
        tasks.append(asyncio.create_task(relay.start(), name="relay"))
    for task in tasks:
        task.add_done_callback(_log_task_exit)
    try:
        yield
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


app = FastAPI(title="Merge Bot", version=os.getenv("SERVICE_VERSION", "dev"), lifespan=lifespan)
app.state.ingestion = Ingestion(SETTINGS.webhook_secret, SETTINGS.dedup_capacity)


@app.get("/")
async def index(request: Request):
    return PlainTextResponse(f"Request #{request.app.state.ingestion.request_count}\n")


@app.get("/healthz")
async def healthz():
    return {"status": "ok", "version": SETTINGS.service_version}


@app.get("/metrics")
async def metrics():
    content_type, data = metrics_response()
    return Response(content=data, media_type=content_type)


@app.post("/github")
async def github_webhook(
    request: Request,
    x_github_event: Optional[str] = Header(None, alias="X-GitHub-Event"),
    x_github_delivery: Optional[str] = Header(None, alias="X-GitHub-Delivery"),
    x_hub_signature: Optional[str] = Header(None, alias="X-Hub-Signature"),
    x_hub_signature_256: Optional[str] = Header(None, alias="X-Hub-Signature-256"),
):
    ingestion: Ingestion = request.app.state.ingestion
    ingestion.count_request()
    event = x_github_event or "unknown"

    content_type = request.headers.get("content-type", "")
    if not content_type.startswith("application/json"):
        webhook_requests_total.labels(event=event, code="400").inc()
        raise HTTPException(status_code=400, detail="Content-Type must be application/json")
    if not x_github_event or not x_github_delivery:
        webhook_requests_total.labels(event=event, code="400").inc()
        raise HTTPException(status_code=400, detail="Missing X-GitHub-Event or X-GitHub-Delivery header")

    body = await request.body()
    webhook = Webhook(
        event=x_github_event,
        delivery_id=x_github_delivery,
        signature=x_hub_signature,
        signature256=x_hub_signature_256,
        body=body,
    )
    # Bad signatures, duplicates and unknown events are dropped without telling the sender
    ingestion.handle_webhook(webhook)
    webhook_requests_total.labels(event=event, code="200").inc()
    return PlainTextResponse("OK")


def run() -> None:
    logging.basicConfig(
        level=SETTINGS.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host=SETTINGS.host, port=SETTINGS.port, log_level=SETTINGS.log_level.lower())
