import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict

from .command import (
    Command,
    CommandKind,
    ParseCommandError,
    help_text,
    parse_comment,
    parse_comment_with_username,
)
from .config import SETTINGS, Settings
from .events import (
    CheckRunEvent,
    EventKind,
    IssueCommentEvent,
    PullRequestEvent,
    PullRequestReviewCommentEvent,
    PullRequestReviewEvent,
    StatusEvent,
)
from .git import GitRepository
from .github import STATUS_CONTEXT, GitHubClient
from .metrics import (
    commands_total,
    processor_failures_total,
    processor_handling_seconds,
    processor_queue_depth,
    pull_requests_tracked,
)
from .models import PullRequestLifecycle, PullRequestState, Repo, Status
from .queue import MergeQueue

logger = logging.getLogger(__name__)


class RequestKind(str, Enum):
    WEBHOOK = "webhook"
    SYNCHRONIZE = "synchronize"


class Request(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: RequestKind
    event: Optional[Any] = None
    delivery_id: str = ""


class EventProcessor:
    """Owns all pull request state for one repository.

    Requests are taken off an asyncio queue by a single consumer and handled
    one at a time, so nothing here needs locking. Handling itself is
    synchronous (GitHub calls and git subprocesses) and runs in a worker
    thread to keep the event loop free for producers.
    """

    def __init__(
        self,
        repo: Repo,
        gh: GitHubClient,
        git: GitRepository,
        settings: Settings = SETTINGS,
        merge_queue: Optional[MergeQueue] = None,
    ):
        self.repo = repo
        self.gh = gh
        self.git = git
        self.settings = settings
        self.pulls: Dict[int, PullRequestState] = {}
        self.merge_queue = merge_queue or MergeQueue(repo, gh, git, settings)
        self.requests: "asyncio.Queue[Request]" = asyncio.Queue()
        self._handlers: Dict[EventKind, Callable[[Any], None]] = {
            EventKind.ISSUE_COMMENT: self._on_issue_comment,
            EventKind.PULL_REQUEST: self._on_pull_request,
            EventKind.PULL_REQUEST_REVIEW: self._on_review,
            EventKind.PULL_REQUEST_REVIEW_COMMENT: self._on_review_comment,
            EventKind.CHECK_RUN: self._on_check_run,
            EventKind.STATUS: self._on_status,
            EventKind.PING: self._on_ping,
        }

    # --- Producer side ---
    def submit(self, event: Any, delivery_id: str) -> None:
        self.requests.put_nowait(Request(kind=RequestKind.WEBHOOK, event=event, delivery_id=delivery_id))
        processor_queue_depth.set(self.requests.qsize())

    # --- Consumer side ---
    async def run(self) -> None:
        await asyncio.to_thread(self.handle_request, Request(kind=RequestKind.SYNCHRONIZE))
        while True:
            request = await self.requests.get()
            processor_queue_depth.set(self.requests.qsize())
            try:
                with processor_handling_seconds.time():
                    await asyncio.to_thread(self.handle_request, request)
            except Exception:
                processor_failures_total.inc()
                logger.exception("Failed handling %s request %s", request.kind.value, request.delivery_id)
            finally:
                self.requests.task_done()

    def handle_request(self, request: Request) -> None:
        if request.kind is RequestKind.SYNCHRONIZE:
            self.synchronize()
        else:
            self.handle_event(request.event, request.delivery_id)
        self.process_merge_queue()

    def handle_event(self, event: Any, delivery_id: str = "") -> None:
        logger.info("Handling %s event (delivery %s)", event.kind.value, delivery_id)
        handler = self._handlers.get(event.kind)
        if handler is None:
            logger.debug("No handler for %s", event.kind.value)
            return
        handler(event)

    def synchronize(self) -> None:
        """Replace all tracked state with the repository's open pull requests."""
        logger.info("Synchronizing open pull requests for %s", self.repo.full_name)
        pulls = self.gh.list_open_pulls(self.repo.owner, self.repo.name)
        self.pulls = {int(p["number"]): PullRequestState.from_pull_request(p) for p in pulls}
        self.merge_queue.reset()
        pull_requests_tracked.set(len(self.pulls))
        logger.info("%s has %d open pull requests", self.repo.full_name, len(self.pulls))

    def process_merge_queue(self) -> None:
        self.merge_queue.process(self.pulls)
        pull_requests_tracked.set(len(self.pulls))

    # --- Event handlers ---
    def _on_issue_comment(self, event: IssueCommentEvent) -> None:
        if event.action != "created" or not event.issue.is_pull_request():
            return
        self.process_comment(event.sender.login, event.issue.number, event.comment.body, event.comment.node_id)

    def _on_review(self, event: PullRequestReviewEvent) -> None:
        if event.action != "submitted":
            return
        self.process_comment(event.sender.login, event.number, event.review.body, event.review.node_id)

    def _on_review_comment(self, event: PullRequestReviewCommentEvent) -> None:
        if event.action != "created":
            return
        self.process_comment(event.sender.login, event.number, event.comment.body, event.comment.node_id)

    def _on_pull_request(self, event: PullRequestEvent) -> None:
        number = event.number
        action = event.action
        payload = event.pull_request

        if action in ("opened", "reopened"):
            if number in self.pulls:
                logger.warning("#%s %s while already tracked; replacing its state", number, action)
            self.pulls[number] = PullRequestState.from_pull_request(payload)
            return
        if action == "closed":
            pull = self.pulls.pop(number, None)
            if pull is not None and pull.status is Status.TESTING:
                self.merge_queue.cancel(number)
            return

        pull = self.pulls.get(number)
        if pull is None:
            # Only opened/reopened (or a sync) start tracking a PR
            logger.debug("Ignoring pull_request %s on untracked #%s", action, number)
            return

        if action == "synchronize":
            was_testing = pull.status is Status.TESTING
            if pull.update_head((payload.get("head") or {}).get("sha") or ""):
                if was_testing:
                    self.merge_queue.cancel(number)
                self.gh.create_comment(
                    self.repo.owner,
                    self.repo.name,
                    number,
                    ":exclamation: Land has been canceled due to this PR being updated with new commits. "
                    "Please issue another Land command if you want to requeue this PR.",
                )
        elif action == "labeled" and event.label is not None:
            pull.labels.add(event.label.name)
        elif action == "unlabeled" and event.label is not None:
            pull.labels.discard(event.label.name)
        elif action == "edited":
            pull.title = payload.get("title") or ""
            pull.body = payload.get("body") or ""
            base = payload.get("base") or {}
            pull.base_ref_name = base.get("ref") or pull.base_ref_name
            pull.base_ref_oid = base.get("sha") or pull.base_ref_oid
        elif action == "ready_for_review":
            pull.is_draft = False
        elif action == "converted_to_draft":
            pull.is_draft = True
        else:
            logger.debug("Ignoring pull_request action %s on #%s", action, number)

    def _pull_for_merge_oid(self, oid: str) -> Optional[PullRequestState]:
        for pull in self.pulls.values():
            if pull.status is Status.TESTING and pull.merge_oid == oid:
                return pull
        return None

    def _on_check_run(self, event: CheckRunEvent) -> None:
        run = event.check_run
        if event.action != "completed" or run.conclusion is None:
            return
        pull = self._pull_for_merge_oid(run.head_sha)
        if pull is None:
            return
        passed = run.conclusion in ("success", "neutral", "skipped")
        logger.info("#%s check '%s' completed: %s", pull.number, run.name, run.conclusion)
        pull.add_test_result(run.name, run.details_url or "", passed)

    def _on_status(self, event: StatusEvent) -> None:
        if event.state == "pending" or event.context == STATUS_CONTEXT:
            return
        pull = self._pull_for_merge_oid(event.sha)
        if pull is None:
            return
        logger.info("#%s status '%s': %s", pull.number, event.context, event.state)
        pull.add_test_result(event.context, event.target_url or "", event.state == "success")

    def _on_ping(self, event: Any) -> None:
        logger.info("Ping received: %s", getattr(event, "zen", ""))

    # --- Commands ---
    def parse(self, body: Optional[str]) -> Optional[Command]:
        if not self.settings.require_slash and self.settings.bot_username:
            return parse_comment_with_username(body, self.settings.bot_username)
        return parse_comment(body)

    def _help(self) -> str:
        return help_text(self.settings.require_review, self.settings.maintainer_mode, self.settings.test_branch)

    def _comment(self, number: int, body: str) -> None:
        self.gh.create_comment(self.repo.owner, self.repo.name, number, body)

    def _get_pull(self, number: int) -> Optional[PullRequestState]:
        pull = self.pulls.get(number)
        if pull is not None:
            return pull
        payload = self.gh.get_pr(self.repo.owner, self.repo.name, number)
        if payload is None:
            logger.warning("Unable to fetch #%s", number)
            return None
        pull = PullRequestState.from_pull_request(payload)
        if pull.state is not PullRequestLifecycle.OPEN:
            logger.info("#%s is %s; ignoring", number, pull.state.value)
            return None
        self.pulls[number] = pull
        return pull

    def process_comment(self, user: str, number: int, body: Optional[str], node_id: str = "") -> None:
        try:
            command = self.parse(body)
        except ParseCommandError as e:
            logger.info("Invalid command from %s on #%s: %s", user, number, e)
            commands_total.labels(kind="invalid", result="parse_error").inc()
            self._comment(number, f":exclamation: Invalid command\n\n{self._help()}")
            return
        if command is None:
            return

        pull = self._get_pull(number)
        if pull is None:
            return

        logger.info("%s issued '%s' on #%s", user, command.line, number)
        if node_id:
            self.gh.add_reaction(node_id)

        if not self.authorize(user, pull, command):
            commands_total.labels(kind=command.kind.value, result="unauthorized").inc()
            return
        self.execute(user, pull, command)
        commands_total.labels(kind=command.kind.value, result="ok").inc()

    def authorize(self, user: str, pull: PullRequestState, command: Command) -> bool:
        reason = None
        if not self.gh.is_collaborator(self.repo.owner, self.repo.name, user):
            reason = "Not Collaborator"
        elif command.kind is CommandKind.APPROVE and not self.settings.allow_self_review and user == pull.author:
            reason = "Cannot approve your own PR"
        if reason is None:
            return True
        logger.info("%s not authorized for '%s' on #%s: %s", user, command.kind.value, pull.number, reason)
        self._comment(pull.number, f"@{user}: :key: Insufficient privileges: {reason}")
        return False

    def execute(self, user: str, pull: PullRequestState, command: Command) -> None:
        if command.priority is not None:
            pull.priority = command.priority

        kind = command.kind
        if kind is CommandKind.APPROVE:
            self._approve(user, pull)
        elif kind is CommandKind.UNAPPROVE:
            self._unapprove(user, pull)
        elif kind in (CommandKind.LAND, CommandKind.RETRY):
            self._land(user, pull)
        elif kind is CommandKind.CANCEL:
            self._cancel(user, pull)
        elif kind is CommandKind.HELP:
            self._comment(pull.number, self._help())
        # Priority needs nothing beyond the override above

    def _approve(self, user: str, pull: PullRequestState) -> None:
        if not self.settings.allow_self_review and user == pull.author:
            logger.info("Ignoring self-approval of #%s by %s", pull.number, user)
            return
        if user in pull.approved_by:
            self._comment(pull.number, f"@{user} :bulb: You have already approved commit {pull.short_head()}")
            return
        pull.approved_by.add(user)
        self._comment(pull.number, f":pushpin: Commit {pull.short_head()} has been approved by `{user}`")

    def _unapprove(self, user: str, pull: PullRequestState) -> None:
        if user not in pull.approved_by:
            self._comment(pull.number, f"@{user} :bulb: You have not approved this PR")
            return
        pull.approved_by.discard(user)
        msg = f":broken_heart: Approval of commit {pull.short_head()} withdrawn by `{user}`"
        if self.settings.require_review and not pull.is_approved() and pull.status is not Status.IN_REVIEW:
            if pull.status is Status.TESTING:
                self.merge_queue.cancel(pull.number)
            pull.set_status(Status.IN_REVIEW)
            msg += "\n\nThis PR is no longer approved and has been removed from the land queue."
        self._comment(pull.number, msg)

    def _land(self, user: str, pull: PullRequestState) -> None:
        if pull.status is not Status.IN_REVIEW:
            self._comment(pull.number, f"@{user} :bulb: This PR is already queued for landing")
            return
        if pull.looks_like_draft():
            self._comment(pull.number, ":clipboard: Looks like this PR is still in progress, unable to queue for landing")
            return
        if not pull.mergeable:
            self._comment(pull.number, f"@{user} :lock: This PR has merge conflicts and can't be queued for landing")
            return
        if self.settings.require_review and not pull.is_approved():
            self._comment(pull.number, f"@{user} :x: This PR needs an approval before it can be queued for landing")
            return
        logger.info("#%s queued for landing by %s (priority %s)", pull.number, user, pull.priority)
        pull.set_status(Status.READY_TO_LAND)

    def _cancel(self, user: str, pull: PullRequestState) -> None:
        if pull.status is Status.IN_REVIEW:
            logger.info("Cancel on #%s by %s: not queued", pull.number, user)
            return
        was_testing = pull.status is Status.TESTING
        pull.set_status(Status.IN_REVIEW)
        if was_testing:
            self.merge_queue.cancel(pull.number)
        logger.info("#%s removed from the land queue by %s", pull.number, user)
