from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Type, Union

from pydantic import BaseModel

from .models import Repo


class EventKind(str, Enum):
    ISSUE_COMMENT = "issue_comment"
    PULL_REQUEST = "pull_request"
    PULL_REQUEST_REVIEW = "pull_request_review"
    PULL_REQUEST_REVIEW_COMMENT = "pull_request_review_comment"
    CHECK_RUN = "check_run"
    STATUS = "status"
    PING = "ping"


class User(BaseModel):
    login: str


class Repository(BaseModel):
    name: str
    owner: User

    @property
    def repo(self) -> Repo:
        return Repo(owner=self.owner.login, name=self.name)


class Label(BaseModel):
    name: str


class Comment(BaseModel):
    id: int
    node_id: str = ""
    body: Optional[str] = None


class Review(BaseModel):
    id: int
    node_id: str = ""
    body: Optional[str] = None
    state: Optional[str] = None


class Issue(BaseModel):
    number: int
    # Present only when the issue is a pull request
    pull_request: Optional[Dict[str, Any]] = None

    def is_pull_request(self) -> bool:
        return self.pull_request is not None


class CheckRun(BaseModel):
    name: str
    head_sha: str
    status: Optional[str] = None
    conclusion: Optional[str] = None
    details_url: Optional[str] = None


class IssueCommentEvent(BaseModel):
    kind: ClassVar[EventKind] = EventKind.ISSUE_COMMENT

    action: str
    issue: Issue
    comment: Comment
    sender: User
    repository: Repository


class PullRequestEvent(BaseModel):
    kind: ClassVar[EventKind] = EventKind.PULL_REQUEST

    action: str
    number: int
    pull_request: Dict[str, Any]
    label: Optional[Label] = None
    sender: Optional[User] = None
    repository: Repository


class PullRequestReviewEvent(BaseModel):
    kind: ClassVar[EventKind] = EventKind.PULL_REQUEST_REVIEW

    action: str
    pull_request: Dict[str, Any]
    review: Review
    sender: User
    repository: Repository

    @property
    def number(self) -> int:
        return int(self.pull_request["number"])


class PullRequestReviewCommentEvent(BaseModel):
    kind: ClassVar[EventKind] = EventKind.PULL_REQUEST_REVIEW_COMMENT

    action: str
    pull_request: Dict[str, Any]
    comment: Comment
    sender: User
    repository: Repository

    @property
    def number(self) -> int:
        return int(self.pull_request["number"])


class CheckRunEvent(BaseModel):
    kind: ClassVar[EventKind] = EventKind.CHECK_RUN

    action: str
    check_run: CheckRun
    repository: Repository


class StatusEvent(BaseModel):
    kind: ClassVar[EventKind] = EventKind.STATUS

    sha: str
    state: str
    context: str
    target_url: Optional[str] = None
    repository: Repository


class PingEvent(BaseModel):
    kind: ClassVar[EventKind] = EventKind.PING

    zen: Optional[str] = None
    repository: Optional[Repository] = None


Event = Union[
    IssueCommentEvent,
    PullRequestEvent,
    PullRequestReviewEvent,
    PullRequestReviewCommentEvent,
    CheckRunEvent,
    StatusEvent,
    PingEvent,
]

EVENT_MODELS: Dict[EventKind, Type[BaseModel]] = {
    EventKind.ISSUE_COMMENT: IssueCommentEvent,
    EventKind.PULL_REQUEST: PullRequestEvent,
    EventKind.PULL_REQUEST_REVIEW: PullRequestReviewEvent,
    EventKind.PULL_REQUEST_REVIEW_COMMENT: PullRequestReviewCommentEvent,
    EventKind.CHECK_RUN: CheckRunEvent,
    EventKind.STATUS: StatusEvent,
    EventKind.PING: PingEvent,
}


def event_kind(event_type: str) -> Optional[EventKind]:
    try:
        return EventKind(event_type)
    except ValueError:
        return None


def decode_event(event_type: str, body: bytes) -> Optional[Event]:
    """Decode a raw webhook body into its typed event.

    Returns None for event types this service does not consume. Raises
    pydantic.ValidationError when a consumed type has a malformed body.
    """
    kind = event_kind(event_type)
    if kind is None:
        return None
    return EVENT_MODELS[kind].model_validate_json(body)  # type: ignore[return-value]
