import time
from enum import Enum
from typing import Any, Dict, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field


DRAFT_TITLE_PREFIXES = ("WIP", "TODO", "[WIP]", "[TODO]")


class Repo(BaseModel):
    model_config = ConfigDict(frozen=True)

    owner: str
    name: str

    @classmethod
    def from_repository(cls, repository: Dict[str, Any]) -> "Repo":
        return cls(owner=(repository.get("owner") or {}).get("login", ""), name=repository.get("name", ""))

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def ssh_url(self) -> str:
        return f"git@github.com:{self.owner}/{self.name}.git"

    def https_url(self) -> str:
        return f"https://github.com/{self.owner}/{self.name}"


class Status(str, Enum):
    IN_REVIEW = "in_review"
    READY_TO_LAND = "ready_to_land"
    TESTING = "testing"


class PullRequestLifecycle(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    MERGED = "merged"


class TestResult(BaseModel):
    passed: bool
    details_url: str = ""


class QueueEntry(BaseModel):
    """Selection key for the merge queue: higher priority first, then lower PR number."""

    model_config = ConfigDict(frozen=True)

    priority: int = 0
    number: int

    def sort_key(self) -> Tuple[int, int]:
        return (-self.priority, self.number)

    def __lt__(self, other: "QueueEntry") -> bool:
        return self.sort_key() < other.sort_key()


class PullRequestState(BaseModel):
    number: int
    author: Optional[str] = None
    title: str = ""
    body: str = ""

    head_ref_name: str = ""
    head_ref_oid: str = ""
    head_repo: Optional[Repo] = None

    base_ref_name: str = ""
    base_ref_oid: str = ""

    state: PullRequestLifecycle = PullRequestLifecycle.OPEN
    is_draft: bool = False
    approved_by: Set[str] = Field(default_factory=set)
    maintainer_can_modify: bool = False
    mergeable: bool = True
    labels: Set[str] = Field(default_factory=set)
    priority: int = 0
    # Reserved for delegated review rights; nothing reads it yet.
    delegate: bool = False

    status: Status = Status.IN_REVIEW
    merge_oid: Optional[str] = None
    tests_started_at: Optional[float] = None
    test_results: Dict[str, TestResult] = Field(default_factory=dict)

    @classmethod
    def from_pull_request(cls, pull: Dict[str, Any]) -> "PullRequestState":
        head = pull.get("head") or {}
        base = pull.get("base") or {}
        head_repo = head.get("repo")
        if pull.get("merged") or pull.get("merged_at"):
            state = PullRequestLifecycle.MERGED
        elif pull.get("state") == "closed":
            state = PullRequestLifecycle.CLOSED
        else:
            state = PullRequestLifecycle.OPEN
        mergeable = pull.get("mergeable")
        return cls(
            number=int(pull["number"]),
            author=(pull.get("user") or {}).get("login"),
            title=pull.get("title") or "",
            body=pull.get("body") or "",
            head_ref_name=head.get("ref") or "",
            head_ref_oid=head.get("sha") or "",
            head_repo=Repo.from_repository(head_repo) if head_repo else None,
            base_ref_name=base.get("ref") or "",
            base_ref_oid=base.get("sha") or "",
            state=state,
            is_draft=bool(pull.get("draft")),
            maintainer_can_modify=bool(pull.get("maintainer_can_modify")),
            # The list endpoint omits mergeability; only an explicit false blocks landing.
            mergeable=mergeable is not False,
            labels={lbl.get("name") for lbl in pull.get("labels") or [] if lbl.get("name")},
        )

    def looks_like_draft(self) -> bool:
        return self.is_draft or any(self.title.startswith(p) for p in DRAFT_TITLE_PREFIXES)

    def is_approved(self) -> bool:
        return bool(self.approved_by)

    def short_head(self) -> str:
        return self.head_ref_oid[:7]

    def queue_entry(self) -> QueueEntry:
        return QueueEntry(priority=self.priority, number=self.number)

    def set_status(self, status: Status, merge_oid: Optional[str] = None) -> None:
        self.status = status
        if status is Status.TESTING:
            self.merge_oid = merge_oid
            self.tests_started_at = time.time()
            self.test_results = {}
        else:
            self.merge_oid = None
            self.tests_started_at = None
            self.test_results = {}

    def update_head(self, oid: str) -> bool:
        """Record a new head commit.

        Returns True when the PR was knocked out of the queue because the new
        commits invalidate the candidate that was queued or under test.
        """
        self.head_ref_oid = oid
        if self.status is Status.TESTING and self.merge_oid == oid:
            return False
        if self.status is Status.IN_REVIEW:
            return False
        self.set_status(Status.IN_REVIEW)
        return True

    def add_test_result(self, name: str, details_url: str, passed: bool) -> None:
        if self.status is not Status.TESTING:
            return
        self.test_results[name] = TestResult(passed=passed, details_url=details_url or "")


class Webhook(BaseModel):
    """One webhook delivery as received, before authentication and decoding."""

    event: str
    delivery_id: str
    signature: Optional[str] = None  # legacy X-Hub-Signature (sha1=...)
    signature256: Optional[str] = None  # X-Hub-Signature-256 (sha256=...)
    body: bytes
