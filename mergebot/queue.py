import time
import logging
from enum import Enum
from typing import Dict, Optional, Tuple

import httpx

from .config import SETTINGS, Settings
from .git import GitError, GitRepository, MergeConflict
from .github import GitHubClient, GitHubError
from .metrics import (
    queue_admissions_total,
    queue_conflicts_total,
    queue_landings_total,
    queue_testing,
)
from .models import PullRequestState, Repo, Status, TestResult

logger = logging.getLogger(__name__)

MAINTAINER_EDITS_URL = (
    "https://help.github.com/en/github/collaborating-with-issues-and-pull-requests/"
    "allowing-changes-to-a-pull-request-branch-created-from-a-fork"
)


class TestOutcome(str, Enum):
    __test__ = False

    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


def evaluate_tests(
    pull: PullRequestState, required_checks, timeout_seconds: int, now: Optional[float] = None
) -> Tuple[TestOutcome, Optional[str], Optional[TestResult]]:
    """Judge the queue head's recorded results against the required checks.

    With no required checks configured the head counts as passed as soon as it
    is looked at again.
    """
    if not required_checks:
        return TestOutcome.PASSED, None, None
    for name in required_checks:
        result = pull.test_results.get(name)
        if result is not None and not result.passed:
            return TestOutcome.FAILED, name, result
    if all(name in pull.test_results for name in required_checks):
        return TestOutcome.PASSED, None, None
    started = pull.tests_started_at or 0.0
    if (now if now is not None else time.time()) - started >= timeout_seconds:
        return TestOutcome.TIMED_OUT, None, None
    return TestOutcome.PENDING, None, None


class MergeQueue:
    """Lands ReadyToLand pull requests one at a time.

    Invoked after every state change. Each call first finalizes the current
    head (the single Testing PR) and then, if the slot is free, rebases the
    next candidate onto its base and pushes it to the test branch.
    """

    def __init__(self, repo: Repo, gh: GitHubClient, git: GitRepository, settings: Settings = SETTINGS):
        self.repo = repo
        self.gh = gh
        self.git = git
        self.settings = settings
        self.head: Optional[int] = None

    def reset(self) -> None:
        self.head = None
        queue_testing.set(0)

    def process(self, pulls: Dict[int, PullRequestState]) -> None:
        testing = [p.number for p in pulls.values() if p.status is Status.TESTING]
        assert len(testing) <= 1, f"more than one pull request in Testing: {testing}"

        self._process_head(pulls)
        if self.head is None:
            self._admit_next(pulls)
        queue_testing.set(0 if self.head is None else 1)

    def cancel(self, number: int) -> None:
        """Drop ``number`` as queue head and discard its in-flight test branch."""
        if self.head != number:
            return
        logger.info("Aborting test run of #%s", number)
        self.head = None
        queue_testing.set(0)
        try:
            self.gh.delete_ref(self.repo.owner, self.repo.name, f"heads/{self.settings.test_branch}")
        except (GitHubError, httpx.HTTPError):
            logger.warning("Unable to delete test branch '%s'", self.settings.test_branch, exc_info=True)

    # --- Finalize ---
    def _process_head(self, pulls: Dict[int, PullRequestState]) -> None:
        if self.head is None:
            return
        pull = pulls.get(self.head)
        # Closed, or pulled out of Testing (canceled, new commits) since admission
        if pull is None or pull.status is not Status.TESTING:
            self.head = None
            return

        outcome, name, result = evaluate_tests(pull, self.settings.required_checks, self.settings.test_timeout_seconds)
        if outcome is TestOutcome.PENDING:
            return
        if outcome is TestOutcome.FAILED:
            url = result.details_url if result else ""
            self._status(pull.head_ref_oid, "failure", f"Test failed: {name}", url)
            self._comment(pull.number, f":broken_heart: Test Failed - [{name}]({url})")
            pull.set_status(Status.IN_REVIEW)
            self.head = None
            return
        if outcome is TestOutcome.TIMED_OUT:
            self._status(pull.head_ref_oid, "failure", "Timed-out")
            self._comment(pull.number, ":boom: Tests timed-out")
            pull.set_status(Status.IN_REVIEW)
            self.head = None
            return
        self._land(pulls, pull)

    def _land(self, pulls: Dict[int, PullRequestState], pull: PullRequestState) -> None:
        self.head = None
        merge_oid = pull.merge_oid or ""
        # The platform is the source of truth for landed PRs
        del pulls[pull.number]
        try:
            # Update the PR in place first so the platform marks it merged
            # rather than closed once the base ref moves.
            if self.settings.maintainer_mode and pull.head_repo is not None:
                self.git.push_to_remote(pull.head_repo, pull.head_ref_name, pull.head_ref_oid, merge_oid)
                self._wait_for_head(pull.number, merge_oid)
            self.gh.update_ref(self.repo.owner, self.repo.name, f"heads/{pull.base_ref_name}", merge_oid, force=False)
        except (GitError, GitHubError, httpx.HTTPError) as e:
            logger.warning("Landing #%s failed: %s", pull.number, e)
            queue_landings_total.labels(result="error").inc()
            pull.set_status(Status.IN_REVIEW)
            pulls[pull.number] = pull
            if isinstance(e, GitError):
                msg = (
                    ":exclamation: failed to update PR in-place; halting merge.\n"
                    f'Make sure that ["Allow edits from maintainers"]({MAINTAINER_EDITS_URL}) '
                    "is enabled before attempting to reland this PR."
                )
            else:
                msg = f"Error occurred while trying to merge into {pull.base_ref_name}:\n```\n{e}\n```"
            self._comment(pull.number, msg)
            return

        queue_landings_total.labels(result="success").inc()
        self._status(merge_oid, "success", "Landed")
        logger.info("#%s landed on %s at %s", pull.number, pull.base_ref_name, merge_oid)

    def _wait_for_head(self, number: int, merge_oid: str) -> None:
        for attempt in range(self.settings.ref_propagation_attempts):
            pr = self.gh.get_pr(self.repo.owner, self.repo.name, number)
            if pr and (pr.get("head") or {}).get("sha") == merge_oid:
                return
            logger.debug("Waiting for head of #%s to become %s: attempt %s", number, merge_oid, attempt)
            time.sleep(1)
        logger.warning("Head of #%s never reported %s; updating base anyway", number, merge_oid)

    # --- Admit ---
    def _admit_next(self, pulls: Dict[int, PullRequestState]) -> None:
        candidates = sorted(
            (p for p in pulls.values() if p.status is Status.READY_TO_LAND),
            key=PullRequestState.queue_entry,
        )
        branch = self.settings.test_branch
        for pull in candidates:
            logger.info("Creating merge for #%s", pull.number)
            try:
                merge_oid = self.git.fetch_and_rebase(pull.base_ref_name, pull.head_ref_oid, branch, pull.number)
                self.git.push_branch(branch)
            except MergeConflict as e:
                logger.info("Merge conflict for #%s: %s", pull.number, e)
                queue_conflicts_total.inc()
                pull.set_status(Status.IN_REVIEW)
                self._status(pull.head_ref_oid, "error", "Merge Conflict")
                self._comment(pull.number, ":lock: Merge Conflict")
                continue
            except GitError as e:
                logger.warning("Preparing #%s for testing failed: %s", pull.number, e)
                pull.set_status(Status.IN_REVIEW)
                self._comment(
                    pull.number,
                    f":exclamation: Unable to prepare this PR for testing; use `/retry` to queue it again.\n```\n{e}\n```",
                )
                continue

            pull.set_status(Status.TESTING, merge_oid=merge_oid)
            self.head = pull.number
            queue_admissions_total.inc()
            logger.info("pushed '%s' branch; #%s is testing at %s", branch, pull.number, merge_oid)
            self._status(pull.head_ref_oid, "pending", f"Testing as {merge_oid[:7]}")
            return

    # --- Best-effort notifications ---
    def _comment(self, number: int, body: str) -> None:
        try:
            self.gh.create_comment(self.repo.owner, self.repo.name, number, body)
        except (GitHubError, httpx.HTTPError):
            logger.warning("Unable to comment on #%s", number, exc_info=True)

    def _status(self, sha: str, state: str, description: str, target_url: Optional[str] = None) -> None:
        if not sha:
            return
        try:
            self.gh.create_status(self.repo.owner, self.repo.name, sha, state, description, target_url)
        except (GitHubError, httpx.HTTPError):
            logger.warning("Unable to set %s status on %s", state, sha, exc_info=True)
