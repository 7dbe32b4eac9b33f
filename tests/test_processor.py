import asyncio
import json

import pytest

from mergebot.command import parse_comment
from mergebot.config import Settings
from mergebot.events import decode_event
from mergebot.git import MergeConflict
from mergebot.models import PullRequestState, Repo, Status
from mergebot.processor import EventProcessor, Request, RequestKind

REPO = Repo(owner="octo", name="repo")


def pr_payload(number, author="carol", sha="abc1234def5678", title="Add widget", draft=False):
    return {
        "number": number,
        "user": {"login": author},
        "title": title,
        "body": "",
        "state": "open",
        "draft": draft,
        "maintainer_can_modify": True,
        "head": {"ref": f"feature-{number}", "sha": sha, "repo": {"name": "repo", "owner": {"login": "carol"}}},
        "base": {"ref": "main", "sha": "base000"},
        "labels": [],
    }


class FakeGH:
    def __init__(self, collaborators=("alice", "bob", "carol"), pulls=None):
        self.collaborators = set(collaborators)
        self.pulls = pulls or {}
        self.comments = []
        self.calls = []

    def create_comment(self, owner, repo, number, body):
        self.comments.append((number, body))

    def add_reaction(self, node_id, content="ROCKET"):
        self.calls.append(("react", node_id))
        return True

    def is_collaborator(self, owner, repo, user):
        self.calls.append(("is_collaborator", user))
        return user in self.collaborators

    def get_pr(self, owner, repo, number):
        self.calls.append(("get_pr", number))
        return self.pulls.get(number)

    def list_open_pulls(self, owner, repo):
        return list(self.pulls.values())

    def update_ref(self, owner, repo, ref, sha, force=False):
        self.calls.append(("update_ref", ref, sha, force))

    def delete_ref(self, owner, repo, ref):
        self.calls.append(("delete_ref", ref))
        return True

    def create_status(self, owner, repo, sha, state, description=None, target_url=None):
        self.calls.append(("status", sha, state))
        return True


class FakeGit:
    def __init__(self, conflicts=()):
        self.conflicts = set(conflicts)
        self.calls = []

    def fetch_and_rebase(self, base_ref, head_oid, branch, pr_number):
        self.calls.append(("rebase", pr_number, branch))
        if pr_number in self.conflicts:
            raise MergeConflict("conflict")
        return f"merge{pr_number:04d}abcdef"

    def push_branch(self, branch):
        self.calls.append(("push_branch", branch))

    def push_to_remote(self, repo, branch, old_oid, new_oid):
        self.calls.append(("push_to_remote", branch, new_oid))


def make_settings(**overrides):
    settings = Settings()
    settings.allow_self_review = False
    settings.require_review = True
    settings.maintainer_mode = False
    settings.require_slash = True
    settings.bot_username = ""
    settings.required_checks = []
    settings.test_branch = "auto"
    for key, value in overrides.items():
        setattr(settings, key, value)
    return settings


def make_processor(gh=None, git=None, pulls=(), **overrides):
    gh = gh or FakeGH()
    proc = EventProcessor(REPO, gh, git or FakeGit(), make_settings(**overrides))
    for payload in pulls:
        proc.pulls[payload["number"]] = PullRequestState.from_pull_request(payload)
    return proc


def comment_event(number, body, user="alice", delivery_id="d"):
    payload = {
        "action": "created",
        "issue": {"number": number, "pull_request": {}},
        "comment": {"id": 1, "node_id": "IC_1", "body": body},
        "sender": {"login": user},
        "repository": {"name": "repo", "owner": {"login": "octo"}},
    }
    return decode_event("issue_comment", json.dumps(payload).encode())


def test_comment_without_command_does_nothing():
    proc = make_processor(pulls=[pr_payload(1)])
    proc.process_comment("alice", 1, "Nice work!", "IC_1")
    assert proc.gh.comments == []
    assert proc.gh.calls == []


def test_invalid_command_posts_help_without_reacting():
    proc = make_processor(pulls=[pr_payload(1)])
    proc.process_comment("alice", 1, "/frobnicate", "IC_1")
    assert len(proc.gh.comments) == 1
    number, body = proc.gh.comments[0]
    assert number == 1
    assert body.startswith(":exclamation: Invalid command")
    assert "Merge bot help" in body
    assert ("react", "IC_1") not in proc.gh.calls


def test_approve_twice_is_idempotent():
    proc = make_processor(pulls=[pr_payload(1)])
    proc.process_comment("bob", 1, "/approve", "IC_1")
    proc.process_comment("bob", 1, "/lgtm", "IC_2")

    pull = proc.pulls[1]
    assert pull.approved_by == {"bob"}
    assert len(proc.gh.comments) == 2
    assert "abc1234" in proc.gh.comments[0][1]
    assert "approved by `bob`" in proc.gh.comments[0][1]
    assert "already approved" in proc.gh.comments[1][1]
    assert ("react", "IC_1") in proc.gh.calls
    assert ("react", "IC_2") in proc.gh.calls


def test_self_approval_is_refused_with_reason():
    proc = make_processor(pulls=[pr_payload(1, author="carol")])
    proc.process_comment("carol", 1, "/approve", "IC_1")
    assert proc.pulls[1].approved_by == set()
    assert len(proc.gh.comments) == 1
    assert proc.gh.comments[0][1].startswith("@carol: :key: Insufficient privileges:")
    assert "approved by" not in proc.gh.comments[0][1]


def test_self_approval_allowed_by_policy():
    proc = make_processor(pulls=[pr_payload(1, author="carol")], allow_self_review=True)
    proc.process_comment("carol", 1, "/approve", "IC_1")
    assert proc.pulls[1].approved_by == {"carol"}


def test_execute_skips_self_approval_even_when_authorized():
    proc = make_processor(pulls=[pr_payload(1, author="carol")])
    proc.execute("carol", proc.pulls[1], parse_comment("/approve"))
    assert proc.pulls[1].approved_by == set()
    assert proc.gh.comments == []


def test_non_collaborator_gets_one_reason_comment():
    proc = make_processor(pulls=[pr_payload(1)])
    proc.process_comment("mallory", 1, "/land p=9", "IC_1")
    assert proc.gh.comments == [(1, "@mallory: :key: Insufficient privileges: Not Collaborator")]
    assert proc.pulls[1].priority == 0
    assert proc.pulls[1].status is Status.IN_REVIEW


def test_land_requires_approval():
    proc = make_processor(pulls=[pr_payload(1)])
    proc.process_comment("alice", 1, "/land", "IC_1")
    assert proc.pulls[1].status is Status.IN_REVIEW
    assert "needs an approval" in proc.gh.comments[-1][1]


def test_land_without_review_requirement():
    proc = make_processor(pulls=[pr_payload(1)], require_review=False)
    proc.process_comment("alice", 1, "/land", "IC_1")
    assert proc.pulls[1].status is Status.READY_TO_LAND


def test_land_applies_priority_first():
    proc = make_processor(pulls=[pr_payload(1)])
    proc.pulls[1].approved_by.add("bob")
    proc.process_comment("alice", 1, "/land p=5", "IC_1")
    assert proc.pulls[1].priority == 5
    assert proc.pulls[1].status is Status.READY_TO_LAND


def test_land_refuses_draft_titles():
    proc = make_processor(pulls=[pr_payload(1, title="WIP: widget")], require_review=False)
    proc.process_comment("alice", 1, "/land", "IC_1")
    assert proc.pulls[1].status is Status.IN_REVIEW
    assert "still in progress" in proc.gh.comments[-1][1]


def test_land_when_already_queued_comments():
    proc = make_processor(pulls=[pr_payload(1)], require_review=False)
    proc.process_comment("alice", 1, "/land", "IC_1")
    proc.process_comment("alice", 1, "/retry", "IC_2")
    assert proc.pulls[1].status is Status.READY_TO_LAND
    assert "already queued" in proc.gh.comments[-1][1]


def test_priority_command_is_silent():
    proc = make_processor(pulls=[pr_payload(1)])
    proc.process_comment("alice", 1, "/priority 7", "IC_1")
    assert proc.pulls[1].priority == 7
    assert proc.gh.comments == []


def test_cancel_testing_pr_aborts_test_branch():
    proc = make_processor(pulls=[pr_payload(1)])
    pull = proc.pulls[1]
    pull.set_status(Status.TESTING, merge_oid="merge0001")
    proc.merge_queue.head = 1

    proc.process_comment("alice", 1, "/cancel", "IC_1")
    assert pull.status is Status.IN_REVIEW
    assert pull.merge_oid is None
    assert proc.merge_queue.head is None
    assert ("delete_ref", "heads/auto") in proc.gh.calls


def test_unapprove_last_approver_dequeues():
    proc = make_processor(pulls=[pr_payload(1)])
    pull = proc.pulls[1]
    pull.approved_by.add("bob")
    pull.set_status(Status.READY_TO_LAND)

    proc.process_comment("bob", 1, "/r-", "IC_1")
    assert pull.approved_by == set()
    assert pull.status is Status.IN_REVIEW
    assert "withdrawn by `bob`" in proc.gh.comments[-1][1]


def test_unknown_pr_is_fetched_on_first_comment():
    gh = FakeGH(pulls={9: pr_payload(9)})
    proc = make_processor(gh=gh)
    proc.process_comment("bob", 9, "/approve", "IC_1")
    assert ("get_pr", 9) in gh.calls
    assert proc.pulls[9].approved_by == {"bob"}


def test_mention_commands_when_slash_not_required():
    proc = make_processor(pulls=[pr_payload(1)], require_slash=False, bot_username="mergebot")
    proc.process_comment("bob", 1, "@mergebot r+", "IC_1")
    proc.process_comment("alice", 1, "/approve", "IC_2")
    assert proc.pulls[1].approved_by == {"bob"}


def test_comment_event_drives_the_merge_queue():
    git = FakeGit()
    proc = make_processor(git=git, pulls=[pr_payload(1)], require_review=False)
    proc.handle_request(Request(kind=RequestKind.WEBHOOK, event=comment_event(1, "/land"), delivery_id="d"))

    pull = proc.pulls[1]
    assert pull.status is Status.TESTING
    assert pull.merge_oid == "merge0001abcdef"
    assert proc.merge_queue.head == 1
    assert ("rebase", 1, "auto") in git.calls


def test_new_commits_kick_pr_out_of_testing():
    proc = make_processor(pulls=[pr_payload(1)])
    pull = proc.pulls[1]
    pull.set_status(Status.TESTING, merge_oid="merge0001")
    proc.merge_queue.head = 1

    payload = {
        "action": "synchronize",
        "number": 1,
        "pull_request": pr_payload(1, sha="fff0000"),
        "repository": {"name": "repo", "owner": {"login": "octo"}},
    }
    proc.handle_event(decode_event("pull_request", json.dumps(payload).encode()))
    assert pull.status is Status.IN_REVIEW
    assert pull.head_ref_oid == "fff0000"
    assert proc.merge_queue.head is None
    assert "canceled" in proc.gh.comments[-1][1]


def test_closed_pr_is_forgotten():
    proc = make_processor(pulls=[pr_payload(1)])
    payload = {
        "action": "closed",
        "number": 1,
        "pull_request": dict(pr_payload(1), state="closed"),
        "repository": {"name": "repo", "owner": {"login": "octo"}},
    }
    proc.handle_event(decode_event("pull_request", json.dumps(payload).encode()))
    assert 1 not in proc.pulls


def test_check_run_recorded_against_merge_oid():
    proc = make_processor(pulls=[pr_payload(1)])
    pull = proc.pulls[1]
    pull.set_status(Status.TESTING, merge_oid="merge0001")
    payload = {
        "action": "completed",
        "check_run": {
            "name": "ci",
            "head_sha": "merge0001",
            "status": "completed",
            "conclusion": "failure",
            "details_url": "https://ci.example/1",
        },
        "repository": {"name": "repo", "owner": {"login": "octo"}},
    }
    proc.handle_event(decode_event("check_run", json.dumps(payload).encode()))
    assert pull.test_results["ci"].passed is False
    assert pull.test_results["ci"].details_url == "https://ci.example/1"


def test_synchronize_replaces_state():
    gh = FakeGH(pulls={2: pr_payload(2), 3: pr_payload(3)})
    proc = make_processor(gh=gh, pulls=[pr_payload(1)])
    proc.merge_queue.head = 1
    proc.synchronize()
    assert sorted(proc.pulls) == [2, 3]
    assert proc.merge_queue.head is None


def test_run_keeps_going_after_a_failed_request(monkeypatch):
    seen = []

    async def scenario():
        proc = make_processor()

        def handle_event(event, delivery_id=""):
            seen.append(delivery_id)
            if delivery_id == "d1":
                raise RuntimeError("boom")

        monkeypatch.setattr(proc, "handle_event", handle_event)
        task = asyncio.create_task(proc.run())
        proc.submit(object(), "d1")
        proc.submit(object(), "d2")
        await asyncio.wait_for(proc.requests.join(), timeout=5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())
    assert seen == ["d1", "d2"]


def pr_event(action, pull, **extra):
    payload = {
        "action": action,
        "number": pull["number"],
        "pull_request": pull,
        "repository": {"name": "repo", "owner": {"login": "octo"}},
    }
    payload.update(extra)
    return decode_event("pull_request", json.dumps(payload).encode())


def test_late_events_do_not_resurrect_a_closed_pr():
    proc = make_processor(pulls=[pr_payload(7)])
    proc.handle_event(pr_event("closed", dict(pr_payload(7), state="closed", merged=True)))
    proc.handle_event(pr_event("synchronize", pr_payload(7, sha="merge0007")))
    proc.handle_event(pr_event("labeled", pr_payload(7), label={"name": "bug"}))
    assert 7 not in proc.pulls
    assert proc.gh.comments == []


def test_opened_pr_is_tracked():
    proc = make_processor()
    proc.handle_event(pr_event("opened", pr_payload(4)))
    assert proc.pulls[4].head_ref_oid == "abc1234def5678"
    assert proc.pulls[4].status is Status.IN_REVIEW


def test_labels_follow_label_events():
    proc = make_processor(pulls=[pr_payload(1)])
    proc.handle_event(pr_event("labeled", pr_payload(1), label={"name": "urgent"}))
    assert proc.pulls[1].labels == {"urgent"}
    proc.handle_event(pr_event("unlabeled", pr_payload(1), label={"name": "urgent"}))
    assert proc.pulls[1].labels == set()


def test_edited_refreshes_title_body_and_base():
    proc = make_processor(pulls=[pr_payload(1)])
    edited = dict(pr_payload(1, title="Add gadget"), body="Fixes the gadget", base={"ref": "release", "sha": "rel111"})
    proc.handle_event(pr_event("edited", edited))

    pull = proc.pulls[1]
    assert pull.title == "Add gadget"
    assert pull.body == "Fixes the gadget"
    assert pull.base_ref_name == "release"
    assert pull.base_ref_oid == "rel111"


def test_draft_toggles_gate_landing():
    proc = make_processor(pulls=[pr_payload(1)], require_review=False)
    proc.handle_event(pr_event("converted_to_draft", pr_payload(1, draft=True)))
    assert proc.pulls[1].is_draft is True
    proc.process_comment("alice", 1, "/land", "IC_1")
    assert proc.pulls[1].status is Status.IN_REVIEW

    proc.handle_event(pr_event("ready_for_review", pr_payload(1)))
    assert proc.pulls[1].is_draft is False
    proc.process_comment("alice", 1, "/land", "IC_2")
    assert proc.pulls[1].status is Status.READY_TO_LAND


def status_event(sha, context, state, target_url="https://ci.example/s"):
    payload = {
        "sha": sha,
        "state": state,
        "context": context,
        "target_url": target_url,
        "repository": {"name": "repo", "owner": {"login": "octo"}},
    }
    return decode_event("status", json.dumps(payload).encode())


def test_status_recorded_against_merge_oid():
    proc = make_processor(pulls=[pr_payload(1)])
    pull = proc.pulls[1]
    pull.set_status(Status.TESTING, merge_oid="merge0001")

    proc.handle_event(status_event("merge0001", "ci", "pending"))
    assert "ci" not in pull.test_results
    proc.handle_event(status_event("merge0001", "ci", "success"))
    assert pull.test_results["ci"].passed is True
    assert pull.test_results["ci"].details_url == "https://ci.example/s"
    proc.handle_event(status_event("other", "lint", "failure"))
    assert "lint" not in pull.test_results


def test_own_status_context_is_ignored():
    proc = make_processor(pulls=[pr_payload(1)])
    pull = proc.pulls[1]
    pull.set_status(Status.TESTING, merge_oid="merge0001")
    proc.handle_event(status_event("merge0001", "mergebot", "failure"))
    assert pull.test_results == {}


def test_help_command_replies_with_help():
    proc = make_processor(pulls=[pr_payload(1)])
    proc.process_comment("alice", 1, "/help", "IC_1")
    assert len(proc.gh.comments) == 1
    assert "Merge bot help" in proc.gh.comments[0][1]
    assert proc.pulls[1].status is Status.IN_REVIEW


def test_retry_queues_an_approved_pr():
    proc = make_processor(pulls=[pr_payload(1)])
    proc.pulls[1].approved_by.add("bob")
    proc.process_comment("alice", 1, "/retry", "IC_1")
    assert proc.pulls[1].status is Status.READY_TO_LAND
