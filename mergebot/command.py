"""Comment command parsing.

A command is the first line of a comment that begins with ``/`` (or, when
configured, with an ``@<bot>`` mention), e.g. ``/land p=5`` or ``/priority 3``.
"""
import re
from enum import Enum
from typing import Iterable, Iterator, List, Optional, Tuple

from pydantic import BaseModel


class ParseCommandError(ValueError):
    pass


class CommandKind(str, Enum):
    APPROVE = "approve"
    UNAPPROVE = "unapprove"
    LAND = "land"
    RETRY = "retry"
    CANCEL = "cancel"
    PRIORITY = "priority"
    HELP = "help"


SYNONYMS = {
    "approve": CommandKind.APPROVE,
    "lgtm": CommandKind.APPROVE,
    "r+": CommandKind.APPROVE,
    "unapprove": CommandKind.UNAPPROVE,
    "r-": CommandKind.UNAPPROVE,
    "land": CommandKind.LAND,
    "merge": CommandKind.LAND,
    "retry": CommandKind.RETRY,
    "cancel": CommandKind.CANCEL,
    "stop": CommandKind.CANCEL,
    "priority": CommandKind.PRIORITY,
    "help": CommandKind.HELP,
    "h": CommandKind.HELP,
}

PRIORITY_KEYS = ("p", "priority")

_INT_RE = re.compile(r"^[+-]?\d+$")


class Command(BaseModel):
    kind: CommandKind
    priority: Optional[int] = None
    line: str = ""


def _parse_int(value: Optional[str]) -> int:
    if value is None or not _INT_RE.match(value):
        raise ParseCommandError(f"expected an integer, got {value!r}")
    return int(value)


def _split_args(tokens: Iterable[str]) -> Iterator[Tuple[str, Optional[str]]]:
    for token in tokens:
        if "=" in token:
            key, value = token.split("=", 1)
            yield key, value
        else:
            yield token, None


def _from_tokens(tokens: List[str], line: str) -> Command:
    if not tokens:
        raise ParseCommandError("empty command")
    kind = SYNONYMS.get(tokens[0])
    if kind is None:
        raise ParseCommandError(f"unknown command {tokens[0]!r}")
    args = _split_args(tokens[1:])

    if kind is CommandKind.PRIORITY:
        # Only a bare number is accepted: `/priority 5`, never `/priority p=5`
        first = next(args, None)
        if first is None or first[1] is not None:
            raise ParseCommandError("priority requires a bare numeric argument")
        return Command(kind=kind, priority=_parse_int(first[0]), line=line)

    priority = None
    if kind is not CommandKind.HELP:
        for key, value in args:
            if key in PRIORITY_KEYS:
                priority = _parse_int(value)
            else:
                # Stop at the first argument we don't understand
                break
    return Command(kind=kind, priority=priority, line=line)


def parse_line(line: str) -> Command:
    if not line.startswith("/"):
        raise ParseCommandError("command lines start with '/'")
    return _from_tokens(line[1:].split(), line)


def _starts_with_mention(line: str, username: str) -> bool:
    parts = line.split(None, 1)
    return bool(parts) and parts[0].startswith("@") and parts[0][1:] == username


def parse_line_with_username(line: str, username: str) -> Command:
    if not _starts_with_mention(line, username):
        raise ParseCommandError(f"command lines start with '@{username}'")
    return _from_tokens(line.split()[1:], line)


def parse_comment(text: Optional[str]) -> Optional[Command]:
    """Parse the first ``/`` line of a comment.

    Returns None when no line starts with ``/``; raises ParseCommandError when
    that line is not a valid command.
    """
    for line in (text or "").splitlines():
        if line.startswith("/"):
            return parse_line(line)
    return None


def parse_comment_with_username(text: Optional[str], username: str) -> Optional[Command]:
    for line in (text or "").splitlines():
        if _starts_with_mention(line, username):
            return parse_line_with_username(line, username)
    return None


def help_text(require_review: bool = True, maintainer_mode: bool = True, test_branch: str = "auto") -> str:
    lines = [
        "<details>",
        "<summary>Merge bot help</summary>",
        "<br />",
        "",
        "This bot keeps the base branch green by landing approved pull requests one at a time. "
        f"The pull request at the head of the queue is rebased onto its base branch and pushed to `{test_branch}` "
        "for testing; once it passes it is landed and the next pull request is processed.",
        "",
        "### General",
    ]
    if require_review:
        lines.append("- Pull requests must be approved (`/approve`) before they can be queued for landing.")
    if maintainer_mode:
        lines.append(
            '- Pull requests from forks need "Allow edits from maintainers" enabled so they can be '
            "updated in place and show up as merged."
        )
    lines += [
        "",
        "### Commands",
        "Commands are given by posting a comment containing a line of the form `/<command>`.",
        "",
        "| Command | Aliases | Description |",
        "| --- | --- | --- |",
        "| __Approve__ | `approve`, `lgtm`, `r+` | approve the pull request at its current commit |",
        "| __Unapprove__ | `unapprove`, `r-` | withdraw your approval |",
        "| __Land__ | `land`, `merge` | queue the pull request for landing |",
        "| __Retry__ | `retry` | queue the pull request again after a failure |",
        "| __Cancel__ | `cancel`, `stop` | remove the pull request from the queue |",
        "| __Priority__ | `priority <n>` | set the queue priority (higher lands first) |",
        "| __Help__ | `help`, `h` | show this message |",
        "",
        "Approve, land, retry, unapprove and cancel accept `p=<n>` (or `priority=<n>`) to set the priority as well.",
        "",
        "</details>",
    ]
    return "\n".join(lines)
