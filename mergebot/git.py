import logging
import os
import subprocess
import time
from pathlib import Path
from typing import Dict, List, Optional

from .config import SETTINGS, Settings
from .metrics import git_command_seconds
from .models import Repo

logger = logging.getLogger(__name__)


class GitError(RuntimeError):
    pass


class MergeConflict(GitError):
    pass


class RepositoryIntegrityError(GitError):
    pass


def _preview(text: str, limit: int = 200) -> str:
    compact = text.replace("\n", "\\n").strip()
    if len(compact) <= limit:
        return compact or "<empty>"
    return f"{compact[:limit]}..."


def run(argv: List[str], env: Optional[Dict[str, str]] = None) -> str:
    """Run a git command and return its stdout; raise GitError on a non-zero exit."""
    start = time.perf_counter()
    proc = subprocess.run(argv, env=env, text=True, capture_output=True, check=False)
    git_command_seconds.labels(command=_subcommand(argv)).observe(time.perf_counter() - start)
    if proc.returncode != 0:
        logger.debug(
            "git command failed: cmd=%s exit=%s stderr=%s",
            " ".join(argv),
            proc.returncode,
            _preview(proc.stderr),
        )
        raise GitError(f"failed to run git command: {' '.join(argv)}\n{proc.stderr}")
    return proc.stdout


def _subcommand(argv: List[str]) -> str:
    args = argv[1:]
    # skip `-C <dir>`
    if len(args) >= 2 and args[0] == "-C":
        args = args[2:]
    return args[0] if args else "git"


class GitRepository:
    """The single on-disk clone of the gated repository.

    Every command runs with ``-C <clone>``, ``GIT_CEILING_DIRECTORIES`` pinned to
    the repos directory and the deploy key as the only SSH identity. Only one
    caller may use an instance at a time.
    """

    def __init__(self, repo: Repo, settings: Settings = SETTINGS):
        self.repo = repo
        self.settings = settings
        self.repos_dir = settings.repos_dir.resolve()
        self.directory = self.repos_dir / repo.owner / repo.name

    def _env(self, editor: Optional[str] = None) -> Dict[str, str]:
        env = dict(os.environ)
        key = self.settings.ssh_key_file
        if not key.is_absolute():
            key = Path.cwd() / key
        env.update(
            {
                # Never let git discover a repository above the repos directory
                "GIT_CEILING_DIRECTORIES": str(self.repos_dir),
                "GIT_EDITOR": editor or "cat",
                "GIT_TERMINAL_PROMPT": "0",
                "GIT_SSH_COMMAND": f"ssh -i {key} -S none -o IdentitiesOnly=yes",
                "GIT_AUTHOR_NAME": self.settings.git_user,
                "GIT_COMMITTER_NAME": self.settings.git_user,
                "GIT_AUTHOR_EMAIL": self.settings.git_email,
                "GIT_COMMITTER_EMAIL": self.settings.git_email,
            }
        )
        return env

    def git(self, *args: str, editor: Optional[str] = None) -> str:
        return run(["git", "-C", str(self.directory), *args], env=self._env(editor))

    # --- Setup ---
    def ensure(self) -> None:
        """Clone on first use and refuse to work with a clone of some other repository."""
        if not self.is_git_repo():
            logger.info("cloning '%s' to '%s'", self.repo.ssh_url(), self.directory)
            self.directory.parent.mkdir(parents=True, exist_ok=True)
            try:
                run(["git", "clone", self.repo.ssh_url(), str(self.directory)], env=self._env())
            except GitError as e:
                raise RepositoryIntegrityError(f"cloning {self.repo.ssh_url()} failed: {e}") from e
        else:
            logger.info("using existing on-disk repo at %s", self.directory)
        if not self.remote_matches():
            raise RepositoryIntegrityError(
                f"on-disk repo's 'origin' remote at {self.directory} doesn't match {self.repo.full_name}"
            )

    def is_git_repo(self) -> bool:
        if not self.directory.is_dir():
            return False
        try:
            self.git("rev-parse", "--git-dir")
        except GitError:
            return False
        return True

    def remote_matches(self) -> bool:
        try:
            url = self.git("remote", "get-url", "origin").strip()
        except GitError:
            return False
        return url == self.repo.ssh_url()

    # --- Primitives ---
    def fetch(self, *refspecs: str) -> None:
        self.git("fetch", "origin", *refspecs)

    def rev_parse(self, ref: str) -> str:
        return self.git("rev-parse", ref).strip()

    def fetch_and_rebase(self, base_ref: str, head_oid: str, branch: str, pr_number: int) -> str:
        """Rebase ``head_oid`` onto the latest ``base_ref`` on a local ``branch``.

        Returns the rebased tip. Raises MergeConflict when the rebase does not
        apply cleanly or leaves nothing to land.
        """
        self.fetch(base_ref, f"+refs/pull/{pr_number}/head:refs/remotes/origin/pr/{pr_number}")
        base_oid = self.rev_parse(f"origin/{base_ref}")
        self.git("checkout", "-B", branch, head_oid)
        try:
            self.git("rebase", "-i", "--force-rebase", "--autosquash", base_oid)
        except GitError as e:
            logger.info("rebase of #%s onto %s failed: %s", pr_number, base_ref, e)
            self.git("rebase", "--abort")
            raise MergeConflict(f"#{pr_number} does not rebase cleanly onto {base_ref}") from e

        rebased = self.rev_parse("HEAD")
        if rebased == base_oid:
            raise MergeConflict(f"#{pr_number} has no changes left after rebasing onto {base_ref}")

        trailer = f'git interpret-trailers --trailer "Closes: #{pr_number}" --in-place'
        self.git("commit", "--amend", editor=trailer)
        return self.rev_parse("HEAD")

    def push_branch(self, branch: str) -> None:
        # The test branch belongs to this bot alone; overwrite whatever is there
        self.git("push", "--force", "origin", f"{branch}:refs/heads/{branch}")

    def push_to_remote(self, repo: Repo, branch: str, old_oid: str, new_oid: str) -> None:
        """Update ``branch`` in ``repo`` (usually a fork) from ``old_oid`` to ``new_oid``."""
        self.git(
            "push",
            f"--force-with-lease=refs/heads/{branch}:{old_oid}",
            repo.ssh_url(),
            f"{new_oid}:refs/heads/{branch}",
        )
