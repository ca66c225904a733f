"""GitHub implementation of the authoritative store.

All operations go through the GitHub CLI (``gh``). Failures are mapped onto
the agentroute error taxonomy so callers can decide between retrying,
re-reading and reporting.
"""

import fnmatch
import json
import logging
import shutil
import subprocess
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Sequence

from agentroute.config import Config
from agentroute.errors import (
    ConflictError,
    NotFoundError,
    StoreError,
    TransientError,
)
from agentroute.labels import BOARD_LABEL_PREFIX, board_label
from agentroute.retry import read_retrying, write_retrying
from agentroute.store import (
    AuthoritativeStore,
    BranchInfo,
    CheckStatus,
    Comparison,
    MergeOutcome,
    PullRequest,
    Ticket,
)

log = logging.getLogger("agentroute.github")

GH_TIMEOUT_S = 60
LABEL_LIMIT = 500

TICKET_FIELDS = "number,title,body,labels,assignees,state,createdAt,url"
PR_FIELDS = "number,url,headRefName,baseRefName,title,state,mergeCommit,isDraft"

# stderr fragments meaning the request never reached GitHub
_UNSENT_MARKERS = ("could not resolve host", "connection refused", "no such host")
_TRANSIENT_MARKERS = (
    "http 500", "http 502", "http 503", "http 504", "http 429",
    "rate limit", "timeout", "timed out", "connection reset",
    "tls handshake", "unexpected eof",
) + _UNSENT_MARKERS
_CONFLICT_MARKERS = ("http 409", "already exists")
# "was modified": base or head moved between the checks passing and the merge
_MERGE_CONFLICT_MARKERS = ("conflict", "not mergeable", "merge blocked", "was modified")


def ensure_gh_cli() -> None:
    """Ensure gh CLI is installed and authenticated.

    Raises:
        StoreError: If gh not found or not authenticated
    """
    if not shutil.which("gh"):
        raise StoreError(
            "locating GitHub CLI",
            "gh not found. Install: https://cli.github.com/",
        )

    result = subprocess.run(
        ["gh", "auth", "status"],
        capture_output=True,
        text=True,
    )

    if result.returncode != 0:
        raise StoreError("checking GitHub authentication", "Run: gh auth login")


def classify_failure(operation: str, detail: str) -> StoreError:
    """Map gh error output onto the error taxonomy.

    Args:
        operation: Description of the failed command
        detail: stderr (or stdout) of the command

    Returns:
        The matching StoreError subclass instance (not raised)
    """
    lowered = detail.lower()
    if "http 404" in lowered or ("not found" in lowered and "label" not in lowered):
        return NotFoundError(operation, detail)
    if any(marker in lowered for marker in _CONFLICT_MARKERS):
        return ConflictError(operation, detail)
    if any(marker in lowered for marker in _TRANSIENT_MARKERS):
        unsent = any(marker in lowered for marker in _UNSENT_MARKERS)
        return TransientError(operation, detail, safe_to_retry=unsent)
    return StoreError(operation, detail)


def _run_gh(args: List[str], timeout: int = GH_TIMEOUT_S) -> subprocess.CompletedProcess:
    operation = "gh " + " ".join(args[:3])
    try:
        return subprocess.run(
            ["gh"] + args,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise TransientError(operation, f"timed out after {timeout}s") from e
    except FileNotFoundError as e:
        raise StoreError(operation, "GitHub CLI (gh) not found") from e


def gh_command(args: List[str], timeout: int = GH_TIMEOUT_S) -> str:
    """Run a gh (GitHub CLI) command.

    Args:
        args: Command arguments
        timeout: Seconds before the call is abandoned

    Returns:
        Command output

    Raises:
        StoreError: (or a subclass) if the gh command fails
    """
    result = _run_gh(args, timeout)
    if result.returncode != 0:
        operation = "gh " + " ".join(args[:3])
        raise classify_failure(operation, result.stderr or result.stdout)
    return result.stdout.strip()


def _ticket_from_json(data: dict[str, Any]) -> Ticket:
    return Ticket(
        number=data["number"],
        title=data.get("title", ""),
        body=data.get("body") or "",
        labels=[label["name"] for label in data.get("labels", [])],
        assignees=[a["login"] for a in data.get("assignees", [])],
        state=data.get("state", "OPEN").lower(),
        created_at=data.get("createdAt", ""),
        url=data.get("url", ""),
    )


def _pr_from_json(data: dict[str, Any]) -> PullRequest:
    merge_commit = data.get("mergeCommit") or {}
    return PullRequest(
        number=data["number"],
        url=data.get("url", ""),
        branch=data.get("headRefName", ""),
        base=data.get("baseRefName", ""),
        title=data.get("title", ""),
        state=data.get("state", "OPEN"),
        merge_commit_sha=merge_commit.get("oid"),
        draft=bool(data.get("isDraft", False)),
    )


def _json_lines(output: str) -> list[dict[str, Any]]:
    return [json.loads(line) for line in output.splitlines() if line.strip()]


class GitHubStore(AuthoritativeStore):
    """Authoritative store backed by GitHub issues, labels, refs and PRs."""

    def __init__(self, config: Config) -> None:
        """Initialize the store.

        Args:
            config: Loaded configuration (repo, retry policy, limits)
        """
        self.config = config
        self._reads = read_retrying(config.retry)
        self._writes = write_retrying(config.retry)
        self._memo: Optional[dict[tuple[str, ...], str]] = None
        self._login: Optional[str] = None

    @contextmanager
    def request_scope(self) -> Iterator[None]:
        outer = self._memo is not None
        if not outer:
            self._memo = {}
        try:
            yield
        finally:
            if not outer:
                self._memo = None

    def _api(self, path: str) -> str:
        if self.config.repo:
            return path.replace("repos/{owner}/{repo}", f"repos/{self.config.repo}")
        return path

    def _with_repo(self, args: List[str]) -> List[str]:
        if self.config.repo and args and args[0] in ("issue", "pr", "label"):
            return args + ["--repo", self.config.repo]
        return args

    def _read(self, args: List[str], fresh: bool = False) -> str:
        args = self._with_repo(args)
        key = tuple(args)
        if not fresh and self._memo is not None and key in self._memo:
            return self._memo[key]
        output = self._reads(gh_command, args)
        if self._memo is not None:
            self._memo[key] = output
        return output

    def _write(self, args: List[str]) -> str:
        if self._memo is not None:
            self._memo.clear()
        return self._writes(gh_command, self._with_repo(args))

    def _resolve_login(self, assignee: str) -> str:
        if assignee != "@me":
            return assignee
        if self._login is None:
            self._login = self._read(["api", "user", "--jq", ".login"])
        return self._login

    # Tickets

    def list_tickets(self, state: str = "open", labels: Optional[Sequence[str]] = None) -> List[Ticket]:
        args = [
            "issue", "list",
            "--state", state,
            "--json", TICKET_FIELDS,
            "--limit", str(self.config.ticket_limit),
        ]
        for label in labels or []:
            args.extend(["--label", label])

        output = self._read(args)
        if not output:
            return []
        return [_ticket_from_json(item) for item in json.loads(output)]

    def get_ticket(self, number: int, fresh: bool = False) -> Ticket:
        output = self._read(["issue", "view", str(number), "--json", TICKET_FIELDS], fresh=fresh)
        return _ticket_from_json(json.loads(output))

    def assign_ticket(self, number: int, assignee: str, expected_prior: Optional[str]) -> bool:
        login = self._resolve_login(assignee)
        current = set(self.get_ticket(number, fresh=True).assignees)
        expected = {expected_prior} if expected_prior else set()

        if current != expected:
            log.info(
                "Ticket #%s assignee changed since read (expected %s, found %s)",
                number, sorted(expected), sorted(current),
            )
            return False

        if login in current:
            return True

        self._write(["issue", "edit", str(number), "--add-assignee", login])

        after = set(self.get_ticket(number, fresh=True).assignees)
        if after != {login}:
            # Someone else assigned concurrently; withdraw ours
            log.info("Concurrent assignment on ticket #%s: %s", number, sorted(after))
            self._write(["issue", "edit", str(number), "--remove-assignee", login])
            return False

        return True

    def unassign_ticket(self, number: int, assignee: str) -> None:
        login = self._resolve_login(assignee)
        self._write(["issue", "edit", str(number), "--remove-assignee", login])

    def apply_label(self, number: int, label: str) -> None:
        self._write(["issue", "edit", str(number), "--add-label", label])

    def remove_label(self, number: int, label: str) -> None:
        self._write(["issue", "edit", str(number), "--remove-label", label])

    def move_board_column(self, number: int, column: Optional[str]) -> None:
        ticket = self.get_ticket(number, fresh=True)
        target = board_label(column) if column else None
        stale = [
            label for label in ticket.labels
            if label.startswith(BOARD_LABEL_PREFIX) and label != target
        ]
        if not stale and (target is None or target in ticket.labels):
            return

        args = ["issue", "edit", str(number)]
        for label in stale:
            args.extend(["--remove-label", label])
        if target and target not in ticket.labels:
            args.extend(["--add-label", target])
        self._write(args)

    def close_ticket(self, number: int) -> None:
        self._write(["issue", "close", str(number)])

    def ensure_labels(self, labels: Sequence[str]) -> None:
        """Create protocol labels that don't exist yet (idempotent).

        Args:
            labels: Label names to create
        """
        for label in labels:
            self._write(["label", "create", label, "--force"])

    def list_labels(self) -> List[str]:
        output = self._read(["label", "list", "--json", "name", "--limit", str(LABEL_LIMIT)])
        if not output:
            return []
        return [item["name"] for item in json.loads(output)]

    # Branches

    def _ref_sha(self, ref: str) -> str:
        return self._read(
            ["api", self._api(f"repos/{{owner}}/{{repo}}/git/ref/heads/{ref}"), "--jq", ".object.sha"],
            fresh=True,
        )

    def create_branch(self, name: str, from_ref: str) -> BranchInfo:
        sha = self._ref_sha(from_ref)
        self._write([
            "api", "-X", "POST",
            self._api("repos/{owner}/{repo}/git/refs"),
            "-f", f"ref=refs/heads/{name}",
            "-f", f"sha={sha}",
        ])
        return BranchInfo(name=name, sha=sha)

    def delete_branch(self, name: str) -> None:
        self._write([
            "api", "-X", "DELETE",
            self._api(f"repos/{{owner}}/{{repo}}/git/refs/heads/{name}"),
        ])

    def list_branches(self, pattern: Optional[str] = None) -> List[BranchInfo]:
        output = self._read([
            "api", "--paginate",
            self._api("repos/{owner}/{repo}/branches"),
            "--jq", ".[] | {name: .name, sha: .commit.sha}",
        ])
        branches = [BranchInfo(name=b["name"], sha=b.get("sha", "")) for b in _json_lines(output)]
        if pattern:
            branches = [b for b in branches if fnmatch.fnmatchcase(b.name, pattern)]
        return branches

    def branch_exists(self, name: str) -> bool:
        try:
            self._ref_sha(name)
            return True
        except NotFoundError:
            return False

    def compare(self, base: str, head: str) -> Comparison:
        output = self._read([
            "api",
            self._api(f"repos/{{owner}}/{{repo}}/compare/{base}...{head}"),
            "--jq", "{status: .status, ahead_by: .ahead_by, behind_by: .behind_by}",
        ])
        data = json.loads(output)
        return Comparison(
            status=data["status"],
            ahead_by=int(data.get("ahead_by") or 0),
            behind_by=int(data.get("behind_by") or 0),
        )

    # Pull requests

    def find_pull_request(self, branch: str, include_closed: bool = False) -> Optional[PullRequest]:
        output = self._read([
            "pr", "list",
            "--head", branch,
            "--state", "all" if include_closed else "open",
            "--json", PR_FIELDS,
            "--limit", "1",
        ])
        data = json.loads(output) if output else []
        return _pr_from_json(data[0]) if data else None

    def open_pull_request(
        self,
        branch: str,
        target: str,
        linked_ticket: Optional[int],
        title: str,
        body: str,
        draft: bool = False,
        labels: Sequence[str] = (),
    ) -> PullRequest:
        args = [
            "pr", "create",
            "--title", title,
            "--body", body,
            "--base", target,
            "--head", branch,
        ]
        if draft:
            args.append("--draft")
        for label in labels:
            args.extend(["--label", label])
        pr_url = self._write(args).strip().splitlines()[-1]
        pr_number = int(pr_url.rstrip("/").split("/")[-1])
        log.info("Opened PR #%s for %s (ticket #%s)", pr_number, branch, linked_ticket)
        return PullRequest(number=pr_number, url=pr_url, branch=branch, base=target, title=title, draft=draft)

    def get_pull_request(self, number: int) -> PullRequest:
        output = self._read(["pr", "view", str(number), "--json", PR_FIELDS], fresh=True)
        return _pr_from_json(json.loads(output))

    def get_checks(self, pr_number: int) -> List[CheckStatus]:
        args = self._with_repo(["pr", "checks", str(pr_number), "--json", "name,state,bucket,link"])
        # gh exits 8 while checks are pending and 1 when some failed
        result = self._reads(_run_gh, args)
        output = result.stdout.strip()
        if result.returncode in (0, 1, 8) and output:
            return [
                CheckStatus(
                    name=check["name"],
                    state=check.get("state", ""),
                    bucket=check.get("bucket"),
                    link=check.get("link"),
                )
                for check in json.loads(output)
            ]
        if "no checks reported" in result.stderr.lower():
            return []
        raise classify_failure(f"gh pr checks {pr_number}", result.stderr or output)

    def count_approvals(self, pr_number: int) -> int:
        output = self._read([
            "api", "--paginate",
            self._api(f"repos/{{owner}}/{{repo}}/pulls/{pr_number}/reviews"),
            "--jq", ".[] | {user: .user.login, state: .state}",
        ], fresh=True)
        latest: dict[str, str] = {}
        for review in _json_lines(output):
            if review["state"] in ("APPROVED", "CHANGES_REQUESTED", "DISMISSED"):
                latest[review["user"]] = review["state"]
        return sum(1 for state in latest.values() if state == "APPROVED")

    def merge_pull_request(self, pr_number: int, strategy: str) -> MergeOutcome:
        # Never --delete-branch: deletion is a separate step after confirmation
        try:
            self._write(["pr", "merge", str(pr_number), f"--{strategy}"])
        except TransientError:
            raise
        except StoreError as e:
            detail = e.detail.lower()
            if "already merged" in detail:
                pr = self.get_pull_request(pr_number)
                return MergeOutcome(merged=True, sha=pr.merge_commit_sha, message=e.detail)
            if isinstance(e, ConflictError) or any(marker in detail for marker in _MERGE_CONFLICT_MARKERS):
                return MergeOutcome(merged=False, conflict=True, message=e.detail)
            raise

        pr = self.get_pull_request(pr_number)
        return MergeOutcome(merged=pr.merged, sha=pr.merge_commit_sha)

    def close_pull_request(self, pr_number: int) -> None:
        self._write(["pr", "close", str(pr_number)])
