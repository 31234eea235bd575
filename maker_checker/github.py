"""SourceControl collaborator on the ``gh`` CLI.

Every call goes through ``_run_gh`` in a worker thread, with a timeout so a
stuck ``gh`` process fails the call instead of hanging the loop.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import tempfile
from functools import partial
from pathlib import Path
from typing import Any

import anyio

from maker_checker.errors import CollaboratorError
from maker_checker.models.enums import CIStatus
from maker_checker.models.review import ChangeContext, FileChange

log = logging.getLogger(__name__)

GH_TIMEOUT = 30
GH_BODY_MAX = 60_000

_PR_FIELDS = "number,title,body,author,headRefName,baseRefName,headRefOid,url,files"

_FAILED_CONCLUSIONS = frozenset({"failure", "timed_out", "cancelled", "action_required", "startup_failure"})


def _run_gh(args: list[str], *, check: bool = False, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    """Run a gh/git CLI command and return the result."""
    log.debug("Running: %s", " ".join(args))
    try:
        result = subprocess.run(  # noqa: S603
            args,
            capture_output=True,
            text=True,
            cwd=cwd,
            check=False,
            timeout=GH_TIMEOUT,
        )
    except subprocess.TimeoutExpired:
        log.error("Command timed out after %ds: %s", GH_TIMEOUT, " ".join(args))
        return subprocess.CompletedProcess(args, returncode=1, stdout="", stderr="timeout")
    if check and result.returncode != 0:
        log.error("Command failed: %s\nstderr: %s", " ".join(args), result.stderr.strip())
        raise subprocess.CalledProcessError(result.returncode, args, result.stdout, result.stderr)
    return result


def aggregate_check_runs(runs: list[dict[str, Any]]) -> CIStatus | None:
    """Fold GitHub check runs into one status; None when there are no runs."""
    if not runs:
        return None
    if any((r.get("conclusion") or "") in _FAILED_CONCLUSIONS for r in runs):
        return CIStatus.FAILURE
    if any(r.get("status") != "completed" for r in runs):
        return CIStatus.PENDING
    return CIStatus.SUCCESS


class GitHubSourceControl:
    """Pull requests of one repository, driven through ``gh``."""

    def __init__(self, owner: str, repo: str, *, cwd: Path | None = None, merge_method: str = "squash") -> None:
        self.owner = owner
        self.repo = repo
        self.cwd = cwd
        self.merge_method = merge_method

    @property
    def nwo(self) -> str:
        return f"{self.owner}/{self.repo}"

    async def _gh(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        return await anyio.to_thread.run_sync(partial(_run_gh, args, cwd=self.cwd))

    async def get_context(self, change_id: int) -> ChangeContext:
        result = await self._gh(["gh", "pr", "view", str(change_id), "--repo", self.nwo, "--json", _PR_FIELDS])
        if result.returncode != 0:
            raise CollaboratorError("github", f"cannot read PR #{change_id}: {result.stderr.strip()}")
        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise CollaboratorError("github", f"unexpected gh output for PR #{change_id}: {exc}") from exc
        return ChangeContext(
            owner=self.owner,
            repo=self.repo,
            number=data.get("number", change_id),
            title=data.get("title") or "",
            description=data.get("body") or "",
            author=(data.get("author") or {}).get("login", ""),
            branch=data.get("headRefName") or "",
            base_branch=data.get("baseRefName") or "main",
            head_sha=data.get("headRefOid") or "",
            url=data.get("url") or "",
            files=[
                FileChange(path=f["path"], additions=f.get("additions", 0), deletions=f.get("deletions", 0))
                for f in data.get("files") or []
                if f.get("path")
            ],
        )

    async def get_ci_status(self, ref: str) -> CIStatus:
        """Check runs for *ref* when it has any, otherwise the combined commit status."""
        runs = await self._gh(["gh", "api", f"repos/{self.nwo}/commits/{ref}/check-runs"])
        if runs.returncode == 0:
            try:
                status = aggregate_check_runs(json.loads(runs.stdout).get("check_runs", []))
            except (json.JSONDecodeError, AttributeError):
                status = None
            if status is not None:
                return status

        combined = await self._gh(["gh", "api", f"repos/{self.nwo}/commits/{ref}/status", "-q", ".state"])
        if combined.returncode != 0:
            log.warning("CI status lookup failed for %s: %s", ref, combined.stderr.strip())
            return CIStatus.ERROR
        try:
            return CIStatus(combined.stdout.strip())
        except ValueError:
            log.warning("Unknown CI state %r for %s", combined.stdout.strip(), ref)
            return CIStatus.PENDING

    async def merge(self, change_id: int) -> bool:
        result = await self._gh(
            ["gh", "pr", "merge", str(change_id), "--repo", self.nwo, f"--{self.merge_method}", "--delete-branch"]
        )
        if result.returncode != 0:
            log.error("Merge of PR #%d failed: %s", change_id, result.stderr.strip())
            return False
        log.info("Merged PR #%d", change_id)
        return True

    async def comment(self, change_id: int, text: str) -> None:
        await anyio.to_thread.run_sync(partial(self._comment_sync, change_id, text))

    def _comment_sync(self, change_id: int, text: str) -> None:
        """Post a PR comment, through a temp file when the body is too long for argv."""
        args = ["gh", "pr", "comment", str(change_id), "--repo", self.nwo]
        if len(text) <= GH_BODY_MAX:
            _run_gh([*args, "--body", text], check=True, cwd=self.cwd)
            return
        fd, path = tempfile.mkstemp(suffix=".md", prefix="gh-body-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            _run_gh([*args, "--body-file", path], check=True, cwd=self.cwd)
        finally:
            Path(path).unlink(missing_ok=True)

    async def label(self, change_id: int, name: str) -> None:
        result = await self._gh(["gh", "pr", "edit", str(change_id), "--repo", self.nwo, "--add-label", name])
        if result.returncode != 0:
            log.warning("Failed to add label %s to PR #%d: %s", name, change_id, result.stderr.strip())
