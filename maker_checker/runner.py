"""CLI entrypoint: run the maker-checker loop, or an operator command, for pull requests."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from collections.abc import Mapping
from pathlib import Path

import anyio

from maker_checker.agents.checker import ClaudeChecker
from maker_checker.agents.maker import ClaudeMaker
from maker_checker.config import DEFAULT_CONFIG_FILE, LoopConfig, load_config
from maker_checker.driver import LoopContext, run_change
from maker_checker.errors import CollaboratorError, ConfigError
from maker_checker.github import GitHubSourceControl
from maker_checker.models.state import Failed, IterationState
from maker_checker.operator import handle_command, parse_command
from maker_checker.protocols import LogNotifier
from maker_checker.safety.cost_ledger import CostLedger
from maker_checker.store import StateStore

log = logging.getLogger("maker_checker")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def resolve_target(args: argparse.Namespace, environ: Mapping[str, str]) -> tuple[str, str, list[int]]:
    """Owner, repository name and change ids from the arguments, else from the CI environment."""
    owner = args.owner or environ.get("GITHUB_REPOSITORY_OWNER", "")
    repo = args.repo
    if not repo:
        full = environ.get("GITHUB_REPOSITORY", "")
        if "/" in full:
            env_owner, repo = full.split("/", 1)
            owner = owner or env_owner
    changes = list(args.changes)
    if not changes and environ.get("PR_NUMBER", "").strip():
        try:
            changes = [int(environ["PR_NUMBER"])]
        except ValueError as exc:
            raise ValueError(f"PR_NUMBER is not a number: {environ['PR_NUMBER']!r}") from exc
    if not owner or not repo:
        raise ValueError("repository owner and name are required (arguments or GITHUB_REPOSITORY)")
    if not changes and not getattr(args, "active", False):
        raise ValueError("at least one change id is required (arguments or PR_NUMBER)")
    if any(c < 1 for c in changes):
        raise ValueError("change ids must be positive")
    return owner, repo, changes


def active_changes(ctx: LoopContext, repository: str) -> list[int]:
    """Change ids of every unfinished loop saved for *repository*."""
    return [s.change_id for s in ctx.store.list_active() if s.repository == repository]


def build_context(owner: str, repo: str, config: LoopConfig, *, cwd: Path | None = None) -> LoopContext:
    return LoopContext(
        checker=ClaudeChecker(model=config.model, cwd=cwd),
        maker=ClaudeMaker(model=config.model, cwd=cwd),
        source_control=GitHubSourceControl(owner, repo, cwd=cwd),
        config=config,
        ledger=CostLedger(config.state_dir, config),
        store=StateStore(config.state_dir),
        notifier=LogNotifier(),
    )


async def run_changes(ctx: LoopContext, change_ids: list[int]) -> int:
    """Run the loop for every change concurrently and return the process exit code."""
    outcomes: dict[int, IterationState | None] = {}

    async with anyio.create_task_group() as tg:
        for change_id in change_ids:

            async def run_one(cid: int = change_id) -> None:
                try:
                    outcomes[cid] = await run_change(ctx, cid)
                except CollaboratorError as exc:
                    log.error("Change #%d could not be processed: %s", cid, exc)
                    outcomes[cid] = None

            tg.start_soon(run_one)

    code = EXIT_OK
    for cid in change_ids:
        state = outcomes.get(cid)
        if state is None or isinstance(state.phase, Failed):
            code = EXIT_FAILED
        else:
            log.info("Change #%d: %s (%s)", cid, state.current_phase, getattr(state.phase, "reason", ""))
    return code


async def run(
    owner: str,
    repo: str,
    change_ids: list[int],
    config: LoopConfig,
    *,
    command: str | None,
    actor: str,
) -> int:
    ctx = build_context(owner, repo, config)
    if not change_ids:
        change_ids = active_changes(ctx, f"{owner}/{repo}")
        if not change_ids:
            log.info("No unfinished loops saved for %s/%s", owner, repo)
            return EXIT_OK
        log.info("Acting on unfinished loops: %s", ", ".join(f"#{c}" for c in change_ids))
    if command is None:
        return await run_changes(ctx, change_ids)

    parsed = parse_command(command)
    if parsed is None:
        log.info("No operator command in %r, nothing to do", command[:80])
        return EXIT_OK
    rerun: list[int] = []
    for change_id in change_ids:
        outcome = await handle_command(ctx, f"{owner}/{repo}", change_id, parsed, actor=actor)
        if outcome.run_loop:
            rerun.append(change_id)
    if rerun:
        return await run_changes(ctx, rerun)
    return EXIT_OK


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint."""
    parser = argparse.ArgumentParser(description="Run the maker-checker review loop on pull requests")
    parser.add_argument("owner", nargs="?", help="Repository owner (default: $GITHUB_REPOSITORY_OWNER)")
    parser.add_argument("repo", nargs="?", help="Repository name (default: from $GITHUB_REPOSITORY)")
    parser.add_argument("changes", nargs="*", type=int, help="Pull request number(s) (default: $PR_NUMBER)")
    parser.add_argument("--config", type=Path, default=None, help=f"Config file (default: {DEFAULT_CONFIG_FILE})")
    parser.add_argument("--state-dir", type=Path, default=None, help="Directory for state and cost logs")
    parser.add_argument(
        "--command", type=str, default=None, help="Operator comment to process instead of running the loop",
    )
    parser.add_argument(
        "--active", action="store_true", help="Act on every unfinished loop saved for the repository",
    )
    parser.add_argument("--actor", type=str, default="operator", help="Who issued --command")
    parser.add_argument("--model", type=str, default=None, help="Override the Claude model to use")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        owner, repo, change_ids = resolve_target(args, os.environ)
    except ValueError as exc:
        log.error("%s", exc)
        sys.exit(EXIT_CONFIG)

    config_path = args.config
    if config_path is None and DEFAULT_CONFIG_FILE.exists():
        config_path = DEFAULT_CONFIG_FILE
    config = load_config(config_path)
    overrides = {
        k: v for k, v in {"model": args.model, "state_dir": args.state_dir}.items() if v is not None
    }
    if overrides:
        config = config.model_copy(update=overrides)
    try:
        config.validate_startup()
    except ConfigError as exc:
        log.error("Invalid configuration: %s", exc)
        sys.exit(EXIT_CONFIG)

    try:
        code = anyio.run(
            lambda: run(owner, repo, change_ids, config, command=args.command, actor=args.actor)
        )
    except KeyboardInterrupt:
        log.warning("Interrupted; state is saved and the loop resumes on the next run")
        sys.exit(EXIT_FAILED)
    sys.exit(code)


if __name__ == "__main__":
    main()
