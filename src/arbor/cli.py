"""arbor command-line interface.

A thin argparse layer: builds a RepoContext for the current repository,
calls into the engine and prints the outcome. All policy lives in the
engine modules; this file only formats results and maps errors to exit codes.
"""

import argparse
import logging
import sys
from pathlib import Path

import msgspec

from . import __version__
from .context import RepoContext, get_storage_root
from .errors import ArborError
from .inventory import (
    Inventory,
    StatusLine,
    WorktreeRecord,
    list_all_worktrees,
    match_worktree,
    origin_of,
)
from .journal import JOURNAL_FILENAME, OperationJournal
from .lifecycle import BranchPolicy, CreateMode, LifecycleOrchestrator
from .reconcile import Reconciler
from .vcs import GitVcs

logger = logging.getLogger(__name__)

RECENT_OPERATIONS = 5


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _open_repository() -> tuple[RepoContext, GitVcs]:
    vcs = GitVcs.discover(Path.cwd())
    return RepoContext(vcs.repo_path), vcs


def _print_json(value: object) -> None:
    print(msgspec.json.format(msgspec.json.encode(value), indent=2).decode())


def _print_records(records: list[WorktreeRecord]) -> None:
    if not records:
        print("No worktrees found")
        return
    for record in records:
        flags = []
        if not record.exists:
            flags.append("missing")
        if record.managed:
            flags.append("managed")
        if not record.mapped:
            flags.append("unmapped")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        print(f"{record.repository}/{record.branch}\t{record.path}{suffix}")


def main(argv: list[str] | None = None) -> None:
    """CLI entry point using argparse."""
    parser = argparse.ArgumentParser(
        prog="arbor", description="Manage git worktrees under a central storage root"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--version", action="version", version=f"arbor {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # create
    create = subparsers.add_parser("create", help="Create a worktree for a branch")
    create.add_argument("branch", help="Branch name")
    mode = create.add_mutually_exclusive_group()
    mode.add_argument(
        "--new-branch",
        dest="mode",
        action="store_const",
        const=CreateMode.NEW_BRANCH,
        help="Create the branch; fail if it exists",
    )
    mode.add_argument(
        "--existing-branch",
        dest="mode",
        action="store_const",
        const=CreateMode.EXISTING_BRANCH,
        help="Use an existing branch; fail if it does not exist",
    )
    create.add_argument(
        "--from", dest="start_point", metavar="REF", help="Start point for a new branch"
    )

    # remove
    remove = subparsers.add_parser("remove", help="Remove a worktree")
    remove.add_argument("target", help="Branch name, directory name or absolute worktree path")
    policy = remove.add_mutually_exclusive_group()
    policy.add_argument(
        "--force-delete-branch",
        dest="policy",
        action="store_const",
        const=BranchPolicy.FORCE_DELETE,
        help="Delete the branch even if arbor did not create it",
    )
    policy.add_argument(
        "--keep-branch",
        dest="policy",
        action="store_const",
        const=BranchPolicy.KEEP,
        help="Never delete the branch",
    )

    # cleanup
    subparsers.add_parser("cleanup", help="Repair drift between git, storage and metadata")

    # list
    list_parser = subparsers.add_parser("list", help="List worktrees")
    list_parser.add_argument(
        "--current", action="store_true", help="Only worktrees of the current repository"
    )
    list_parser.add_argument("--json", action="store_true", help="Print JSON")

    # status
    status = subparsers.add_parser("status", help="Cross-check git worktrees against metadata")
    status.add_argument("--json", action="store_true", help="Print JSON")

    # back
    subparsers.add_parser("back", help="Print the origin repository of the current worktree")

    # jump
    jump = subparsers.add_parser("jump", help="Print the path of a worktree by name")
    jump.add_argument("target", help="Exact branch name or unique substring")
    jump.add_argument(
        "--current", action="store_true", help="Only search the current repository"
    )

    # sync-config
    sync = subparsers.add_parser(
        "sync-config", help="Copy configuration files between worktrees"
    )
    sync.add_argument("source", help="Source worktree, or 'origin'")
    sync.add_argument("destination", help="Destination worktree, or 'origin'")

    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        _dispatch(args)
    except ArborError as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2 if e.retryable else 1)


def _dispatch(args: argparse.Namespace) -> None:
    # Route commands
    if args.command == "create":
        _cmd_create(args.branch, args.mode or CreateMode.SMART, args.start_point)
    elif args.command == "remove":
        _cmd_remove(args.target, args.policy or BranchPolicy.MANAGED_ONLY)
    elif args.command == "cleanup":
        _cmd_cleanup()
    elif args.command == "list":
        _cmd_list(args.current, args.json)
    elif args.command == "status":
        _cmd_status(args.json)
    elif args.command == "back":
        print(origin_of(get_storage_root(), Path.cwd()))
    elif args.command == "jump":
        _cmd_jump(args.target, args.current)
    elif args.command == "sync-config":
        _cmd_sync_config(args.source, args.destination)


def _cmd_create(branch: str, mode: CreateMode, start_point: str | None) -> None:
    ctx, vcs = _open_repository()
    result = LifecycleOrchestrator(ctx, vcs).create(branch, mode, start_point)
    for warning in result.warnings:
        print(f"Warning: {warning}", file=sys.stderr)
    action = "Created branch and worktree" if result.created_branch else "Created worktree"
    print(f"{action} for '{result.branch}' at {result.worktree_path}")
    for name in result.copied_files:
        print(f"  copied {name}")


def _cmd_remove(target: str, policy: BranchPolicy) -> None:
    ctx, vcs = _open_repository()
    result = LifecycleOrchestrator(ctx, vcs).remove(target, policy)
    for warning in result.warnings:
        print(f"Warning: {warning}", file=sys.stderr)
    print(f"Removed worktree {result.worktree_path}")
    if result.branch_deleted:
        print(f"Deleted branch '{result.branch}'")


def _cmd_cleanup() -> None:
    ctx, vcs = _open_repository()
    report = Reconciler(ctx, vcs).run()
    for path in report.pruned_references:
        print(f"Pruned stale worktree reference {path}")
    for branch in report.removed_mappings:
        print(f"Removed orphaned mapping for '{branch}'")
    for branch in report.deleted_branches:
        print(f"Deleted orphaned branch '{branch}'")
    for branch in report.unmarked_branches:
        print(f"Forgot missing branch '{branch}'")
    for failure in report.failures:
        print(
            f"Error: could not {failure.action} {failure.subject}: {failure.error}",
            file=sys.stderr,
        )
    if not report.changed and report.ok:
        print("Nothing to clean up")
    if not report.ok:
        sys.exit(1)


def _cmd_list(current: bool, as_json: bool) -> None:
    if current:
        ctx, vcs = _open_repository()
        records = Inventory(ctx, vcs).list_worktrees()
    else:
        records = list_all_worktrees(get_storage_root())
    if as_json:
        _print_json(records)
    else:
        _print_records(records)


def _state(line: StatusLine) -> str:
    if not line.exists:
        return "missing"
    if not line.registered:
        return "unregistered"
    if not line.mapped:
        return "unmapped"
    return "ok"


def _cmd_status(as_json: bool) -> None:
    ctx, vcs = _open_repository()
    report = Inventory(ctx, vcs).status()
    if as_json:
        _print_json(report)
        return
    print(f"Repository: {report.repository} ({report.repository_path})")
    print("Git worktrees:")
    for line in report.vcs_worktrees:
        print(f"  {line.branch or '(detached)'}\t{line.path}\t{_state(line)}")
    print("Managed worktrees:")
    for line in report.managed_worktrees:
        print(f"  {line.branch}\t{line.path}\t{_state(line)}")
    if not report.consistent:
        print("Run 'arbor cleanup' to repair.")

    recent = OperationJournal(ctx.metadata_dir / JOURNAL_FILENAME).tail(RECENT_OPERATIONS)
    if recent:
        print("Recent operations:")
    for entry in recent:
        subject = entry.get("branch") or entry.get("destination") or ""
        print(f"  {entry['ts']}  {entry['event']} {subject}".rstrip())


def _cmd_jump(target: str, current: bool) -> None:
    if current:
        ctx, vcs = _open_repository()
        record = Inventory(ctx, vcs).find(target)
    else:
        records = [r for r in list_all_worktrees(get_storage_root()) if r.exists]
        record = match_worktree(records, target)
    print(record.path)


def _cmd_sync_config(source: str, destination: str) -> None:
    ctx, vcs = _open_repository()
    copied = LifecycleOrchestrator(ctx, vcs).sync_config(source, destination)
    if not copied:
        print("No configuration files matched")
    for name in copied:
        print(f"  copied {name}")


if __name__ == "__main__":
    main()
