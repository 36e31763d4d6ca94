#!/usr/bin/env python3
"""phaseflow CLI entrypoint."""

import argparse
import logging
import sys
from pathlib import Path

from phaseflow.git import get_repo_root
from phaseflow.lib.config import Settings, load_settings
from phaseflow.lib.constants import EXIT_CONFIG_ERROR
from phaseflow.commands import abandon as cmd_abandon_module
from phaseflow.commands import rebuild as cmd_rebuild_module
from phaseflow.commands import reset as cmd_reset_module
from phaseflow.commands import run as cmd_run_module
from phaseflow.commands import status as cmd_status_module


def get_settings(args) -> Settings:
    """Load settings for --repo, or the repository containing the cwd."""
    start = Path(args.repo).resolve() if args.repo else Path.cwd()
    repo_root = get_repo_root(start)
    if repo_root is None:
        print(f"ERROR: {start} is not inside a git repository")
        sys.exit(EXIT_CONFIG_ERROR)
    try:
        return load_settings(repo_root)
    except ValueError as e:
        print(f"ERROR: Invalid settings: {e}")
        sys.exit(EXIT_CONFIG_ERROR)


def cmd_run(args):
    return cmd_run_module.cmd_run(args, get_settings(args))


def cmd_status(args):
    return cmd_status_module.cmd_status(args, get_settings(args))


def cmd_reset(args):
    return cmd_reset_module.cmd_reset(args, get_settings(args))


def cmd_abandon(args):
    return cmd_abandon_module.cmd_abandon(args, get_settings(args))


def cmd_rebuild(args):
    return cmd_rebuild_module.cmd_rebuild(args, get_settings(args))


def issue_number(value: str) -> int:
    try:
        number = int(value.lstrip("#"))
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an issue number: {value}")
    if number <= 0:
        raise argparse.ArgumentTypeError(f"not an issue number: {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='phaseflow', description='Drive issues through plan/implement/review/merge')
    parser.add_argument('--repo', '-C', help='Repository path (default: the current directory)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    subparsers = parser.add_subparsers(dest='command', required=True)

    # phaseflow run
    p_run = subparsers.add_parser('run', help='Run issues through their phases')
    p_run.add_argument('issues', nargs='+', type=issue_number, help='Issue numbers')
    p_run.add_argument('--phases', help='Comma-separated phases to run (e.g. implement,review)')
    loop = p_run.add_mutually_exclusive_group()
    loop.add_argument('--quality-loop', '-q', dest='quality_loop', action='store_true', default=None,
                      help='Enable the quality loop')
    loop.add_argument('--no-quality-loop', dest='quality_loop', action='store_false',
                      help='Disable the quality loop')
    p_run.add_argument('--max-iterations', type=int, help='Quality loop iterations (default from settings)')
    p_run.add_argument('--sequential', action='store_true', help='Run issues one at a time')
    p_run.add_argument('--chain', action='store_true', help='Stack each issue on the previous branch (needs --sequential)')
    p_run.add_argument('--review-gate', action='store_true', help='Pause the chain when a review fails')
    p_run.add_argument('--batch', action='append', help='A group of issues run together; repeatable')
    p_run.add_argument('--base', help='Base branch for the first issue of a chain')
    p_run.add_argument('--resume', action='store_true', help='Skip phases already marked completed')
    p_run.add_argument('--force', action='store_true', help='Re-run issues that are ready, merged or abandoned')
    p_run.add_argument('--dry-run', action='store_true', help='Show the plan without running anything')
    p_run.add_argument('--no-pr', action='store_true', help='Do not open a pull request')
    p_run.add_argument('--no-rebase', action='store_true', help='Skip the pre-merge rebase')
    p_run.add_argument('--no-retry', action='store_true', help='Do not retry cold-start failures')
    p_run.add_argument('--timeout', type=int, help='Per-phase timeout in seconds')
    p_run.add_argument('--jobs', '-j', type=int, default=4, help='Parallel issues (default 4)')
    p_run.add_argument('--no-prefect', action='store_true', help='Run without the Prefect flow wrapper')
    p_run.set_defaults(func=cmd_run)

    # phaseflow status
    p_status = subparsers.add_parser('status', help='Show tracked issues')
    p_status.add_argument('issue', nargs='?', type=issue_number, help='Show one issue in detail')
    p_status.set_defaults(func=cmd_status)

    # phaseflow reset
    p_reset = subparsers.add_parser('reset', help='Reset phase progress or the quality loop counter')
    p_reset.add_argument('issue', type=issue_number, help='Issue number')
    p_reset.add_argument('--loop', action='store_true', help='Reset the quality loop counter')
    p_reset.add_argument('--phases', help='Comma-separated phases to reset (default: all)')
    p_reset.set_defaults(func=cmd_reset)

    # phaseflow abandon
    p_abandon = subparsers.add_parser('abandon', help='Abandon an issue and remove its worktree')
    p_abandon.add_argument('issue', type=issue_number, help='Issue number')
    p_abandon.add_argument('--force', action='store_true', help='Remove the worktree even with local work')
    p_abandon.set_defaults(func=cmd_abandon)

    # phaseflow rebuild
    p_rebuild = subparsers.add_parser('rebuild', help='Rebuild the state file from tracker markers')
    p_rebuild.add_argument('issues', nargs='*', type=issue_number, help='Issues to rebuild (default: all tracked)')
    p_rebuild.set_defaults(func=cmd_rebuild)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
