from __future__ import annotations

import argparse
import json
from pathlib import Path

from autorebase.autorebase import Autorebase, handle_event, log_failed_run
from autorebase.config import AppConfig, load_config
from autorebase.errors import RebaseFailedError
from autorebase.events import parse_event
from autorebase.github_gateway import GitHubGateway
from autorebase.models import Action, FailedAction, NopAction, action_to_dict
from autorebase.observability import configure_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="autorebase")
    subparsers = parser.add_subparsers(dest="command", required=True)

    handle_parser = subparsers.add_parser(
        "handle", help="Decide and apply the action for one stored webhook delivery"
    )
    _add_common_arguments(handle_parser)
    handle_parser.add_argument(
        "--event-name",
        required=True,
        help="Webhook event name (X-GitHub-Event header), e.g. pull_request",
    )
    handle_parser.add_argument(
        "--payload", type=Path, required=True, help="Path to the JSON webhook payload"
    )
    handle_parser.add_argument(
        "--force-rebase",
        action="store_true",
        help="Rebase pull_request events even when the pull request is not labeled",
    )

    rebase_parser = subparsers.add_parser("rebase", help="Rebase one pull request onto its base")
    _add_common_arguments(rebase_parser)
    rebase_parser.add_argument("--pr", type=int, required=True, help="Pull request number")

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("autorebase.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        choices=("low", "high"),
        help="Enable runtime logging to stderr (low keeps only outcome events)",
    )


def main() -> None:
    args = build_parser().parse_args()
    configure_logging(args.verbose)
    config = load_config(args.config)

    if args.command == "handle":
        action = _cmd_handle(config, args)
    elif args.command == "rebase":
        action = _cmd_rebase(config, pr_number=int(args.pr))
    else:
        raise RuntimeError(f"Unknown command: {args.command}")

    print(json.dumps(action_to_dict(action), sort_keys=True))
    if isinstance(action, FailedAction):
        raise SystemExit(1)


def _cmd_handle(config: AppConfig, args: argparse.Namespace) -> Action:
    payload = json.loads(Path(args.payload).read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise RuntimeError(f"Webhook payload in {args.payload} must be a JSON object")
    event = parse_event(str(args.event_name), payload)
    if event is None:
        return NopAction()
    return handle_event(
        event,
        github=_github(config),
        label=config.repo.label,
        is_authorized=config.repo.authorizes,
        runtime=config.runtime,
        force_rebase=bool(args.force_rebase),
    )


def _cmd_rebase(config: AppConfig, *, pr_number: int) -> Action:
    github = _github(config)
    try:
        return Autorebase.from_config(config, github=github).rebase(pr_number)
    except RebaseFailedError as exc:
        log_failed_run(github, "manual_rebase", exc)
        return FailedAction(error=exc)


def _github(config: AppConfig) -> GitHubGateway:
    return GitHubGateway(owner=config.repo.owner, name=config.repo.name)
