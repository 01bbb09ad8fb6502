"""CLI entry point for codechat.

Commands:
  review       (default) open the review UI for uncommitted changes and
               print the reviewer's result as JSON
  get-session  print a stored session as JSON
"""

from __future__ import annotations

import asyncio
import importlib.metadata
import json
import sys
from typing import NoReturn

import click
from pydantic import TypeAdapter, ValidationError

from codechat.errors import WorkflowError
from codechat.logs import configure_logging
from codechat.models import AgentReply
from codechat.workflow import EmptyDiffOutcome, ReviewOptions, execute_review, get_session_by_id

EXIT_CANCELLED = 130

_replies_adapter: TypeAdapter[list[AgentReply]] = TypeAdapter(list[AgentReply])


class _DefaultReviewGroup(click.Group):
    """Group that runs ``review`` when no subcommand is named."""

    default_command = "review"

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        if not args or (args[0] not in self.commands and args[0] not in ctx.help_option_names + ["--version"]):
            args = [self.default_command, *args]
        return super().parse_args(ctx, args)


def parse_replies(raw: str) -> list[AgentReply]:
    """Parse the --replies value: a JSON array, or ``-`` to read it from stdin."""
    if raw == "-":
        raw = sys.stdin.read()
    try:
        return _replies_adapter.validate_json(raw)
    except ValidationError as exc:
        raise WorkflowError(f"Invalid --replies JSON: {exc.errors()[0]['msg']}") from exc


def _fail(message: str) -> NoReturn:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


@click.group(cls=_DefaultReviewGroup)
@click.version_option(
    version=importlib.metadata.version("codechat"),
    prog_name="codechat",
)
def main() -> None:
    """Human-in-the-loop review of uncommitted changes for AI coding agents."""


@main.command("review")
@click.option("--repo", "repo_path", default=".", show_default=True, help="Repository to review.")
@click.option("--session-id", "-s", default=None, help="Resume this session instead of the latest one.")
@click.option("--message", "-m", "description", default=None, help="Description shown above the diff.")
@click.option(
    "--replies",
    "-r",
    "replies_raw",
    default=None,
    help='JSON array of {"commentId", "body", "resolved"} replies, or "-" for stdin.',
)
@click.option("--skip-review", is_flag=True, help="Record replies and return without opening the UI.")
@click.option("--port", "-p", type=click.IntRange(0, 65535), default=None, help="Port to bind (default: random).")
@click.option(
    "--timeout",
    "-t",
    "timeout_minutes",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Auto-submit after this many minutes.",
)
@click.option("--no-open", is_flag=True, help="Do not open a browser window.")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging on stderr.")
def review_cmd(
    repo_path: str,
    session_id: str | None,
    description: str | None,
    replies_raw: str | None,
    skip_review: bool,
    port: int | None,
    timeout_minutes: float | None,
    no_open: bool,
    verbose: bool,
) -> None:
    """Review uncommitted changes in the browser and print the result."""
    configure_logging(verbose=verbose)
    try:
        replies = parse_replies(replies_raw) if replies_raw is not None else []
    except WorkflowError as exc:
        _fail(str(exc))

    options = ReviewOptions(
        repo_path=repo_path,
        session_id=session_id,
        description=description,
        replies=replies,
        skip_review=skip_review,
        port=port,
        timeout=timeout_minutes * 60 if timeout_minutes is not None else None,
        open_browser=not (no_open or skip_review),
    )
    try:
        outcome = asyncio.run(execute_review(options))
    except KeyboardInterrupt:
        click.echo("Review cancelled.", err=True)
        sys.exit(EXIT_CANCELLED)
    except WorkflowError as exc:
        _fail(str(exc))

    if isinstance(outcome, EmptyDiffOutcome):
        click.echo("No uncommitted changes found.", err=True)
        return
    click.echo(json.dumps(outcome.result.to_wire(), indent=2))


@main.command("get-session")
@click.argument("session_id")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging on stderr.")
def get_session_cmd(session_id: str, verbose: bool) -> None:
    """Print a stored session as JSON."""
    configure_logging(verbose=verbose)
    try:
        session = asyncio.run(get_session_by_id(session_id))
    except WorkflowError as exc:
        _fail(str(exc))
    click.echo(json.dumps(session.to_wire(), indent=2))


if __name__ == "__main__":
    main()
