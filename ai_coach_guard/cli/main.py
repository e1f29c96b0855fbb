"""
CLI interface for AI Coach Guard.

Provides operator access to coaching requests, credits, saved plans and
the AI error log.
"""

import logging
import sys
import uuid
from dataclasses import replace
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ai_coach_guard.config.loader import CoachConfig, load_config_or_default
from ai_coach_guard.core.coach import CoachResponse, CoachService, build_service
from ai_coach_guard.core.errors import ClientInfo
from ai_coach_guard.storage.repository import initialize_schema

app = typer.Typer()
plans_app = typer.Typer(help="Manage a user's saved coaching plans.")
errors_app = typer.Typer(help="Inspect and curate the AI error log.")
app.add_typer(plans_app, name="plans")
app.add_typer(errors_app, name="errors")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _load_config(ctx: typer.Context) -> CoachConfig:
    options = ctx.obj or {}
    config = load_config_or_default(options.get("config"))
    if options.get("db"):
        config = replace(config, storage=replace(config.storage, db_path=options["db"]))
    return config


def _service(ctx: typer.Context) -> CoachService:
    # One-shot commands do not need the background sweep
    return build_service(_load_config(ctx), start_sweeper=False)


def _finish(response: CoachResponse) -> None:
    """Print an error response if any and exit with the matching code."""
    if not response.ok:
        console.print(f"[red]Error ({response.status_code}):[/] {response.body.get('error')}")
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


def _guidance(body: dict) -> str:
    if "resetTime" in body:
        return f"resets in {body['resetTime']}"
    return f"try again in {body['waitTime']}"


def _print_failure(response: CoachResponse) -> None:
    """Print quota guidance or the logged error id and exit.

    Other failures are left to _finish.
    """
    body = response.body
    if response.status_code == 429:
        console.print(f"[yellow]{body['error']}[/] - {_guidance(body)}")
        sys.exit(EXIT_CODE_FAIL)
    if response.status_code == 500:
        console.print(f"[red]{body['error']}[/] (error id {body['errorId']})")
        sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML configuration"),
    db: Optional[str] = typer.Option(None, "--db", help="Override the database path"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
):
    """AI Coach Guard CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"config": config, "db": db}
    if ctx.invoked_subcommand is None:
        console.print("AI Coach Guard - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the AI Coach Guard database."""
    try:
        initialize_schema(_load_config(ctx).storage.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("create-user")
def create_user(
    ctx: typer.Context,
    email: str = typer.Argument(..., help="User email (identity)"),
    name: str = typer.Option("", "--name", "-n", help="Display name"),
):
    """Register a user with a full credit balance."""
    try:
        with _service(ctx) as service:
            user = service.create_user(email, name)
    except ValueError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Created user {user.email} (id {user.id})")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def ask(
    ctx: typer.Context,
    email: str = typer.Argument(..., help="User email (identity)"),
    kind: str = typer.Option(..., "--kind", "-k", help="workout_plan, nutrition_advice, progress_analysis or custom_question"),
    question: Optional[str] = typer.Option(None, "--question", "-q", help="Question text for custom questions"),
    include_context: bool = typer.Option(True, "--context/--no-context", help="Personalize with user context"),
):
    """Ask the AI coach on behalf of a user."""
    payload = {"kind": kind, "includeContext": include_context}
    if question:
        payload["question"] = question

    with _service(ctx) as service:
        response = service.ask(email, payload, session_id="cli")

    if response.ok:
        body = response.body
        console.print(f"\n[bold]{body['kind'].replace('_', ' ').title()}[/bold]")
        console.print(body["response"])
        console.print(
            f"\nCredits remaining: {body['creditsRemaining']} | "
            f"Used today: {body['dailyUsed']} | "
            f"Next credit in: {body['nextResetTime']}"
        )
    else:
        _print_failure(response)
    _finish(response)


@app.command()
def chat(
    ctx: typer.Context,
    email: str = typer.Argument(..., help="User email (identity)"),
    session: Optional[str] = typer.Option(None, "--session", "-s", help="Conversation session id (new when omitted)"),
    include_context: bool = typer.Option(True, "--context/--no-context", help="Personalize with user context"),
):
    """Talk with the AI coach until it delivers a plan (empty line or 'quit' to stop)."""
    session_id = session or uuid.uuid4().hex
    client = ClientInfo(user_agent="ai-coach-guard-cli")
    message: Optional[str] = None

    with _service(ctx) as service:
        while True:
            payload = {"sessionId": session_id, "includeContext": include_context}
            if message:
                payload["message"] = message
            response = service.chat(email, payload, client=client)

            if response.ok:
                body = response.body
                console.print(f"\n[bold]Coach:[/] {body['reply']}")
                if body["isComplete"]:
                    console.print(f"\n[green]✓[/] Plan saved (id {body['planId']})")
                    break
                console.print(
                    f"[dim]Credits remaining: {body['creditsRemaining']} | "
                    f"Used today: {body['dailyUsed']}[/]"
                )
            elif response.body.get("error", "").startswith("Too many requests"):
                # Nothing was sent to the model; the user can resend
                console.print(f"[yellow]{response.body['error']}[/] - {_guidance(response.body)}")
            else:
                _print_failure(response)
                _finish(response)

            message = typer.prompt("You", default="", show_default=False).strip()
            if message.lower() in ("", "quit", "exit"):
                break
    sys.exit(EXIT_CODE_PASS)


@app.command()
def credits(
    ctx: typer.Context,
    email: str = typer.Argument(..., help="User email (identity)"),
):
    """Show a user's credit balance."""
    with _service(ctx) as service:
        response = service.credits(email)
    if response.ok:
        hourly = response.body["hourly"]
        daily = response.body["daily"]
        table = Table(title=f"Credits for {email}")
        table.add_column("Window")
        table.add_column("Balance", justify="right")
        table.add_column("Resets in", justify="right")
        table.add_row("Hourly", f"{hourly['remaining']}/{hourly['limit']} remaining", hourly["resetTime"])
        table.add_row("Daily", f"{daily['used']}/{daily['limit']} used", daily["resetTime"])
        console.print(table)
    _finish(response)


@plans_app.command("list")
def list_plans(
    ctx: typer.Context,
    email: str = typer.Argument(..., help="User email (identity)"),
    page: int = typer.Option(1, "--page", "-p"),
    limit: int = typer.Option(20, "--limit", "-l", help="Plans per page (max 20)"),
):
    """List saved plans, newest first."""
    with _service(ctx) as service:
        response = service.list_plans(email, page=page, limit=limit)
    if response.ok:
        plans = response.body["plans"]
        if not plans:
            console.print("[dim]No saved plans yet.[/]")
        else:
            table = Table(title=f"Plans for {email} (page {response.body['page']}, {response.body['total']} total)")
            table.add_column("ID")
            table.add_column("Kind")
            table.add_column("Applied")
            table.add_column("Created")
            for plan in plans:
                table.add_row(plan["id"], plan["kind"], "yes" if plan["applied"] else "no", plan["createdAt"])
            console.print(table)
    _finish(response)


@plans_app.command("delete")
def delete_plan(
    ctx: typer.Context,
    email: str = typer.Argument(..., help="User email (identity)"),
    plan_id: str = typer.Argument(..., help="Plan id"),
):
    """Delete one of the user's plans."""
    with _service(ctx) as service:
        response = service.delete_plan(email, plan_id)
    if response.ok:
        console.print(f"[green]✓[/] Deleted plan {plan_id}")
    _finish(response)


@plans_app.command("apply")
def apply_plan(
    ctx: typer.Context,
    email: str = typer.Argument(..., help="User email (identity)"),
    plan_id: str = typer.Argument(..., help="Plan id"),
):
    """Mark one of the user's plans as applied."""
    with _service(ctx) as service:
        response = service.apply_plan(email, plan_id)
    if response.ok:
        console.print(f"[green]✓[/] Plan {plan_id} marked as applied")
    _finish(response)


@errors_app.command("list")
def list_errors(
    ctx: typer.Context,
    status: Optional[str] = typer.Option(None, "--status", "-s", help="OPEN, INVESTIGATING, RESOLVED or IGNORED"),
    severity: Optional[str] = typer.Option(None, "--severity", help="LOW, MEDIUM, HIGH or CRITICAL"),
    error_type: Optional[str] = typer.Option(None, "--type", "-t", help="Error type filter"),
    page: int = typer.Option(1, "--page", "-p"),
    limit: int = typer.Option(20, "--limit", "-l"),
):
    """List logged AI errors, newest first."""
    with _service(ctx) as service:
        response = service.list_errors(status, severity, error_type, page=page, limit=limit)
    if response.ok:
        pagination = response.body["pagination"]
        table = Table(title=f"AI errors (page {pagination['page']}/{max(pagination['pages'], 1)}, {pagination['total']} total)")
        table.add_column("ID")
        table.add_column("Identity")
        table.add_column("Type")
        table.add_column("Code")
        table.add_column("Severity")
        table.add_column("Status")
        table.add_column("Created")
        for record in response.body["errors"]:
            table.add_row(
                record["id"],
                record["identity"],
                record["errorType"],
                record["errorCode"],
                record["severity"],
                record["status"],
                record["createdAt"],
            )
        console.print(table)
    _finish(response)


@errors_app.command("stats")
def error_stats(ctx: typer.Context):
    """Show aggregate error counts."""
    with _service(ctx) as service:
        response = service.error_stats()
    if response.ok:
        stats = response.body
        console.print(f"Total errors: {stats['total_errors']}")
        console.print(f"Open errors: {stats['open_errors']}")
        console.print(f"Critical errors: {stats['critical_errors']}")
        if stats["by_type"]:
            table = Table(title="Errors by type")
            table.add_column("Type")
            table.add_column("Total", justify="right")
            table.add_column("By severity")
            table.add_column("By status")
            for error_type, entry in sorted(stats["by_type"].items()):
                table.add_row(
                    error_type,
                    str(entry["total"]),
                    ", ".join(f"{k}={v}" for k, v in sorted(entry["by_severity"].items())),
                    ", ".join(f"{k}={v}" for k, v in sorted(entry["by_status"].items())),
                )
            console.print(table)
    _finish(response)


@errors_app.command("status")
def update_status(
    ctx: typer.Context,
    error_id: str = typer.Argument(..., help="Error id"),
    status: str = typer.Argument(..., help="OPEN, INVESTIGATING, RESOLVED or IGNORED"),
    notes: Optional[str] = typer.Option(None, "--notes", help="Admin notes"),
    resolved_by: Optional[str] = typer.Option(None, "--resolved-by", help="Resolving admin"),
):
    """Change the workflow status of an error."""
    with _service(ctx) as service:
        response = service.update_error_status(error_id, status, notes, resolved_by)
    if response.ok:
        console.print(f"[green]✓[/] Error {error_id} is now {response.body['error']['status']}")
    _finish(response)


@errors_app.command("delete")
def delete_error(
    ctx: typer.Context,
    error_id: str = typer.Argument(..., help="Error id"),
):
    """Delete a single error."""
    with _service(ctx) as service:
        response = service.delete_error(error_id)
    if response.ok:
        console.print(f"[green]✓[/] Deleted error {error_id}")
    _finish(response)


@errors_app.command("cleanup")
def cleanup_errors(
    ctx: typer.Context,
    days_old: Optional[int] = typer.Option(None, "--days-old", "-d", help="Age cutoff in days (default from config)"),
):
    """Delete resolved and ignored errors older than the cutoff."""
    with _service(ctx) as service:
        response = service.cleanup_errors(days_old)
    if response.ok:
        console.print(
            f"[green]✓[/] Deleted {response.body['deletedCount']} errors "
            f"older than {response.body['daysOld']} days"
        )
    _finish(response)


if __name__ == "__main__":
    app()
