"""CLI commands for the agency admin backend.

Commands:
- init-db: Create the database schema
- seed-challenge: Create the Challenge product and its lessons
- generate-password: Print a random staff password
- create-staff: Create a staff login
- reset-password: Set a new password for a staff login
- mondays: Show Challenge start date options
- progress: Training progress report for an agency
- challenge-progress: Challenge progress for an agency
- analyze-call: Score a call transcript with the LLM
- serve: Run the Web API
"""

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from agencybrain.config import load_app_config
from agencybrain.core.call_analysis import (
    AnalysisParseError,
    CallAnalysisError,
    analyze_call,
)
from agencybrain.core.challenge import (
    TIMEZONES,
    generate_monday_options,
    get_next_monday,
    list_assignment_progress,
    seed_challenge_product,
)
from agencybrain.core.staff_access import (
    StaffAccessError,
    create_staff_user,
    reset_staff_password,
)
from agencybrain.core.training_progress import (
    build_progress_report,
    filter_and_sort,
)
from agencybrain.db import init_db
from agencybrain.utils.passwords import generate_random_password
from agencybrain.utils.text_utils import truncate

app = typer.Typer(
    name="agency",
    help="Admin backend for agency staff, training, the Challenge and call scoring.",
    no_args_is_help=True,
)

console = Console()

STATUS_STYLES = {
    "Completed": "green",
    "On Track": "green",
    "In Progress": "cyan",
    "Behind": "yellow",
    "Overdue": "red",
    "Not Started": "dim",
}


def _open_db(db: Path | None) -> Path:
    """Initialize the database from --db or the configured path."""
    db_path = db or Path(load_app_config().database.path)
    init_db(db_path)
    return db_path


DB_OPTION = typer.Option(None, "--db", help="Database path (default: from config)")


# =============================================================================
# SETUP
# =============================================================================


@app.command(name="init-db")
def init_database(db: Path | None = DB_OPTION) -> None:
    """Create the database schema."""
    db_path = _open_db(db)
    console.print("[green]✓ Database ready[/green]")
    console.print(f"  [dim]path:[/dim] {db_path}")


@app.command(name="seed-challenge")
def seed_challenge(db: Path | None = DB_OPTION) -> None:
    """Create the Challenge product and its lesson outline."""
    _open_db(db)
    product = seed_challenge_product()
    console.print(f"[green]✓ {product.name}[/green]")
    console.print(f"  [dim]id:[/dim]      {product.id}")
    console.print(f"  [dim]lessons:[/dim] {product.total_lessons}")
    console.print(f"  [dim]weeks:[/dim]   {product.duration_weeks}")


# =============================================================================
# STAFF
# =============================================================================


@app.command(name="generate-password")
def generate_password(
    length: int = typer.Option(12, "--length", "-n", help="Password length"),
) -> None:
    """Print a random password suitable for a staff login."""
    if length < 8:
        console.print("[red]✗ Password must be at least 8 characters[/red]")
        raise typer.Exit(code=1)
    console.print(generate_random_password(length))


@app.command(name="create-staff")
def create_staff(
    agency_id: str = typer.Argument(..., help="Agency ID"),
    username: str = typer.Argument(..., help="Login username"),
    display_name: str | None = typer.Option(None, "--name", help="Display name"),
    email: str | None = typer.Option(None, "--email", "-e", help="Email address"),
    invite: bool = typer.Option(False, "--invite", help="Send a password-setup invite instead"),
    password: str | None = typer.Option(None, "--password", "-p", help="Password (random if omitted)"),
    team_member_id: str | None = typer.Option(None, "--team-member", help="Team member to link"),
    db: Path | None = DB_OPTION,
) -> None:
    """Create a staff login by password or by email invite."""
    _open_db(db)

    generated = False
    if not invite and not password:
        password = generate_random_password()
        generated = True

    try:
        result = create_staff_user(
            agency_id=agency_id,
            username=username,
            display_name=display_name,
            email=email,
            mode="email" if invite else "password",
            password=password,
            team_member_id=team_member_id,
        )
    except StaffAccessError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1)

    console.print(f"[green]✓ {result.message}[/green]")
    console.print(f"  [dim]id:[/dim]       {result.staff_user.id}")
    if generated:
        console.print(f"  [dim]password:[/dim] {password}")
    if result.reset_request is not None:
        console.print(f"  [dim]token:[/dim]    {result.reset_request.token}")
        console.print(f"  [dim]expires:[/dim]  {result.reset_request.expires_at}")
    for warning in result.warnings:
        console.print(f"  [yellow]⚠ {warning}[/yellow]")


@app.command(name="reset-password")
def reset_password(
    staff_user_id: str = typer.Argument(..., help="Staff user ID"),
    password: str | None = typer.Option(None, "--password", "-p", help="New password (random if omitted)"),
    db: Path | None = DB_OPTION,
) -> None:
    """Set a new password for a staff login."""
    _open_db(db)
    new_password = password or generate_random_password()

    try:
        user = reset_staff_password(staff_user_id, new_password)
    except StaffAccessError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1)

    console.print(f"[green]✓ Password updated for {user.username}[/green]")
    if not password:
        console.print(f"  [dim]password:[/dim] {new_password}")


# =============================================================================
# TRAINING
# =============================================================================


@app.command()
def progress(
    agency_id: str = typer.Argument(..., help="Agency ID"),
    search: str | None = typer.Option(None, "--search", "-s", help="Filter by staff name"),
    status: str | None = typer.Option(None, "--status", help="Filter by staff status"),
    sort: str = typer.Option("name", "--sort", help="name, modules, completed, percentage, last_activity or status"),
    desc: bool = typer.Option(False, "--desc", help="Sort descending"),
    db: Path | None = DB_OPTION,
) -> None:
    """Show the training progress report for an agency."""
    _open_db(db)
    report = build_progress_report(agency_id)

    try:
        rows = filter_and_sort(
            report.staff,
            search=search,
            status=status,
            sort_field=sort,
            direction="desc" if desc else "asc",
        )
    except ValueError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1)

    summary = report.summary
    console.print(f"[bold]Training progress[/bold] ({agency_id})")
    console.print(f"  [dim]staff:[/dim]          {summary.total_staff}")
    console.print(f"  [dim]lessons done:[/dim]   {summary.total_completed}")
    console.print(f"  [dim]avg completion:[/dim] {summary.avg_completion}%")
    console.print(f"  [dim]overdue:[/dim]        {summary.overdue_count}")

    if not rows:
        console.print("\n[yellow]No staff match[/yellow]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Staff", style="cyan", width=24)
    table.add_column("Modules", justify="center", width=8)
    table.add_column("Lessons", justify="center", width=10)
    table.add_column("Progress", justify="center", width=9)
    table.add_column("Status", width=12)
    table.add_column("Last activity", width=22)

    for row in rows:
        style = STATUS_STYLES.get(row.status, "white")
        table.add_row(
            truncate(row.name, 24),
            str(row.assigned_modules),
            f"{row.completed_lessons}/{row.total_lessons}",
            f"{row.completion_percentage}%",
            f"[{style}]{row.status}[/{style}]",
            row.last_activity or "-",
        )

    console.print(table)


# =============================================================================
# CHALLENGE
# =============================================================================


@app.command()
def mondays() -> None:
    """Show Challenge start date options."""
    next_monday = get_next_monday()
    console.print(f"[bold]Next start:[/bold] {next_monday.isoformat()} ({next_monday:%B %d, %Y})")
    for option in generate_monday_options():
        marker = "[green]•[/green]" if option == next_monday else " "
        console.print(f"  {marker} {option.isoformat()}")
    console.print("\n[dim]Timezones:[/dim]")
    for zone, label in TIMEZONES.items():
        console.print(f"  {label} [dim]({zone})[/dim]")


@app.command(name="challenge-progress")
def challenge_progress(
    agency_id: str = typer.Argument(..., help="Agency ID"),
    db: Path | None = DB_OPTION,
) -> None:
    """Show Challenge progress for every assignment in an agency."""
    _open_db(db)
    rows = list_assignment_progress(agency_id)
    if not rows:
        console.print("[yellow]No Challenge assignments[/yellow]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Staff", style="cyan", width=24)
    table.add_column("Status", width=10)
    table.add_column("Day", justify="center", width=5)
    table.add_column("Lessons", justify="center", width=10)
    table.add_column("Core 4", justify="center", width=10)
    table.add_column("Streak", justify="center", width=7)

    for row in rows:
        table.add_row(
            truncate(row.staff_name, 24),
            row.assignment.status,
            str(row.current_business_day),
            f"{row.progress.completed}/{row.progress.total} ({row.progress.percent}%)",
            f"{row.core4.perfect_days}/{row.core4.total_days}",
            str(row.core4.current_streak),
        )

    console.print(table)


# =============================================================================
# CALLS
# =============================================================================


@app.command(name="analyze-call")
def analyze_call_command(
    call_id: str = typer.Argument(..., help="Call ID"),
    db: Path | None = DB_OPTION,
) -> None:
    """Score a call transcript with the LLM and store the results.

    Requires an API key for the configured provider.
    """
    _open_db(db)
    console.print(f"[blue]Analyzing call {call_id}...[/blue]")

    try:
        result = analyze_call(call_id)
    except AnalysisParseError as e:
        console.print(f"[red]✗ {e}[/red]")
        if e.raw:
            console.print(f"  [dim]raw:[/dim] {truncate(e.raw, 200)}")
        raise typer.Exit(code=1)
    except CallAnalysisError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1)

    call = result.call
    console.print(f"[green]✓ {result.message}[/green]")
    console.print(f"  [dim]type:[/dim]    {call.call_type}")
    console.print(f"  [dim]score:[/dim]   {call.overall_score}")
    if call.potential_rank:
        console.print(f"  [dim]rank:[/dim]    {call.potential_rank}")
    if call.summary:
        console.print(f"  [dim]summary:[/dim] {truncate(call.summary, 200)}")


# =============================================================================
# WEB
# =============================================================================


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", help="Port"),
    reload: bool = typer.Option(False, "--reload", help="Auto-reload on changes"),
) -> None:
    """Run the Web API with uvicorn."""
    import uvicorn

    uvicorn.run("agencybrain.web.api:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
