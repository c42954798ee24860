"""CLI commands for BookingOS."""

import asyncio
from datetime import date, datetime
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from booking_os.config import get_settings
from booking_os.core.database import get_session_factory, init_db as create_database
from booking_os.core.repository import AppointmentRepository, BusinessRepository
from booking_os.scheduling.audit import ScopeViolation, find_scope_violations
from booking_os.scheduling.errors import BookingError
from booking_os.scheduling.models import TimeSlot
from booking_os.scheduling.scheduler import SchedulingService

app = typer.Typer(
    name="booking-os",
    help="Appointment scheduling and booking engine",
    add_completion=False,
)
console = Console()


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", "-h", help="Host to bind"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to bind"),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload"),
):
    """Start the REST API server."""
    import uvicorn

    settings = get_settings()
    host = host or settings.api_host
    port = port or settings.api_port

    console.print(f"Starting BookingOS API server on {host}:{port}")
    uvicorn.run(
        "booking_os.api.app:create_app",
        host=host,
        port=port,
        reload=reload,
        factory=True,
    )


@app.command()
def init_db():
    """Create database tables (development databases only)."""
    asyncio.run(create_database())
    console.print("[green]Database tables created[/green]")


@app.command()
def slots(
    business_id: str = typer.Argument(..., help="Business id"),
    day: str = typer.Option(..., "--date", "-d", help="Day as YYYY-MM-DD"),
    staff_id: Optional[str] = typer.Option(None, "--staff", "-s", help="Staff id"),
    only_free: bool = typer.Option(False, "--free", help="Only show available slots"),
):
    """Show the slot grid for a day."""
    try:
        parsed = datetime.strptime(day, "%Y-%m-%d").date()
    except ValueError:
        console.print(f"[red]Invalid date: {day}. Use YYYY-MM-DD[/red]")
        raise typer.Exit(1)

    try:
        grid = asyncio.run(_load_slots(business_id, parsed, staff_id))
    except BookingError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)

    if only_free:
        grid = [slot for slot in grid if slot.available]
    if not grid:
        console.print(f"[yellow]No slots on {parsed}[/yellow]")
        return

    table = Table(title=f"Slots for {business_id} on {parsed}")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Status")
    for slot in grid:
        status = "[green]free[/green]" if slot.available else "[red]taken[/red]"
        table.add_row(slot.start_time.strftime("%H:%M"), slot.end_time.strftime("%H:%M"), status)
    console.print(table)


async def _load_slots(business_id: str, day: date, staff_id: Optional[str]) -> list[TimeSlot]:
    return await SchedulingService(get_session_factory()).get_available_slots(business_id, day, staff_id)


@app.command()
def audit(
    business_id: Optional[str] = typer.Option(None, "--business", "-b", help="Limit to one business"),
    buffer: Optional[int] = typer.Option(
        None, "--buffer", help="Buffer minutes between bookings (default: each business's policy)"
    ),
):
    """List overlapping active appointments that the booking rules would now refuse."""
    violations = asyncio.run(_collect_violations(business_id, buffer))

    if not violations:
        console.print("[green]No overlapping appointments found[/green]")
        return

    table = Table(title="Overlapping appointments")
    table.add_column("Kind")
    table.add_column("Business")
    table.add_column("Date")
    table.add_column("First")
    table.add_column("Second")
    table.add_column("Staff")
    for v in violations:
        kind = "[red]double booking[/red]" if v.kind == "double_booking" else "[yellow]mixed scope[/yellow]"
        staff = " / ".join(s or "-" for s in v.staff_ids)
        table.add_row(kind, v.business_id, v.date, v.first_id, v.second_id, staff)
    console.print(table)

    if any(v.kind == "double_booking" for v in violations):
        raise typer.Exit(1)


async def _collect_violations(business_id: Optional[str], buffer: Optional[int]) -> list[ScopeViolation]:
    violations: list[ScopeViolation] = []
    async with get_session_factory()() as session:
        businesses = BusinessRepository(session)
        ids = [business_id] if business_id else await businesses.list_ids()
        appointments = AppointmentRepository(session)
        for bid in ids:
            business = await businesses.get(bid)
            if business is None:
                console.print(f"[yellow]Business {bid} not found, skipping[/yellow]")
                continue
            minutes = buffer if buffer is not None else business.policy.buffer_time
            violations.extend(find_scope_violations(await appointments.list_active(bid), buffer_minutes=minutes))
    return violations


@app.command()
def version():
    """Show version information."""
    from booking_os import __version__

    console.print(f"BookingOS v{__version__}")
