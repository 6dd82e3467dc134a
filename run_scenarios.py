"""
Walk-through of the engine's main flows against a throwaway SQLite database.

This script exercises:
1. An SOS from an elder reaching a connected caregiver and the off-line channels
2. A broken voice provider not affecting push or e-mail delivery
3. A forgotten dose being auto-missed and escalated to caregivers

Nothing leaves the machine: voice and e-mail go to in-process stand-ins.

Run with: uv run python run_scenarios.py
"""

import asyncio
import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from careline.config import AppConfig, DatabaseConfig, LoggingConfig
from careline.domain.errors import ChannelFailure
from careline.domain.models import (
    Channel,
    DeliveryOutcome,
    Location,
    NotificationEvent,
    Role,
    UserProfile,
)
from careline.observability import configure_logging
from careline.services import CareAlertEngine, Result
from careline.services.channels.messages import subject
from careline.services.clock import ManualClock
from careline.storage.seed import add_users, link_caregiver
from careline.storage.sql import SqlStore

console = Console()

ELDER = UserProfile(id="elder-1", name="Margaret", role=Role.ELDER, phone="+15550000001")
SON = UserProfile(
    id="cg-1", name="Daniel", role=Role.CAREGIVER, phone="+15550000002", email="daniel@example.com"
)
NURSE = UserProfile(id="cg-2", name="Priya", role=Role.CAREGIVER, email="priya@example.com")


class ConsoleTransport:
    """Live connection stand-in that prints what it receives."""

    def __init__(self, owner: str) -> None:
        self.owner = owner

    async def send_json(self, message: dict[str, Any]) -> None:
        console.print(f"  [push -> {self.owner}] {message['event']}", style="cyan")


class DemoChannel:
    """Off-line channel stand-in; flip `broken` to simulate a provider outage."""

    def __init__(self, name: Channel) -> None:
        self.name = name
        self.broken = False

    @property
    def is_configured(self) -> bool:
        return True

    async def send(self, target: str, event: NotificationEvent) -> Result[str, Exception]:
        await asyncio.sleep(0.05)
        if self.broken:
            return Result.err(ChannelFailure(f"{self.name.value} provider returned 503"))
        console.print(f"  [{self.name.value} -> {target}] {subject(event)}", style="magenta")
        return Result.ok(f"{self.name.value}-receipt")


def outcome_table(title: str, outcomes: list[DeliveryOutcome]) -> Table:
    table = Table(title=title)
    table.add_column("Recipient", style="cyan")
    table.add_column("Channel", style="magenta")
    table.add_column("Status", style="white")
    table.add_column("Detail", style="yellow")

    styles = {"sent": "green", "failed": "red", "skipped": "dim"}
    for outcome in outcomes:
        status = outcome.status.value
        table.add_row(
            outcome.recipient_id,
            outcome.channel.value,
            f"[{styles[status]}]{status}[/{styles[status]}]",
            outcome.detail or "",
        )
    return table


async def build_engine(
    workdir: Path, clock: ManualClock
) -> tuple[CareAlertEngine, DemoChannel, DemoChannel]:
    config = AppConfig(
        database=DatabaseConfig(url=f"sqlite+aiosqlite:///{workdir / 'careline.db'}"),
        logging=LoggingConfig(level="WARNING", format="console"),
    )
    configure_logging(config.logging)

    voice = DemoChannel(Channel.VOICE)
    email = DemoChannel(Channel.EMAIL)
    store = SqlStore.from_config(config.database)
    engine = CareAlertEngine(config, store, off_line_channels=[voice, email], clock=clock)
    await engine.start()

    await add_users(store, [ELDER, SON, NURSE])
    await link_caregiver(store, ELDER.id, SON.id, relationship="son")
    await link_caregiver(store, ELDER.id, NURSE.id, relationship="nurse")
    return engine, voice, email


async def emergency_scenario(engine: CareAlertEngine) -> bool:
    """An elder presses SOS while their son is connected."""

    console.print(Panel("Emergency: trigger and resolve", style="blue"))

    engine.connect(ELDER.id, Role.ELDER, "ws-elder", ConsoleTransport("Margaret"))
    engine.connect(SON.id, Role.CAREGIVER, "ws-son", ConsoleTransport("Daniel"))
    await engine.presence.drain()

    triggered = await engine.emergencies.trigger(
        ELDER.id,
        Location(latitude=51.5007, longitude=-0.1246, address="12 Elm St"),
        notes="fell down",
    )
    console.print(outcome_table("SOS delivery", triggered.outcomes))

    resolved = await engine.emergencies.resolve(triggered.alert.id, SON.id, notes="on my way")
    console.print(
        f"Alert {resolved.alert.id[:8]} resolved by {resolved.alert.resolved_by}", style="green"
    )
    return resolved.alert.resolved_by == SON.id


async def channel_outage_scenario(engine: CareAlertEngine, voice: DemoChannel) -> bool:
    """The voice provider is down; push and e-mail still go out."""

    console.print(Panel("Emergency during a voice provider outage", style="blue"))

    voice.broken = True
    try:
        triggered = await engine.emergencies.trigger(
            ELDER.id, Location(latitude=51.5007, longitude=-0.1246)
        )
    finally:
        voice.broken = False

    console.print(outcome_table("SOS delivery", triggered.outcomes))
    return any(o.status.value == "failed" for o in triggered.outcomes) and any(
        o.channel is Channel.EMAIL and o.status.value == "sent" for o in triggered.outcomes
    )


async def missed_dose_scenario(engine: CareAlertEngine, clock: ManualClock) -> bool:
    """A morning dose is never taken and the escalation poller catches it."""

    console.print(Panel("Medication: reminder, then auto-miss", style="blue"))

    definition = await engine.medications.add_definition(
        ELDER.id, "Metformin", "500mg", ["08:10"], instructions="with food"
    )
    console.print(f"Scheduled {definition.name} at {', '.join(definition.slot_labels())}")

    reminded = await engine.reminders.run_once()
    console.print(f"Reminders sent: {reminded}", style="yellow")

    clock.advance(timedelta(minutes=45))
    missed = await engine.escalations.run_once()
    console.print(f"Doses auto-missed: {missed}", style="yellow")

    stats = await engine.medications.adherence_stats(ELDER.id)
    table = Table(title="Adherence (7 days)")
    table.add_column("Scheduled", style="cyan")
    table.add_column("Taken", style="green")
    table.add_column("Missed", style="red")
    table.add_column("Rate", style="white")
    table.add_row(
        str(stats.total_scheduled), str(stats.taken), str(stats.missed), f"{stats.adherence_rate}%"
    )
    console.print(table)
    return reminded == 1 and missed == 1


async def run_all_scenarios() -> None:
    console.print(Panel("Careline engine walk-through", style="bold blue"))

    clock = ManualClock(datetime(2026, 3, 2, 8, 0, tzinfo=UTC))
    results: list[tuple[str, bool]] = []

    with tempfile.TemporaryDirectory() as workdir:
        engine, voice, _ = await build_engine(Path(workdir), clock)
        try:
            scenarios = [
                ("Emergency", lambda: emergency_scenario(engine)),
                ("Channel outage", lambda: channel_outage_scenario(engine, voice)),
                ("Missed dose", lambda: missed_dose_scenario(engine, clock)),
            ]
            for name, scenario in scenarios:
                console.print(f"\n{'=' * 60}")
                try:
                    results.append((name, await scenario()))
                except Exception as e:
                    console.print(f"{name} failed with exception: {e}", style="red")
                    results.append((name, False))
        finally:
            await engine.aclose()

    console.print(f"\n{'=' * 60}")
    summary = Table(title="Scenario Results")
    summary.add_column("Scenario", style="cyan")
    summary.add_column("Result", style="white")
    for name, passed in results:
        summary.add_row(name, "[green]PASS[/green]" if passed else "[red]FAIL[/red]")
    console.print(summary)


if __name__ == "__main__":
    asyncio.run(run_all_scenarios())
