#!/usr/bin/env python3
"""
Operator console for the ingestion pipeline.

Runs the scheduled staging cleanup and prints staging health and the format
review queue, for deployments where cron calls a command instead of HTTP.
"""

import argparse
import json
import sys
from dataclasses import asdict

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .core.config import settings
from .core.logging_config import configure_logging
from .db.session import get_session_local
from .domain.ingest import monitor
from .domain.ingest.approval import approve_format_and_migrate, reject_format
from .domain.ingest.broker_formats import get_format_stats, list_pending_formats
from .domain.ingest.errors import IngestionError

HEALTH_STYLES = {"HEALTHY": "green", "WARNING": "yellow", "CRITICAL": "red"}


class IngestConsole:
    """Thin rich front end over the maintenance operations."""

    def __init__(self, db, console=None):
        self.db = db
        self.console = console or Console()

    def cleanup_staging(self) -> int:
        with self.console.status("[bold green]Cleaning up staging records...", spinner="dots"):
            report = monitor.run_staging_cleanup(self.db)

        style = "green" if report.success else "red"
        lines = [
            f"Deleted: {report.total_deleted}",
            f"Duration: {report.duration:.0f}ms",
            f"Health: {report.health_metrics.get('staging_health')}",
        ]
        lines.extend(f"[red]{error}[/red]" for error in report.errors)
        self.console.print(Panel("\n".join(lines), title="Staging cleanup", border_style=style))
        return 0 if report.success else 1

    def staging_health(self) -> int:
        health = monitor.get_health_metrics(self.db)
        style = HEALTH_STYLES.get(health.staging_health, "white")

        table = Table(title="Staging health")
        table.add_column("Metric", style="cyan", no_wrap=True)
        table.add_column("Value", style="white")
        for key, value in asdict(health).items():
            table.add_row(key, f"[{style}]{value}[/{style}]" if key == "staging_health" else str(value))
        self.console.print(table)

        history = monitor.get_cleanup_history(self.db)["cleanup_stats"]
        self.console.print(
            f"[dim]Cleanup runs (7d): {history['total_runs']} | success rate: {history['success_rate']:.0%}[/dim]"
        )
        return 0 if health.staging_health != "CRITICAL" else 1

    def pending_formats(self) -> int:
        formats = list_pending_formats(self.db)
        if not formats:
            self.console.print("[green]No formats awaiting approval.[/green]")
            return 0

        table = Table(title="Formats awaiting approval")
        table.add_column("ID", style="dim", no_wrap=True)
        table.add_column("Broker", style="white")
        table.add_column("Format", style="white")
        table.add_column("Confidence", justify="right")
        table.add_column("Staged orders", justify="right")
        for item in formats:
            table.add_row(
                item["id"],
                item["broker_name"],
                item["format_name"],
                f"{item['confidence']:.2f}",
                str(item["pending_order_count"]),
            )
        self.console.print(table)
        stats = get_format_stats(self.db)
        self.console.print(f"[dim]{stats['approved_formats']}/{stats['total_formats']} formats approved[/dim]")
        return 0

    def approve_format(self, format_id: str, admin_id: str, corrections: str = None) -> int:
        corrected = json.loads(corrections) if corrections else None
        result = approve_format_and_migrate(self.db, format_id, admin_id, corrected_mappings=corrected)
        self.console.print(
            f"[green]Approved {result.format_name}: {result.migrated_count} migrated, "
            f"{result.failed_count} failed[/green]"
        )
        return 0

    def reject_format(self, format_id: str, admin_id: str, reason: str) -> int:
        result = reject_format(self.db, format_id, admin_id, reason)
        self.console.print(f"[yellow]Rejected format {format_id}: {result.rejected_count} staged orders[/yellow]")
        return 0

    def create_user(self, email: str, password: str, role: str, tier: str) -> int:
        from .core.security import create_access_token, create_user

        try:
            user = create_user(self.db, email=email, password=password, role=role, subscription_tier=tier)
        except ValueError as exc:
            self.console.print(f"[red]❌ {exc}[/red]")
            return 1
        self.console.print(f"[green]Created {user.role} {user.email} ({user.subscription_tier}) id={user.id}[/green]")
        self.console.print(f"[dim]Token: {create_access_token(user.id)}[/dim]")
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Tradebook ingest console - staging maintenance and format review",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s cleanup-staging                     # Run the scheduled cleanup once
  %(prog)s staging-health                      # Show staging health metrics
  %(prog)s approve-format FORMAT_ID --admin-id ADMIN_ID
        """
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("cleanup-staging", help="Delete expired staging rows and old monitoring records")
    subparsers.add_parser("staging-health", help="Show staging health metrics")
    subparsers.add_parser("pending-formats", help="List formats awaiting approval")

    approve = subparsers.add_parser("approve-format", help="Approve a format and migrate its staged orders")
    approve.add_argument("format_id")
    approve.add_argument("--admin-id", required=True)
    approve.add_argument("--corrections", help='JSON object of header -> field, e.g. \'{"Qty": "orderQuantity"}\'')

    reject = subparsers.add_parser("reject-format", help="Reject a format and its staged orders")
    reject.add_argument("format_id")
    reject.add_argument("--admin-id", required=True)
    reject.add_argument("--reason", required=True)

    user = subparsers.add_parser("create-user", help="Create a user account")
    user.add_argument("email")
    user.add_argument("password")
    user.add_argument("--role", default="user", choices=["user", "admin"])
    user.add_argument("--tier", default="FREE", choices=["FREE", "PREMIUM"])
    return parser


def main(argv=None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    configure_logging(settings.log_level, rich_output=True)

    db = get_session_local()()
    console = IngestConsole(db)
    try:
        if args.command == "cleanup-staging":
            return console.cleanup_staging()
        if args.command == "staging-health":
            return console.staging_health()
        if args.command == "pending-formats":
            return console.pending_formats()
        if args.command == "approve-format":
            return console.approve_format(args.format_id, args.admin_id, args.corrections)
        if args.command == "reject-format":
            return console.reject_format(args.format_id, args.admin_id, args.reason)
        if args.command == "create-user":
            return console.create_user(args.email, args.password, args.role, args.tier)
    except IngestionError as exc:
        console.console.print(f"[red]❌ {exc.message}[/red]")
        return 1
    finally:
        db.close()
    return 2


if __name__ == "__main__":
    sys.exit(main())
