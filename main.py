"""CLI entry point for the restock dashboard."""

from __future__ import annotations

import logging

import click

from config import settings
from database import init_database


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Shopify inventory sync and restock request dashboard."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


@cli.command()
def init_db() -> None:
    """Initialise the SQLite database (creates tables if missing)."""
    init_database(settings.database_path)
    print(f"Database initialised at {settings.database_path}")


@cli.command()
def web() -> None:
    """Start the Flask API server."""
    from api.app import create_app

    app = create_app()
    app.run(
        host=settings.flask_host,
        port=settings.flask_port,
        debug=settings.flask_debug,
    )


@cli.command()
def webhook() -> None:
    """Start the Shopify webhook listener."""
    from webhook_server import create_webhook_app

    app = create_webhook_app()
    app.run(
        host=settings.webhook_host,
        port=settings.webhook_port,
        debug=False,
    )


@cli.command()
@click.option("--connection-id", type=int, default=None, help="Connection to sync (default: first active).")
def sync(connection_id: int | None) -> None:
    """Run a full sync in the foreground and print its outcome."""
    from api.exceptions import AppError
    from database.connection import get_db
    from services.shopify_sync import start_sync

    conn = get_db(settings.database_path)
    try:
        try:
            log = start_sync(conn, connection_id, background=False)
        except AppError as exc:
            print(f"Error: {exc}")
            raise SystemExit(1) from exc

        print(f"Sync {log['id']} {log['status']} for connection {log['connection_id']}")
        if log["status"] == "failed":
            print(f"  Error: {log['error_message']}")
            raise SystemExit(1)
        print(f"  Variants processed: {log['products_processed']}")
        print(f"  Products created:   {log['products_created']}")
        print(f"  Products updated:   {log['products_updated']}")
        print(f"  Inventory updated:  {log['inventory_updated']}")
        print(f"  Alerts opened:      {log['alerts_created']}")
        print(f"  Alerts resolved:    {log['alerts_resolved']}")
        if log["item_errors"]:
            print(f"  Item errors:        {log['item_errors']}")
    finally:
        conn.close()


@cli.command()
def connections() -> None:
    """List connected stores."""
    from database.connection import get_db
    import database.models as models
    from services.vendor_scope import access_type

    conn = get_db(settings.database_path)
    try:
        rows = models.list_connections(conn)
        if not rows:
            print("No connections.")
            return

        print(f"{'ID':>4} {'Shop':<36} {'Active':<7} {'Setup':<6} {'Access':<8} {'Last sync':<19}")
        print("-" * 84)
        for row in rows:
            print(
                f"{row['id']:>4} "
                f"{row['shop_domain']:<36} "
                f"{'yes' if row['is_active'] else 'no':<7} "
                f"{'yes' if row['setup_complete'] else 'no':<6} "
                f"{access_type(row['approved_vendors']):<8} "
                f"{row['last_sync_at'] or '-':<19}"
            )
    finally:
        conn.close()


@cli.command()
@click.option("--connection-id", type=int, default=None, help="Only this connection.")
@click.option("--all", "show_all", is_flag=True, help="Include resolved and ordered alerts.")
def alerts(connection_id: int | None, show_all: bool) -> None:
    """View low-stock alerts."""
    from database.connection import get_db
    import database.models as models
    from services.alert_engine import severity

    conn = get_db(settings.database_path)
    try:
        rows = models.list_alerts(
            conn,
            connection_id=connection_id,
            status=None if show_all else "open",
        )
        if not rows:
            print("No alerts.")
            return

        print(f"{'SKU':<20} {'Product':<34} {'Qty':>5} {'Thr':>5} {'Severity':<13} {'Status':<9}")
        print("-" * 90)
        for row in rows:
            print(
                f"{row['sku'][:20]:<20} "
                f"{row['name'][:34]:<34} "
                f"{row['quantity']:>5} "
                f"{row['threshold']:>5} "
                f"{severity(row['quantity'], row['threshold']) or '-':<13} "
                f"{row['status']:<9}"
            )
        print(f"\nTotal: {len(rows)} alert(s)")
    finally:
        conn.close()


@cli.command()
def purge_oauth_states() -> None:
    """Delete expired OAuth state tokens."""
    from database.connection import get_db
    from services.oauth import purge_expired_states

    conn = get_db(settings.database_path)
    try:
        removed = purge_expired_states(conn)
        print(f"Removed {removed} expired OAuth state(s)")
    finally:
        conn.close()


if __name__ == "__main__":
    cli()
