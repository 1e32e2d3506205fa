import json

import click

from .errors import LedgerError
from .models import fmt_money


def register_cli(app):
    @app.cli.command("ledger.recalc")
    @click.option("--customer", "customer_id", required=True, help="Customer id or gid")
    @click.option("--order", "order_id", default=None, help="Changed order id or gid; omit for a full run")
    @click.option("--mode", type=click.Choice(["partial", "full"]), default=None)
    @click.option("--dry-run/--no-dry-run", default=None)
    def ledger_recalc(customer_id, order_id, mode, dry_run):
        """Recalculate one customer's ledger and write it back."""
        dispatcher = app.config["LEDGER_DISPATCHER"]
        try:
            result = dispatcher.run_now(customer_id, order_id, mode=mode, dry_run=dry_run)
        except LedgerError as e:
            click.echo(json.dumps({"ok": False, **e.to_dict()}, indent=2))
            raise SystemExit(1)
        click.echo(json.dumps(result.to_dict(), indent=2))

    @app.cli.command("ledger.show")
    @click.option("--customer", "customer_id", required=True)
    def ledger_show(customer_id):
        """Fold a customer's whole history and print it, without writing anything."""
        recalculator = app.config["LEDGER_RECALCULATOR"]
        try:
            rows = recalculator.preview(customer_id)
        except LedgerError as e:
            click.echo(f"failed: [{e.kind}] {e}", err=True)
            raise SystemExit(1)

        click.echo(f"{'order':<12} {'created':<20} {'effective':>12} {'cumulative':>12} {'+sh':>4} {'shares':>6} {'remainder':>12}")
        for order, d in rows:
            click.echo(
                f"{(order.name or order.id)[-12:]:<12} {order.created_at.strftime('%Y-%m-%d %H:%M:%S'):<20} "
                f"{fmt_money(d.effective):>12} {fmt_money(d.cumulative_spend):>12} {d.order_shares:>4} "
                f"{d.cumulative_shares:>6} {fmt_money(d.remainder):>12}"
            )
        click.echo(f"Total orders: {len(rows)}")
