"""Reconciliation Command Line Interface.

Operational tools for:
- Bulk and single-order payment recompute
- Transaction listings (unconnected / connected / broken links)
- Match suggestions
- Configuration checks

Usage:
    python -m mpesa_reconciliation.cli recompute-all [--full]
    python -m mpesa_reconciliation.cli recompute-order --order-id X
    python -m mpesa_reconciliation.cli list-transactions --filter broken
    python -m mpesa_reconciliation.cli suggest-matches --order-id X
    python -m mpesa_reconciliation.cli config-check
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Awaitable, Callable

from mpesa_reconciliation.config import Settings, get_settings, validate_production_config
from mpesa_reconciliation.database import create_schema, get_engine, make_session_factory
from mpesa_reconciliation.errors import ReconciliationError
from mpesa_reconciliation.phone import PhoneNormalizer
from mpesa_reconciliation.services import ReconciliationResolver

Handler = Callable[[ReconciliationResolver, argparse.Namespace], Awaitable[int]]


class ReconCli:
    """Reconciliation Command Line Interface."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings
        self.parser = self._build_parser()

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="python -m mpesa_reconciliation.cli",
            description="M-Pesa reconciliation operational tools",
        )
        parser.add_argument(
            "--database-url",
            type=str,
            help="Override DATABASE_URL",
        )
        parser.add_argument(
            "--json",
            action="store_true",
            help="Print machine-readable JSON",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        # recompute-all command
        recompute_all = subparsers.add_parser(
            "recompute-all",
            help="Recompute payment fields for orders with connected transactions",
        )
        recompute_all.add_argument(
            "--full",
            action="store_true",
            help="Recompute every order, not just those with connected transactions",
        )

        # recompute-order command
        recompute_order = subparsers.add_parser(
            "recompute-order",
            help="Recompute payment fields for one order",
        )
        recompute_order.add_argument("--order-id", type=str, required=True, help="Order ID")

        # list-transactions command
        list_txns = subparsers.add_parser(
            "list-transactions",
            help="List transactions by connection state",
        )
        list_txns.add_argument(
            "--filter",
            type=str,
            choices=["unconnected", "connected", "broken"],
            default="unconnected",
            help="Connection state (default: unconnected)",
        )

        # suggest-matches command
        suggest = subparsers.add_parser(
            "suggest-matches",
            help="Suggest transaction/order matches by phone number",
        )
        target = suggest.add_mutually_exclusive_group(required=True)
        target.add_argument("--order-id", type=str, help="Suggest transactions for this order")
        target.add_argument("--transaction-id", type=str, help="Suggest orders for this transaction")

        # stats command
        subparsers.add_parser("stats", help="Transaction counts and amounts by state")

        # init-db command
        subparsers.add_parser("init-db", help="Create tables (development only)")

        # config-check command
        subparsers.add_parser("config-check", help="Check settings for production readiness")

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        if parsed.command == "config-check":
            return self._cmd_config_check(parsed)

        # Dispatch to command handler
        handlers: dict[str, Handler] = {
            "recompute-all": self._cmd_recompute_all,
            "recompute-order": self._cmd_recompute_order,
            "list-transactions": self._cmd_list_transactions,
            "suggest-matches": self._cmd_suggest_matches,
            "stats": self._cmd_stats,
            "init-db": self._cmd_init_db,
        }

        handler = handlers.get(parsed.command)
        if handler:
            return asyncio.run(self._with_resolver(handler, parsed))

        print(f"Unknown command: {parsed.command}", file=sys.stderr)
        return 1

    async def _with_resolver(self, handler: Handler, args: argparse.Namespace) -> int:
        engine = get_engine(args.database_url or self.settings.database_url)
        try:
            if args.command == "init-db":
                await create_schema(engine)
            resolver = ReconciliationResolver(
                make_session_factory(engine),
                normalizer=PhoneNormalizer(self.settings.phone_config()),
            )
            return await handler(resolver, args)
        except ReconciliationError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            return 2
        finally:
            await engine.dispose()

    def _emit(self, args: argparse.Namespace, payload: Any, lines: list[str]) -> None:
        if args.json:
            print(json.dumps(payload, indent=2, default=str))
        else:
            for line in lines:
                print(line)

    async def _cmd_recompute_all(self, resolver: ReconciliationResolver, args: argparse.Namespace) -> int:
        """Recompute orders in bulk."""
        result = await resolver.recompute_all(full=args.full)
        lines = [
            f"Recompute ({'full' if args.full else 'connected orders'})",
            f"  Processed: {result.processed}",
            f"  Changed:   {result.changed}",
            f"  Errors:    {len(result.errors)}",
        ]
        for r in result.results:
            if r.changed:
                lines.append(
                    f"    {r.order_id}: {r.previous_status} -> {r.payment_status} "
                    f"(paid {r.total_paid}, remaining {r.remaining_balance})"
                )
        for error in result.errors:
            lines.append(f"    ! {error['order_id']}: {error['message']}")
        self._emit(args, result.to_dict(), lines)
        return 0 if result.success else 1

    async def _cmd_recompute_order(self, resolver: ReconciliationResolver, args: argparse.Namespace) -> int:
        """Recompute one order."""
        r = await resolver.recompute_for_order(args.order_id)
        self._emit(
            args,
            r.to_dict(),
            [
                f"Order {r.order_id}",
                f"  Total:     {r.total_amount}",
                f"  Paid:      {r.total_paid} ({r.transaction_count} transactions)",
                f"  Status:    {r.previous_status} -> {r.payment_status}",
                f"  Remaining: {r.remaining_balance}",
            ],
        )
        return 0

    async def _cmd_list_transactions(self, resolver: ReconciliationResolver, args: argparse.Namespace) -> int:
        """List transactions by connection state."""
        views = await resolver.list_transactions(args.filter)
        lines = [f"{args.filter.capitalize()} transactions: {len(views)}"]
        for view in views:
            txn = view.transaction
            lines.append(
                f"  {txn.transaction_id:<14} {txn.amount_paid:>12} {view.phone_display:<14} "
                f"{txn.transaction_type:<8} {txn.connected_order_id or '-'}"
            )
        self._emit(args, [v.to_dict() for v in views], lines)
        return 0

    async def _cmd_suggest_matches(self, resolver: ReconciliationResolver, args: argparse.Namespace) -> int:
        """Suggest matches."""
        if args.order_id:
            suggestions = await resolver.suggest_transactions_for_order(args.order_id)
            header = f"Candidate transactions for order {args.order_id}: {len(suggestions)}"
        else:
            suggestions = await resolver.suggest_orders_for_transaction(args.transaction_id)
            header = f"Candidate orders for transaction {args.transaction_id}: {len(suggestions)}"
        lines = [header]
        for s in suggestions:
            marker = "=" if s.amount_matches_balance else " "
            lines.append(
                f"  {marker} txn {s.transaction_id} -> order {s.order_id} "
                f"amount {s.amount} / balance {s.remaining_balance}"
            )
        self._emit(args, [s.to_dict() for s in suggestions], lines)
        return 0

    async def _cmd_stats(self, resolver: ReconciliationResolver, args: argparse.Namespace) -> int:
        """Print transaction statistics."""
        stats = await resolver.stats()
        self._emit(
            args,
            stats.to_dict(),
            [
                "Transaction Statistics",
                "=" * 40,
                f"  Total:       {stats.total_count:>6}  {stats.total_amount:>14}",
                f"  Unconnected: {stats.unconnected_count:>6}  {stats.unconnected_amount:>14}",
                f"  Connected:   {stats.connected_count:>6}  {stats.connected_amount:>14}",
                f"  Broken:      {stats.broken_count:>6}  {stats.broken_amount:>14}",
            ],
        )
        return 0

    async def _cmd_init_db(self, resolver: ReconciliationResolver, args: argparse.Namespace) -> int:
        """Tables are created before the handler runs."""
        print("Schema created.")
        return 0

    def _cmd_config_check(self, args: argparse.Namespace) -> int:
        """Check configuration for production."""
        issues = validate_production_config(self.settings)
        if args.json:
            print(json.dumps({"issues": issues}, indent=2))
        elif issues:
            print("Configuration issues:")
            for issue in issues:
                print(f"  - {issue}")
        else:
            print("Configuration OK")
        return 1 if any(i.startswith("CRITICAL") for i in issues) else 0


def main() -> int:
    """CLI entry point."""
    cli = ReconCli()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
