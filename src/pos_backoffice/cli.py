"""Command-line entry points for the back-office toolkit.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into requests for the business layer and printing the
results. Every write goes through :mod:`pos_backoffice.core_logic`, which
persists the workbook itself.
"""

from __future__ import annotations

import argparse
import getpass
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, log, set_console_level
from .constants import PaymentMethod
from .filters import filter_sales_by_range


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


REPORT_LABELS: Sequence[Tuple[str, str]] = (
    ("inventory_cost", "Inventory cost"),
    ("total_sales", "Total sales"),
    ("cost_of_sales", "Cost of sales"),
    ("total_expenses", "Total expenses"),
    ("net_profit", "Net profit"),
    ("cash_balance", "Cash balance"),
    ("total_profit", "Total profit"),
    ("cash_payments", "Cash payments"),
    ("card_payments", "Card payments"),
    ("transfer_payments", "Transfer payments"),
    ("credit_total", "Credit total"),
    ("credit_paid", "Credit paid"),
    ("credit_pending", "Credit pending"),
    ("credit_profit", "Credit profit"),
)


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="backoffice-cli",
        description="Command-line tools for the point-of-sale back-office workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Only print warnings and errors from the log on the console.",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and cancellations."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "add-staff": register_add_staff_command(subparsers),
        "add-client": register_add_client_command(subparsers),
        "add-expense": register_add_expense_command(subparsers),
        "cancel-expense": register_cancel_expense_command(subparsers),
        "add-credit": register_add_credit_command(subparsers),
        "pay-credit": register_pay_credit_command(subparsers),
        "cancel-credit": register_cancel_credit_command(subparsers),
        "sale": register_sale_command(subparsers),
        "cancel-sale": register_cancel_sale_command(subparsers),
        "delete-sale": register_delete_sale_command(subparsers),
        "delete-all-sales": register_delete_all_sales_command(subparsers),
        "pay-commissions": register_pay_commissions_command(subparsers),
        "set-cash": register_set_cash_command(subparsers),
        "reset-cash": register_reset_cash_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "sales": register_sales_command(subparsers),
        "report": register_report_command(subparsers),
        "cash": register_cash_command(subparsers),
        "commissions": register_commissions_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _simple_spec(
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
    configure: Optional[Callable[[argparse.ArgumentParser], None]] = None,
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        if configure is not None:
            configure(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--cost-price", required=True)
        parser.add_argument("--base-price", required=True)
        parser.add_argument("--quantity", default="0")
        parser.add_argument("--code", default="")
        parser.add_argument("--category", default="")

    return _simple_spec("add-product", "Register a new product in the catalog.", run_add_product, configure)


def register_add_staff_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-staff``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--staff-id", required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--commission-rate", default="0", help="Fraction of the sale total, e.g. 0.05.")

    return _simple_spec("add-staff", "Register a staff member.", run_add_staff, configure)


def register_add_client_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-client``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--client-id", required=True)
        parser.add_argument("--code", required=True)
        parser.add_argument("--name", required=True)

    return _simple_spec("add-client", "Register a client.", run_add_client, configure)


def register_add_expense_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-expense``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--amount", required=True)
        parser.add_argument("--description", required=True)

    return _simple_spec("add-expense", "Record an operating expense.", run_add_expense, configure)


def register_cancel_expense_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``cancel-expense``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--expense-id", required=True)

    return _simple_spec("cancel-expense", "Cancel a recorded expense.", run_cancel_expense, configure)


def register_add_credit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-credit``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--client-name", required=True)
        parser.add_argument("--original-price", required=True, help="Cost basis of the goods sold on credit.")
        parser.add_argument("--final-price", required=True, help="Amount the client owes.")

    return _simple_spec("add-credit", "Open an installment account.", run_add_credit, configure)


def register_pay_credit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay-credit``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--credit-id", required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--note", default=None)

    return _simple_spec("pay-credit", "Record an installment payment.", run_pay_credit, configure)


def register_cancel_credit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``cancel-credit``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--credit-id", required=True)

    return _simple_spec("cancel-credit", "Cancel an installment account.", run_cancel_credit, configure)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--client-name", required=True)
        parser.add_argument("--client-code", default=None)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            required=True,
            metavar="PRODUCT_ID:QUANTITY[:PRICE]",
            help="Line item; repeat for several products. PRICE defaults to the base price.",
        )
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod],
            required=True,
        )
        parser.add_argument("--discount", default="0")
        parser.add_argument("--staff-id", default=None)
        parser.add_argument("--commission", default=None, help="Override the staff commission amount.")
        parser.add_argument("--reference", default=None)

    return _simple_spec("sale", "Record a sale.", run_sale, configure)


def register_cancel_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``cancel-sale``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--sale-id", required=True)
        parser.add_argument("--reason", required=True)

    return _simple_spec("cancel-sale", "Cancel a sale and restore its stock.", run_cancel_sale, configure)


def _add_password_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--password", default=None, help="Administrator password (prompted when omitted).")


def register_delete_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-sale``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--sale-id", required=True)
        _add_password_argument(parser)

    return _simple_spec("delete-sale", "Permanently delete one sale.", run_delete_sale, configure)


def register_delete_all_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-all-sales``."""
    return _simple_spec(
        "delete-all-sales",
        "Permanently delete every sale.",
        run_delete_all_sales,
        _add_password_argument,
    )


def register_pay_commissions_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay-commissions``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--staff-id", required=True)

    return _simple_spec(
        "pay-commissions", "Settle the unpaid commissions of a staff member.", run_pay_commissions, configure)


def register_set_cash_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-cash``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--amount", required=True)

    return _simple_spec("set-cash", "Set the cash register balance.", run_set_cash, configure)


def register_reset_cash_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reset-cash``."""
    return _simple_spec("reset-cash", "Reset the cash register to zero.", run_reset_cash)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    return _simple_spec("stock", "Display current stock levels.", run_stock_report)


def _add_range_arguments(parser: argparse.ArgumentParser, *, required: bool) -> None:
    parser.add_argument("--from", dest="start_date", required=required, help="First day, YYYY-MM-DD.")
    parser.add_argument("--to", dest="end_date", required=required, help="Last day, YYYY-MM-DD (inclusive).")


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        _add_range_arguments(parser, required=False)

    return _simple_spec("sales", "List recorded sales.", run_sales_report, configure)


def register_report_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``report``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        _add_range_arguments(parser, required=True)

    return _simple_spec("report", "Display the financial report for a date range.", run_financial_report, configure)


def register_cash_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``cash``."""
    return _simple_spec("cash", "Display the cash register balance.", run_cash_report)


def register_commissions_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``commissions``."""
    return _simple_spec("commissions", "Display unpaid commission per staff member.", run_commissions_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------


def parse_decimal(raw: Optional[str], label: str) -> Decimal:
    """Convert a CLI string into a :class:`Decimal`.

    Raises:
        ValidationError: If ``raw`` is not a finite number.
    """
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError) as exc:
        raise core_logic.ValidationError(f"{label} must be a number, got {raw!r}") from exc
    if not value.is_finite():
        raise core_logic.ValidationError(f"{label} must be a finite number, got {raw!r}")
    return value


def parse_item(raw: str) -> Tuple[str, Decimal, Optional[Decimal]]:
    """Split ``PRODUCT_ID:QUANTITY[:PRICE]`` into its parts."""
    parts = raw.split(":")
    if len(parts) not in (2, 3) or not parts[0].strip():
        raise core_logic.ValidationError(f"Invalid item {raw!r}; expected PRODUCT_ID:QUANTITY[:PRICE]")
    price = parse_decimal(parts[2], "Item price") if len(parts) == 3 else None
    return parts[0].strip(), parse_decimal(parts[1], "Item quantity"), price


def translate_add_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-product request."""
    return {
        "product_id": args.product_id,
        "name": args.name,
        "code": args.code,
        "category": args.category,
        "quantity": parse_decimal(args.quantity, "Quantity"),
        "cost_price": parse_decimal(args.cost_price, "Cost price"),
        "base_price": parse_decimal(args.base_price, "Base price"),
    }


def translate_add_staff(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-staff request."""
    return {
        "staff_id": args.staff_id,
        "name": args.name,
        "commission_rate": parse_decimal(args.commission_rate, "Commission rate"),
    }


def translate_add_client(args: argparse.Namespace) -> Mapping[str, Any]:
    return {"client_id": args.client_id, "code": args.code, "name": args.name}


def translate_add_expense(args: argparse.Namespace) -> Mapping[str, Any]:
    return {"amount": parse_decimal(args.amount, "Amount"), "description": args.description}


def translate_add_credit(args: argparse.Namespace) -> Mapping[str, Any]:
    return {
        "client_name": args.client_name,
        "original_price": parse_decimal(args.original_price, "Original price"),
        "final_price": parse_decimal(args.final_price, "Final price"),
    }


def translate_sale(args: argparse.Namespace) -> Dict[str, Any]:
    """Translate CLI args into the fields of a sale draft.

    Line items are returned as ``(product_id, quantity, price)`` tuples under
    ``"items"``; they are resolved against the catalog by :func:`run_sale`.
    """
    commission = None if args.commission is None else parse_decimal(args.commission, "Commission")
    return {
        "items": [parse_item(raw) for raw in args.items],
        "client_name": args.client_name,
        "client_code": args.client_code,
        "staff_id": args.staff_id,
        "staff_commission": commission,
        "discount": parse_decimal(args.discount, "Discount"),
        "payment_method": PaymentMethod(args.payment_method),
        "reference": args.reference,
    }


def resolve_password(args: argparse.Namespace) -> str:
    """Return ``--password`` or prompt for it without echoing."""
    if args.password is not None:
        return args.password
    return getpass.getpass("Administrator password: ")


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = core_logic.add_product(context, **translate_add_product(args))
    print(f"Added product {product.product_id} ({product.name}).")
    return 0


def run_add_staff(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-staff workflow in the BLL."""
    member = core_logic.add_staff(context, **translate_add_staff(args))
    print(f"Added staff member {member.staff_id} ({member.name}).")
    return 0


def run_add_client(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    client = core_logic.add_client(context, **translate_add_client(args))
    print(f"Added client {client.client_id} with code {client.code}.")
    return 0


def run_add_expense(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    expense = core_logic.add_expense(context, **translate_add_expense(args))
    print(f"Recorded expense {expense.expense_id} for {expense.amount}.")
    return 0


def run_cancel_expense(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.cancel_expense(context, args.expense_id)
    print(f"Cancelled expense {args.expense_id}.")
    return 0


def run_add_credit(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    credit = core_logic.add_credit(context, **translate_add_credit(args))
    print(f"Opened credit {credit.credit_id} for {credit.client_name} ({credit.final_price}).")
    return 0


def run_pay_credit(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the credit payment workflow via the BLL."""
    credit = core_logic.record_credit_payment(
        context,
        args.credit_id,
        parse_decimal(args.amount, "Amount"),
        note=args.note,
    )
    print(f"Credit {credit.credit_id} is now {credit.status}.")
    return 0


def run_cancel_credit(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.cancel_credit(context, args.credit_id)
    print(f"Cancelled credit {args.credit_id}.")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL.

    Returns 0 even when the client purchase history could not be saved; the
    sale itself is recorded in that case and a warning is printed.
    """
    request = translate_sale(args)
    items = tuple(
        core_logic.build_line_item(core_logic.get_product(context, product_id), quantity, price)
        for product_id, quantity, price in request.pop("items")
    )
    outcome = core_logic.record_sale(context, core_logic.SaleDraft(products=items, **request))
    print(
        f"Recorded sale {outcome.sale.sale_id} (invoice #{outcome.sale.invoice_number}) "
        f"total {outcome.sale.total}."
    )
    if isinstance(outcome.cascade, core_logic.CascadeFailed):
        print(f"Warning: {outcome.cascade.detail}")
    return 0


def run_cancel_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the cancellation workflow via the BLL."""
    sale = core_logic.record_cancellation(context, args.sale_id, args.reason)
    print(f"Cancelled sale {sale.sale_id}.")
    return 0


def run_delete_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.record_deletion(context, args.sale_id, resolve_password(args))
    print(f"Deleted sale {args.sale_id}.")
    return 0


def run_delete_all_sales(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.record_delete_all(context, resolve_password(args))
    print("Deleted all sales.")
    return 0


def run_pay_commissions(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    settled = core_logic.pay_commissions(context, args.staff_id)
    print(f"Paid {settled} in commissions to {args.staff_id}.")
    return 0


def run_set_cash(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    register = core_logic.set_cash_register(context, parse_decimal(args.amount, "Amount"))
    print(f"Cash register balance: {register.amount}")
    return 0


def run_reset_cash(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.reset_cash_register(context)
    print("Cash register reset to 0.")
    return 0


def format_table(headers: Sequence[str], rows: Iterable[Sequence[object]]) -> List[str]:
    """Render rows as left-aligned, space-padded text columns."""
    materialised = [[str(cell) for cell in row] for row in rows]
    widths = [len(header) for header in headers]
    for row in materialised:
        widths = [max(width, len(cell)) for width, cell in zip(widths, row)]
    lines = ["  ".join(header.ljust(width) for header, width in zip(headers, widths))]
    lines.extend("  ".join(cell.ljust(width) for cell, width in zip(row, widths)) for row in materialised)
    return lines


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    rows = [
        (product.product_id, product.name, product.quantity, product.cost_price, product.base_price)
        for product in core_logic.list_products(context)
    ]
    for line in format_table(("ID", "Name", "Quantity", "Cost", "Price"), rows):
        print(line)
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List sales, optionally restricted to the active sales of a range."""
    sales = core_logic.list_sales(context)
    if args.start_date is not None:
        sales = filter_sales_by_range(sales, args.start_date, args.end_date)
    rows = [
        (sale.invoice_number, sale.sale_id, sale.date[:10], sale.client_name, sale.total, sale.payment_method, sale.status)
        for sale in sales
    ]
    for line in format_table(("Invoice", "ID", "Date", "Client", "Total", "Method", "Status"), rows):
        print(line)
    return 0


def run_financial_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the financial reporting workflow."""
    snapshot = core_logic.calculate_financial_report(context, args.start_date, args.end_date).as_dict()
    print(f"{context.settings.business_name}: {args.start_date} to {args.end_date}")
    for line in format_table(("Metric", "Amount"), ((label, snapshot[key]) for key, label in REPORT_LABELS)):
        print(line)
    return 0


def run_cash_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    register = core_logic.load_cash_register(context)
    print(f"Cash register balance: {register.amount} (last modified {register.last_modified})")
    return 0


def run_commissions_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List the commission still owed to each staff member."""
    pending = core_logic.calculate_pending_commissions(context)
    rows = [(member.staff_id, member.name, pending[member.staff_id]) for member in core_logic.list_staff(context)]
    for line in format_table(("ID", "Name", "Pending"), rows):
        print(line)
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.AuthorizationError):
        log.error("%s", error)
        return 4
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, core_logic.PersistenceError):
        log.error("%s", error)
        return 5
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    if (getattr(args, "start_date", None) is None) != (getattr(args, "end_date", None) is None):
        parser.error("--from and --to must be given together")
    if getattr(args, "quiet", False):
        set_console_level(logging.WARNING)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
