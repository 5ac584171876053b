"""
Command-line interface for the telecom tax engine.

Provides subcommands for calculating tax, inspecting and moving records
through their lifecycle, and browsing reference data. Records live in
memory for one run unless ``--db`` (or TAX_ENGINE_DATABASE_URL) points at
a SQLAlchemy database.
"""

from __future__ import annotations

import argparse
import dataclasses
import sys
from datetime import date
from typing import Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from telecom_tax.config import load_settings
from telecom_tax.engine import TaxEngine
from telecom_tax.exceptions import TaxEngineError
from telecom_tax.jurisdictions import JurisdictionResolver
from telecom_tax.logging_config import configure_logging
from telecom_tax.records import CalculableKind, CalculableRef, CalculationRecord
from telecom_tax.reference import Address, ReferenceData
from telecom_tax.report_generator import ReportGenerator

console = Console()


def _build_engine(args: argparse.Namespace) -> TaxEngine:
    settings = load_settings()
    if getattr(args, "db", None):
        settings = dataclasses.replace(settings, database_url=args.db)
    configure_logging(
        level=settings.log_level if getattr(args, "verbose", False) else "WARNING",
        json_output=settings.log_json,
    )
    reference = (
        ReferenceData.from_json_file(args.reference)
        if getattr(args, "reference", None)
        else ReferenceData.us_telecom_sample()
    )
    return TaxEngine.from_settings(reference, settings)


def _address(args: argparse.Namespace) -> Address:
    return Address(
        country=args.country,
        state=args.state,
        county=args.county,
        municipality=args.city,
        postal_code=args.zip,
    )


def _as_of(value: Optional[str]) -> date:
    return date.fromisoformat(value) if value else date.today()


def _usage(args: argparse.Namespace) -> dict:
    return {"lines": args.lines, "minutes": args.minutes, "units": args.units}


def _print_record(record: CalculationRecord) -> None:
    table = Table(
        title=f"Tax Breakdown - {record.calculable}",
        box=box.ROUNDED,
        show_lines=False,
    )
    table.add_column("#", justify="right", style="dim")
    table.add_column("Jurisdiction")
    table.add_column("Kind")
    table.add_column("Tax")
    table.add_column("Taxable", justify="right")
    table.add_column("Exempted", justify="right")
    table.add_column("Amount", justify="right", style="bold")

    for e in record.breakdown:
        table.add_row(
            str(e.sequence),
            e.jurisdiction_name,
            e.jurisdiction_kind,
            e.tax_name + (" (incl.)" if e.is_inclusive else ""),
            f"${e.taxable_base:,.2f}",
            f"${e.exempted_amount:,.2f}" if e.exempted_amount else "",
            f"${e.final_contribution:,.2f}",
        )

    console.print(table)
    console.print(
        Panel(
            f"[bold]Calculation:[/bold] {record.calculation_id}\n"
            f"[bold]Status:[/bold] {record.status.value} "
            f"({record.validation_status.value})\n"
            f"[bold]Base:[/bold] ${record.base_amount:,.2f} x {record.quantity}\n"
            f"[bold]Total Tax:[/bold] ${record.total_tax:,.2f}\n"
            f"[bold]Final Amount:[/bold] ${record.final_amount:,.2f}\n"
            f"[bold]Effective Rate:[/bold] {record.effective_rate:.4%}\n"
            f"[bold]Exempted:[/bold] ${record.total_exempted:,.2f}",
            title="Tax Calculation",
            border_style="blue",
        )
    )
    for w in record.warnings:
        console.print(f"[yellow]Warning: {w.get('message', w)}[/yellow]")
    for note in record.metadata.notes:
        console.print(f"[dim]Note: {note}[/dim]")


# -----------------------------------------------------------------------
# Subcommand: calculate
# -----------------------------------------------------------------------


def cmd_calculate(args: argparse.Namespace) -> None:
    """Calculate tax for one invoice or quote line."""
    engine = _build_engine(args)
    calculable = CalculableRef(CalculableKind(args.kind), args.line_id)
    record = engine.calculate(
        calculable,
        args.amount,
        quantity=args.quantity,
        category=args.category,
        service_type=args.service_type,
        address=_address(args),
        as_of=_as_of(args.as_of),
        customer_id=args.customer,
        usage=_usage(args),
    )
    _print_record(record)

    if args.export_json:
        rg = ReportGenerator(args.output_dir)
        rg.to_json(rg.calculation_report(record), args.export_json)
        console.print(f"[green]JSON exported to {args.export_json}[/green]")


# -----------------------------------------------------------------------
# Subcommands: record lifecycle
# -----------------------------------------------------------------------


def cmd_show(args: argparse.Namespace) -> None:
    engine = _build_engine(args)
    _print_record(engine.get_calculation(args.calculation_id))


def cmd_apply(args: argparse.Namespace) -> None:
    engine = _build_engine(args)
    document = CalculableRef(CalculableKind(args.document_kind), args.document_id)
    record = engine.apply_to(args.calculation_id, document)
    console.print(f"[green]Calculation {record.calculation_id} applied to {document}[/green]")


def cmd_void(args: argparse.Namespace) -> None:
    engine = _build_engine(args)
    record = engine.void(args.calculation_id, args.reason)
    console.print(f"[green]Calculation {record.calculation_id} voided[/green]")


def cmd_adjust(args: argparse.Namespace) -> None:
    engine = _build_engine(args)
    corrections: dict = {}
    if args.amount is not None:
        corrections["base_amount"] = args.amount
    if args.quantity is not None:
        corrections["quantity"] = args.quantity
    successor = engine.adjust(args.calculation_id, args.reason, corrections)
    console.print(
        f"[green]Adjustment {successor.calculation_id} recorded "
        f"for {args.calculation_id}[/green]"
    )
    _print_record(successor)


def cmd_validate(args: argparse.Namespace) -> None:
    engine = _build_engine(args)
    record = engine.validate_calculation(args.calculation_id, args.notes or "")
    color = "green" if record.validation_status.value == "validated" else "red"
    console.print(
        f"[{color}]Calculation {record.calculation_id}: "
        f"{record.validation_status.value}[/{color}]"
    )
    if record.validation_notes:
        console.print(record.validation_notes)


def cmd_history(args: argparse.Namespace) -> None:
    engine = _build_engine(args)
    calculable = CalculableRef(CalculableKind(args.kind), args.line_id)
    records = engine.history(calculable, limit=args.limit)
    if not records:
        console.print(f"[yellow]No calculations for {calculable}[/yellow]")
        return

    table = Table(title=f"History - {calculable}", box=box.ROUNDED)
    table.add_column("Calculation", style="dim")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Base", justify="right")
    table.add_column("Tax", justify="right", style="bold")
    table.add_column("Created")
    for r in records:
        table.add_row(
            r.calculation_id[:8],
            r.calculation_type.value,
            r.status.value,
            f"${r.extended_base:,.2f}",
            f"${r.total_tax:,.2f}",
            r.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


def cmd_report(args: argparse.Namespace) -> None:
    """Summarize every stored calculation."""
    engine = _build_engine(args)
    rg = ReportGenerator(args.output_dir)
    records = engine.calculations()
    report = rg.calculation_summary(records)
    console.print(rg.format_text(report))
    console.print(rg.format_text(rg.statistics(records)))
    if args.export_json:
        rg.to_json(report, args.export_json)
        console.print(f"[green]Report exported to {args.export_json}[/green]")
    if args.export_csv:
        rg.export_breakdown_csv(records, args.export_csv)
        console.print("[green]CSV exported.[/green]")


# -----------------------------------------------------------------------
# Subcommands: reference data
# -----------------------------------------------------------------------


def cmd_rates(args: argparse.Namespace) -> None:
    """List rate definitions, optionally for one jurisdiction."""
    engine = _build_engine(args)
    as_of = _as_of(args.as_of)
    rates = [
        r for r in engine.reference.rates()
        if not args.jurisdiction or r.jurisdiction_id == args.jurisdiction
    ]

    table = Table(title=f"Rate Definitions as of {as_of}", box=box.ROUNDED)
    table.add_column("Rate", style="bold")
    table.add_column("Jurisdiction")
    table.add_column("Tax Type")
    table.add_column("Shape")
    table.add_column("Value", justify="right")
    table.add_column("Method")
    table.add_column("Priority", justify="right")
    table.add_column("Effective", justify="center")

    for r in rates:
        if r.percentage is not None:
            value = f"{r.percentage}%"
        elif r.fixed_amount is not None:
            value = f"${r.fixed_amount:,.2f}"
        else:
            value = f"{len(r.tiers)} tiers"
        table.add_row(
            r.rate_id,
            r.jurisdiction_id,
            r.tax_type,
            r.shape,
            value,
            r.calculation_method + (" +compound" if r.is_compound else ""),
            str(r.priority),
            "Y" if r.is_effective(as_of) else "",
            style="" if r.is_effective(as_of) else "dim",
        )
    console.print(table)


def cmd_exemptions(args: argparse.Namespace) -> None:
    """List a customer's exemptions, those expiring soon, or one exemption's usage."""
    engine = _build_engine(args)
    as_of = _as_of(args.as_of)

    if args.usage:
        rg = ReportGenerator(args.output_dir)
        report = rg.exemption_usage_report(args.usage, engine.exemption_usage(args.usage))
        console.print(rg.format_text(report))
        return

    if args.expiring:
        exemptions = engine.expiring_exemptions(as_of)
        title = f"Exemptions expiring within {engine.settings.expiring_soon_days} days"
    elif args.customer:
        exemptions = engine.reference.exemptions_for(args.customer)
        title = f"Exemptions for {args.customer}"
    else:
        exemptions = engine.reference.exemptions()
        title = "Exemptions"

    if not exemptions:
        console.print("[yellow]No exemptions found[/yellow]")
        return

    table = Table(title=title, box=box.ROUNDED)
    table.add_column("Exemption", style="bold")
    table.add_column("Customer")
    table.add_column("Type")
    table.add_column("Scope")
    table.add_column("Percent", justify="right")
    table.add_column("Verification")
    table.add_column("Expires", justify="center")
    table.add_column("Valid", justify="center")
    for e in exemptions:
        scope = "blanket" if e.is_blanket else ", ".join(e.applicable_tax_types) or "specific"
        if e.jurisdiction_id:
            scope = f"{scope} ({e.jurisdiction_id})"
        valid = e.is_valid(as_of)
        table.add_row(
            e.exemption_id,
            e.customer_id,
            e.exemption_type,
            scope,
            f"{e.percentage}%",
            e.verification_status.value,
            e.expiry_date.isoformat() if e.expiry_date else "-",
            "[green]Y[/green]" if valid else "[red]N[/red]",
        )
    console.print(table)


def cmd_jurisdictions(args: argparse.Namespace) -> None:
    """List jurisdictions, or resolve the ones covering an address."""
    engine = _build_engine(args)
    if args.country:
        jurisdictions = JurisdictionResolver(engine.reference).resolve(
            _address(args), _as_of(args.as_of)
        )
        title = "Jurisdictions for Address"
    else:
        jurisdictions = engine.reference.jurisdictions()
        title = "Jurisdictions"

    table = Table(title=title, box=box.ROUNDED)
    table.add_column("ID", style="bold")
    table.add_column("Kind")
    table.add_column("Name")
    table.add_column("Authority")
    for j in jurisdictions:
        table.add_row(j.jurisdiction_id, j.kind.value, j.name, j.authority_name)
    console.print(table)


# -----------------------------------------------------------------------
# Argument parser
# -----------------------------------------------------------------------


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--db", help="SQLAlchemy database URL for calculation records")
    p.add_argument("--reference", help="Reference data JSON file (default: sample)")
    p.add_argument("--verbose", "-v", action="store_true", help="Log at the configured level")


def _add_address(p: argparse.ArgumentParser, required: bool = True) -> None:
    p.add_argument("--country", required=required, help="Country code, e.g. US")
    p.add_argument("--state", help="State or region code")
    p.add_argument("--county", help="County name")
    p.add_argument("--city", help="Municipality name")
    p.add_argument("--zip", help="Postal code")
    p.add_argument("--as-of", help="As-of date YYYY-MM-DD (default: today)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="telecom-tax",
        description="Telecom Tax Engine - multi-jurisdiction tax calculation with auditable records",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")
    kinds = [k.value for k in CalculableKind]

    # calculate
    calc_p = subparsers.add_parser("calculate", help="Calculate tax for a line")
    calc_p.add_argument("--amount", required=True, help="Base amount per unit")
    calc_p.add_argument("--quantity", type=int, default=1, help="Quantity (default: 1)")
    calc_p.add_argument("--category", help="Tax category code")
    calc_p.add_argument("--service-type", default="local", help="Service type")
    calc_p.add_argument("--customer", help="Customer id for exemption lookup")
    calc_p.add_argument("--kind", choices=kinds, default="invoice_line")
    calc_p.add_argument("--line-id", default="cli-line", help="Invoice/quote line id")
    calc_p.add_argument("--lines", type=int, help="Line count for per-line fees")
    calc_p.add_argument("--minutes", type=int, help="Minutes for per-minute fees")
    calc_p.add_argument("--units", type=int, help="Units for per-unit fees")
    calc_p.add_argument("--export-json", help="Export the calculation to JSON")
    calc_p.add_argument("--output-dir", help="Output directory for exports")
    _add_address(calc_p)
    _add_common(calc_p)
    calc_p.set_defaults(func=cmd_calculate)

    # show
    show_p = subparsers.add_parser("show", help="Show a stored calculation")
    show_p.add_argument("calculation_id")
    _add_common(show_p)
    show_p.set_defaults(func=cmd_show)

    # apply
    apply_p = subparsers.add_parser("apply", help="Apply a calculation to a document")
    apply_p.add_argument("calculation_id")
    apply_p.add_argument("--document-kind", choices=kinds, default="invoice_line")
    apply_p.add_argument("--document-id", required=True)
    _add_common(apply_p)
    apply_p.set_defaults(func=cmd_apply)

    # void
    void_p = subparsers.add_parser("void", help="Void a calculation")
    void_p.add_argument("calculation_id")
    void_p.add_argument("--reason", required=True)
    _add_common(void_p)
    void_p.set_defaults(func=cmd_void)

    # adjust
    adjust_p = subparsers.add_parser("adjust", help="Record a corrected calculation")
    adjust_p.add_argument("calculation_id")
    adjust_p.add_argument("--reason", required=True)
    adjust_p.add_argument("--amount", help="Corrected base amount")
    adjust_p.add_argument("--quantity", type=int, help="Corrected quantity")
    _add_common(adjust_p)
    adjust_p.set_defaults(func=cmd_adjust)

    # validate
    validate_p = subparsers.add_parser("validate", help="Re-derive and validate a calculation")
    validate_p.add_argument("calculation_id")
    validate_p.add_argument("--notes")
    _add_common(validate_p)
    validate_p.set_defaults(func=cmd_validate)

    # history
    history_p = subparsers.add_parser("history", help="Calculations for one line")
    history_p.add_argument("--kind", choices=kinds, default="invoice_line")
    history_p.add_argument("--line-id", required=True)
    history_p.add_argument("--limit", type=int, default=10)
    _add_common(history_p)
    history_p.set_defaults(func=cmd_history)

    # report
    report_p = subparsers.add_parser("report", help="Summarize stored calculations")
    report_p.add_argument("--export-json", help="Export summary to JSON filename")
    report_p.add_argument("--export-csv", help="Export breakdown lines to CSV filename")
    report_p.add_argument("--output-dir", help="Output directory")
    _add_common(report_p)
    report_p.set_defaults(func=cmd_report)

    # rates
    rates_p = subparsers.add_parser("rates", help="View rate definitions")
    rates_p.add_argument("--jurisdiction", "-j", help="Jurisdiction id")
    rates_p.add_argument("--as-of", help="As-of date YYYY-MM-DD")
    _add_common(rates_p)
    rates_p.set_defaults(func=cmd_rates)

    # exemptions
    ex_p = subparsers.add_parser("exemptions", help="View exemption certificates")
    ex_group = ex_p.add_mutually_exclusive_group()
    ex_group.add_argument("--customer", help="Customer id")
    ex_group.add_argument("--expiring", action="store_true", help="Only exemptions expiring soon")
    ex_group.add_argument("--usage", metavar="EXEMPTION_ID", help="Usage of one exemption")
    ex_p.add_argument("--as-of", help="As-of date YYYY-MM-DD")
    ex_p.add_argument("--output-dir", help="Output directory")
    _add_common(ex_p)
    ex_p.set_defaults(func=cmd_exemptions)

    # jurisdictions
    jur_p = subparsers.add_parser("jurisdictions", help="View or resolve jurisdictions")
    _add_address(jur_p, required=False)
    _add_common(jur_p)
    jur_p.set_defaults(func=cmd_jurisdictions)

    return parser


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    try:
        args.func(args)
    except TaxEngineError as exc:
        console.print(f"[red]{exc.code}: {exc.message}[/red]")
        sys.exit(1)
