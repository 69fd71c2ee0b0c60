"""
Command-line interface for the ID clinic records toolkit.

Works on clinic workbooks in the export layout (Patients_Master plus
detail sheets): audit them, import them into patient aggregates, list and
filter patients, print reports and reminders, and write a fresh export.
"""

import click
import json
import logging
import pandas as pd
import pathlib
import sys
import typing

from collections import namedtuple
from datetime import date
from stairval.notepad import create_notepad

from .address import AddressLookupError, AddressRepository
from .dates import PLACEHOLDER, age_years, format_buddhist_date
from .listing import PAGE_SIZE, PatientQuery, list_patients
from .loader import load_sheets_as_tables
from .mapper import KNOWN_SHEET_ALIASES, REQUIRED_COLUMNS, DefaultMapper, export_file_name, export_tables, write_workbook
from .patient import Patient, PatientStatus
from .pregnancy import calculate_current_ga, vl_test_reminders
from .reports import dashboard_stats, report_summary, trend_table
from .status import compute_status, determine_hbv_status, determine_hcv_status

LOGGER = logging.getLogger(__name__)

AuditEntry = namedtuple("AuditEntry", ["step", "sheet", "message", "level"])

_DATE = click.DateTime(formats=["%Y-%m-%d"])


def _as_date(value) -> date | None:
    return value.date() if value is not None else None


def _configure_logging(verbose_logging: bool, log_file_path: str | None) -> None:
    handlers: list[logging.Handler] = []
    if log_file_path:
        handlers.append(logging.FileHandler(log_file_path, mode="a", encoding="utf-8"))
    if verbose_logging:
        handlers.append(logging.StreamHandler(sys.stderr))
    if handlers:
        logging.basicConfig(
            level=logging.DEBUG if verbose_logging else logging.INFO,
            format="%(asctime)s %(levelname)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
            handlers=handlers,
        )


@click.group()
@click.option("--verbose-logging", is_flag=True, help="Also emit debug logs to stderr")
@click.option(
    "--log-file-path",
    type=click.Path(dir_okay=False, writable=True),
    help="Append timestamped logs to this file",
)
def main(verbose_logging: bool = False, log_file_path: typing.Optional[str] = None):
    """idclinic: patient records for the infectious-disease clinic."""
    _configure_logging(verbose_logging, log_file_path)


def excel_option(f):
    return click.option(
        "-e",
        "--excel-path",
        "excel_file",
        required=True,
        type=click.Path(exists=True, dir_okay=False),
        help="path to the Excel workbook",
    )(f)


def today_option(f):
    return click.option(
        "--today",
        type=_DATE,
        default=None,
        help="evaluate as of this date, YYYY-MM-DD (default: the real today)",
    )(f)


def _read_sheets(excel_file: str) -> dict[str, pd.DataFrame]:
    # read each worksheet into a DataFrame; an unreadable file ends the command
    LOGGER.info("Reading workbook %s", excel_file)
    try:
        return load_sheets_as_tables(excel_file)
    except Exception as e:
        LOGGER.error("Failed to read %r: %s", excel_file, e)
        click.echo(f"Error: cannot read workbook {excel_file}: {e}", err=True)
        sys.exit(1)


def _report_issues(notepad):
    # if there were errors, show them
    if notepad.has_errors(include_subsections=True):
        click.echo("Errors found in mapping:")
        for err in notepad.errors():
            click.echo(f"- {err}")
    # show any warnings but keep going
    if notepad.has_warnings(include_subsections=True):
        click.echo("Warnings found in mapping:")
        for w in notepad.warnings():
            click.echo(f"- {w}")


def _load_patients(excel_file: str, today: date | None, report: bool = True) -> list[Patient]:
    tables = _read_sheets(excel_file)
    notepad = create_notepad("workbook")
    patients = DefaultMapper(today=today).apply_mapping(tables, notepad)
    if report:
        _report_issues(notepad)
    return patients


def _echo_audit(entry: AuditEntry) -> None:
    indent = "              "
    line = f"{entry.step:20} {entry.sheet:20} {entry.message}"
    # color by level
    if entry.level == "error":
        colored = click.style(line, fg="red")
    elif entry.level in ("warn", "warning"):
        colored = click.style(line, fg="yellow")
    else:
        colored = click.style(line, fg="cyan")
    click.echo(indent + colored)


def preprocess(tables: dict[str, pd.DataFrame]) -> list[AuditEntry]:
    """
    Run lightweight audits on each sheet:
      - header normalization
      - sheet classification
      - required-column presence
    """
    entries: list[AuditEntry] = []

    # Step 1: header counts
    for name, df in tables.items():
        entries.append(AuditEntry(
            step="normalize-headers",
            sheet=name,
            message=f"{len(df.columns)} cols, {len(df)} rows",
            level="info",
        ))

    # Step 2: classify
    kinds: dict[str, str] = {}
    for name in tables:
        key = name.strip().casefold()
        kind = next((k for k, aliases in KNOWN_SHEET_ALIASES.items() if key in aliases), "skip")
        kinds[name] = kind
        entries.append(AuditEntry(
            step="classify-sheet",
            sheet=name,
            message=kind,
            level="info" if kind != "skip" else "warning",
        ))

    # Step 3: required columns
    for name, df in tables.items():
        kind = kinds[name]
        if kind == "skip":
            continue
        missing = sorted(REQUIRED_COLUMNS[kind] - set(df.columns))
        if missing:
            entries.append(AuditEntry(
                step="column-check",
                sheet=name,
                message=f"missing {', '.join(missing)}",
                level="error",
            ))

    if "patients" not in kinds.values():
        entries.append(AuditEntry(
            step="sheet-check",
            sheet="-",
            message="no patients master sheet",
            level="error",
        ))
    return entries


@main.command(name="audit-excel")
@excel_option
@click.option("-r", "--raw", "as_json", is_flag=True, help="print the audit as JSON")
def audit_excel(excel_file: str, as_json: bool):
    """
    Classify each sheet and check its required columns without importing anything.
    """
    entries = preprocess(_read_sheets(excel_file))
    if as_json:
        click.echo(json.dumps([e._asdict() for e in entries], ensure_ascii=False, indent=2))
        return

    click.echo(f"{'SHEET':20}  {'STEP':20}  {'LEVEL':8}  MESSAGE")
    for e in entries:
        click.echo(f"{e.sheet:20}  {e.step:20}  {e.level:8}  {e.message}")


@main.command(name="parse-excel")
@excel_option
@today_option
@click.option("--verbose", is_flag=True, help="Show preprocessing and classification steps")
def parse_excel(excel_file: str, today=None, verbose: bool = False):
    """
    Read the workbook and build one patient aggregate per HN of the master
    sheet, attaching detail-sheet rows by HN. Row problems are listed but do
    not stop the import.
    """
    tables = _read_sheets(excel_file)

    # optionally audit preprocessing
    if verbose:
        click.echo("")
        for entry in preprocess(tables):
            _echo_audit(entry)
        click.echo("")  # a blank line before mapping output

    notepad = create_notepad("workbook")
    mapper = DefaultMapper(today=_as_date(today))
    patients = mapper.apply_mapping(tables, notepad)
    _report_issues(notepad)

    click.echo(f"Created {len(patients)} Patient objects")
    for collection, count in sorted(mapper.stats.items()):
        if collection != "patients":
            click.echo(f"Created {count} {collection} records")


def _status_label(status: PatientStatus | None) -> str:
    return status.value if status is not None else PLACEHOLDER


@main.command(name="list-patients")
@excel_option
@today_option
@click.option("-s", "--search", default="", help="text over HN, national id, NAP id, name and phone")
@click.option(
    "--status",
    type=click.Choice([s.value for s in PatientStatus], case_sensitive=False),
    default=None,
    help="computed treatment status",
)
@click.option("--sex", type=click.Choice(["ชาย", "หญิง"]), default=None)
@click.option("--appointment-from", type=_DATE, default=None, help="earliest next appointment (inclusive)")
@click.option("--appointment-to", type=_DATE, default=None, help="latest next appointment (inclusive)")
@click.option("--hbv", "hbv_status", default=None, help="exact HBV summary text")
@click.option("--hcv", "hcv_status", default=None, help="exact HCV summary text")
@click.option("--std", "std_disease", default=None, help="STD disease name (substring)")
@click.option("--tpt/--no-tpt", "received_tpt", default=None, help="ever / never received TPT")
@click.option("--prep/--no-prep", "received_prep", default=None, help="ever / never on PrEP")
@click.option("--pep/--no-pep", "received_pep", default=None, help="ever / never received PEP")
@click.option("-p", "--page", default=1, show_default=True, type=int)
@click.option("--page-size", default=PAGE_SIZE, show_default=True, type=int)
def list_patients_command(
        excel_file: str,
        today=None,
        search: str = "",
        status: typing.Optional[str] = None,
        sex: typing.Optional[str] = None,
        appointment_from=None,
        appointment_to=None,
        hbv_status: typing.Optional[str] = None,
        hcv_status: typing.Optional[str] = None,
        std_disease: typing.Optional[str] = None,
        received_tpt: typing.Optional[bool] = None,
        received_prep: typing.Optional[bool] = None,
        received_pep: typing.Optional[bool] = None,
        page: int = 1,
        page_size: int = PAGE_SIZE,
):
    """
    Filter, sort (most recently updated first) and page through patients.
    """
    as_of = _as_date(today) or date.today()
    patients = _load_patients(excel_file, as_of, report=False)
    query = PatientQuery(
        search=search,
        status=PatientStatus.from_label(status) if status else None,
        sex=sex,
        appointment_from=_as_date(appointment_from),
        appointment_to=_as_date(appointment_to),
        hbv_status=hbv_status,
        hcv_status=hcv_status,
        std_disease=std_disease,
        received_tpt=received_tpt,
        received_prep=received_prep,
        received_pep=received_pep,
    )
    result = list_patients(patients, query, page=page, page_size=page_size, today=as_of)

    click.echo(f"{'HN':12}  {'NAME':28}  {'AGE':>3}  {'STATUS':11}  {'NEXT APPT':10}  {'HBV':16}  HCV")
    for p in result.items:
        click.echo(
            f"{p.hn:12}  {p.full_name[:28]:28}  {str(age_years(p.dob, as_of)):>3}  "
            f"{_status_label(compute_status(p, as_of)):11}  {format_buddhist_date(p.next_appointment_date):10}  "
            f"{determine_hbv_status(p).text:16}  {determine_hcv_status(p).text}"
        )
    click.echo(
        f"Showing {result.first_index} to {result.last_index} of {result.total} results "
        f"(page {result.page}/{result.page_count})"
    )


@main.command(name="report")
@excel_option
@today_option
@click.option("--start", type=_DATE, default=None, help="first day of the trend range (inclusive)")
@click.option("--end", type=_DATE, default=None, help="last day of the trend range (inclusive)")
def report(excel_file: str, today=None, start=None, end=None):
    """
    Dashboard counts, programme summary and monthly trends.
    """
    as_of = _as_date(today)
    patients = _load_patients(excel_file, as_of, report=False)

    stats = dashboard_stats(patients, as_of)
    click.echo(click.style("Dashboard", fg="cyan"))
    click.echo(f"  Total patients: {stats.total}")
    click.echo(f"  In care (Active + Restart): {stats.in_care}")
    for status, count in stats.by_status.items():
        click.echo(f"  {status.value}: {count}")
    click.echo(f"  No data: {stats.no_data}")
    click.echo(f"  Male / Female: {stats.male} / {stats.female}")
    click.echo(f"  With NAP ID: {stats.nap}")

    summary = report_summary(patients, as_of)
    click.echo(click.style("Summary", fg="cyan"))
    for label, value in (
            ("Active", summary.active),
            ("HBV positive", summary.hbv),
            ("HCV", summary.hcv),
            ("TPT", summary.tpt),
            ("PrEP", summary.prep),
            ("PEP", summary.pep),
            ("STD history", summary.std),
    ):
        click.echo(f"  {label}: {value}")
    click.echo(f"  Gender: {summary.gender}")
    click.echo(f"  Healthcare scheme: {summary.scheme}")

    table = trend_table(patients, _as_date(start), _as_date(end))
    click.echo(click.style("Monthly trends", fg="cyan"))
    click.echo(table.to_string() if not table.empty else "  (no records in range)")


@main.command(name="reminders")
@excel_option
@today_option
def reminders(excel_file: str, today=None):
    """
    Pregnant patients whose 32-week viral-load test is due, soonest first.
    """
    as_of = _as_date(today) or date.today()
    patients = _load_patients(excel_file, as_of, report=False)

    feed = vl_test_reminders(patients, as_of)
    if not feed:
        click.echo("No viral-load reminders.")
        return
    for r in feed:
        current = calculate_current_ga(r.pregnancy.ga, r.pregnancy.ga_date, as_of)
        if current is None:
            ga_text = PLACEHOLDER
        elif current.is_overdue:
            ga_text = "overdue/delivered"
        else:
            ga_text = current.ga
        line = f"{r.hn:12}  {r.patient_name:28}  VL due {format_buddhist_date(r.due_date)}  GA now {ga_text}"
        click.echo(click.style(line, fg="yellow") if r.due_date < as_of else line)


@main.command(name="export-excel")
@excel_option
@today_option
@click.option("--start", type=_DATE, default=None, help="first day of detail records (inclusive)")
@click.option("--end", type=_DATE, default=None, help="last day of detail records (inclusive)")
@click.option(
    "-o",
    "--output-dir",
    "output_dir",
    default=".",
    type=click.Path(file_okay=False),
    help="directory for the export workbook (default: current directory)",
)
def export_excel(excel_file: str, today=None, start=None, end=None, output_dir: str = "."):
    """
    Re-export a workbook: all patients with recomputed summaries, detail
    sheets restricted to the date range.
    """
    as_of = _as_date(today)
    patients = _load_patients(excel_file, as_of)
    start_date, end_date = _as_date(start), _as_date(end)
    tables = export_tables(patients, start_date, end_date, as_of)

    out_dir = pathlib.Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    out = out_dir / export_file_name(start_date, end_date)
    write_workbook(tables, out)
    click.echo(f"Wrote {len(patients)} patients and {len(tables)} sheets to {out}")


@main.command(name="download-addresses")
@click.option(
    "-o",
    "--output",
    "output_file",
    default="thai_address.json",
    type=click.Path(dir_okay=False, writable=True),
    help="where to save the address dataset (default: thai_address.json)",
)
@click.option("--url", default=None, help="dataset URL (default: IDCLINIC_ADDRESS_URL or the public dataset)")
def download_addresses(output_file: str, url: typing.Optional[str] = None):
    """
    Download the Thai province / district / subdistrict dataset for offline use.
    """
    repository = AddressRepository(url=url)
    try:
        repository.save(output_file)
    except AddressLookupError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Saved {len(repository.records)} address records ({len(repository.provinces())} provinces) to {output_file}")


if __name__ == "__main__":
    main()
