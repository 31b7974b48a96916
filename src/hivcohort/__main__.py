"""
Command-line interface for hivcohort.

Reads an exported workbook (one sheet per store table), then either runs a
single calculator over every patient or evaluates a cohort composition.
"""

import json
import logging
import sys
import typing
from collections import namedtuple
from datetime import datetime, time

import click
import pandas as pd
from stairval.notepad import create_notepad

from . import calculations
from .composition import CohortComposer
from .context import CalculationContext
from .definitions import build_calculators, build_composition, load_definition
from .errors import HivCohortError
from .loader import KNOWN_SHEET_ALIASES, choose_named_tables, load_sheets_as_tables
from .metadata import MetadataDictionary
from .model import FactResult, Observation
from .store import (
    ENCOUNTER_KEY_COLUMNS,
    ENROLLMENT_KEY_COLUMNS,
    OBSERVATION_KEY_COLUMNS,
    PATIENT_KEY_COLUMNS,
    DataFrameStore,
)
from .temporal import as_datetime

logger = logging.getLogger(__name__)

AuditEntry = namedtuple("AuditEntry", ["step", "sheet", "message", "level"])

CALCULATIONS = (
    "initial_art_start_date",
    "on_art_for_more_than_x_months",
    "completed_prophylaxis",
    "pregnancy_date",
    "routine_viral_load",
)

REQUIRED_COLUMNS = {
    "patients": PATIENT_KEY_COLUMNS,
    "encounters": ENCOUNTER_KEY_COLUMNS,
    "observations": OBSERVATION_KEY_COLUMNS,
    "enrollments": ENROLLMENT_KEY_COLUMNS,
    "metadata": {"kind", "name", "identifier"},
}


@click.group()
def main():
    """hivcohort: per-patient HIV care facts and cohort composition."""
    pass


def _workbook_option(f):
    return click.option(
        "-w",
        "--workbook",
        "workbook_path",
        required=True,
        type=click.Path(exists=True, dir_okay=False),
        help="path to the exported Excel workbook",
    )(f)


def _run_options(f):
    f = click.option("--log-file", "log_file_path", type=click.Path(dir_okay=False, writable=True),
                     help="Append timestamped logs to this file")(f)
    f = click.option("--verbose", is_flag=True, help="Also emit debug logs to stderr")(f)
    f = click.option("-r", "--raw", is_flag=True, help="Print JSON instead of a table")(f)
    f = click.option("-p", "--param", "param_pairs", multiple=True, metavar="NAME=VALUE",
                     help="run parameter, e.g. -p beginPeriodStartDate=2019-01-01 (repeatable)")(f)
    f = click.option("--location", type=int, default=None, help="restrict the run to one facility")(f)
    f = click.option("--now", "now_text", required=True, help="reference date of the run (YYYY-MM-DD)")(f)
    return f


@main.command(name="calculate")
@_workbook_option
@click.option("-c", "--calculation", required=True, type=click.Choice(CALCULATIONS), help="calculator to run")
@_run_options
def calculate(
        workbook_path: str,
        calculation: str,
        now_text: str,
        location: typing.Optional[int],
        param_pairs: tuple[str, ...],
        raw: bool,
        verbose: bool,
        log_file_path: typing.Optional[str],
):
    """
    Run one calculator over every patient of the workbook and print one
    value per patient.
    """
    _configure_logging(verbose, log_file_path)
    params = _parse_params(param_pairs)
    notepad = create_notepad("calculation")
    try:
        store, metadata = _open_workbook(workbook_path)
        context = CalculationContext(now=_parse_now(now_text), location=location, cache=params)
        calculator = build_calculators(store, metadata)[calculation]
        logger.info("Running %s at %s", calculation, context.now.date())
        patients = sorted(store.patient_ids())
        result = calculations.ensure_entries(calculator.evaluate(patients, params, context, notepad), patients)
    except HivCohortError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if raw:
        click.echo(json.dumps({str(k): _json_value(v) for k, v in result.items()}, indent=2))
    else:
        _print_result(result)
    _report_issues(notepad, err=raw)


@main.command(name="compose")
@_workbook_option
@click.option(
    "-d",
    "--definition",
    "definition_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="JSON cohort composition definition",
)
@_run_options
def compose(
        workbook_path: str,
        definition_path: str,
        now_text: str,
        location: typing.Optional[int],
        param_pairs: tuple[str, ...],
        raw: bool,
        verbose: bool,
        log_file_path: typing.Optional[str],
):
    """
    Evaluate a cohort composition and print the patients that belong to it.
    """
    _configure_logging(verbose, log_file_path)
    params = _parse_params(param_pairs)
    if location is not None:
        params.setdefault("location", location)
    notepad = create_notepad("composition")
    try:
        store, metadata = _open_workbook(workbook_path)
        context = CalculationContext(now=_parse_now(now_text), location=location, cache=params)
        cohort = build_composition(load_definition(definition_path), store, metadata, notepad=notepad)
        logger.info("Composing %r", cohort.expression)
        members = CohortComposer(store).compose(cohort.expression, cohort.registrations, params, context)
    except HivCohortError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if raw:
        click.echo(json.dumps(sorted(members)))
    else:
        click.echo(f"{len(members)} patients in cohort")
        for patient_id in sorted(members):
            click.echo(str(patient_id))
    _report_issues(notepad, err=raw)


@main.command(name="audit-workbook")
@_workbook_option
@click.option("-r", "--raw", is_flag=True, help="Print JSON instead of a table")
def audit_workbook(workbook_path: str, raw: bool):
    """
    Check that a workbook can be loaded: sheet classification, required
    columns and value parsing.
    """
    try:
        tables = load_sheets_as_tables(workbook_path)
    except HivCohortError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    entries = preprocess(tables)
    if raw:
        click.echo(json.dumps([entry._asdict() for entry in entries], indent=2))
        return

    click.echo(f"{'SHEET':15}  {'STEP':18}  {'LEVEL':7}  MESSAGE")
    for entry in entries:
        line = f"{entry.sheet:15}  {entry.step:18}  {entry.level:7}  {entry.message}"
        if entry.level == "error":
            line = click.style(line, fg="red")
        elif entry.level == "warning":
            line = click.style(line, fg="yellow")
        click.echo(line)


def preprocess(tables: dict[str, pd.DataFrame]) -> list[AuditEntry]:
    """
    Run lightweight audits on each sheet:
      - header normalization
      - sheet classification
      - required columns
      - loading the tables into a store
    """
    entries: list[AuditEntry] = []

    for name, df in tables.items():
        entries.append(AuditEntry("normalize-headers", name, f"{len(df.columns)} cols", "info"))

    for name, df in tables.items():
        kind = next((k for k, aliases in KNOWN_SHEET_ALIASES.items()
                     if name.strip().casefold() in aliases), None)
        if kind is None:
            entries.append(AuditEntry("classify-sheet", name, "skip", "warning"))
            continue
        entries.append(AuditEntry("classify-sheet", name, kind, "info"))
        missing = sorted(REQUIRED_COLUMNS[kind] - set(df.columns))
        if missing:
            entries.append(AuditEntry("required-columns", name, f"missing {missing}", "error"))
        else:
            entries.append(AuditEntry("required-columns", name, f"{len(df)} rows", "info"))

    if not any(entry.level == "error" for entry in entries):
        try:
            store, _ = _build_store(tables)
            entries.append(AuditEntry("load-store", "*", f"{len(store.patient_ids())} patients", "info"))
        except HivCohortError as e:
            entries.append(AuditEntry("load-store", "*", str(e), "error"))
    return entries


def _configure_logging(verbose: bool, log_file_path: typing.Optional[str]):
    handlers: list[logging.Handler] = []
    if log_file_path:
        handlers.append(logging.FileHandler(log_file_path, mode="a", encoding="utf-8"))
    if verbose:
        handlers.append(logging.StreamHandler(sys.stderr))
    if handlers:
        logging.basicConfig(
            level=logging.DEBUG if verbose else logging.INFO,
            format="%(asctime)s %(levelname)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
            handlers=handlers,
        )


def _parse_params(pairs: typing.Iterable[str]) -> dict[str, str]:
    params: dict[str, str] = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name.strip():
            raise click.BadParameter(f"expected NAME=VALUE, got {pair!r}", param_hint="--param")
        params[name.strip()] = value.strip()
    return params


def _parse_now(now_text: str) -> datetime:
    try:
        return as_datetime(now_text)
    except (TypeError, ValueError):
        raise click.BadParameter(f"not a date: {now_text!r}", param_hint="--now")


def _build_store(tables: dict[str, pd.DataFrame]) -> tuple[DataFrameStore, MetadataDictionary]:
    named = choose_named_tables(tables)
    metadata = MetadataDictionary()
    if "metadata" in named:
        metadata = metadata.with_overrides(named.pop("metadata"))
    return DataFrameStore(named), metadata


def _open_workbook(workbook_path: str) -> tuple[DataFrameStore, MetadataDictionary]:
    logger.info(f"Loading workbook '{workbook_path}'")
    tables = load_sheets_as_tables(workbook_path)
    logger.debug(f"Loaded sheets: {list(tables.keys())}")
    return _build_store(tables)


def _report_issues(notepad, err: bool = False):
    # if there were errors, show them
    if notepad.has_errors(include_subsections=True):
        click.echo("Errors found in calculation:", err=err)
        for e in notepad.errors():
            click.echo(f"- {e}", err=err)
    # show any warnings but keep going
    if notepad.has_warnings(include_subsections=True):
        click.echo("Warnings found in calculation:", err=err)
        for w in notepad.warnings():
            click.echo(f"- {w}", err=err)


def _json_value(value: typing.Any) -> typing.Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, list):
        return [obs.obs_id if isinstance(obs, Observation) else obs for obs in value]
    return value


def _format_value(value: typing.Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d") if value.time() == time() else value.isoformat(sep=" ")
    if isinstance(value, list):
        return f"{len(value)} observations"
    return str(value)


def _print_result(result: FactResult):
    click.echo(f"{'PATIENT':10}  VALUE")
    for patient_id in sorted(result):
        click.echo(f"{patient_id:<10}  {_format_value(result[patient_id])}")


if __name__ == "__main__":
    main()
