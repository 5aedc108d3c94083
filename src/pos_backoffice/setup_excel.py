"""Utility for initializing the back-office master workbook.

The module doubles as a script (``backoffice-setup``) and as a library used by
tests. It creates one worksheet per collection with a bold header row and
seeds the cash register with a zero balance.
"""

from __future__ import annotations

import argparse
from datetime import UTC, datetime
from pathlib import Path
from typing import Mapping, Sequence
import sys

import openpyxl
from openpyxl.styles import Font

from . import log
from .constants import CASH_REGISTER_ID, EXPECTED_SCHEMA_VERSION, Collection
from .data_manager import SHEET_COLUMNS, parse_settings, read_config

CONFIG_FILE = "config.ini"

DEFAULT_CONFIG_TEMPLATE = """[System]
DataFile = {data_file}
BusinessName = {business_name}
SchemaVersion = {schema_version}

[Security]
AdminPassword = {admin_password}

[Policies]
StockPolicy = reject
DeleteRequiresCancellation = false

[Storage]
RetryAttempts = 3
RetryBackoffSeconds = 1.0
"""


def load_data_file(config_path: Path) -> Path:
    """Return the workbook path named by ``config.ini``.

    The file is read through the same configuration layer as the runtime
    context, so relative ``DataFile`` entries resolve against the config
    file's directory.
    """

    config_path = config_path.expanduser().resolve()
    return parse_settings(read_config(config_path), base_path=config_path.parent).data_file


def write_default_config(
    config_path: Path,
    *,
    data_file: str = "backoffice.xlsx",
    business_name: str = "My Store",
    admin_password: str = "change-me",
    overwrite: bool = False,
) -> Path:
    """Write a starter ``config.ini``; refuses to replace an existing one."""

    config_path = config_path.expanduser().resolve()
    if config_path.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing configuration: {config_path}")

    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(
        DEFAULT_CONFIG_TEMPLATE.format(
            data_file=data_file,
            business_name=business_name,
            schema_version=EXPECTED_SCHEMA_VERSION,
            admin_password=admin_password,
        ),
        encoding="utf-8",
    )
    log.info("Wrote default configuration to '%s'", config_path)
    return config_path


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create the master workbook at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # openpyxl always starts with an empty "Sheet".
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    register_sheet = Collection.CASH_REGISTER.value
    if register_sheet in workbook.sheetnames:
        workbook[register_sheet].append([CASH_REGISTER_ID, 0, datetime.now(UTC).isoformat()])

    workbook.save(destination)
    log.info("Created master workbook '%s' with %d sheets", destination, len(sheet_columns))
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``config_path``."""

    return create_master_workbook(load_data_file(config_path), overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the back-office data file")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Write a starter configuration file first when none exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the ``backoffice-setup`` script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Back-office Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        if args.init_config and not config_path.exists():
            write_default_config(config_path)
            print(f"Wrote starter configuration to '{config_path}'. Change AdminPassword before use.")
        output_path = run_from_config(config_path, overwrite=args.force)
    except FileNotFoundError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --init-config to create a starter configuration.")
        return 1
    except (KeyError, ValueError) as exc:
        print(f"\n[ERROR] Invalid configuration: {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
