"""Utility for initializing the store workbook.

The module doubles as a script (``python -m pos_ledger.setup_excel``) and as a
library used by tests and the ``init`` CLI command, so the bootstrap logic
stays the same regardless of the execution path.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Sequence
import sys

from openpyxl.styles import Font

from . import data_manager, log

CONFIG_FILE = data_manager.CONFIG_FILE_NAME


def create_store_workbook(destination: Path, *, overwrite: bool = False) -> Path:
    """Create an empty store workbook at ``destination``.

    Every sheet listed in :data:`data_manager.SHEET_COLUMNS` is created with a
    bold header row. When ``overwrite`` is ``False`` (the default) this
    function raises ``FileExistsError`` if the target already exists.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing store workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = data_manager.new_workbook()
    bold_font = Font(bold=True)
    for sheet_name in data_manager.SHEET_COLUMNS:
        for cell in workbook[sheet_name][1]:
            cell.font = bold_font

    workbook.save(destination)
    log.info("Created store workbook '%s'", destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``DataFile`` in ``config_path``."""

    config_path = Path(config_path).expanduser().resolve()
    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.parent)
    return create_store_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the point-of-sale store workbook")
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
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- POS Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except FileNotFoundError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except KeyError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created store workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
