#!/usr/bin/env python3
"""
Check a DBF file for header corruption.

Prints the declared header metadata next to the values computed from the
file itself, and can write a repaired copy or dump the rows as text.

    python dbf3_check.py DATA.DBF
    python dbf3_check.py DATA.DBF --repair FIXED.DBF
    python dbf3_check.py DATA.DBF --text --field '|' --enclose ''
"""

import argparse
import logging
import sys

from dbf3_module import (
    DBFError, HeaderMode,
    dbf_file_open, dbf_file_close, dbf_file_get_date, dbf_file_field_names,
    dbf_file_field_type, dbf_file_field_length, dbf_file_field_decimals,
    dbf_file_compute_header_size, dbf_file_compute_record_size, dbf_file_compute_row_count,
    dbf_file_repair_header, rebuild_dbf
)
from dbf3_text import to_text


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Check a dBASE III DBF file for header corruption")
    parser.add_argument("dbf", help="Path to the DBF file")
    parser.add_argument("--scan-header", action="store_true",
                        help="Find the end of the header by its terminator instead of the declared length")
    parser.add_argument("--allow-off-by-one", action="store_true",
                        help="With --scan-header, keep a declared header length that is off by one byte")
    parser.add_argument("--repair", metavar="OUT",
                        help="Write a repaired copy (scanned header, without deleted rows) to OUT")
    parser.add_argument("--text", action="store_true", help="Print the rows as text")
    parser.add_argument("--field", default=",", help="Field separator for --text")
    parser.add_argument("--enclose", default="'", help="Value enclosure for --text")
    parser.add_argument("--header", action="store_true", help="Print column names first with --text")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show debug messages")
    return parser


def report(dbf) -> int:
    """Print the header report; returns the number of inconsistent values."""
    year, month, day = dbf_file_get_date(dbf)
    print(f"File: {dbf.filename}")
    print(f"Last update: {year:04d}-{month:02d}-{day:02d}")
    print("Columns:")
    for name in dbf_file_field_names(dbf):
        layout = f"{dbf_file_field_type(dbf, name)}({dbf_file_field_length(dbf, name)}"
        if dbf_file_field_decimals(dbf, name):
            layout += f",{dbf_file_field_decimals(dbf, name)}"
        print(f"  {name:<11} {layout})")

    checks = [
        ("Header bytes", dbf.header_size, dbf_file_compute_header_size(dbf)),
        ("Record bytes", dbf.record_size, dbf_file_compute_record_size(dbf)),
        ("Records", dbf.record_count, dbf_file_compute_row_count(dbf)),
    ]
    problems = 0
    for label, declared, computed in checks:
        status = "ok" if declared == computed else "MISMATCH"
        if declared != computed:
            problems += 1
        print(f"{label:<13} declared {declared:>10}  computed {computed:>10}  {status}")
    return problems


def main(argv=None) -> int:
    """Main function"""
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(levelname)s: %(message)s")

    header_mode = HeaderMode.SCAN_TERMINATOR if args.scan_header else HeaderMode.TRUST_DECLARED
    try:
        dbf = dbf_file_open(args.dbf, 'r', header_mode, args.allow_off_by_one)
    except (DBFError, OSError) as e:
        print(f"Error opening {args.dbf}: {e}", file=sys.stderr)
        return 2

    try:
        problems = report(dbf)
        if args.text:
            if problems:
                dbf_file_repair_header(dbf)
            sys.stdout.write(to_text(dbf, field=args.field, enclose=args.enclose, show_header=args.header))
    finally:
        dbf_file_close(dbf)

    if args.repair:
        try:
            written = rebuild_dbf(args.dbf, args.repair)
        except (DBFError, OSError) as e:
            print(f"Error repairing {args.dbf}: {e}", file=sys.stderr)
            return 2
        print(f"Wrote {written} rows to {args.repair}")

    return 1 if problems else 0


if __name__ == "__main__":
    sys.exit(main())
