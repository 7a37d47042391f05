#!/usr/bin/env python3
"""
DBF dump and export tool.

Prints the structure and the first records of a DBF table, or exports the
whole table to a pipe-delimited text file:
- Line 1: Field names separated by pipes (|)
- Line 2: Field specifications separated by pipes (|)
- Line 3+: Data rows separated by pipes (|)

Usage:
    dbf-dump FILE.DBF [MEMO.DBT] [-e ENCODING] [-n LIMIT] [--export OUT.TXT]
"""

import argparse
import sys
import datetime
from typing import Any, List, Optional, TextIO

from dbf_reader import (
    DBFField, DBFReader, DBFReaderError,
    dbf_reader_open, DBF_DEFAULT_ENCODING
)

DEFAULT_LIMIT = 10


def build_field_spec(field: DBFField) -> str:
    """
    Build a field specification string (e.g., 'C(30)' or 'N(10,2)').

    Args:
        field: The field descriptor

    Returns:
        Field specification string
    """
    spec = f"{field.type_char}({field.length}"
    if field.decimals > 0:
        spec += f",{field.decimals}"
    spec += ")"
    return spec


def format_value(value: Any) -> str:
    """Render a decoded value for text output; None becomes an empty string."""
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'T' if value else 'F'
    if isinstance(value, datetime.date):
        return value.strftime('%Y%m%d')
    # Pipes and line breaks would break the row layout
    return str(value).replace('|', ' ').replace('\r', ' ').replace('\n', ' ')


def export_dbf_to_text(reader: DBFReader, out: TextIO) -> int:
    """
    Export the remaining records of a reader as pipe-delimited text.

    Args:
        reader: An open DBFReader
        out: Text stream to write to

    Returns:
        Number of records written
    """
    out.write('|'.join(field.name for field in reader.fields) + '\n')
    out.write('|'.join(build_field_spec(field) for field in reader.fields) + '\n')

    count = 0
    for values in reader:
        out.write('|'.join(format_value(value) for value in values) + '\n')
        count += 1
    return count


def print_dbf_summary(reader: DBFReader) -> None:
    """Print the header and field table of a reader."""
    header = reader.header
    last_update = header.last_update
    print(f"File version: {header.version} (signature 0x{header.signature:02X})")
    print(f"Last update: {last_update.isoformat() if last_update else 'invalid'}")
    print(f"Record count: {header.record_count}")
    print(f"Header size: {header.header_length} bytes")
    print(f"Record size: {reader.data_length} bytes")
    print(f"Memo file: {'yes' if reader.memo is not None else 'no'}")

    print(f"\nFields ({reader.field_count}):\n")
    print(f"{'Name':<12} {'Type':<5} {'Length':<7} {'Decimals':<9} {'Offset':<6}")
    print("-" * 45)
    for field in reader.fields:
        print(f"{field.name:<12} {field.type_char:<5} {field.length:<7} {field.decimals:<9} {field.offset:<6}")


def print_dbf_records(reader: DBFReader, limit: int = DEFAULT_LIMIT) -> int:
    """Print up to `limit` records, one `NAME: value` block per record."""
    shown = 0
    while shown < limit and reader.read_next():
        shown += 1
        print(f"\nRecord {shown}:")
        for name, value in reader.as_dict().items():
            print(f"  {name:<12} {format_value(value)}")
    return shown


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse CLI arguments.

    Returns:
        argparse.Namespace: Parsed command-line arguments.
    """
    p = argparse.ArgumentParser(
        prog="dbf-dump",
        description="Print the structure and records of a DBF table, or export it to text."
    )
    p.add_argument("file", help="DBF file to read.")
    p.add_argument("memo", nargs="?", default=None,
                   help="DBT memo file (default: the .DBT next to the table, if any).")
    p.add_argument("-e", "--encoding", default=DBF_DEFAULT_ENCODING,
                   help=f"Text encoding of the table (default: {DBF_DEFAULT_ENCODING}).")
    p.add_argument("-n", "--limit", type=int, default=DEFAULT_LIMIT,
                   help=f"Number of records to print (default: {DEFAULT_LIMIT}).")
    p.add_argument("--export", type=str, help="Write all records to this pipe-delimited text file.")
    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main function."""
    args = parse_args(argv)

    try:
        with dbf_reader_open(args.file, args.memo, args.encoding) as reader:
            if args.export:
                with open(args.export, 'w', encoding='utf-8') as out:
                    count = export_dbf_to_text(reader, out)
                print(f"Exported {count} records to {args.export}")
            else:
                print_dbf_summary(reader)
                print_dbf_records(reader, args.limit)
    except FileNotFoundError as e:
        print(f"Error: File '{e.filename}' not found.")
        return 1
    except (DBFReaderError, OSError, LookupError) as e:
        print(f"Error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
