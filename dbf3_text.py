"""
Character-separated text export for DBF files.

Rows are read through the bulk read API of dbf3_module; deleted rows are
left out of the output.
"""

from typing import Any, List, Optional

from dbf3_module import (
    DBFFile, DBFRangeError,
    dbf_file_open, dbf_file_close, dbf_file_field_names, dbf_file_get_row_count,
    dbf_file_iter_rows
)


def escape_value(text: str, enclose: str, escape: str) -> str:
    """
    Escape a value and wrap it in the enclose string.

    The escape string is doubled inside the value, and each enclose string is
    prefixed with the escape string.
    """
    if escape:
        text = text.replace(escape, escape + escape)
        if enclose:
            text = text.replace(enclose, escape + enclose)
    return enclose + text + enclose


def format_value(value: Any) -> str:
    """Render a decoded field value as text (logicals as T/F, unknown as blank)."""
    if value is None:
        return ''
    if value is True:
        return 'T'
    if value is False:
        return 'F'
    return str(value)


def _join(values: List[str], field: str, enclose: str, escape: str) -> str:
    if enclose or escape:
        values = [escape_value(value, enclose, escape) for value in values]
    return field.join(values)


def to_text(dbf: DBFFile, start_row: int = 0, end_row: Optional[int] = None,
            field: str = ',', enclose: str = "'", escape: str = '\\', record: str = '\n',
            show_header: bool = False) -> str:
    """
    Return rows start_row..end_row (inclusive) as character-separated text.

    Args:
        dbf: The DBF file object
        start_row: First zero-based row
        end_row: Last zero-based row (default: the last row)
        field: Field separator
        enclose: String put around every value ('' for none)
        escape: Escape string for enclose and escape characters ('' for none)
        record: Record separator
        show_header: Start with a line of column names

    Raises:
        DBFRangeError: start_row is negative or end_row is past the last row
    """
    row_count = dbf_file_get_row_count(dbf)
    if end_row is None:
        end_row = row_count - 1
    if start_row < 0 or end_row >= row_count:
        raise DBFRangeError(f"Invalid start and/or end row: {start_row}-{end_row}")

    out = []
    if show_header:
        out.append(_join(dbf_file_field_names(dbf), field, enclose, escape) + record)

    if start_row <= end_row:
        for row in dbf_file_iter_rows(dbf, start_row, end_row - start_row + 1):
            if row is None:
                continue
            out.append(_join([format_value(value) for value in row], field, enclose, escape) + record)
    return ''.join(out)


def export_dbf_to_text(filename: str, text_filename: str, **options) -> int:
    """
    Export a whole DBF file to a text file.

    Args:
        filename: DBF file to read (with or without extension)
        text_filename: Text file to write
        **options: Formatting options of to_text()

    Returns:
        Number of rows in the DBF file
    """
    dbf = dbf_file_open(filename)
    try:
        text = to_text(dbf, **options)
        row_count = dbf_file_get_row_count(dbf)
    finally:
        dbf_file_close(dbf)

    with open(text_filename, 'w', encoding='utf-8') as f:
        f.write(text)
    return row_count
