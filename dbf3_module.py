"""
Reader and writer for dBASE III PLUS (.DBF) files.

The module is built to survive damaged files: the header can be parsed by
trusting its declared length or by scanning for the column terminator, and
the header metadata (header size, record size, record count) can be
recomputed from the file itself and repaired in memory.

Record counts are deferred: appends bump the in-memory count only, and the
count stored on disk is written by dbf_file_flush() or dbf_file_close().
A writer that never flushes leaves a header that undercounts its rows.
"""

import collections.abc
import datetime
import logging
import os
import re
import struct
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import List, Dict, Any, Optional, Union, BinaryIO, Iterator, Sequence, Mapping, Tuple


logger = logging.getLogger(__name__)


# Constants
DBF_VALID_MARKERS = (0x03, 0x83)
DBF_VERSION_DBASE3 = 0x03
DBF_PREAMBLE_SIZE = 32
DBF_DESCRIPTOR_SIZE = 32
DBF_HEADER_TERMINATOR = 0x0D
DBF_HEADER_TERMINATOR_ALT = 0x0A
DBF_EOF_MARKER = 0x1A
DBF_LIVE_FLAG = b' '
DBF_DELETED_FLAG = b'*'
DBF_RECORD_COUNT_OFFSET = 4
DBF_MAX_NAME_LENGTH = 11
DBF_MAX_FIELD_LENGTH = 255
DBF_MAX_HEADER_SIZE = 0xFFFF  # header and record sizes are stored in two bytes
DBF_MAX_RECORD_SIZE = 0xFFFF
DBF_MAX_RECORD_COUNT = 0xFFFFFFFF
DBF_FIELD_TYPES = ('C', 'N', 'D', 'L')
DBF_ROW_CACHE_SIZE = 100  # rows read ahead per cache fill
DBF_ENCODING = 'latin-1'

_LOGICAL_TRUE = frozenset('yYtT1')
_LOGICAL_FALSE = frozenset('nNfF0')
_LOGICAL_FALSE_PATTERN = re.compile(r'[nNfF]')
_DIGIT_PATTERN = re.compile(r'[0-9]')
_NUMBER_PREFIX = re.compile(r'\s*([-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)')

_OPEN_MODES = {'r': 'rb', 'rb': 'rb', 'r+': 'rb+', 'rb+': 'rb+', 'r+b': 'rb+'}


# Errors
class DBFError(Exception):
    """Base class for DBF errors."""


class DBFFormatError(DBFError):
    """The file is not a readable dBASE III PLUS file."""


class DBFRangeError(DBFError, IndexError):
    """A row index or row range lies outside the table."""


class DBFValidationError(DBFError, ValueError):
    """A column definition list failed validation."""

    def __init__(self, message: str, column_index: int, column_name: Optional[str], rule: str):
        super().__init__(message)
        self.column_index = column_index
        self.column_name = column_name
        self.rule = rule


class HeaderMode(Enum):
    """How the column table is delimited when a header is read."""
    TRUST_DECLARED = 'trust'  # stop at the header length stored in the preamble
    SCAN_TERMINATOR = 'scan'  # stop only at the 0x0D terminator, then recompute the length


# Data structures
@dataclass
class DBFColumn:
    """Represents a column/field in a DBF file."""
    name: str  # Field name (max 11 bytes)
    field_type: str  # 'C', 'N', 'D' or 'L'
    length: int  # Field length in bytes
    decimals: int = 0  # Number of decimal places (for numeric)


@dataclass
class DBFHeader:
    """
    File-level metadata of an open DBF file.

    The declared values (record_count, header_size, record_size) are what the
    file says about itself; they may disagree with the computed values on a
    damaged file until one of the repair functions reconciles them. Use the
    set_* methods to change them so the on-disk field widths are respected.
    """
    version: int = DBF_VERSION_DBASE3
    year: int = 1970  # Four-digit year of the last update
    month: int = 1
    day: int = 1
    record_count: int = 0
    header_size: int = 0
    record_size: int = 0
    fields: List[DBFColumn] = field(default_factory=list)

    @property
    def field_count(self) -> int:
        return len(self.fields)

    def compute_header_size(self) -> int:
        """Header size implied by the column list (preamble + descriptors + terminator)."""
        return DBF_PREAMBLE_SIZE + DBF_DESCRIPTOR_SIZE * len(self.fields) + 1

    def compute_record_size(self) -> int:
        """Record size implied by the column list (delete flag + field widths)."""
        return 1 + sum(column.length for column in self.fields)

    def set_record_count(self, count: int) -> None:
        if count < 0 or count > DBF_MAX_RECORD_COUNT:
            raise ValueError(f"Record count out of range: {count}")
        self.record_count = count

    def set_header_size(self, size: int) -> None:
        if size < DBF_PREAMBLE_SIZE + 1 or size > DBF_MAX_HEADER_SIZE:
            raise ValueError(f"Header size out of range: {size}")
        self.header_size = size

    def set_record_size(self, size: int) -> None:
        if size < 1 or size > DBF_MAX_RECORD_SIZE:
            raise ValueError(f"Record size out of range: {size}")
        self.record_size = size


class DBFRowCache:
    """
    Window of decoded rows covering the half-open row range [start, end).

    A slot holds the decoded row, or None for a row that is deleted or could
    not be decoded. A size of 0 disables caching.
    """

    def __init__(self, size: int = DBF_ROW_CACHE_SIZE):
        if size < 0:
            raise ValueError(f"Cache size must not be negative: {size}")
        self.size = size
        self.clear()

    @property
    def enabled(self) -> bool:
        return self.size > 0

    def clear(self) -> None:
        self.start = 0
        self.end = 0
        self.rows: List[Optional[list]] = []

    def contains(self, row_index: int) -> bool:
        return self.start <= row_index < self.end

    def get(self, row_index: int) -> Optional[list]:
        return self.rows[row_index - self.start]

    def fill(self, start: int, rows: List[Optional[list]]) -> None:
        self.start = start
        self.rows = rows
        self.end = start + len(rows)


class DBFFile:
    """An open DBF file session: handle, metadata and row cache."""

    def __init__(self, filename: str, mode: str = 'rb', cache_size: int = DBF_ROW_CACHE_SIZE,
                 encoding: str = DBF_ENCODING):
        self.filename = filename
        self.mode = mode
        self.file: Optional[BinaryIO] = None
        self.header = DBFHeader()
        self.cache = DBFRowCache(cache_size)
        self.encoding = encoding
        self.is_open = False

    @property
    def writable(self) -> bool:
        return '+' in self.mode or 'w' in self.mode

    @property
    def reopen_mode(self) -> str:
        """Mode used to reopen the handle without truncating the file."""
        return 'rb+' if self.writable else 'rb'

    @property
    def record_count(self) -> int:
        return self.header.record_count

    @property
    def header_size(self) -> int:
        return self.header.header_size

    @property
    def record_size(self) -> int:
        return self.header.record_size

    @property
    def columns(self) -> List[DBFColumn]:
        return self.header.fields


# Column validation
def _validation_error(message: str, index: int, name: Optional[str], rule: str) -> DBFValidationError:
    return DBFValidationError(f"Column {index + 1}: {message}", index, name, rule)


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _column_attr(column: Any, key: str) -> Any:
    if isinstance(column, DBFColumn):
        return getattr(column, 'field_type' if key == 'type' else key)
    return column.get(key)


def validate_columns(columns: Sequence[Union[DBFColumn, Mapping[str, Any]]],
                     encoding: str = DBF_ENCODING) -> List[DBFColumn]:
    """
    Check a list of column definitions.

    Each column is a DBFColumn or a mapping with the keys name, type, length
    and decimals. Validation stops at the first bad column.

    Args:
        columns: Column definitions in table order
        encoding: Encoding used to measure column names in bytes

    Returns:
        The columns as a new list of DBFColumn objects

    Raises:
        DBFValidationError: naming the failing column and rule
    """
    result = []
    seen_names = set()
    for index, column in enumerate(columns):
        if not isinstance(column, (DBFColumn, collections.abc.Mapping)):
            raise _validation_error("not a column definition", index, None, 'definition')

        for key in ('name', 'type', 'length', 'decimals'):
            value = _column_attr(column, key)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise _validation_error(f"no {key} given", index, _column_attr(column, 'name'), key)

        name = str(_column_attr(column, 'name'))
        if len(name.encode(encoding, errors='replace')) > DBF_MAX_NAME_LENGTH:
            raise _validation_error(f"name '{name}' is too long (max {DBF_MAX_NAME_LENGTH} bytes)",
                                    index, name, 'name_length')
        if name in seen_names:
            raise _validation_error(f"duplicate column name '{name}'", index, name, 'duplicate_name')
        seen_names.add(name)

        field_type = _column_attr(column, 'type')
        if field_type not in DBF_FIELD_TYPES:
            raise _validation_error(f"unknown column type '{field_type}'", index, name, 'type')

        length = _as_int(_column_attr(column, 'length'))
        if length is None or length <= 0 or length > DBF_MAX_FIELD_LENGTH:
            raise _validation_error(f"length must be an integer from 1 to {DBF_MAX_FIELD_LENGTH} "
                                    f"('{_column_attr(column, 'length')}')", index, name, 'length')

        decimals = _as_int(_column_attr(column, 'decimals'))
        if decimals is None or decimals < 0 or decimals > DBF_MAX_FIELD_LENGTH:
            raise _validation_error(f"decimals must be a non-negative integer "
                                    f"('{_column_attr(column, 'decimals')}')", index, name, 'decimals')

        if field_type == 'L' and length != 1:
            raise _validation_error("columns of type L (logical) must have length 1",
                                    index, name, 'logical_length')
        if field_type == 'D' and length != 8:
            raise _validation_error("columns of type D (date) must have length 8",
                                    index, name, 'date_length')

        result.append(DBFColumn(name=name, field_type=field_type, length=length, decimals=decimals))
    return result


# Header codec
def _normalize_year(stored: int) -> int:
    year = 1900 + stored
    if year < 1970:
        year += 100
    return year


def _parse_descriptor(buf: bytes, encoding: str) -> DBFColumn:
    name = buf[:DBF_MAX_NAME_LENGTH].split(b'\x00', 1)[0].decode(encoding, errors='replace').strip()
    return DBFColumn(
        name=name,
        field_type=chr(buf[11]),
        length=buf[16],
        decimals=buf[17],
    )


def _is_terminator(byte: bytes) -> bool:
    return not byte or byte[0] in (DBF_HEADER_TERMINATOR, DBF_HEADER_TERMINATOR_ALT)


def _read_columns_trust_declared(file: BinaryIO, declared_size: int, encoding: str) -> List[DBFColumn]:
    """Read descriptors while they end inside the declared header length."""
    columns = []
    end = DBF_PREAMBLE_SIZE + DBF_DESCRIPTOR_SIZE
    file.seek(DBF_PREAMBLE_SIZE)
    while end < declared_size:
        buf = file.read(DBF_DESCRIPTOR_SIZE)
        if len(buf) < DBF_DESCRIPTOR_SIZE or _is_terminator(buf[:1]):
            break
        columns.append(_parse_descriptor(buf, encoding))
        end += DBF_DESCRIPTOR_SIZE
    return columns


def _read_columns_scan_terminator(file: BinaryIO, declared_size: int, encoding: str) -> List[DBFColumn]:
    """Read descriptors until the terminator byte, whatever the declared length says."""
    columns = []
    file.seek(DBF_PREAMBLE_SIZE)
    while True:
        buf = file.read(DBF_DESCRIPTOR_SIZE)
        if len(buf) < DBF_DESCRIPTOR_SIZE or _is_terminator(buf[:1]):
            break
        columns.append(_parse_descriptor(buf, encoding))
    return columns


_COLUMN_READERS = {
    HeaderMode.TRUST_DECLARED: _read_columns_trust_declared,
    HeaderMode.SCAN_TERMINATOR: _read_columns_scan_terminator,
}


def read_dbf_header(file: BinaryIO, header_mode: HeaderMode = HeaderMode.TRUST_DECLARED,
                    allow_off_by_one: bool = False, encoding: str = DBF_ENCODING) -> DBFHeader:
    """
    Read a DBF header (preamble and column table) from a file.

    Args:
        file: Binary file object positioned anywhere
        header_mode: How the end of the column table is found
        allow_off_by_one: With SCAN_TERMINATOR, keep the declared header size
            when it differs from the scanned one by at most one byte
        encoding: Encoding of the column names

    Returns:
        The parsed header

    Raises:
        DBFFormatError: bad validity marker, truncated file or unknown column type
    """
    header = DBFHeader()

    file.seek(0)
    buf = file.read(DBF_PREAMBLE_SIZE)
    if len(buf) < DBF_PREAMBLE_SIZE or buf[0] not in DBF_VALID_MARKERS:
        raise DBFFormatError("This does not appear to be a dBASE III PLUS file")

    header.version = buf[0]
    header.year = _normalize_year(buf[1])
    header.month = buf[2]
    header.day = buf[3]
    header.record_count = struct.unpack("<L", buf[4:8])[0]
    header.header_size = struct.unpack("<H", buf[8:10])[0]
    header.record_size = struct.unpack("<H", buf[10:12])[0]

    if header_mode is HeaderMode.TRUST_DECLARED:
        file.seek(0, 2)
        file_size = file.tell()
        if file_size < header.header_size:
            expected = header.header_size + header.record_count * header.record_size
            raise DBFFormatError(
                f"DBF file appears to be severely truncated: header says it should be "
                f"{expected} bytes, but it's only {file_size} bytes")

    header.fields = _COLUMN_READERS[header_mode](file, header.header_size, encoding)

    if header_mode is HeaderMode.SCAN_TERMINATOR:
        declared = header.header_size
        scanned = header.compute_header_size()
        if not (allow_off_by_one and abs(declared - scanned) <= 1):
            header.header_size = scanned
            if declared != scanned:
                logger.warning("Corrected header size from %d to %d", declared, scanned)

    for column in header.fields:
        if column.field_type not in DBF_FIELD_TYPES:
            raise DBFFormatError(f"unrecognized field type {column.field_type!r} in field {column.name}")

    return header


def write_dbf_header(file: BinaryIO, header: DBFHeader, encoding: str = DBF_ENCODING) -> None:
    """
    Write the full header to a file, truncating it first.

    Everything after the header is lost; the header and record sizes are
    recomputed from the column list before writing.
    """
    header.set_header_size(header.compute_header_size())
    header.set_record_size(header.compute_record_size())

    # Main file header (32 bytes)
    buf = bytearray(DBF_PREAMBLE_SIZE)
    buf[0] = header.version
    buf[1] = header.year % 100
    buf[2] = header.month
    buf[3] = header.day
    buf[4:8] = struct.pack("<L", header.record_count)
    buf[8:10] = struct.pack("<H", header.header_size)
    buf[10:12] = struct.pack("<H", header.record_size)

    # Field descriptors (32 bytes each)
    for column in header.fields:
        desc = bytearray(DBF_DESCRIPTOR_SIZE)
        name_bytes = column.name.encode(encoding, errors='replace')[:DBF_MAX_NAME_LENGTH]
        desc[:len(name_bytes)] = name_bytes
        desc[11] = ord(column.field_type)
        desc[16] = column.length
        desc[17] = column.decimals
        buf += desc

    buf.append(DBF_HEADER_TERMINATOR)

    file.seek(0)
    file.truncate(0)
    file.write(buf)
    file.flush()


# Record codec
def _format_number(text: str, length: int, decimals: int) -> str:
    match = _NUMBER_PREFIX.match(text)
    try:
        number = Decimal(match.group(1)) if match else Decimal(0)
    except InvalidOperation:
        number = Decimal(0)
    if number and number.adjusted() >= length:
        # Integer part alone overflows the field; only its leading digits survive truncation
        sign, digits, _ = number.as_tuple()
        leading = ''.join(str(digit) for digit in digits).ljust(length, '0')
        return ('-' if sign else '') + leading[:length]
    return f"{number:{length}.{decimals}f}"


def _is_false(value: Any, text: str) -> bool:
    if not value or text == '0':
        return True
    return _LOGICAL_FALSE_PATTERN.search(text) is not None


def _encode_field(column: DBFColumn, value: Any, encoding: str) -> bytes:
    text = '' if value is None else str(value)

    if column.field_type == 'N':
        if _DIGIT_PATTERN.search(text):
            text = _format_number(text, column.length, column.decimals)
        else:
            text = ' ' * column.length
    elif column.field_type == 'L':
        text = 'F' if _is_false(value, text) else 'T'
    elif column.field_type not in ('C', 'D'):
        raise DBFFormatError(f"unrecognized field type {column.field_type!r} in field {column.name}")

    # Truncate or pad value to field length
    data = text.encode(encoding, errors='replace')
    if len(data) > column.length:
        return data[:column.length]
    return data.ljust(column.length, b' ')


def _decode_field(column: DBFColumn, raw: bytes, encoding: str) -> Any:
    text = raw.decode(encoding, errors='replace')
    if column.field_type == 'C':
        return text.rstrip(' ')
    if column.field_type == 'N':
        return text.lstrip(' ')
    if column.field_type == 'L':
        symbol = text[:1]
        if symbol in _LOGICAL_TRUE:
            return True
        if symbol in _LOGICAL_FALSE:
            return False
        return None  # '?' and uninitialized
    if column.field_type == 'D':
        return text
    raise DBFFormatError(f"unrecognized field type {column.field_type!r} in field {column.name}")


def pack_dbf_record(columns: Sequence[DBFColumn], values: Sequence[Any],
                    encoding: str = DBF_ENCODING, deleted: bool = False) -> bytes:
    """
    Encode one row as a fixed-width record.

    Args:
        columns: The table columns
        values: Field values in column order; missing trailing values are blank
        encoding: Character encoding of the field data
        deleted: Write the deleted flag instead of the live flag

    Returns:
        1 + sum(column.length) bytes
    """
    buf = bytearray(DBF_DELETED_FLAG if deleted else DBF_LIVE_FLAG)
    for i, column in enumerate(columns):
        value = values[i] if i < len(values) else None
        buf += _encode_field(column, value, encoding)
    return bytes(buf)


def unpack_dbf_record(columns: Sequence[DBFColumn], data: bytes,
                      encoding: str = DBF_ENCODING) -> Optional[list]:
    """
    Decode one fixed-width record.

    Returns None for a deleted record (any flag byte other than a space) and
    for a record too short to hold every field.
    """
    width = 1 + sum(column.length for column in columns)
    if len(data) < width:
        logger.debug("Short record: %d bytes, expected %d", len(data), width)
        return None
    if data[0] != DBF_LIVE_FLAG[0]:
        return None

    values = []
    offset = 1
    for column in columns:
        values.append(_decode_field(column, data[offset:offset + column.length], encoding))
        offset += column.length
    return values


# Main DBF functions
def _dbf_filename(filename: str, existing: bool = False) -> str:
    """Add the .DBF extension, unless the name already has it or names an existing file."""
    if existing and os.path.isfile(filename):
        return filename
    if not filename.upper().endswith('.DBF'):
        filename = filename + '.DBF'
    return filename


def dbf_file_open(filename: str, mode: str = 'r',
                  header_mode: HeaderMode = HeaderMode.TRUST_DECLARED,
                  allow_off_by_one: bool = False,
                  cache_size: int = DBF_ROW_CACHE_SIZE,
                  encoding: str = DBF_ENCODING) -> DBFFile:
    """
    Open an existing DBF file.

    Args:
        filename: The path to the DBF file (with or without extension)
        mode: 'r' for read-only, 'r+' to allow appends
        header_mode: How the end of the column table is found
        allow_off_by_one: See read_dbf_header()
        cache_size: Rows read ahead per cache fill (0 disables the cache)
        encoding: Character encoding of names and field data

    Returns:
        A DBFFile object representing the opened file

    Raises:
        DBFFormatError: The file is not a readable dBASE III PLUS file
        IOError: The file cannot be opened or read
    """
    if mode not in _OPEN_MODES:
        raise ValueError(f"Unsupported DBF file mode: {mode!r}")

    dbf = DBFFile(_dbf_filename(filename, existing=True), _OPEN_MODES[mode], cache_size, encoding)
    try:
        dbf.file = open(dbf.filename, dbf.mode)
        dbf.header = read_dbf_header(dbf.file, header_mode, allow_off_by_one, encoding)
    except BaseException:
        if dbf.file:
            dbf.file.close()
        raise

    dbf.is_open = True
    logger.debug("Opened %s: %d rows, %d columns", dbf.filename, dbf.record_count, dbf.header.field_count)
    return dbf


def dbf_file_create(filename: str, columns: Sequence[Union[DBFColumn, Mapping[str, Any]]],
                    quick: bool = False, cache_size: int = DBF_ROW_CACHE_SIZE,
                    encoding: str = DBF_ENCODING) -> DBFFile:
    """
    Create a new, empty DBF file with the given columns.

    An existing file of the same name is overwritten. The returned session is
    opened read-write and dated today.

    Args:
        filename: The path of the new file (with or without extension)
        columns: DBFColumn objects or mappings with name/type/length/decimals
        quick: Skip column validation
        cache_size: Rows read ahead per cache fill (0 disables the cache)
        encoding: Character encoding of names and field data

    Raises:
        DBFValidationError: A column definition is invalid
    """
    if quick:
        fields = [column if isinstance(column, DBFColumn) else
                  DBFColumn(name=str(column['name']), field_type=column['type'],
                            length=int(column['length']), decimals=int(column['decimals']))
                  for column in columns]
    else:
        fields = validate_columns(columns, encoding)

    today = datetime.date.today()

    dbf = DBFFile(_dbf_filename(filename), 'wb+', cache_size, encoding)
    dbf.header = DBFHeader(year=today.year, month=today.month, day=today.day, fields=fields)
    try:
        dbf.file = open(dbf.filename, dbf.mode)
        write_dbf_header(dbf.file, dbf.header, encoding)
    except BaseException:
        if dbf.file:
            dbf.file.close()
        raise

    dbf.is_open = True
    return dbf


def dbf_file_write_header(dbf: DBFFile) -> None:
    """
    Rewrite the whole header of an open file from its in-memory metadata.

    This truncates the file: the data region is gone afterwards and must be
    written again by the caller (see rebuild_dbf()).
    """
    _require_writable(dbf)
    write_dbf_header(dbf.file, dbf.header, dbf.encoding)
    dbf.cache.clear()


def dbf_file_write_record_count(dbf: DBFFile) -> None:
    """Store the in-memory record count in the header on disk."""
    _require_writable(dbf)
    dbf.file.seek(DBF_RECORD_COUNT_OFFSET)
    dbf.file.write(struct.pack("<L", dbf.header.record_count))
    dbf.file.flush()


dbf_file_flush = dbf_file_write_record_count


def dbf_file_close(dbf: DBFFile) -> None:
    """Close a DBF file, storing the record count first if it is writable."""
    if dbf and dbf.is_open and dbf.file:
        try:
            if dbf.writable:
                dbf_file_write_record_count(dbf)
        finally:
            dbf.file.close()
            dbf.is_open = False
            dbf.cache.clear()


def _require_open(dbf: DBFFile) -> None:
    if not dbf or not dbf.is_open or not dbf.file:
        raise IOError("DBF file is not open")


def _require_writable(dbf: DBFFile) -> None:
    _require_open(dbf)
    if not dbf.writable:
        raise IOError(f"DBF file {dbf.filename} is open read-only")


def _seek_to_append(dbf: DBFFile) -> bool:
    """Seek to the end of the data; returns True if an EOF marker was stepped over."""
    dbf.file.seek(0, 2)
    end = dbf.file.tell()
    data_size = end - dbf.header.header_size
    if dbf.header.record_size > 1 and data_size > 0 and data_size % dbf.header.record_size == 1:
        dbf.file.seek(end - 1)
        if dbf.file.read(1) == bytes([DBF_EOF_MARKER]):
            dbf.file.seek(end - 1)
            return True
        dbf.file.seek(end)
    return False


def dbf_file_append_rows(dbf: DBFFile, rows: Sequence[Optional[Sequence[Any]]]) -> int:
    """
    Append rows at the end of the file.

    Each row is a sequence of values in column order; None rows are skipped.
    The in-memory record count grows by one per written row, but the count
    stored in the header is only updated by dbf_file_flush() or
    dbf_file_close().

    Args:
        dbf: The DBF file object
        rows: Rows to append

    Returns:
        Number of rows written
    """
    _require_writable(dbf)

    has_eof_marker = _seek_to_append(dbf)
    written = 0
    try:
        for row in rows:
            if row is None:
                continue
            dbf.file.write(pack_dbf_record(dbf.header.fields, row, dbf.encoding))
            dbf.header.set_record_count(dbf.header.record_count + 1)
            written += 1
        if has_eof_marker:
            dbf.file.write(bytes([DBF_EOF_MARKER]))
    finally:
        dbf.cache.clear()
    return written


def dbf_file_append_row(dbf: DBFFile, values: Sequence[Any]) -> int:
    """Append one row given as values in column order."""
    return dbf_file_append_rows(dbf, [values])


def dbf_file_append_rows_dict(dbf: DBFFile, rows: Sequence[Optional[Mapping[str, Any]]]) -> int:
    """Append rows given as {column name: value}; missing columns are left blank."""
    names = [column.name for column in dbf.header.fields]
    return dbf_file_append_rows(dbf, [None if row is None else [row.get(name) for name in names]
                                      for row in rows])


def dbf_file_append_row_dict(dbf: DBFFile, values: Mapping[str, Any]) -> int:
    """Append one row given as {column name: value}."""
    return dbf_file_append_rows_dict(dbf, [values])


def _read_rows(dbf: DBFFile, start: int, count: int) -> List[Optional[list]]:
    """Read and decode count rows from start; always returns count entries."""
    record_size = dbf.header.record_size
    dbf.file.seek(dbf.header.header_size + start * record_size)
    data = dbf.file.read(count * record_size)

    rows = []
    for i in range(count):
        chunk = data[i * record_size:(i + 1) * record_size]
        rows.append(unpack_dbf_record(dbf.header.fields, chunk, dbf.encoding))
    return rows


def _read_row(dbf: DBFFile, row_index: int) -> Optional[list]:
    cache = dbf.cache
    if not cache.enabled:
        return _read_rows(dbf, row_index, 1)[0]

    if not cache.contains(row_index):
        count = min(cache.size, dbf.header.record_count - row_index)
        cache.fill(row_index, _read_rows(dbf, row_index, count))
        logger.debug("Row cache filled with rows %d-%d", cache.start, cache.end - 1)
    return cache.get(row_index)


def dbf_file_fetch_row(dbf: DBFFile, row_index: int) -> Optional[list]:
    """
    Fetch one row as a list of values in column order.

    Args:
        dbf: The DBF file object
        row_index: Zero-based row index

    Returns:
        The decoded values, or None if the row is deleted, undecodable or
        outside [0, record_count)
    """
    _require_open(dbf)
    if row_index < 0 or row_index >= dbf.header.record_count:
        logger.warning("Invalid DBF row: %d", row_index)
        return None

    row = _read_row(dbf, row_index)
    return None if row is None else list(row)


def dbf_file_fetch_row_dict(dbf: DBFFile, row_index: int) -> Optional[Dict[str, Any]]:
    """Fetch one row as {column name: value}, or None (see dbf_file_fetch_row())."""
    row = dbf_file_fetch_row(dbf, row_index)
    if row is None:
        return None
    return {column.name: value for column, value in zip(dbf.header.fields, row)}


def _check_range(dbf: DBFFile, start: int, count: Optional[int]) -> int:
    if start == 0 and dbf.header.record_count == 0:
        return 0
    if start < 0 or start >= dbf.header.record_count:
        raise DBFRangeError(f"Invalid DBF row: {start}")
    if count is None or start + count > dbf.header.record_count:
        count = dbf.header.record_count - start
    if count < 0:
        raise DBFRangeError(f"Invalid DBF row count: {count}")
    return count


def _iter_rows(dbf: DBFFile, start: int, count: int) -> Iterator[Optional[list]]:
    chunk_size = dbf.cache.size or DBF_ROW_CACHE_SIZE
    end = start + count
    row_index = start
    while row_index < end:
        n = min(chunk_size, end - row_index)
        yield from _read_rows(dbf, row_index, n)
        row_index += n


def dbf_file_iter_rows(dbf: DBFFile, start: int = 0, count: Optional[int] = None) -> Iterator[Optional[list]]:
    """
    Stream rows [start, start + count) without touching the row cache.

    Deleted rows come out as None, so the n-th item is row start + n. A count
    past the end of the table is clamped.

    Raises:
        DBFRangeError: start is outside [0, record_count) or count is negative
    """
    _require_open(dbf)
    count = _check_range(dbf, start, count)
    return _iter_rows(dbf, start, count)


def dbf_file_fetch_rows(dbf: DBFFile, start: int = 0, count: Optional[int] = None) -> List[Optional[list]]:
    """Like dbf_file_iter_rows(), but returns a list."""
    return list(dbf_file_iter_rows(dbf, start, count))


def dbf_file_set_row_deleted(dbf: DBFFile, row_index: int, deleted: bool) -> bool:
    """
    Mark a row as deleted or undeleted, on disk, immediately.

    The session handle is closed while a separate read-write handle writes the
    flag byte, then reopened; field bytes are never touched.

    Args:
        dbf: The DBF file object
        row_index: Zero-based row index
        deleted: True to mark as deleted, False to undelete

    Returns:
        True on success, False if the flag could not be written

    Raises:
        DBFRangeError: row_index is outside [0, record_count)
    """
    _require_open(dbf)
    if row_index < 0 or row_index >= dbf.header.record_count:
        raise DBFRangeError(f"Invalid DBF row: {row_index}")

    flag = DBF_DELETED_FLAG if deleted else DBF_LIVE_FLAG
    offset = dbf.header.header_size + row_index * dbf.header.record_size

    dbf.file.close()
    result = False
    try:
        with open(dbf.filename, 'rb+') as f:
            f.seek(offset)
            f.write(flag)
        result = True
    except OSError as e:
        logger.error("Cannot change delete flag of row %d in %s: %s", row_index, dbf.filename, e)
    finally:
        dbf.mode = dbf.reopen_mode
        dbf.file = open(dbf.filename, dbf.mode)
        dbf.cache.clear()
    return result


def dbf_file_delete_row(dbf: DBFFile, row_index: int) -> bool:
    """Flag a row as deleted."""
    return dbf_file_set_row_deleted(dbf, row_index, True)


def dbf_file_undelete_row(dbf: DBFFile, row_index: int) -> bool:
    """Remove the deleted flag from a row."""
    return dbf_file_set_row_deleted(dbf, row_index, False)


# Schema introspection
def _get_field(dbf: DBFFile, column: Union[int, str]) -> Optional[DBFColumn]:
    if isinstance(column, str):
        for candidate in dbf.header.fields:
            if candidate.name == column:
                return candidate
        return None
    if 0 <= column < len(dbf.header.fields):
        return dbf.header.fields[column]
    return None


def dbf_file_field_count(dbf: DBFFile) -> int:
    return dbf.header.field_count


def dbf_file_field_names(dbf: DBFFile) -> List[str]:
    return [column.name for column in dbf.header.fields]


def dbf_file_field_name(dbf: DBFFile, column: Union[int, str]) -> Optional[str]:
    """Name of a column given by zero-based index or name."""
    found = _get_field(dbf, column)
    return found.name if found else None


def dbf_file_field_type(dbf: DBFFile, column: Union[int, str]) -> Optional[str]:
    found = _get_field(dbf, column)
    return found.field_type if found else None


def dbf_file_field_length(dbf: DBFFile, column: Union[int, str]) -> Optional[int]:
    found = _get_field(dbf, column)
    return found.length if found else None


def dbf_file_field_decimals(dbf: DBFFile, column: Union[int, str]) -> Optional[int]:
    found = _get_field(dbf, column)
    return found.decimals if found else None


def dbf_file_get_row_count(dbf: DBFFile) -> int:
    """In-memory record count, including rows not yet flushed to the header."""
    return dbf.header.record_count


def dbf_file_get_header_size(dbf: DBFFile) -> int:
    """Declared header size, as read from the file (or repaired)."""
    return dbf.header.header_size


def dbf_file_get_record_size(dbf: DBFFile) -> int:
    """Declared record size, as read from the file (or repaired)."""
    return dbf.header.record_size


def dbf_file_get_date(dbf: DBFFile) -> Tuple[int, int, int]:
    """Last update date as (year, month, day) with a four-digit year."""
    return (dbf.header.year, dbf.header.month, dbf.header.day)


# Corruption repair
#
# The repairs depend on each other: the record size is only right once the
# columns were read from a correctly delimited header, and the row count
# needs both sizes. Run them in the order of dbf_file_repair_header().

def dbf_file_compute_header_size(dbf: DBFFile) -> int:
    """
    Find the header size by scanning the file for the column terminator.

    The scan gives up past DBF_MAX_HEADER_SIZE, so a file without a
    terminator yields a size no header can have.
    """
    _require_open(dbf)
    length = 0
    while length < DBF_MAX_HEADER_SIZE:
        length += DBF_DESCRIPTOR_SIZE
        dbf.file.seek(length)
        if _is_terminator(dbf.file.read(1)):
            break
    return length + 1


def dbf_file_compute_record_size(dbf: DBFFile) -> int:
    return dbf.header.compute_record_size()


def dbf_file_compute_row_count(dbf: DBFFile) -> int:
    """Number of whole records between the end of the header and the end of the file."""
    _require_open(dbf)
    if dbf.writable:
        dbf.file.flush()
    file_size = os.fstat(dbf.file.fileno()).st_size
    if dbf.header.record_size <= 0:
        return 0
    return max(0, (file_size - dbf.header.header_size) // dbf.header.record_size)


def _repair(dbf: DBFFile, label: str, declared: int, computed: int, setter) -> bool:
    if computed == declared:
        return False
    try:
        setter(computed)
    except ValueError:
        # Leave the declared value alone; the computed one cannot be stored
        logger.warning("Cannot repair %s of %s: computed %d is out of range, keeping %d",
                       label, dbf.filename, computed, declared)
        return True
    logger.warning("Repaired %s of %s from %d to %d", label, dbf.filename, declared, computed)
    dbf.cache.clear()
    return True


def dbf_file_repair_header_size(dbf: DBFFile) -> bool:
    """Replace the in-memory header size by the scanned one; True if it was wrong."""
    return _repair(dbf, "header size", dbf.header.header_size,
                   dbf_file_compute_header_size(dbf), dbf.header.set_header_size)


def dbf_file_repair_record_size(dbf: DBFFile) -> bool:
    """Replace the in-memory record size by the column widths; True if it was wrong."""
    return _repair(dbf, "record size", dbf.header.record_size,
                   dbf_file_compute_record_size(dbf), dbf.header.set_record_size)


def dbf_file_repair_row_count(dbf: DBFFile) -> bool:
    """Replace the in-memory record count by the one the file size implies; True if it was wrong."""
    return _repair(dbf, "record count", dbf.header.record_count,
                   dbf_file_compute_row_count(dbf), dbf.header.set_record_count)


def dbf_file_repair_header(dbf: DBFFile) -> int:
    """
    Run the header size, record size and record count repairs in that order.

    Only the in-memory metadata changes. Persist with dbf_file_write_record_count()
    for the count alone, or with rebuild_dbf() for everything.

    Returns:
        Number of values that needed repair (0 to 3)
    """
    repairs = 0
    for repair in (dbf_file_repair_header_size, dbf_file_repair_record_size, dbf_file_repair_row_count):
        if repair(dbf):
            repairs += 1
    return repairs


def rebuild_dbf(in_filename: str, out_filename: str, encoding: str = DBF_ENCODING) -> int:
    """
    Write a repaired copy of a DBF file.

    The input is opened with a terminator scan and its header repaired, so the
    scanned header size is always used; every live row is then copied into a
    freshly created output file, so deleted rows are dropped.

    Args:
        in_filename: Input filename (with or without extension)
        out_filename: Output filename (with or without extension)
        encoding: Character encoding of names and field data

    Returns:
        Number of rows written to the output
    """
    src = dbf_file_open(in_filename, 'r', HeaderMode.SCAN_TERMINATOR, encoding=encoding)
    try:
        dbf_file_repair_header(src)
        out = dbf_file_create(out_filename, src.header.fields, quick=True, encoding=encoding)
        try:
            written = dbf_file_append_rows(out, dbf_file_iter_rows(src))
        finally:
            dbf_file_close(out)
    finally:
        dbf_file_close(src)
    return written


# Export functions
__all__ = [
    'DBFError', 'DBFFormatError', 'DBFRangeError', 'DBFValidationError',
    'HeaderMode', 'DBFColumn', 'DBFHeader', 'DBFRowCache', 'DBFFile',
    'DBF_VALID_MARKERS', 'DBF_VERSION_DBASE3', 'DBF_HEADER_TERMINATOR', 'DBF_HEADER_TERMINATOR_ALT',
    'DBF_EOF_MARKER', 'DBF_LIVE_FLAG', 'DBF_DELETED_FLAG', 'DBF_MAX_NAME_LENGTH',
    'DBF_MAX_FIELD_LENGTH', 'DBF_MAX_HEADER_SIZE', 'DBF_MAX_RECORD_SIZE', 'DBF_MAX_RECORD_COUNT',
    'DBF_FIELD_TYPES', 'DBF_ROW_CACHE_SIZE', 'DBF_ENCODING',
    'validate_columns', 'read_dbf_header', 'write_dbf_header',
    'pack_dbf_record', 'unpack_dbf_record',
    'dbf_file_open', 'dbf_file_create', 'dbf_file_close',
    'dbf_file_write_header', 'dbf_file_write_record_count', 'dbf_file_flush',
    'dbf_file_append_row', 'dbf_file_append_rows', 'dbf_file_append_row_dict', 'dbf_file_append_rows_dict',
    'dbf_file_fetch_row', 'dbf_file_fetch_row_dict', 'dbf_file_iter_rows', 'dbf_file_fetch_rows',
    'dbf_file_set_row_deleted', 'dbf_file_delete_row', 'dbf_file_undelete_row',
    'dbf_file_field_count', 'dbf_file_field_names', 'dbf_file_field_name', 'dbf_file_field_type',
    'dbf_file_field_length', 'dbf_file_field_decimals',
    'dbf_file_get_row_count', 'dbf_file_get_header_size', 'dbf_file_get_record_size', 'dbf_file_get_date',
    'dbf_file_compute_header_size', 'dbf_file_compute_record_size', 'dbf_file_compute_row_count',
    'dbf_file_repair_header_size', 'dbf_file_repair_record_size', 'dbf_file_repair_row_count',
    'dbf_file_repair_header', 'rebuild_dbf',
]
