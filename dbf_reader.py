"""
Read-only dBase (.DBF) table reader.
This module decodes the DBF header, the field descriptor table and the
records that follow it, returning typed Python values for each field.
Memo fields are resolved through the companion .DBT file (see dbt_module).
"""

import os
import re
import struct
import datetime
from dataclasses import dataclass, field as dataclass_field
from decimal import Decimal
from enum import Enum
from typing import List, Dict, Any, Optional, Union, BinaryIO, Tuple, Sequence

from dbt_module import dbt_read_memo


# Constants
DBF_HEADER_SIZE = 32
DBF_FIELD_DESCRIPTOR_SIZE = 32
DBF_FIELD_TERMINATOR = 0x0D
DBF_DELETED_FLAG = ord('*')
DBF_MAX_VERSION = 3
DBF_DEFAULT_ENCODING = 'ascii'
FIELD_NOT_FOUND = -1

# (name, offset, format) - all little-endian
DBF_HEADER_LAYOUT = (
    ('signature', 0, '<B'),
    ('year', 1, '<B'),
    ('month', 2, '<B'),
    ('day', 3, '<B'),
    ('record_count', 4, '<I'),
    ('header_length', 8, '<H'),
    ('record_length', 10, '<H'),
    ('reserved1', 12, '<H'),
    ('transaction_flag', 14, '<B'),
    ('encrypted_flag', 15, '<B'),
    ('reserved2', 16, '<12s'),
    ('mdx_flag', 28, '<B'),
    ('language_driver', 29, '<B'),
    ('reserved3', 30, '<H'),
)

DBF_FIELD_LAYOUT = (
    ('name', 0, '<11s'),
    ('type_char', 11, '<c'),
    ('data_address', 12, '<I'),
    ('length', 16, '<B'),
    ('decimals', 17, '<B'),
)

# Text fields decoded by unpack_structure (cut at the first NUL)
_TEXT_ENTRIES = {'name'}

_FLOAT_PATTERN = re.compile(r'\s*[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?\Z')
_INT_PATTERN = re.compile(r'\s*[+-]?\d+\s*\Z')


# Exceptions
class DBFReaderError(ValueError):
    """Base class for every error raised by the reader."""


class DBFFormatError(DBFReaderError):
    """The file is not a DBF file this reader can handle."""


class DBFDecodeError(DBFReaderError):
    """A field value could not be interpreted under its declared type."""

    def __init__(self, field_name: str, raw_text: str, reason: str = ''):
        message = f"Unable to decode field [{field_name}], value <{raw_text}>"
        if reason:
            message += f": {reason}"
        super().__init__(message)
        self.field_name = field_name
        self.raw_text = raw_text


# Data structures
class DBFType(Enum):
    """Field types, keyed by the type character stored in the descriptor."""
    CHARACTER = 'C'
    NUMERIC = 'N'
    FLOAT = 'F'
    DOUBLE = 'O'
    DATE = 'D'
    LOGICAL = 'L'
    MEMO = 'M'
    BINARY = 'B'  # not decoded
    INTEGER = 'I'  # not decoded
    UNSUPPORTED = '?'

    @classmethod
    def from_char(cls, type_char: str) -> 'DBFType':
        """Map a raw type character to a DBFType (UNSUPPORTED if unknown)."""
        return _DBF_TYPES_BY_CHAR.get(type_char, cls.UNSUPPORTED)

    @property
    def is_decodable(self) -> bool:
        return self not in (DBFType.BINARY, DBFType.INTEGER, DBFType.UNSUPPORTED)


_DBF_TYPES_BY_CHAR = {member.value: member for member in DBFType if member is not DBFType.UNSUPPORTED}


class ReaderState(Enum):
    """Position of a DBFReader in the record stream."""
    READY = 'ready'
    HAS_RECORD = 'has_record'
    EXHAUSTED = 'exhausted'


@dataclass(frozen=True)
class DBFHeader:
    """Represents the 32-byte header of a DBF file."""
    signature: int = 0  # version in the low 3 bits, memo flag in bit 7
    year: int = 0  # Last update year (since 1900)
    month: int = 0  # Last update month
    day: int = 0  # Last update day
    record_count: int = 0  # Number of records
    header_length: int = 0  # Header size in bytes
    record_length: int = 0  # Record size in bytes
    reserved1: int = 0
    transaction_flag: int = 0
    encrypted_flag: int = 0
    reserved2: bytes = b''
    mdx_flag: int = 0
    language_driver: int = 0  # dBase IV language driver id
    reserved3: int = 0

    @property
    def version(self) -> int:
        return self.signature & 0x07

    @property
    def has_memo(self) -> bool:
        return bool(self.signature & 0x80)

    @property
    def last_update(self) -> Optional[datetime.date]:
        """Last update date, or None if the stored bytes are not a valid date."""
        try:
            return datetime.date(1900 + self.year, self.month, self.day)
        except ValueError:
            return None


@dataclass(frozen=True)
class DBFField:
    """Represents a column/field in a DBF file."""
    name: str  # Field name (max 11 chars)
    type_char: str  # 'C', 'N', 'L', etc.
    declared_length: int  # Length byte as stored in the descriptor
    declared_decimals: int  # Decimals byte as stored in the descriptor
    offset: int = 1  # offset within record; first field starts at 1
    dbf_type: DBFType = dataclass_field(init=False)
    length: int = dataclass_field(init=False)
    decimals: int = dataclass_field(init=False)

    def __post_init__(self):
        dbf_type = DBFType.from_char(self.type_char)
        length = self.declared_length
        decimals = self.declared_decimals
        # Character fields use the decimals byte as the high byte of the length
        if dbf_type is DBFType.CHARACTER:
            length += 256 * decimals
            decimals = 0
        object.__setattr__(self, 'dbf_type', dbf_type)
        object.__setattr__(self, 'length', length)
        object.__setattr__(self, 'decimals', decimals)


# Helper functions
def unpack_structure(buf: bytes, layout: Sequence[Tuple[str, int, str]],
                     encoding: str = DBF_DEFAULT_ENCODING) -> Dict[str, Any]:
    """
    Decode a fixed-size byte window into named values.

    Args:
        buf: The raw bytes
        layout: Sequence of (name, offset, struct format) entries
        encoding: Encoding used for text entries

    Returns:
        Dictionary of entry name to decoded value
    """
    result = {}
    for name, offset, fmt in layout:
        if offset + struct.calcsize(fmt) > len(buf):
            raise DBFFormatError(
                f"Structure too short: '{name}' needs {offset + struct.calcsize(fmt)} bytes, got {len(buf)}")
        value = struct.unpack_from(fmt, buf, offset)[0]
        if name in _TEXT_ENTRIES:
            value = value.split(b'\x00', 1)[0].decode(encoding, errors='replace')
        elif fmt.endswith('c'):
            value = value.decode('latin-1')
        result[name] = value
    return result


def read_dbf_header(file: BinaryIO, encoding: str = DBF_DEFAULT_ENCODING) -> DBFHeader:
    """Read and validate the 32-byte DBF header."""
    buf = file.read(DBF_HEADER_SIZE)
    if len(buf) < DBF_HEADER_SIZE:
        raise DBFFormatError(f"Truncated header: expected {DBF_HEADER_SIZE} bytes, got {len(buf)}")

    header = DBFHeader(**unpack_structure(buf, DBF_HEADER_LAYOUT, encoding))
    if header.version > DBF_MAX_VERSION:
        raise DBFFormatError(f"DBF file has unsupported version (signature 0x{header.signature:02X})")
    return header


def read_dbf_fields(file: BinaryIO, encoding: str = DBF_DEFAULT_ENCODING
                    ) -> Tuple[List[DBFField], Dict[str, int], int]:
    """
    Read field descriptors until the 0x0D terminator.

    Args:
        file: Stream positioned just after the 32-byte header
        encoding: Encoding used for field names

    Returns:
        Tuple of (fields, name -> ordinal map, bytes consumed)
    """
    fields = []
    consumed = 0
    offset = 1  # First byte is delete flag

    while True:
        lead = file.read(1)
        if not lead:
            raise DBFFormatError("Field descriptor terminator (0x0D) not found")
        consumed += 1
        if lead[0] == DBF_FIELD_TERMINATOR:
            break

        rest = file.read(DBF_FIELD_DESCRIPTOR_SIZE - 1)
        consumed += len(rest)
        if len(rest) < DBF_FIELD_DESCRIPTOR_SIZE - 1:
            raise DBFFormatError("Field descriptor table is truncated")

        values = unpack_structure(lead + rest, DBF_FIELD_LAYOUT, encoding)
        field = DBFField(
            name=values['name'],
            type_char=values['type_char'],
            declared_length=values['length'],
            declared_decimals=values['decimals'],
            offset=offset
        )
        fields.append(field)
        offset += field.length

    return fields, build_fields_index(fields), consumed


def build_fields_index(fields: Sequence[DBFField]) -> Dict[str, int]:
    """Map field names to ordinals; on duplicate names the last one wins."""
    index = {}
    for ordinal, field in enumerate(fields):
        index[field.name] = ordinal
    return index


def compute_data_length(fields: Sequence[DBFField], header: DBFHeader) -> int:
    """Bytes per record: delete flag plus fields, or the header's record length if larger."""
    return max(1 + sum(field.length for field in fields), header.record_length)


def _parse_int(text: str) -> Optional[int]:
    if not _INT_PATTERN.match(text):
        return None
    return int(text)


def decode_character(data: bytes, field: DBFField, encoding: str) -> str:
    return data[:field.length].decode(encoding, errors='replace').rstrip()


def decode_number(data: bytes, field: DBFField, encoding: str) -> Union[Decimal, float, None]:
    """
    Decode a Numeric, Float or Double field.

    Blank values and values ending in a space or '?' have no value.
    Numeric fields return Decimal, Float and Double fields return float.
    """
    text = data[:field.length].decode(encoding, errors='replace')
    if not text or text[-1] in (' ', '?'):
        return None

    text = text.replace(',', '.')
    if not _FLOAT_PATTERN.match(text):
        raise ValueError(f"'{text}' is not a number")
    if field.dbf_type is DBFType.NUMERIC:
        return Decimal(text.strip())
    return float(text)


def decode_date(data: bytes, encoding: str) -> Optional[datetime.date]:
    """Decode a YYYYMMDD date; blank or invalid dates have no value."""
    text = data.decode(encoding, errors='replace')
    year = _parse_int(text[0:4])
    month = _parse_int(text[4:6])
    day = _parse_int(text[6:8])
    if year is None or month is None or day is None:
        return None
    try:
        return datetime.date(year, month, day)
    except ValueError:
        return None


def decode_logical(data: bytes) -> Optional[bool]:
    if not data or data[:1] == b'?':
        return None
    return data[:1] in (b't', b'T', b'y', b'Y')


def decode_memo(data: bytes, field: DBFField, encoding: str,
                memo: Optional[BinaryIO]) -> Optional[str]:
    """Resolve a memo field through its block number in the .DBT stream."""
    if memo is None:
        raise DBFDecodeError(field.name, data.decode(encoding, errors='replace'), "no memo source")

    text = data[:field.length].decode(encoding, errors='replace')
    if not text.strip():
        return None
    block_index = _parse_int(text)
    if block_index is None:
        return None
    return dbt_read_memo(memo, block_index, encoding)


def decode_value(data: bytes, field: DBFField, encoding: str = DBF_DEFAULT_ENCODING,
                 memo: Optional[BinaryIO] = None) -> Any:
    """
    Decode the raw bytes of one field.

    Args:
        data: Exactly field.length bytes taken from the record
        field: The field descriptor
        encoding: Text encoding of the table
        memo: Open .DBT stream, needed only for memo fields

    Returns:
        str, Decimal, float, datetime.date, bool, or None for "no value"

    Raises:
        DBFDecodeError: If the bytes cannot be read as the declared type
        DBTMemoError: If the memo block is not terminated
    """
    dbf_type = field.dbf_type
    try:
        if not dbf_type.is_decodable:
            raise DBFDecodeError(field.name, data.decode(encoding, errors='replace'),
                                 f"unsupported field type '{field.type_char}'")
        if dbf_type in (DBFType.NUMERIC, DBFType.FLOAT, DBFType.DOUBLE):
            return decode_number(data, field, encoding)
        if dbf_type is DBFType.DATE:
            return decode_date(data, encoding)
        if dbf_type is DBFType.LOGICAL:
            return decode_logical(data)
        if dbf_type is DBFType.MEMO:
            return decode_memo(data, field, encoding, memo)
        return decode_character(data, field, encoding)
    except (DBFReaderError, IOError):
        raise
    except (ValueError, ArithmeticError) as e:
        raise DBFDecodeError(field.name, data.decode(encoding, errors='replace'), str(e)) from e


def _open_source(source: Union[str, os.PathLike, BinaryIO]) -> BinaryIO:
    if isinstance(source, (str, os.PathLike)):
        return open(source, "rb")
    return source


class DBFReader:
    """
    Sequential reader over a DBF table and its optional memo file.

    The reader owns both streams and closes them in close() (or when used
    as a context manager). Each successful read_next() replaces the current
    record with a freshly decoded one.
    """

    def __init__(self, source: Union[str, os.PathLike, BinaryIO],
                 memo: Union[str, os.PathLike, BinaryIO, None] = None,
                 encoding: str = DBF_DEFAULT_ENCODING):
        if source is None:
            raise DBFReaderError("Input stream is null")

        self.encoding = encoding or DBF_DEFAULT_ENCODING
        self.file = None
        self.memo = None
        self.state = ReaderState.READY
        self._record = None

        try:
            self.file = _open_source(source)
            if memo is not None:
                self.memo = _open_source(memo)

            self.header = read_dbf_header(self.file, self.encoding)
            fields, self._fields_index, consumed = read_dbf_fields(self.file, self.encoding)
            self.fields = tuple(fields)
            self.data_length = compute_data_length(self.fields, self.header)
            self._fields_size = sum(field.length for field in self.fields)

            # Skip anything between the terminator and the first record
            residual = self.header.header_length - (DBF_HEADER_SIZE + consumed)
            if residual > 0:
                self.file.read(residual)
        except BaseException:
            self.close()
            raise

    @property
    def field_count(self) -> int:
        return len(self.fields)

    @property
    def record_count(self) -> int:
        return self.header.record_count

    def get_ordinal(self, name: str) -> int:
        """Return the ordinal of a field, or FIELD_NOT_FOUND (-1)."""
        return self._fields_index.get(name, FIELD_NOT_FOUND)

    def get_field(self, key: Union[int, str]) -> Optional[DBFField]:
        """Return a field by ordinal or by name, or None if there is no such field."""
        ordinal = self.get_ordinal(key) if isinstance(key, str) else key
        if 0 <= ordinal < len(self.fields):
            return self.fields[ordinal]
        return None

    def _skip_deleted(self) -> bool:
        """Position the stream after the delete flag of the next live record."""
        flag = self.file.read(1)
        while flag and flag[0] == DBF_DELETED_FLAG:
            remaining = self.data_length - 1
            if len(self.file.read(remaining)) < remaining:
                return False
            flag = self.file.read(1)
        return bool(flag)

    def read_next(self) -> bool:
        """
        Advance to the next live record.

        Returns:
            True if a record was read, False once the table is exhausted
        """
        if self.state is ReaderState.EXHAUSTED:
            return False

        self._record = None
        self.state = ReaderState.READY

        if not self._skip_deleted():
            self.state = ReaderState.EXHAUSTED
            return False

        # Whole record (fields and padding) is consumed before decoding, so a
        # decode error leaves the stream at the next record boundary
        record_bytes = self.file.read(self.data_length - 1)
        if len(record_bytes) < self._fields_size:
            # Short final record or EOF marker
            self.state = ReaderState.EXHAUSTED
            return False

        record = [None] * len(self.fields)
        for ordinal, field in enumerate(self.fields):
            start = field.offset - 1
            data = record_bytes[start:start + field.length]
            record[ordinal] = decode_value(data, field, self.encoding, self.memo)

        self._record = record
        self.state = ReaderState.HAS_RECORD
        return True

    def get_value(self, ordinal: int) -> Any:
        if ordinal < 0 or ordinal >= len(self.fields):
            raise DBFReaderError("Field not found")
        if self._record is None:
            raise DBFReaderError("No record has been read")
        return self._record[ordinal]

    def get_values(self) -> Tuple[Any, ...]:
        """Values of the current record in field order."""
        if self._record is None:
            raise DBFReaderError("No record has been read")
        return tuple(self._record)

    def as_dict(self) -> Dict[str, Any]:
        """Current record as a name -> value dictionary (in field order)."""
        values = self.get_values()
        return {field.name: value for field, value in zip(self.fields, values)}

    def __getitem__(self, key: Union[int, str]) -> Any:
        if isinstance(key, str):
            return self.get_value(self.get_ordinal(key))
        return self.get_value(key)

    def __iter__(self):
        while self.read_next():
            yield self.get_values()

    def close(self) -> None:
        """Close the table and memo streams."""
        for name in ('file', 'memo'):
            stream = getattr(self, name, None)
            if stream is not None:
                stream.close()
                setattr(self, name, None)
        self.state = ReaderState.EXHAUSTED

    def __enter__(self) -> 'DBFReader':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def _find_memo_file(filename: str) -> Optional[str]:
    """Find the .DBT file next to a .DBF file, trying both cases."""
    stem, _ = os.path.splitext(filename)
    for ext in ('.DBT', '.dbt'):
        if os.path.exists(stem + ext):
            return stem + ext
    return None


def dbf_reader_open(filename: str, memo_filename: Optional[str] = None,
                    encoding: str = DBF_DEFAULT_ENCODING) -> DBFReader:
    """
    Open a DBF file for reading.

    Args:
        filename: The path to the DBF file (with or without extension)
        memo_filename: Path to the memo file; if omitted and the table has
            memo fields, a .DBT file with the same name is used when present
        encoding: Text encoding of the table (default ASCII)

    Returns:
        A DBFReader positioned before the first record
    """
    if not os.path.splitext(filename)[1] and not os.path.exists(filename):
        filename = filename + '.DBF'

    reader = DBFReader(filename, memo_filename, encoding)
    if reader.memo is None:
        has_memo = any(field.dbf_type is DBFType.MEMO for field in reader.fields)
        found = _find_memo_file(filename) if has_memo else None
        if found:
            try:
                reader.memo = open(found, "rb")
            except OSError:
                reader.close()
                raise
    return reader
