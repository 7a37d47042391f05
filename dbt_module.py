"""
DBT Memo File Module

This module reads memo text from dBase III style .DBT files.
A memo field in the DBF record stores a block number; the memo text starts
at the following block and runs until two 0x1A bytes.
"""

from typing import BinaryIO

# Constants
DBT_BLOCK_SIZE = 512
DBT_BLOCK_SHIFT = 9
DBT_TERMINATOR = b'\x1A\x1A'
DBT_SOFT_RETURN = b'\x8D\x0A'


class DBTMemoError(IOError):
    """The memo file does not contain a complete memo at the requested block."""


def dbt_block_offset(block_index: int) -> int:
    """Byte offset of a memo; block 0 of the file is the header block."""
    return (block_index + 1) << DBT_BLOCK_SHIFT


def dbt_read_raw(memo: BinaryIO, block_index: int) -> bytes:
    """
    Read the raw bytes of a memo.

    Args:
        memo: Open .DBT stream (must be seekable)
        block_index: Block number stored in the DBF memo field

    Returns:
        Memo bytes without the 0x1A 0x1A terminator

    Raises:
        DBTMemoError: If the index is negative or the file ends before the terminator
    """
    if block_index < 0:
        raise DBTMemoError(f"Invalid memo block index {block_index}")

    memo.seek(dbt_block_offset(block_index))

    buf = bytearray()
    search_from = 0
    while True:
        chunk = memo.read(DBT_BLOCK_SIZE)
        if not chunk:
            raise DBTMemoError(f"Memo at block {block_index} is not terminated")
        buf += chunk

        end = buf.find(DBT_TERMINATOR, search_from)
        if end >= 0:
            return bytes(buf[:end])
        # Terminator may straddle two chunks
        search_from = len(buf) - 1


def dbt_read_memo(memo: BinaryIO, block_index: int, encoding: str = 'ascii') -> str:
    """Read a memo as text, with soft line breaks (0x8D 0x0A) removed."""
    data = dbt_read_raw(memo, block_index)
    return data.replace(DBT_SOFT_RETURN, b'').decode(encoding, errors='replace')
