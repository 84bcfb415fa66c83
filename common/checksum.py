"""SHA-256 checksum helpers for staged files."""

import hashlib
from pathlib import Path
from typing import Union

from common.constants import STREAM_PIECE_SIZE_BYTES


def compute_file_checksum(path: Union[str, Path], piece_size: int = STREAM_PIECE_SIZE_BYTES) -> str:
    """
    Compute SHA-256 checksum of a file without loading it into memory.

    Args:
        path: File to hash
        piece_size: Read size in bytes

    Returns:
        Hexadecimal SHA-256 digest

    Raises:
        OSError: If the file cannot be read
    """
    calculator = IncrementalChecksumCalculator()
    with open(path, 'rb') as f:
        while True:
            piece = f.read(piece_size)
            if not piece:
                break
            calculator.update(piece)
    return calculator.finalize()


class IncrementalChecksumCalculator:
    """
    Calculate SHA-256 checksum incrementally for streaming data.

    Usage:
        calculator = IncrementalChecksumCalculator()
        calculator.update(piece1)
        calculator.update(piece2)
        final_checksum = calculator.finalize()
    """

    def __init__(self):
        self._hasher = hashlib.sha256()
        self._finalized = False

    def update(self, data: bytes) -> None:
        if self._finalized:
            raise ValueError("Cannot update after finalization")
        self._hasher.update(data)

    def finalize(self) -> str:
        self._finalized = True
        return self._hasher.hexdigest()
