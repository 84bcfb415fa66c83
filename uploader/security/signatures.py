"""Magic-byte and embedded-script tables used by the signature check."""

from typing import List, Optional, Tuple

# Leading bytes of formats that must never be accepted as media.
DANGEROUS_SIGNATURES: List[Tuple[bytes, str]] = [
    (b"MZ", "Windows executable"),
    (b"\x7fELF", "Linux executable"),
    (b"PK\x03\x04", "ZIP archive"),
    (b"Rar", "RAR archive"),
    (b"#!/", "Shell script"),
]

# Case-sensitive markers searched in the text decoding of the prefix.
SCRIPT_MARKERS: List[str] = [
    "<?php",
    "<%",
    "<script",
    "bash",
    "python",
    "import os",
]


def match_dangerous_signature(prefix: bytes) -> Optional[str]:
    """
    Return the description of the first dangerous format the prefix starts with.

    Args:
        prefix: Leading bytes of the file

    Returns:
        Format description, or None if nothing matched
    """
    for magic, description in DANGEROUS_SIGNATURES:
        if prefix.startswith(magic):
            return description
    return None


def find_script_marker(prefix: bytes) -> Optional[str]:
    """
    Return the first script/interpreter marker found in the prefix decoded as text.
    """
    text = prefix.decode("utf-8", errors="replace")
    for marker in SCRIPT_MARKERS:
        if marker in text:
            return marker
    return None
