"""Upload-service data type definitions."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional


@dataclass(frozen=True)
class StagedFile:
    """
    A file held in local staging between receipt and final disposition.
    """
    path: Path
    filename: str
    content_type: Optional[str]
    size: int


@dataclass(frozen=True)
class ScanResult:
    """
    Verdict returned by a scan backend that completed.
    """
    scanner: str
    infected: bool
    details: str
    flagged: bool = False
    flagged_reason: Optional[str] = None


@dataclass(frozen=True)
class InspectionReport:
    """
    Outcome of all content checks on one staged file.
    """
    valid: bool
    errors: List[str]
    warnings: List[str]
    checks_performed: Dict[str, bool]
    scan_result: Optional[ScanResult] = None


@dataclass(frozen=True)
class DeclaredMetadata:
    """
    Caller-declared video metadata carried through to the final commit.
    """
    title: str = "Untitled"
    description: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    is_public: bool = False


@dataclass(frozen=True)
class Identity:
    """
    Authenticated caller resolved by the auth layer.
    """
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    role: str = "user"


@dataclass(frozen=True)
class IncomingFile:
    """
    One file part of a request, before it is staged to disk.
    """
    filename: Optional[str]
    content_type: Optional[str]
    stream: BinaryIO
