"""Content safety inspection for staged uploads."""

from uploader.security.inspector import ContentInspector
from uploader.security.scanners import (
    HashReputationScanner,
    HeuristicScanner,
    LocalDaemonScanner,
    Scanner,
    UploadAndScanScanner,
    build_scanner_chain,
)

__all__ = [
    "ContentInspector",
    "Scanner",
    "HashReputationScanner",
    "UploadAndScanScanner",
    "LocalDaemonScanner",
    "HeuristicScanner",
    "build_scanner_chain",
]
