"""Content inspection of staged files before they are trusted into storage."""

import asyncio
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from common.constants import MAX_UPLOAD_SIZE_BYTES, SIGNATURE_PREFIX_BYTES
from common.formatting import format_bytes
from uploader.exceptions import ScannerUnavailableError
from uploader.security.scanners import Scanner
from uploader.security.signatures import find_script_marker, match_dangerous_signature
from uploader.types import InspectionReport, ScanResult

logger = logging.getLogger(__name__)

CHECK_FILE_SIZE = "file_size"
CHECK_MIME_TYPE = "mime_type"
CHECK_FILE_SIGNATURE = "file_signature"
CHECK_VIRUS_SCAN = "virus_scan"


class ContentInspector:
    """
    Runs the layered safety checks on one staged file.

    Checks are independent: every failing check contributes its error to the
    report. "File is bad" is never raised; only environment errors (a path
    that cannot be stat'ed or read) propagate as OSError.
    """

    def __init__(
        self,
        allowed_mime_types: Iterable[str],
        scanners: Optional[List[Scanner]] = None,
        max_size_bytes: int = MAX_UPLOAD_SIZE_BYTES,
        scan_timeout: float = 30.0,
        prefix_bytes: int = SIGNATURE_PREFIX_BYTES,
    ):
        self.allowed_mime_types = list(allowed_mime_types)
        self.scanners = list(scanners or [])
        self.max_size_bytes = max_size_bytes
        self.scan_timeout = scan_timeout
        self.prefix_bytes = max(prefix_bytes, SIGNATURE_PREFIX_BYTES)

    async def inspect(
        self,
        local_path: Path,
        declared_name: str,
        declared_mime_type: Optional[str],
        allowed_mime_types: Optional[Iterable[str]] = None,
    ) -> InspectionReport:
        """
        Inspect a staged file.

        Args:
            local_path: Path of the staged file
            declared_name: Client-declared filename (for logging only)
            declared_mime_type: Client-declared MIME type
            allowed_mime_types: Allow-list override for this call (e.g. thumbnails)

        Returns:
            InspectionReport with every error and warning found

        Raises:
            OSError: If the staged file cannot be read
        """
        local_path = Path(local_path)
        errors: List[str] = []
        warnings: List[str] = []
        checks: Dict[str, bool] = {
            CHECK_FILE_SIZE: False,
            CHECK_MIME_TYPE: False,
            CHECK_FILE_SIGNATURE: False,
            CHECK_VIRUS_SCAN: False,
        }

        logger.info(f"Starting content inspection for {declared_name}")

        size_error = await asyncio.to_thread(self._check_size, local_path)
        checks[CHECK_FILE_SIZE] = True
        if size_error:
            errors.append(size_error)

        allowed = list(allowed_mime_types) if allowed_mime_types is not None else self.allowed_mime_types
        mime_error = self._check_mime_type(declared_mime_type, allowed)
        checks[CHECK_MIME_TYPE] = True
        if mime_error:
            errors.append(mime_error)

        signature_error = await asyncio.to_thread(self._check_signature, local_path)
        checks[CHECK_FILE_SIGNATURE] = True
        if signature_error:
            errors.append(signature_error)

        scan_result, unavailable = await self._scan(local_path)
        if scan_result is not None:
            checks[CHECK_VIRUS_SCAN] = True
            if scan_result.infected:
                errors.append(f"Malware detected: {scan_result.details}")
            if scan_result.flagged:
                warnings.append(f"File flagged by scanner: {scan_result.flagged_reason}")
        else:
            reason = "; ".join(unavailable) if unavailable else "no scan backends configured"
            warnings.append(f"Virus scan unavailable: {reason}")

        report = InspectionReport(
            valid=not errors,
            errors=errors,
            warnings=warnings,
            checks_performed=checks,
            scan_result=scan_result,
        )

        logger.info(
            f"Content inspection completed for {declared_name}: valid={report.valid} "
            f"errors={report.errors} warnings={report.warnings}"
        )
        return report

    def _check_size(self, path: Path) -> Optional[str]:
        size = path.stat().st_size

        if size == 0:
            return "File is empty"

        if size > self.max_size_bytes:
            return (
                f"File size ({format_bytes(size)}) exceeds maximum allowed size "
                f"({format_bytes(self.max_size_bytes)})"
            )

        return None

    @staticmethod
    def _check_mime_type(mime_type: Optional[str], allowed: List[str]) -> Optional[str]:
        if not mime_type:
            return "MIME type is required"

        if mime_type not in allowed:
            return f"Invalid file type: {mime_type}. Allowed types: {', '.join(allowed)}"

        return None

    def _check_signature(self, path: Path) -> Optional[str]:
        with open(path, "rb") as f:
            prefix = f.read(self.prefix_bytes)

        description = match_dangerous_signature(prefix)
        if description:
            return f"Dangerous file signature detected: {description}. This file may be malicious."

        marker = find_script_marker(prefix)
        if marker:
            logger.debug(f"Script marker {marker!r} found in {path.name}")
            return "Suspicious code detected in file. File may contain malicious content."

        return None

    async def _scan(self, path: Path) -> Tuple[Optional[ScanResult], List[str]]:
        unavailable: List[str] = []

        for scanner in self.scanners:
            try:
                result = await asyncio.wait_for(scanner.scan(path), timeout=self.scan_timeout)
            except ScannerUnavailableError as e:
                logger.warning(f"Scan backend {scanner.name} unavailable: {e}")
                unavailable.append(str(e))
                continue
            except asyncio.TimeoutError:
                logger.warning(f"Scan backend {scanner.name} timed out after {self.scan_timeout}s")
                unavailable.append(f"{scanner.name}: timed out")
                continue
            except Exception as e:
                logger.error(f"Scan backend {scanner.name} failed: {e}", exc_info=True)
                unavailable.append(f"{scanner.name}: failed")
                continue

            logger.info(f"Scanned {path.name} with {scanner.name}: {result.details}")
            return result, unavailable

        return None, unavailable
