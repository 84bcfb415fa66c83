"""Pluggable malware scan backends.

Each backend either completes with a ScanResult (clean or infected) or raises
ScannerUnavailableError. The inspector walks the configured chain in order and
the first backend that completes decides.
"""

import asyncio
import logging
import re
import struct
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

import httpx

from common.checksum import compute_file_checksum
from common.constants import HEURISTIC_PREFIX_BYTES, STREAM_PIECE_SIZE_BYTES
from uploader.exceptions import ScannerUnavailableError
from uploader.types import ScanResult

logger = logging.getLogger(__name__)

# Largest file the scan service accepts on its direct upload endpoint.
DIRECT_SUBMISSION_LIMIT_BYTES = 32 * 1024 * 1024


class Scanner(ABC):
    """Scan backend contract."""

    name = "scanner"

    @abstractmethod
    async def scan(self, path: Path) -> ScanResult:
        """
        Scan a staged file.

        Args:
            path: Local path of the staged file

        Returns:
            ScanResult once the backend completed

        Raises:
            ScannerUnavailableError: If the backend could not complete
        """


class _VirusTotalScanner(Scanner):
    """Shared HTTP plumbing for the hash lookup and upload backends."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._client = client
        self.timeout = timeout

    def _require_key(self) -> None:
        if not self.api_key:
            raise ScannerUnavailableError(f"{self.name}: API key not configured")

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        headers = {"x-apikey": self.api_key}
        try:
            if self._client is not None:
                return await self._client.request(method, url, headers=headers, **kwargs)
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise ScannerUnavailableError(f"{self.name}: {e}") from e

    def _json(self, response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError as e:
            raise ScannerUnavailableError(f"{self.name}: unreadable response body") from e
        if not isinstance(data, dict):
            raise ScannerUnavailableError(f"{self.name}: unexpected response body")
        return data


class HashReputationScanner(_VirusTotalScanner):
    """
    Look up the file's SHA-256 in the reputation service.

    An unknown hash does not complete the scan, so the chain moves on to the
    upload backend.
    """

    name = "hash_reputation"

    async def scan(self, path: Path) -> ScanResult:
        self._require_key()

        file_hash = await asyncio.to_thread(compute_file_checksum, path)
        response = await self._request("GET", f"{self.base_url}/files/{file_hash}")

        if response.status_code == 404:
            raise ScannerUnavailableError(f"{self.name}: hash {file_hash} not known")
        if response.status_code != 200:
            raise ScannerUnavailableError(f"{self.name}: HTTP {response.status_code}")

        data = self._json(response).get("data") or {}
        try:
            stats = (data.get("attributes") or {}).get("last_analysis_stats") or {}
            malicious = int(stats.get("malicious", 0))
            suspicious = int(stats.get("suspicious", 0))
        except (AttributeError, TypeError, ValueError) as e:
            raise ScannerUnavailableError(f"{self.name}: malformed analysis stats") from e

        if malicious > 0 or suspicious > 0:
            return ScanResult(
                scanner=self.name,
                infected=True,
                details=f"File flagged by {malicious} security vendors",
                flagged=True,
                flagged_reason=f"Malicious: {malicious}, Suspicious: {suspicious}",
            )

        return ScanResult(scanner=self.name, infected=False, details="Hash reputation clean")


class UploadAndScanScanner(_VirusTotalScanner):
    """
    Submit the file for a full scan.

    The service analyses asynchronously, so a successful submission completes
    with a clean, pending verdict.
    """

    name = "upload_and_scan"

    async def scan(self, path: Path) -> ScanResult:
        self._require_key()

        try:
            size = (await asyncio.to_thread(path.stat)).st_size
            if size > DIRECT_SUBMISSION_LIMIT_BYTES:
                raise ScannerUnavailableError(f"{self.name}: file too large for direct submission")
            content = await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise ScannerUnavailableError(f"{self.name}: {e}") from e

        response = await self._request(
            "POST",
            f"{self.base_url}/files",
            files={"file": (path.name, content, "application/octet-stream")},
        )

        if response.status_code not in (200, 201):
            raise ScannerUnavailableError(f"{self.name}: HTTP {response.status_code}")

        data = self._json(response).get("data")
        analysis_id = data.get("id") if isinstance(data, dict) else None
        logger.info(f"Submitted {path.name} for analysis [analysis_id={analysis_id}]")

        return ScanResult(
            scanner=self.name,
            infected=False,
            details="File submitted for analysis (result pending)",
        )


class LocalDaemonScanner(Scanner):
    """
    Stream the file to a clamd daemon using the INSTREAM command.
    """

    name = "local_daemon"

    def __init__(self, host: Optional[str], port: int, piece_size: int = STREAM_PIECE_SIZE_BYTES):
        self.host = host
        self.port = port
        self.piece_size = piece_size

    async def scan(self, path: Path) -> ScanResult:
        if not self.host:
            raise ScannerUnavailableError(f"{self.name}: daemon host not configured")

        try:
            reader, writer = await asyncio.open_connection(self.host, self.port)
        except OSError as e:
            raise ScannerUnavailableError(f"{self.name}: {e}") from e

        try:
            writer.write(b"zINSTREAM\0")
            f = await asyncio.to_thread(open, path, "rb")
            try:
                while True:
                    piece = await asyncio.to_thread(f.read, self.piece_size)
                    if not piece:
                        break
                    writer.write(struct.pack(">I", len(piece)) + piece)
                    await writer.drain()
            finally:
                f.close()
            writer.write(struct.pack(">I", 0))
            await writer.drain()

            reply = await reader.readuntil(b"\0")
        except (OSError, asyncio.IncompleteReadError, asyncio.LimitOverrunError) as e:
            raise ScannerUnavailableError(f"{self.name}: {e}") from e
        finally:
            writer.close()

        return self._parse_reply(reply.rstrip(b"\0").decode("utf-8", errors="replace"))

    def _parse_reply(self, reply: str) -> ScanResult:
        # Replies look like "stream: OK" or "stream: <signature> FOUND".
        verdict = reply.split(":", 1)[-1].strip()

        if verdict == "OK":
            return ScanResult(scanner=self.name, infected=False, details="Daemon scan clean")

        if verdict.endswith("FOUND"):
            signature = verdict[: -len("FOUND")].strip()
            return ScanResult(
                scanner=self.name,
                infected=True,
                details=f"Malware detected: {signature}",
                flagged=True,
                flagged_reason=signature,
            )

        raise ScannerUnavailableError(f"{self.name}: unexpected reply {reply!r}")


class HeuristicScanner(Scanner):
    """
    Last-resort keyword scan over the first kilobyte of the file.
    """

    name = "heuristic"

    PATTERNS = [
        re.compile(r"eval\s*\(", re.IGNORECASE),
        re.compile(r"base64", re.IGNORECASE),
        re.compile(r"cmd\.exe", re.IGNORECASE),
        re.compile(r"powershell", re.IGNORECASE),
        re.compile(r"DROP TABLE", re.IGNORECASE),
        re.compile(r"xp_cmdshell", re.IGNORECASE),
    ]

    def __init__(self, prefix_bytes: int = HEURISTIC_PREFIX_BYTES):
        self.prefix_bytes = prefix_bytes

    async def scan(self, path: Path) -> ScanResult:
        try:
            prefix = await asyncio.to_thread(_read_prefix, path, self.prefix_bytes)
        except OSError as e:
            raise ScannerUnavailableError(f"{self.name}: {e}") from e

        content = prefix.decode("utf-8", errors="replace")
        for pattern in self.PATTERNS:
            if pattern.search(content):
                return ScanResult(
                    scanner=self.name,
                    infected=True,
                    details="Suspicious patterns detected",
                    flagged=True,
                    flagged_reason=f"Matched pattern: {pattern.pattern}",
                )

        return ScanResult(scanner=self.name, infected=False, details="Heuristic scan passed")


def _read_prefix(path: Path, size: int) -> bytes:
    with open(path, "rb") as f:
        return f.read(size)


def build_scanner_chain(
    names: List[str],
    virustotal_api_key: Optional[str] = None,
    virustotal_base_url: str = "https://www.virustotal.com/api/v3",
    clamav_host: Optional[str] = None,
    clamav_port: int = 3310,
    timeout: float = 30.0,
) -> List[Scanner]:
    """
    Build scanners in the configured order.

    Unknown names are skipped with a warning. Backends without credentials
    are still built; they report themselves unavailable at scan time.
    """
    chain: List[Scanner] = []

    for name in names:
        if name == HashReputationScanner.name:
            chain.append(HashReputationScanner(virustotal_api_key, virustotal_base_url, timeout=timeout))
        elif name == UploadAndScanScanner.name:
            chain.append(UploadAndScanScanner(virustotal_api_key, virustotal_base_url, timeout=timeout))
        elif name == LocalDaemonScanner.name:
            chain.append(LocalDaemonScanner(clamav_host, clamav_port))
        elif name == HeuristicScanner.name:
            chain.append(HeuristicScanner())
        else:
            logger.warning(f"Ignoring unknown scan backend '{name}'")

    return chain
