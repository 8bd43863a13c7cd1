import logging
import socket
import struct
from dataclasses import dataclass
from typing import Protocol, Sequence

logger = logging.getLogger(__name__)

EICAR_MARKER = b"EICAR-STANDARD-ANTIVIRUS-TEST-FILE"
CHUNK_SIZE = 64 * 1024


class ScannerUnavailable(Exception):
    pass


@dataclass(frozen=True)
class ScanResult:
    clean: bool
    signature: str | None = None


@dataclass(frozen=True)
class ScanVerdict:
    clean: bool
    rejected_name: str | None = None
    signature: str | None = None


class Scanner(Protocol):
    def scan(self, data: bytes) -> ScanResult: ...


class ClamdScanner:
    """Talks to clamd with the INSTREAM command over TCP."""

    def __init__(self, host: str = "localhost", port: int = 3310, timeout: float = 30.0):
        self.host = host
        self.port = port
        self.timeout = timeout

    def scan(self, data: bytes) -> ScanResult:
        try:
            with socket.create_connection((self.host, self.port), timeout=self.timeout) as sock:
                sock.sendall(b"zINSTREAM\0")
                for start in range(0, len(data), CHUNK_SIZE):
                    chunk = data[start:start + CHUNK_SIZE]
                    sock.sendall(struct.pack("!L", len(chunk)) + chunk)
                sock.sendall(struct.pack("!L", 0))
                reply = self._read_reply(sock)
        except OSError as exc:
            raise ScannerUnavailable(f"clamd unreachable at {self.host}:{self.port}: {exc}") from exc
        return self.parse_reply(reply)

    @staticmethod
    def _read_reply(sock) -> str:
        chunks = []
        while True:
            chunk = sock.recv(4096)
            if not chunk:
                break
            chunks.append(chunk)
            if chunk.endswith(b"\0"):
                break
        return b"".join(chunks).rstrip(b"\0").decode("utf-8", errors="replace").strip()

    @staticmethod
    def parse_reply(reply: str) -> ScanResult:
        # "stream: OK" / "stream: Eicar-Signature FOUND" / "... ERROR"
        if reply.endswith("FOUND"):
            signature = reply.split(":", 1)[-1].strip()[: -len("FOUND")].strip()
            return ScanResult(clean=False, signature=signature or "unknown")
        if reply.endswith("OK"):
            return ScanResult(clean=True)
        raise ScannerUnavailable(f"unexpected clamd reply: {reply!r}")


def heuristic_scan(data: bytes) -> ScanResult:
    """Best-effort check against known malicious byte patterns."""
    if EICAR_MARKER in data:
        return ScanResult(clean=False, signature="EICAR-Test-File")
    return ScanResult(clean=True)


class ScanGate:
    def __init__(self, scanner: Scanner | None, audit=None, enabled: bool = True):
        self.scanner = scanner
        self.audit = audit
        self.enabled = enabled and scanner is not None

    def scan(self, buffers: Sequence[tuple[str, bytes]]) -> ScanVerdict:
        """Scan buffers in order, stopping at the first infected one."""
        if not self.enabled:
            logger.info("Virus scanning disabled, running heuristic checks only")
        for name, data in buffers:
            result = self._scan_one(name, data)
            if not result.clean:
                logger.warning("Rejected %s: %s", name, result.signature)
                if self.audit is not None:
                    self.audit.record(
                        "virus_detected",
                        resource_id=name,
                        resource_type="file",
                        filename=name,
                        signature=result.signature,
                    )
                return ScanVerdict(clean=False, rejected_name=name, signature=result.signature)
        return ScanVerdict(clean=True)

    def _scan_one(self, name: str, data: bytes) -> ScanResult:
        if not self.enabled:
            return heuristic_scan(data)
        try:
            return self.scanner.scan(data)
        except ScannerUnavailable as exc:
            logger.warning("Scanner unavailable, falling back to heuristic check for %s: %s", name, exc)
            return heuristic_scan(data)
