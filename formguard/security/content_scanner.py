"""
Bounded content scanning for uploaded files.

The scanner is not a malware engine: it inspects a small prefix of an upload for markup and
script constructs that would execute when the file is served back to a browser (mostly SVG
and PDF payloads), and for native executable headers smuggled under an innocent MIME type.

Key Features:
- Pattern scan of the first 4096 bytes, decoded leniently so binary data never raises
- SVG-specific vectors such as foreignObject, use and xlink:href javascript targets
- Unconditional PE and ELF header detection on the first 64 bytes
- Size ceiling above which scanning is skipped in favour of signature validation
- Security audit logging of every finding
"""

from dataclasses import dataclass, field
from typing import List, Mapping, Optional

import structlog

from formguard.monitoring.logging import log_security_event, truncate_payload
from formguard.monitoring.metrics import file_validation_counter
from formguard.security.file_types import FileTypeDescriptor, get_file_type_descriptor
from formguard.utils.file_utils import FileHandle

logger = structlog.get_logger(__name__)

MEGABYTE = 1024 * 1024

CONTENT_SCAN_MAX_FILE_SIZE = 20 * MEGABYTE
SCAN_SAMPLE_SIZE = 4096
EXECUTABLE_HEADER_SIZE = 64

MALICIOUS_CONTENT_PENALTY = 50
EXECUTABLE_CONTENT_PENALTY = 70
SCAN_FAILURE_PENALTY = 5

SUSPICIOUS_PATTERNS = (
    '<script',
    'javascript:',
    'vbscript:',
    'data:text/html',
    'onload=',
    'onerror=',
    'onclick=',
    'onmouseover=',
    'onfocus=',
    'onanimationend=',
    'onbegin=',
    'onend=',
    'onrepeat=',
    'eval(',
    'document.write',
    'innerhtml',
    'outerhtml',
    '<foreignobject',
    '<use',
    'xlink:href="javascript:',
    'href="javascript:',
    'data:application/',
    'data:text/javascript',
    'data:text/vbscript',
)

PE_SIGNATURE = b'MZ'
ELF_SIGNATURE = b'\x7fELF'


@dataclass
class ScanResult:
    """
    Findings of one content scan.

    ``security_score_delta`` is zero or negative and is added to the file's score
    by the upload validator.
    """

    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    security_score_delta: int = 0
    skipped: bool = False

    def to_dict(self) -> dict:
        return {
            'errors': list(self.errors),
            'warnings': list(self.warnings),
            'security_score_delta': self.security_score_delta,
            'skipped': self.skipped
        }


def detect_executable(header: bytes) -> Optional[str]:
    """
    Identify a native executable from its leading bytes.

    A bare ``MZ`` prefix is only trusted once a full 64-byte DOS header is present,
    since two bytes alone occur in ordinary text.

    Returns:
        ``'pe'``, ``'elf'`` or None
    """
    if len(header) >= EXECUTABLE_HEADER_SIZE and header.startswith(PE_SIGNATURE):
        return 'pe'
    if header.startswith(ELF_SIGNATURE):
        return 'elf'
    return None


class FileContentScanner:
    """
    Scans a bounded prefix of an upload for embedded script and executable content.

    Args:
        max_scan_size: Files larger than this are not scanned at all
        registry: MIME registry used to decide whether pattern scanning applies
    """

    def __init__(
        self,
        max_scan_size: int = CONTENT_SCAN_MAX_FILE_SIZE,
        registry: Optional[Mapping[str, FileTypeDescriptor]] = None
    ):
        self.max_scan_size = max_scan_size
        self.registry = registry
        self.patterns = tuple(pattern.lower() for pattern in SUSPICIOUS_PATTERNS)

    def find_suspicious_pattern(self, sample: bytes) -> Optional[str]:
        """Return the first suspicious pattern found in the sample, if any."""
        text = sample.decode('utf-8', errors='replace').lower()
        for pattern in self.patterns:
            if pattern in text:
                return pattern
        return None

    def scan(self, file: FileHandle, scan_content: Optional[bool] = None) -> ScanResult:
        """
        Scan an upload.

        Args:
            file: Upload to scan
            scan_content: Whether to run the pattern scan; defaults to the registry
                flag of the declared MIME type. The executable check always runs.

        Returns:
            ScanResult with findings and the score penalty to apply
        """
        result = ScanResult()

        if file.size > self.max_scan_size:
            result.skipped = True
            result.warnings.append(
                "File too large for content scanning - relying on signature validation only"
            )
            file_validation_counter.labels(
                validation_type='content_scan',
                result='skipped',
                error_type='too_large'
            ).inc()
            return result

        if scan_content is None:
            descriptor = get_file_type_descriptor(file.content_type, self.registry)
            scan_content = bool(descriptor and descriptor.scan_content)

        try:
            if scan_content:
                sample = file.read_bytes(0, SCAN_SAMPLE_SIZE)
                pattern = self.find_suspicious_pattern(sample)
                if pattern is not None:
                    result.errors.append(f"Potentially malicious content detected: {pattern}")
                    result.security_score_delta -= MALICIOUS_CONTENT_PENALTY
                    log_security_event(
                        'malicious_file_content',
                        severity='high',
                        description="Suspicious pattern found in uploaded file",
                        filename=truncate_payload(file.name),
                        mime_type=file.content_type,
                        pattern=pattern
                    )

            header = file.read_bytes(0, EXECUTABLE_HEADER_SIZE)
            executable_format = detect_executable(header)
            if executable_format is not None:
                result.errors.append("File contains executable code")
                result.security_score_delta -= EXECUTABLE_CONTENT_PENALTY
                log_security_event(
                    'executable_upload',
                    severity='critical',
                    description="Native executable header found in uploaded file",
                    filename=truncate_payload(file.name),
                    mime_type=file.content_type,
                    executable_format=executable_format
                )
        except Exception as e:
            logger.warning(
                "Content scan failed",
                filename=truncate_payload(file.name),
                error=str(e)
            )
            result.warnings.append("Could not scan file content")
            result.security_score_delta -= SCAN_FAILURE_PENALTY

        file_validation_counter.labels(
            validation_type='content_scan',
            result='failed' if result.errors else 'passed',
            error_type='malicious_content' if result.errors else 'none'
        ).inc()
        return result


__all__ = [
    'CONTENT_SCAN_MAX_FILE_SIZE',
    'SCAN_SAMPLE_SIZE',
    'EXECUTABLE_HEADER_SIZE',
    'SUSPICIOUS_PATTERNS',
    'ScanResult',
    'FileContentScanner',
    'detect_executable'
]
