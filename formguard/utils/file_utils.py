"""
File handle abstractions and filename utilities for upload validation.

The validators never touch the network or disk directly: every upload is seen through the small
FileHandle protocol (name, declared MIME type, size and bounded byte reads). Adapters are
provided for werkzeug FileStorage objects coming from Flask requests and for in-memory payloads.

Key Features:
- Runtime-checkable FileHandle protocol shared by signature and content validation
- werkzeug FileStorage adapter that restores the stream position after every read
- In-memory file handle for programmatic uploads and tests
- Filename sanitization with path traversal removal and a collision-avoiding timestamp suffix
- Secure storage name generation built on werkzeug.utils.secure_filename
"""

import os
import re
import secrets
import time
from typing import Any, Optional, Protocol, runtime_checkable

import structlog
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

logger = structlog.get_logger(__name__)

MAX_FILENAME_LENGTH = 255
DEFAULT_FILENAME = 'file'

UNSAFE_FILENAME_CHARACTERS = re.compile(r'[/\\:*?"<>|\x00-\x1f]')
LEADING_DOTS = re.compile(r'^\.+')


@runtime_checkable
class FileHandle(Protocol):
    """
    Minimal view of an uploaded file.

    Attributes:
        name: Client supplied file name, never trusted for storage paths
        content_type: Declared MIME type
        size: Size in bytes
    """

    name: str
    content_type: str
    size: int

    def read_bytes(self, offset: int, length: int) -> bytes:
        """Return at most ``length`` bytes starting at ``offset``."""
        ...


class InMemoryFile:
    """
    File handle over a bytes payload.

    ``size`` defaults to the payload length but may be given explicitly to describe
    a file whose full content is not held in memory.
    """

    def __init__(self, name: str, content_type: str, data: bytes = b'', size: Optional[int] = None):
        self.name = name
        self.content_type = content_type
        self.data = bytes(data)
        self.size = len(self.data) if size is None else size

    def read_bytes(self, offset: int, length: int) -> bytes:
        if offset < 0 or length <= 0:
            return b''
        return self.data[offset:offset + length]

    def __repr__(self) -> str:
        return f"InMemoryFile(name={self.name!r}, content_type={self.content_type!r}, size={self.size})"


class FileStorageHandle:
    """
    Adapter exposing a werkzeug FileStorage through the FileHandle protocol.

    Reads seek to the requested offset and put the stream back where they found it,
    so the caller can still save the upload after validation.
    """

    def __init__(self, storage: FileStorage):
        self.storage = storage
        self.name = storage.filename or ''
        self.content_type = storage.mimetype or storage.content_type or ''
        self.size = self._measure_size()

    def _measure_size(self) -> int:
        # The part's Content-Length header is client controlled; only the stream is trusted.
        stream = self.storage.stream
        position = stream.tell()
        try:
            stream.seek(0, os.SEEK_END)
            return stream.tell()
        finally:
            stream.seek(position)

    def read_bytes(self, offset: int, length: int) -> bytes:
        if offset < 0 or length <= 0:
            return b''

        stream = self.storage.stream
        position = stream.tell()
        try:
            stream.seek(offset)
            return stream.read(length)
        finally:
            stream.seek(position)

    def __repr__(self) -> str:
        return f"FileStorageHandle(name={self.name!r}, content_type={self.content_type!r}, size={self.size})"


def is_file_like(value: Any) -> bool:
    """Return True for uploads that must pass through sanitization untouched."""
    return isinstance(value, (FileStorage, FileHandle))


def as_file_handle(value: Any) -> FileHandle:
    """
    Return a FileHandle for an upload object.

    Args:
        value: A FileHandle implementation or a werkzeug FileStorage

    Returns:
        FileHandle view of the upload

    Raises:
        TypeError: When the value is not a supported upload object
    """
    if isinstance(value, FileStorage):
        return FileStorageHandle(value)
    if isinstance(value, FileHandle):
        return value
    raise TypeError(f"Unsupported file object: {type(value).__name__}")


def get_file_extension(filename: str) -> str:
    """Return the lower-cased extension including the dot, or an empty string."""
    _, extension = os.path.splitext(filename or '')
    return extension.lower()


def sanitize_filename(filename: str, timestamp: Optional[int] = None) -> str:
    """
    Produce a storage-safe file name that cannot escape its directory or overwrite another upload.

    Path separators and reserved characters become ``_``, ``..`` sequences are broken up,
    leading dots and surrounding whitespace are removed and the name is capped at 255
    characters keeping its extension. A ``_<epoch-ms>`` suffix is inserted before the
    extension (or appended when there is none).

    Args:
        filename: Client supplied name
        timestamp: Suffix value, defaults to the current time in milliseconds

    Returns:
        Sanitized file name
    """
    name = UNSAFE_FILENAME_CHARACTERS.sub('_', filename or '')
    name = name.replace('..', '_')
    name = LEADING_DOTS.sub('', name).strip()
    if not name:
        name = DEFAULT_FILENAME

    if len(name) > MAX_FILENAME_LENGTH:
        last_dot = name.rfind('.')
        extension = name[last_dot:] if last_dot > 0 else ''
        if len(extension) >= MAX_FILENAME_LENGTH:
            extension = ''
        name = name[:MAX_FILENAME_LENGTH - len(extension)] + extension

    if timestamp is None:
        timestamp = int(time.time() * 1000)

    last_dot = name.rfind('.')
    if last_dot > 0:
        return f"{name[:last_dot]}_{timestamp}{name[last_dot:]}"
    return f"{name}_{timestamp}"


def generate_secure_filename(original_name: str, user_id: Optional[str] = None) -> str:
    """
    Generate a unique storage name for an upload.

    Args:
        original_name: Client supplied name
        user_id: Optional owner identifier used as a prefix

    Returns:
        Name of the form ``[<user_id>_]<epoch-ms>_<8 hex>_<sanitized name>``
    """
    timestamp = int(time.time() * 1000)
    random_part = secrets.token_hex(4)
    safe_name = secure_filename(original_name or '') or DEFAULT_FILENAME

    parts = [str(timestamp), random_part, safe_name]
    if user_id:
        parts.insert(0, secure_filename(str(user_id)) or 'user')
    return '_'.join(parts)


__all__ = [
    'MAX_FILENAME_LENGTH',
    'FileHandle',
    'InMemoryFile',
    'FileStorageHandle',
    'is_file_like',
    'as_file_handle',
    'get_file_extension',
    'sanitize_filename',
    'generate_secure_filename'
]
