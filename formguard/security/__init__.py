"""
File upload security: type registry, signature checks, content scanning and scored verdicts.
"""

from formguard.security.content_scanner import FileContentScanner, ScanResult
from formguard.security.file_types import (
    SECURE_FILE_TYPES,
    FileSignatureValidator,
    FileTypeDescriptor,
    get_secure_extension,
    validate_file_type_consistency,
)
from formguard.security.file_upload import (
    FileUploadConfig,
    FileUploadValidator,
    FileValidationResult,
    get_standard_upload_config,
    is_upload_path_allowed,
    validate_file,
    validate_upload_config,
)

__all__ = [
    'FileContentScanner',
    'ScanResult',
    'SECURE_FILE_TYPES',
    'FileSignatureValidator',
    'FileTypeDescriptor',
    'get_secure_extension',
    'validate_file_type_consistency',
    'FileUploadConfig',
    'FileUploadValidator',
    'FileValidationResult',
    'get_standard_upload_config',
    'is_upload_path_allowed',
    'validate_file',
    'validate_upload_config'
]
