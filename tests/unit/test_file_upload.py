"""
Unit tests for FileUploadValidator scoring, upload policy helpers and filename handling.
"""

import io
from unittest.mock import Mock

import pytest
from freezegun import freeze_time
from werkzeug.datastructures import FileStorage

from formguard.security.content_scanner import FileContentScanner, ScanResult
from formguard.security.file_types import MEGABYTE, ConsistencyResult, FileSignatureValidator
from formguard.security.file_upload import (
    FILE_SIZE_LIMITS,
    FileUploadConfig,
    FileUploadValidator,
    FileValidationResult,
    get_standard_upload_config,
    is_upload_path_allowed,
    validate_upload_config,
)
from formguard.utils.file_utils import generate_secure_filename, sanitize_filename
from tests.fixtures.file_samples import (
    JPEG_BYTES,
    MALICIOUS_SVG_BYTES,
    PE_HEADER,
    PNG_BYTES,
    make_file,
)

TIMESTAMP_MS = 1_700_000_000_000


@pytest.fixture
def upload_validator(clock):
    return FileUploadValidator(clock=clock)


@pytest.mark.unit
class TestFileUploadValidator:
    """Score arithmetic and verdicts of FileUploadValidator."""

    def test_clean_png_is_accepted(self, upload_validator):
        result = upload_validator.validate_file(make_file())

        assert result.is_valid
        assert result.security_score == 100
        assert result.errors == []
        assert result.warnings == []
        assert result.sanitized_name == f"photo_{TIMESTAMP_MS}.png"

    def test_config_size_violation(self, upload_validator):
        result = upload_validator.validate_file(make_file(size=6 * MEGABYTE))

        assert result.errors == ["File size 6.00MB exceeds maximum allowed size of 5.00MB"]
        assert result.security_score == 70
        assert result.is_valid is False
        assert result.size_only_failure is True

    def test_empty_file(self, upload_validator):
        result = upload_validator.validate_file(make_file(data=b''))

        assert result.errors == [
            "File is empty",
            "File signature does not match declared MIME type - possible file spoofing attempt"
        ]
        # 100 - 50 - 60 - 5 * 2
        assert result.security_score == 0
        assert result.size_only_failure is False

    def test_spoofed_type(self, upload_validator):
        result = upload_validator.validate_file(make_file('photo.png', 'image/png', JPEG_BYTES))

        assert result.security_score == 40
        assert result.is_valid is False

    def test_secondary_allow_list_only_warns(self, upload_validator):
        config = FileUploadConfig(allowed_types=('application/pdf',))

        result = upload_validator.validate_file(make_file(), config)

        assert result.is_valid
        assert result.warnings == ["File type image/png not in legacy allowedTypes list"]
        assert result.security_score == 95

    def test_malicious_svg(self, upload_validator):
        result = upload_validator.validate_file(make_file('icon.svg', 'image/svg+xml', MALICIOUS_SVG_BYTES))

        assert result.errors == ["Potentially malicious content detected: <script"]
        assert result.security_score == 50
        assert result.is_valid is False

    def test_executable_header_under_image_type(self, upload_validator):
        result = upload_validator.validate_file(make_file('photo.png', 'image/png', PE_HEADER))

        # Signature mismatch -60, executable -70, two errors -10
        assert result.errors == [
            "File signature does not match declared MIME type - possible file spoofing attempt",
            "File contains executable code"
        ]
        assert result.security_score == 0

    def test_executable_extension(self, upload_validator):
        result = upload_validator.validate_file(make_file('photo.png.exe', 'image/png', PNG_BYTES))

        assert "Executable file extension .exe is not allowed" in result.errors
        assert result.security_score == 0

    def test_allow_executables_skips_extension_denylist(self, upload_validator):
        config = FileUploadConfig(allow_executables=True)

        result = upload_validator.validate_file(make_file('photo.png.exe', 'image/png', PNG_BYTES), config)

        assert result.errors == ["File extension must match MIME type image/png. Expected: .png"]
        assert result.security_score == 40

    def test_warnings_alone_can_fail_a_file(self, clock):
        signature_validator = Mock(spec=FileSignatureValidator)
        signature_validator.check_consistency.return_value = ConsistencyResult(True, [])
        content_scanner = Mock(spec=FileContentScanner)
        content_scanner.scan.return_value = ScanResult(
            warnings=['first', 'second', 'third'],
            security_score_delta=-45
        )
        validator = FileUploadValidator(signature_validator, content_scanner, clock=clock)

        result = validator.validate_file(make_file())

        # 100 - 45 - 2 * 3
        assert result.errors == []
        assert result.security_score == 49
        assert result.is_valid is False

    def test_very_large_file_warning(self, clock):
        signature_validator = Mock(spec=FileSignatureValidator)
        signature_validator.check_consistency.return_value = ConsistencyResult(True, [])
        validator = FileUploadValidator(signature_validator, FileContentScanner(), clock=clock)
        config = FileUploadConfig(max_size=200 * MEGABYTE)

        result = validator.validate_file(make_file(size=150 * MEGABYTE), config)

        assert result.warnings == [
            "File is very large and may impact performance",
            "File too large for content scanning - relying on signature validation only"
        ]
        assert result.security_score == 90
        assert result.is_valid

    def test_werkzeug_upload_is_accepted_and_stream_preserved(self, upload_validator):
        stream = io.BytesIO(PNG_BYTES)
        storage = FileStorage(stream=stream, filename='photo.png', content_type='image/png')

        result = upload_validator.validate_file(storage)

        assert result.is_valid
        assert stream.tell() == 0

    def test_declared_part_length_is_not_trusted(self, upload_validator):
        stream = io.BytesIO(PNG_BYTES + b'\x00' * 200_000)
        storage = FileStorage(stream=stream, filename='photo.png', content_type='image/png', content_length=10)

        result = upload_validator.validate_file(storage, FileUploadConfig(max_size=1024))

        assert result.is_valid is False
        assert result.errors == ["File size 0.19MB exceeds maximum allowed size of 0.00MB"]
        assert stream.tell() == 0

    def test_executable_extension_event_truncates_client_filename(self, upload_validator, mocker):
        log_event = mocker.patch('formguard.security.file_upload.log_security_event')

        upload_validator.validate_file(make_file('b' * 10_000 + '.png.exe'))

        assert log_event.call_args.kwargs['filename'] == 'b' * 50 + '...'

    def test_unsupported_object_fails_closed(self, upload_validator):
        result = upload_validator.validate_file('not a file')

        assert result.errors == ["File validation failed"]
        assert result.security_score == 0

    def test_validate_files_keys_results_by_field(self, upload_validator):
        results = upload_validator.validate_files({
            'avatar': make_file(),
            'cv': make_file('cv.pdf', 'application/pdf', JPEG_BYTES)
        })

        assert results['avatar'].is_valid
        assert not results['cv'].is_valid

    def test_result_serialization(self):
        result = FileValidationResult(errors=['x'], security_score=40, sanitized_name='a_1.png')

        assert result.to_dict() == {
            'is_valid': False,
            'errors': ['x'],
            'warnings': [],
            'sanitized_name': 'a_1.png',
            'security_score': 40
        }


@pytest.mark.unit
class TestUploadPolicy:

    def test_default_config(self):
        config = FileUploadConfig()

        assert config.max_size == 5 * MEGABYTE
        assert 'image/jpg' in config.allowed_types
        assert config.allow_executables is False

    @pytest.mark.parametrize('category, size', [
        ('image', 8 * MEGABYTE),
        ('document', 10 * MEGABYTE),
        ('archive', 50 * MEGABYTE),
        ('unknown', FILE_SIZE_LIMITS['default']),
    ])
    def test_for_category(self, category, size):
        assert FileUploadConfig.for_category(category).max_size == size

    def test_from_settings(self, testing_settings):
        assert FileUploadConfig.from_settings(testing_settings).max_size == 5 * MEGABYTE

    def test_validator_from_settings_applies_scan_ceiling(self, testing_settings, clock):
        testing_settings.CONTENT_SCAN_MAX_FILE_SIZE = 16
        validator = FileUploadValidator.from_settings(testing_settings, clock=clock)

        result = validator.validate_file(make_file('icon.svg', 'image/svg+xml', MALICIOUS_SVG_BYTES))

        assert validator.content_scanner.max_scan_size == 16
        assert result.warnings == ["File too large for content scanning - relying on signature validation only"]
        assert result.is_valid

    def test_standard_upload_config(self):
        config = get_standard_upload_config()

        assert config.max_size == 10 * MEGABYTE
        assert 'image/heic' in config.allowed_types
        assert 'text/plain' not in config.allowed_types

    def test_validate_upload_config(self):
        assert validate_upload_config(FileUploadConfig()) == []
        assert validate_upload_config(
            FileUploadConfig(max_size=200 * MEGABYTE, allowed_types=(), allow_executables=True)
        ) == [
            "Maximum file size exceeds recommended limit of 100MB",
            "No allowed file types specified",
            "Allowing executable files poses security risks"
        ]

    @pytest.mark.parametrize('path, allowed', [
        ('portfolio', True),
        ('tags/brands/2024', True),
        ('/posts/', True),
        ('uploads', False),
        ('portfolio/../../etc', False),
        ('..\\windows', False),
        ('~/secrets', False),
        ('', False),
        ('portfolio-extra', False),
    ])
    def test_is_upload_path_allowed(self, path, allowed):
        assert is_upload_path_allowed(path) is allowed


@pytest.mark.unit
class TestFilenameHandling:

    @pytest.mark.parametrize('original, expected', [
        ('photo.png', 'photo_1700000000000.png'),
        ('../../etc/passwd', '____etc_passwd_1700000000000'),
        ('..\\boot.ini', '__boot_1700000000000.ini'),
        ('.htaccess', 'htaccess_1700000000000'),
        ('  report.pdf  ', 'report_1700000000000.pdf'),
        ('a<b>c?.txt', 'a_b_c__1700000000000.txt'),
        ('', 'file_1700000000000'),
        ('README', 'README_1700000000000'),
    ])
    def test_sanitize_filename(self, original, expected):
        assert sanitize_filename(original, timestamp=TIMESTAMP_MS) == expected

    def test_sanitize_filename_caps_length_keeping_extension(self):
        result = sanitize_filename('a' * 300 + '.png', timestamp=TIMESTAMP_MS)

        assert result == 'a' * 251 + f"_{TIMESTAMP_MS}.png"

    @freeze_time('2024-01-01 00:00:00')
    def test_sanitize_filename_defaults_to_current_time(self):
        assert sanitize_filename('photo.png') == 'photo_1704067200000.png'

    @freeze_time('2024-01-01 00:00:00')
    def test_generate_secure_filename(self):
        name = generate_secure_filename('../My Photo.png', user_id='u42')

        owner, timestamp, random_part, safe_name = name.split('_', 3)
        assert owner == 'u42'
        assert timestamp == '1704067200000'
        assert len(random_part) == 8
        assert safe_name == 'My_Photo.png'

    def test_generate_secure_filename_is_unique(self):
        assert generate_secure_filename('a.png') != generate_secure_filename('a.png')
