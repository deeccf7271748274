"""
Global pytest configuration and fixtures for the formguard test suite.

Key Components:
- Controllable clock (tests.fixtures.clock) driving rate limiter windows, penalties and eviction without sleeping
- In-memory rate limit backend and limiter facade fixtures
- Settings stand-ins for each environment
- Flask application wired through init_app with guarded test routes
"""

from types import SimpleNamespace

import pytest
from flask import Flask, g, jsonify

from formguard.decorators import guarded_submission, init_app
from formguard.pipeline import SubmissionGuard
from formguard.ratelimit.backends import InMemoryRateLimitBackend, RateLimitPolicy
from formguard.ratelimit.limiter import RateLimiter
from formguard.security.file_upload import FileUploadConfig, FileUploadValidator
from tests.fixtures.clock import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_backend(clock):
    return InMemoryRateLimitBackend(grace_period_seconds=300, penalty_threshold=3, clock=clock)


@pytest.fixture
def limiter(memory_backend, clock):
    return RateLimiter(backup=memory_backend, admin_operations_allowed=True, clock=clock)


@pytest.fixture
def testing_settings():
    """Settings equivalent to TestingConfig without touching the process environment."""
    return SimpleNamespace(
        ENVIRONMENT='testing',
        RATELIMIT_STORAGE_URI='',
        RATELIMIT_GRACE_PERIOD_SECONDS=300,
        RATELIMIT_PENALTY_THRESHOLD=3,
        UPLOAD_MAX_SIZE=5 * 1024 * 1024,
        CONTENT_SCAN_MAX_FILE_SIZE=20 * 1024 * 1024,
        LOG_LEVEL='INFO',
        LOG_FORMAT='console',
        distributed_rate_limiting_enabled=False,
        admin_operations_allowed=True
    )


@pytest.fixture
def production_settings():
    return SimpleNamespace(
        ENVIRONMENT='production',
        RATELIMIT_STORAGE_URI='memory://',
        RATELIMIT_GRACE_PERIOD_SECONDS=300,
        RATELIMIT_PENALTY_THRESHOLD=3,
        UPLOAD_MAX_SIZE=5 * 1024 * 1024,
        CONTENT_SCAN_MAX_FILE_SIZE=20 * 1024 * 1024,
        LOG_LEVEL='INFO',
        LOG_FORMAT='json',
        distributed_rate_limiting_enabled=True,
        admin_operations_allowed=False
    )


@pytest.fixture
def guard(clock):
    backend = InMemoryRateLimitBackend(
        policies={'formSubmission': RateLimitPolicy(2, 60), 'fileUpload': RateLimitPolicy(5, 60)},
        clock=clock
    )
    return SubmissionGuard(
        rate_limiter=RateLimiter(backup=backend, admin_operations_allowed=True, clock=clock),
        upload_validator=FileUploadValidator(clock=clock)
    )


@pytest.fixture
def app(guard):
    """Flask application with guarded submission routes."""
    app = Flask(__name__)
    app.config['TESTING'] = True
    init_app(app, guard=guard)

    @app.route('/contact', methods=['POST'])
    @guarded_submission()
    def contact():
        return jsonify(g.sanitized_form)

    @app.route('/upload', methods=['POST'])
    @guarded_submission(limit_type='fileUpload')
    def upload():
        return jsonify({
            'form': g.sanitized_form,
            'files': sorted(g.validated_files),
            'scores': {name: result.security_score for name, result in g.file_results.items()}
        })

    @app.route('/avatar', methods=['POST'])
    @guarded_submission(limit_type='fileUpload', upload_config=FileUploadConfig(max_size=32))
    def avatar():
        return jsonify({'files': sorted(g.validated_files)})

    return app


@pytest.fixture
def client(app):
    return app.test_client()
