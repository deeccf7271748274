"""
Abuse resistance properties of the rate limiter.

Safety: no window ever admits more than its limit. Fairness: one client exhausting its
limit never affects another. Repeat offenders get longer windows, and abandoned records
do not accumulate.
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from formguard.ratelimit.backends import (
    DistributedRateLimitBackend,
    InMemoryRateLimitBackend,
    RateLimitPolicy,
)
from formguard.ratelimit.limiter import RateLimiter
from tests.fixtures.clock import FIXED_NOW

POLICIES = {'formSubmission': RateLimitPolicy(5, 60)}


@pytest.fixture
def backend(clock):
    return InMemoryRateLimitBackend(policies=POLICIES, grace_period_seconds=300, penalty_threshold=3, clock=clock)


@pytest.mark.security
class TestWindowSafety:

    @pytest.mark.parametrize('attempts', [1, 5, 6, 50])
    def test_admitted_requests_never_exceed_the_limit(self, backend, attempts):
        results = [backend.check('attacker', 'formSubmission') for _ in range(attempts)]

        assert sum(result.success for result in results) == min(attempts, 5)
        assert all(result.remaining >= 0 for result in results)

    def test_sixth_request_is_denied(self, backend):
        for _ in range(5):
            backend.check('attacker', 'formSubmission')

        assert backend.check('attacker', 'formSubmission').success is False

    def test_concurrent_burst_is_bounded(self, clock):
        backend = InMemoryRateLimitBackend(policies={'formSubmission': RateLimitPolicy(25, 60)}, clock=clock)

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(lambda _: backend.check('burst', 'formSubmission'), range(200)))

        assert sum(result.success for result in results) == 25

    def test_well_behaved_client_gets_a_full_window_each_time(self, backend, clock):
        admitted = 0
        for _ in range(4):
            for _ in range(5):
                admitted += backend.check('steady', 'formSubmission').success
            clock.advance(61)

        assert admitted == 20

    def test_distributed_backend_is_bounded(self):
        backend = DistributedRateLimitBackend('memory://', policies=POLICIES)

        results = [backend.check('attacker', 'formSubmission') for _ in range(6)]

        assert [result.success for result in results] == [True] * 5 + [False]


@pytest.mark.security
class TestFairness:

    def test_exhausted_client_does_not_affect_others(self, backend):
        for _ in range(20):
            backend.check('attacker', 'formSubmission')

        results = [backend.check(f'client-{n}', 'formSubmission') for n in range(10)]

        assert all(result.success and result.remaining == 4 for result in results)

    def test_interleaved_clients_each_get_their_full_limit(self, backend):
        admitted = {'a': 0, 'b': 0, 'c': 0}
        for _ in range(8):
            for identifier in admitted:
                admitted[identifier] += backend.check(identifier, 'formSubmission').success

        assert admitted == {'a': 5, 'b': 5, 'c': 5}

    def test_limit_types_are_counted_separately(self, clock):
        backend = InMemoryRateLimitBackend(
            policies={'formSubmission': RateLimitPolicy(1, 60), 'fileUpload': RateLimitPolicy(1, 60)},
            clock=clock
        )

        assert backend.check('client', 'formSubmission').success
        assert backend.check('client', 'fileUpload').success
        assert backend.check('client', 'formSubmission').success is False

    @pytest.mark.parametrize('spoofed_header', [
        '203.0.113.7, 198.51.100.9',
        ' 203.0.113.7 ',
    ])
    def test_forwarded_chain_resolves_to_first_address(self, spoofed_header):
        assert RateLimiter.get_client_identifier({'X-Forwarded-For': spoofed_header}) == 'ip_203.0.113.7'


@pytest.mark.security
class TestRepeatOffenders:

    def test_penalty_extends_the_window(self, backend):
        for _ in range(5):
            backend.check('attacker', 'formSubmission')

        denials = [backend.check('attacker', 'formSubmission') for _ in range(3)]

        assert denials[0].reset.timestamp() == FIXED_NOW + 60
        assert denials[2].reset.timestamp() == FIXED_NOW + 120

    def test_penalized_client_stays_blocked_after_normal_window(self, backend, clock):
        for _ in range(8):
            backend.check('attacker', 'formSubmission')

        clock.advance(90)

        assert backend.check('attacker', 'formSubmission').success is False

    def test_penalty_is_lifted_after_extended_window(self, backend, clock):
        for _ in range(8):
            backend.check('attacker', 'formSubmission')

        clock.advance(121)

        assert backend.check('attacker', 'formSubmission').success is True


@pytest.mark.security
class TestRecordEviction:

    def test_abandoned_records_are_evicted(self, backend, clock):
        for n in range(100):
            backend.check(f'drive-by-{n}', 'formSubmission')

        clock.advance(60 + 300 + 1)

        assert backend.get_stats() == {'total_entries': 0, 'active_entries': 0}

    def test_records_survive_the_grace_period(self, backend, clock):
        backend.check('client', 'formSubmission')

        clock.advance(60 + 299)

        assert backend.get_stats() == {'total_entries': 1, 'active_entries': 0}
