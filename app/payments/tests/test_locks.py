"""
Tests for distributed locking utilities.

Tests the DistributedLock class which serializes refund processing per
payment across workers.
"""

import pytest

from payments.exceptions import LockAcquisitionError
from payments.locks import DistributedLock


class TestDistributedLock:
    """Tests for DistributedLock class."""

    def test_acquire_sets_key_with_ttl(self, mock_redis):
        """Should SET NX the prefixed key with an expiry."""
        lock = DistributedLock("refund:payment:1", ttl=60, blocking=False)

        assert lock.acquire() is True
        assert lock.is_held is True
        args, kwargs = mock_redis.set.call_args
        assert args[0] == "lock:payments:refund:payment:1"
        assert kwargs == {"nx": True, "ex": 60}

    def test_tokens_are_unique(self, mock_redis):
        """Each acquisition owns a distinct token."""
        first = DistributedLock("a", blocking=False)
        second = DistributedLock("b", blocking=False)

        first.acquire()
        second.acquire()

        assert first._token != second._token

    def test_non_blocking_raises_when_held(self, mock_redis):
        mock_redis.set.return_value = False
        lock = DistributedLock("refund:payment:1", blocking=False)

        with pytest.raises(LockAcquisitionError) as exc_info:
            lock.acquire()

        assert exc_info.value.details["key"] == "lock:payments:refund:payment:1"
        assert exc_info.value.status_code == 409
        assert lock.is_held is False

    def test_blocking_polls_until_acquired(self, mock_redis, no_backoff_sleep):
        mock_redis.set.side_effect = [False, False, True]
        lock = DistributedLock("refund:payment:1", timeout=5.0)

        assert lock.acquire() is True
        assert mock_redis.set.call_count == 3
        assert no_backoff_sleep.call_count == 2

    def test_blocking_timeout_raises(self, mock_redis):
        mock_redis.set.return_value = False
        lock = DistributedLock("refund:payment:1", timeout=0)

        with pytest.raises(LockAcquisitionError) as exc_info:
            lock.acquire()

        assert "within 0s" in exc_info.value.message
        assert lock.is_held is False

    def test_release_runs_owner_check_script(self, mock_redis):
        lock = DistributedLock("refund:payment:1", blocking=False)
        lock.acquire()
        token = lock._token

        assert lock.release() is True
        mock_redis.eval.assert_called_once_with(
            DistributedLock.RELEASE_SCRIPT,
            1,
            "lock:payments:refund:payment:1",
            token,
        )
        assert lock.is_held is False

    def test_release_of_expired_lock(self, mock_redis):
        """A lock re-acquired elsewhere after expiry is left alone."""
        mock_redis.eval.return_value = 0
        lock = DistributedLock("refund:payment:1", blocking=False)
        lock.acquire()

        assert lock.release() is False

    def test_release_without_acquire(self, mock_redis):
        lock = DistributedLock("refund:payment:1")

        assert lock.release() is False
        mock_redis.eval.assert_not_called()

    def test_context_manager_releases_on_error(self, mock_redis):
        with pytest.raises(ValueError):
            with DistributedLock("refund:payment:1", blocking=False) as lock:
                assert lock.is_held is True
                raise ValueError("gateway exploded")

        mock_redis.eval.assert_called_once()
        assert lock.is_held is False
