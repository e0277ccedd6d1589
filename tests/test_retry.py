"""
Tests for retry logic on lock contention.
"""

import sqlite3

import pytest

from mcrun.retry import RetryError, exponential_backoff, is_transient_error


class TestExponentialBackoff:
    """Test exponential backoff decorator."""

    def test_success_on_first_try(self):
        """Function that succeeds immediately should not retry."""
        call_count = [0]

        @exponential_backoff(max_retries=3, base_delay=0.01)
        def succeeds():
            call_count[0] += 1
            return "success"

        assert succeeds() == "success"
        assert call_count[0] == 1

    def test_retry_then_succeed(self):
        """Function that fails then succeeds should retry."""
        call_count = [0]

        @exponential_backoff(max_retries=3, base_delay=0.01)
        def fails_twice():
            call_count[0] += 1
            if call_count[0] < 3:
                raise sqlite3.OperationalError("database is locked")
            return "success"

        assert fails_twice() == "success"
        assert call_count[0] == 3

    def test_all_retries_exhausted(self):
        """Should raise RetryError after all attempts fail."""
        call_count = [0]

        @exponential_backoff(max_retries=2, base_delay=0.01)
        def always_fails():
            call_count[0] += 1
            raise sqlite3.OperationalError("database is locked")

        with pytest.raises(RetryError):
            always_fails()

        assert call_count[0] == 3  # Initial + 2 retries

    def test_zero_retries(self):
        @exponential_backoff(max_retries=0, base_delay=0.01)
        def always_fails():
            raise sqlite3.OperationalError("database is locked")

        with pytest.raises(RetryError):
            always_fails()

    def test_only_catches_specified_exceptions(self):
        """Should only retry on specified exception types."""
        call_count = [0]

        @exponential_backoff(max_retries=3, base_delay=0.01, exceptions=(sqlite3.OperationalError,))
        def raises_value_error():
            call_count[0] += 1
            raise ValueError("Not retryable")

        with pytest.raises(ValueError):
            raises_value_error()

        assert call_count[0] == 1

    def test_predicate_rejects_permanent_errors(self):
        """Errors the predicate rejects are re-raised untouched."""
        call_count = [0]

        @exponential_backoff(
            max_retries=3,
            base_delay=0.01,
            exceptions=(sqlite3.OperationalError,),
            should_retry=is_transient_error,
        )
        def cannot_open():
            call_count[0] += 1
            raise sqlite3.OperationalError("unable to open database file")

        with pytest.raises(sqlite3.OperationalError):
            cannot_open()

        assert call_count[0] == 1

    def test_exponential_delay(self):
        """Delay should increase exponentially."""
        delays = []

        @exponential_backoff(
            max_retries=3,
            base_delay=0.01,
            exponential_base=2.0,
            on_retry=lambda attempt, exception, delay: delays.append(delay),
        )
        def always_fails():
            raise sqlite3.OperationalError("database is locked")

        with pytest.raises(RetryError):
            always_fails()

        assert delays == [0.01, 0.02, 0.04]

    def test_max_delay_cap(self):
        """Delay should not exceed max_delay."""
        delays = []

        @exponential_backoff(
            max_retries=3,
            base_delay=0.01,
            max_delay=0.02,
            exponential_base=3.0,
            on_retry=lambda attempt, exception, delay: delays.append(delay),
        )
        def always_fails():
            raise sqlite3.OperationalError("database is locked")

        with pytest.raises(RetryError):
            always_fails()

        assert delays == [0.01, 0.02, 0.02]

    def test_preserves_function_metadata(self):
        @exponential_backoff(max_retries=1)
        def documented():
            """Docstring."""

        assert documented.__name__ == "documented"
        assert documented.__doc__ == "Docstring."


class TestTransientErrors:
    """Test classification of storage errors."""

    def test_lock_errors_are_transient(self):
        assert is_transient_error(sqlite3.OperationalError("database is locked"))
        assert is_transient_error(Exception("(sqlite3.OperationalError) database table is locked"))

    def test_other_errors_are_permanent(self):
        assert not is_transient_error(sqlite3.OperationalError("unable to open database file"))
        assert not is_transient_error(sqlite3.OperationalError("no such table: jobs"))
