"""Unit tests for the retry helpers."""

import uuid
from unittest.mock import MagicMock

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from app import crud
from app.core.retry import RetryPolicy, call_with_retry, with_retry
from app.models import UserProfileUpdate


def make_policy(**overrides: object) -> tuple[RetryPolicy, list[float]]:
    sleeps: list[float] = []
    policy = RetryPolicy(sleep=sleeps.append, **overrides)  # type: ignore[arg-type]
    return policy, sleeps


class TestRetryPolicy:
    def test_backoff_doubles_from_one_second(self) -> None:
        policy = RetryPolicy()
        assert policy.delay_before(2) == 1.0
        assert policy.delay_before(3) == 2.0
        assert policy.delay_before(4) == 4.0

    def test_backoff_is_capped(self) -> None:
        policy = RetryPolicy()
        assert policy.delay_before(5) == 5.0
        assert policy.delay_before(10) == 5.0


class TestCallWithRetry:
    def test_returns_first_success(self) -> None:
        policy, sleeps = make_policy()
        func = MagicMock(return_value="ok")
        assert call_with_retry(func, policy=policy) == "ok"
        assert func.call_count == 1
        assert sleeps == []

    def test_retries_transient_errors(self) -> None:
        policy, sleeps = make_policy()
        func = MagicMock(
            side_effect=[httpx.ConnectError("boom"), httpx.ReadTimeout("slow"), "ok"]
        )
        assert call_with_retry(func, policy=policy) == "ok"
        assert func.call_count == 3
        assert sleeps == [1.0, 2.0]

    def test_reraises_last_error_after_three_attempts(self) -> None:
        policy, sleeps = make_policy()
        errors = [httpx.ConnectError(f"attempt {n}") for n in range(1, 4)]
        func = MagicMock(side_effect=errors)
        with pytest.raises(httpx.ConnectError) as exc_info:
            call_with_retry(func, policy=policy)
        assert exc_info.value is errors[-1]
        assert func.call_count == 3
        assert len(sleeps) == 2

    def test_does_not_retry_other_errors(self) -> None:
        policy, sleeps = make_policy()
        func = MagicMock(side_effect=ValueError("bad input"))
        with pytest.raises(ValueError):
            call_with_retry(func, policy=policy)
        assert func.call_count == 1
        assert sleeps == []

    def test_rolls_back_session_before_retrying(self) -> None:
        policy, _ = make_policy()
        session = MagicMock()
        func = MagicMock(
            side_effect=[OperationalError("SELECT 1", {}, Exception("gone")), "ok"]
        )
        assert call_with_retry(func, policy=policy, session=session) == "ok"
        session.rollback.assert_called_once()
        func.assert_called_with(session=session)


def test_decorator_wraps_function() -> None:
    policy, sleeps = make_policy(max_attempts=2)
    calls: list[int] = []

    @with_retry(policy)
    def flaky(value: int) -> int:
        calls.append(value)
        if len(calls) == 1:
            raise httpx.ConnectError("first call fails")
        return value * 2

    assert flaky(21) == 42
    assert calls == [21, 21]
    assert sleeps == [1.0]
    assert flaky.__name__ == "flaky"


def test_profile_upsert_attempts_are_not_multiplied() -> None:
    session = MagicMock()
    session.exec.side_effect = OperationalError("SELECT", {}, Exception("locked"))
    with pytest.raises(OperationalError):
        crud.upsert_user_profile(
            session=session,
            user_id=uuid.uuid4(),
            profile_in=UserProfileUpdate(first_name="Ada"),
        )
    assert session.exec.call_count == 3
    assert session.rollback.call_count == 2
