from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from skillmint.core.config import get_settings
from skillmint.core.errors import AlreadyMinted, ConflictError, DuplicateInstall, SlugTaken
from skillmint.persistence.errors import is_transient_db_error, translate_integrity_error
from skillmint.services.resilience import RetryPolicy, admission_retry_policy, backoff_seconds, retry_async


class _PgError(Exception):
    def __init__(self, message: str, *, sqlstate: str | None = None, constraint_name: str | None = None) -> None:
        super().__init__(message)
        self.sqlstate = sqlstate
        self.constraint_name = constraint_name


def _integrity(message: str, **kwargs) -> IntegrityError:
    return IntegrityError("INSERT ...", {}, _PgError(message, **kwargs))


def test_sqlite_unique_messages_map_to_named_conflicts() -> None:
    assert isinstance(translate_integrity_error(_integrity("UNIQUE constraint failed: packages.slug")), SlugTaken)
    assert isinstance(
        translate_integrity_error(
            _integrity("UNIQUE constraint failed: installations.user_id, installations.package_id")
        ),
        DuplicateInstall,
    )
    assert isinstance(
        translate_integrity_error(_integrity("UNIQUE constraint failed: mints.package_id")), AlreadyMinted
    )


def test_postgres_constraint_name_is_used() -> None:
    error = translate_integrity_error(_integrity("duplicate key", constraint_name="uq_packages_slug"))
    assert isinstance(error, SlugTaken)
    assert error.fields["constraint"] == "uq_packages_slug"


def test_unknown_constraint_is_generic_conflict() -> None:
    error = translate_integrity_error(_integrity("CHECK constraint failed: something"))
    assert type(error) is ConflictError


def test_transient_errors_are_detected() -> None:
    assert is_transient_db_error(OperationalError("UPDATE", {}, _PgError("database is locked")))
    assert is_transient_db_error(OperationalError("UPDATE", {}, _PgError("deadlock", sqlstate="40P01")))
    assert is_transient_db_error(OperationalError("UPDATE", {}, _PgError("serialize", sqlstate="40001")))
    assert not is_transient_db_error(OperationalError("UPDATE", {}, _PgError("disk I/O error")))
    assert not is_transient_db_error(_integrity("UNIQUE constraint failed: packages.slug"))
    assert not is_transient_db_error(ValueError("nope"))


@pytest.mark.asyncio
async def test_retry_async_stops_after_max_attempts() -> None:
    calls = {"count": 0}

    async def always_locked() -> None:
        calls["count"] += 1
        raise OperationalError("UPDATE", {}, _PgError("database is locked"))

    with pytest.raises(OperationalError):
        await retry_async(
            always_locked,
            policy=RetryPolicy(timeout_ms=1000, max_attempts=3, backoff_ms=1),
            retryable=is_transient_db_error,
        )
    assert calls["count"] == 3


@pytest.mark.asyncio
async def test_retry_async_does_not_retry_permanent_errors() -> None:
    calls = {"count": 0}

    async def broken() -> None:
        calls["count"] += 1
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        await retry_async(broken, policy=RetryPolicy(timeout_ms=1000, max_attempts=3, backoff_ms=1))
    assert calls["count"] == 1


def test_backoff_grows_with_attempts() -> None:
    policy = RetryPolicy(timeout_ms=1000, max_attempts=3, backoff_ms=100)
    assert 0.05 <= backoff_seconds(policy, 1) <= 0.15
    assert 0.2 <= backoff_seconds(policy, 3) <= 0.6


@pytest.mark.asyncio
async def test_admission_retries_deadlocks_three_times(monkeypatch) -> None:
    monkeypatch.setenv("INSTALL_RETRY_BACKOFF_MS", "1")
    get_settings.cache_clear()
    calls = {"count": 0}

    async def deadlocked() -> None:
        calls["count"] += 1
        raise OperationalError("UPDATE", {}, _PgError("deadlock", sqlstate="40P01"))

    with pytest.raises(OperationalError):
        await retry_async(deadlocked, policy=admission_retry_policy(), retryable=is_transient_db_error)
    # One initial attempt plus three retries.
    assert calls["count"] == 4
