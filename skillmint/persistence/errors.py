from __future__ import annotations

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from skillmint.core.errors import (
    AlreadyMinted,
    ConflictError,
    DuplicateInstall,
    SkillMintError,
    SlugTaken,
)


# Map unique constraint names to the user-facing conflict they represent.
_CONSTRAINT_ERRORS: dict[str, type[ConflictError]] = {
    "uq_packages_slug": SlugTaken,
    "uq_installations_active_user_package": DuplicateInstall,
    "uq_mints_package": AlreadyMinted,
}

# SQLite reports the violated columns rather than the index name.
_SQLITE_COLUMN_HINTS: dict[str, str] = {
    "packages.slug": "uq_packages_slug",
    "installations.user_id, installations.package_id": "uq_installations_active_user_package",
    "mints.package_id": "uq_mints_package",
}

# Postgres SQLSTATEs for serialization failure and deadlock.
_TRANSIENT_SQLSTATES = {"40001", "40P01"}


def constraint_name(exc: IntegrityError) -> str | None:
    orig = getattr(exc, "orig", None)
    # asyncpg surfaces the constraint name on the wrapped driver exception.
    for candidate in (orig, getattr(orig, "__cause__", None)):
        name = getattr(candidate, "constraint_name", None)
        if name:
            return str(name)
    message = str(orig or exc)
    for name in _CONSTRAINT_ERRORS:
        if name in message:
            return name
    for hint, name in _SQLITE_COLUMN_HINTS.items():
        if hint in message:
            return name
    return None


def translate_integrity_error(exc: IntegrityError) -> SkillMintError:
    name = constraint_name(exc)
    error_cls = _CONSTRAINT_ERRORS.get(name or "")
    if error_cls is None:
        return ConflictError("Conflicting write", constraint=name)
    return error_cls(constraint=name)


def is_transient_db_error(exc: BaseException) -> bool:
    # Retry deadlocks, serialization failures and SQLite lock contention only.
    if not isinstance(exc, DBAPIError) or isinstance(exc, IntegrityError):
        return False
    orig = getattr(exc, "orig", None)
    for candidate in (orig, getattr(orig, "__cause__", None)):
        sqlstate = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if sqlstate in _TRANSIENT_SQLSTATES:
            return True
    if isinstance(exc, OperationalError):
        message = str(orig or exc).lower()
        return "database is locked" in message or "database table is locked" in message
    return False
