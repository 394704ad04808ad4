from __future__ import annotations

from typing import Any

_SQLSTATE_CODES: dict[str, tuple[str, bool]] = {
    "23505": ("unique_violation", False),
    "23503": ("foreign_key_violation", False),
    "23502": ("not_null_violation", False),
    "22000": ("data_exception", False),
    "40P01": ("deadlock_detected", True),
    "40001": ("serialization_failure", True),
    "57014": ("query_canceled", True),
    "08006": ("connection_failure", True),
    "08001": ("connection_failure", True),
}


class StoreTransactionError(RuntimeError):
    def __init__(self, *, error_code: str, sqlstate: str | None, retryable: bool, message: str | None = None) -> None:
        super().__init__(message or error_code)
        self.error_code = error_code
        self.sqlstate = sqlstate
        self.retryable = retryable


def _sqlstate_of(exc: BaseException) -> str | None:
    orig = getattr(exc, "orig", None)
    for candidate in (orig, exc):
        if candidate is None:
            continue
        state = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if state:
            return str(state)
    return None


def map_store_error(exc: BaseException) -> StoreTransactionError:
    if isinstance(exc, StoreTransactionError):
        return exc
    sqlstate = _sqlstate_of(exc)
    error_code, retryable = _SQLSTATE_CODES.get(sqlstate or "", ("database_error", False))
    return StoreTransactionError(error_code=error_code, sqlstate=sqlstate, retryable=retryable, message=str(exc))


def _rollback_quietly(db: Any) -> None:
    rollback = getattr(db, "rollback", None)
    if callable(rollback):
        rollback()


def _commit_or_raise(db: Any) -> None:
    from sqlalchemy.exc import SQLAlchemyError

    try:
        db.commit()
    except SQLAlchemyError as exc:
        _rollback_quietly(db)
        raise map_store_error(exc) from exc
