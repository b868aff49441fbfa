from __future__ import annotations

from typing import Any

from sqlalchemy.exc import SQLAlchemyError

__all__ = (
    "DatabaseConnectionError",
    "ImproperConfigurationError",
    "ReplicaAlchemyError",
    "RuntimeQueryError",
)


RuntimeQueryError = SQLAlchemyError
"""Failure of a single read or write against its chosen engine.

Query failures are never wrapped or retried by the routing layer; whatever
SQLAlchemy or the driver raised reaches the caller unchanged.
"""


class ReplicaAlchemyError(Exception):
    """Base exception class from which all Replica Alchemy exceptions inherit."""

    detail: str

    def __init__(self, *args: Any, detail: str = "") -> None:
        """Initialize ``ReplicaAlchemyError``.

        Args:
            *args: args are converted to :class:`str` before passing to :class:`Exception`
            detail: detail of the exception.
        """
        str_args = [str(arg) for arg in args if arg]
        if not detail:
            if str_args:
                detail, *str_args = str_args
            elif hasattr(self, "detail"):
                detail = self.detail
        self.detail = detail
        super().__init__(*str_args)

    def __repr__(self) -> str:
        if self.detail:
            return f"{self.__class__.__name__} - {self.detail}"
        return self.__class__.__name__

    def __str__(self) -> str:
        return " ".join((*self.args, self.detail)).strip()


class ImproperConfigurationError(ReplicaAlchemyError):
    """Improper Configuration error.

    Raised for a missing or unparsable primary connection string, a replica list
    whose length does not match the region list, or invalid connection settings.
    It is always raised before any connection attempt is made.

    Args:
        *args: Variable length argument list passed to parent class.
        detail: Detailed error message.
    """


class DatabaseConnectionError(ReplicaAlchemyError):
    """The primary database could not be reached.

    Raised by ``connect()`` once every liveness probe attempt has failed. The last
    underlying error is chained as ``__cause__``.

    Args:
        *args: Variable length argument list passed to parent class.
        detail: Detailed error message.
    """
