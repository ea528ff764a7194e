"""Error types raised by address-space operations."""

from __future__ import annotations

import enum
import logging

_log = logging.getLogger(__name__)


class AxError(Exception):
    """Base class of every error raised by this package."""


class NoMemoryError(AxError):
    """Raised when memory (frames, page tables) cannot be allocated."""


class InvalidInputError(AxError, ValueError):
    """Raised when an argument is out of range, misaligned or otherwise invalid."""


class AlreadyExistsError(AxError):
    """Raised when a mapping overlaps an existing one."""


class BadStateError(AxError):
    """Raised when an object is used in a state that does not allow the operation."""


class MappingError(enum.Enum):
    """Failure reasons reported by the memory-set layer."""

    INVALID_PARAM = "invalid parameter"
    ALREADY_EXISTS = "already exists"
    BAD_STATE = "bad state"


_ERROR_TYPES: dict[MappingError, type[AxError]] = {
    MappingError.INVALID_PARAM: InvalidInputError,
    MappingError.ALREADY_EXISTS: AlreadyExistsError,
    MappingError.BAD_STATE: BadStateError,
}


def mapping_err_to_ax_err(err: MappingError) -> AxError:
    """Return the package error that corresponds to a mapping error."""
    err = MappingError(err)
    _log.warning("Mapping error: %s", err.name)
    return _ERROR_TYPES[err](f"mapping error: {err.value}")