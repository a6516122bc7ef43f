from typing import Any, Dict, Optional


class ProgressionError(Exception):
    """Base class for progression engine failures."""


class InvalidAwardError(ProgressionError, ValueError):
    """Raised for negative XP, malformed details or unknown event kinds."""


class UnknownStatError(ProgressionError, ValueError):
    """Raised when a requirement or update names a statistic that is not tracked."""


class InvalidStatValueError(ProgressionError, ValueError):
    """Raised when a stat update carries a negative or non-integer value."""


class PersistenceError(ProgressionError):
    """Raised when the computed state could not be written.

    ``result`` holds what the engine computed so the caller can retry or
    show it without recomputing.
    """

    def __init__(self, message: str, result: Any = None) -> None:
        super().__init__(message)
        self.result = result


class StateStoreError(RuntimeError):
    """Raised when the backing store cannot be read or written."""


class ConcurrentUpdateError(StateStoreError):
    """Raised when a write was based on a stale version of the state."""


class BaseStateStore:
    """Key-value contract used by the progression engine.

    ``read`` returns the stored payload (including its ``version``) or
    ``None`` when nothing was written for the user yet. ``write`` stores the
    full payload only if the current version still equals
    ``expected_version`` and returns the new version.
    """

    def read(self, user_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def write(self, user_id: str, payload: Dict[str, Any], expected_version: int) -> int:
        raise NotImplementedError
