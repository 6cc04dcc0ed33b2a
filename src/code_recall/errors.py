"""Exception hierarchy for the retrieval and caching core."""

from pathlib import Path


class CodeRecallError(Exception):
    """Base class for all code-recall errors."""


class StorageUnavailable(CodeRecallError):
    """The backing store could not be opened or initialized."""

    def __init__(self, path: Path | str, reason: str) -> None:
        self.path = str(path)
        self.reason = reason
        super().__init__(f"storage unavailable at {self.path}: {reason}")


class DimensionMismatch(CodeRecallError):
    """One or more embeddings disagree with the store's fixed dimensionality.

    ``rejected`` maps the offending chunk id (or ``"<query>"`` for a query
    vector) to the length that was actually supplied.
    """

    def __init__(self, expected: int, rejected: dict[str, int]) -> None:
        self.expected = expected
        self.rejected = dict(rejected)
        details = ", ".join(f"{key}={length}" for key, length in sorted(self.rejected.items()))
        super().__init__(f"expected embedding dimension {expected}, got: {details}")


class InvalidWeights(CodeRecallError):
    """A search query carried a negative signal weight."""

    def __init__(self, weights: dict[str, float]) -> None:
        self.weights = dict(weights)
        negative = ", ".join(f"{k}={v}" for k, v in self.weights.items() if v < 0)
        super().__init__(f"search weights must be non-negative: {negative}")


class StoreClosed(CodeRecallError):
    """An operation was attempted on a store that is not open."""

    def __init__(self, message: str = "chunk store is closed") -> None:
        super().__init__(message)
