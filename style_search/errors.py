"""Exception types raised by the similarity search pipeline."""

from typing import Optional


class StyleSearchError(Exception):
    """Base class for all search pipeline errors."""


class DecodeError(StyleSearchError):
    """An image could not be loaded or rasterized."""

    def __init__(self, source: str, detail: Optional[str] = None):
        message = f"Cannot decode image: {source}"
        if detail:
            message += f" - {detail}"
        super().__init__(message)
        self.source = source


class DimensionMismatchError(StyleSearchError, ValueError):
    """Two feature vectors of different lengths were compared."""

    def __init__(self, len_a: int, len_b: int):
        super().__init__(
            f"Feature vector length {len_a} doesn't match length {len_b}"
        )
        self.len_a = len_a
        self.len_b = len_b


class CacheWriteError(StyleSearchError):
    """The feature cache storage rejected a write (quota or IO failure)."""


class SearchCancelled(StyleSearchError):
    """A batch match was cancelled between candidates."""

    def __init__(self, completed: int, total: int):
        super().__init__(f"Search cancelled after {completed}/{total} candidates")
        self.completed = completed
        self.total = total
