"""JSON Store — error types.

Load failures are never raised out of :class:`store.Store`; they are handed
to the configured handlers as one of these types with the underlying
exception chained in ``__cause__``.
"""

from pathlib import Path
from typing import Optional


class StoreError(Exception):
    """Base class for every error the store reports."""

    def __init__(self, message: str, path: Optional[Path] = None):
        super().__init__(message)
        self.path = path


class LoadError(StoreError):
    """The document exists but could not be turned into a data tree."""


class DecryptionError(LoadError):
    """Ciphertext is well-formed but the key does not open it.

    Either the password is wrong or the file was tampered with; the two
    cannot be told apart from the token alone.
    """


class CorruptFileError(LoadError):
    """Content is not a ciphertext, not UTF-8, or not valid JSON."""


class SaveError(StoreError):
    """Writing the temp file or renaming it over the target failed."""
