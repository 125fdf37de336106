"""Configuration for JSON Store instances."""

import os
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

DEFAULT_NAME = "config"
FILE_SUFFIX = ".json"
TEMP_SUFFIX = ".tmp"
DEFAULT_KDF_ITERATIONS = 480_000
LOG_LEVEL_ENV = "JSONSTORE_LOG_LEVEL"

ErrorHandler = Callable[[Exception], None]


def _ignore_error(err: Exception) -> None:
    pass


def user_data_dir(app_name: str) -> Path:
    """Per-user data directory the host desktop platform uses for *app_name*."""
    system = platform.system()
    if system == "Windows":
        base = os.environ.get("APPDATA") or str(Path.home() / "AppData" / "Roaming")
        return Path(base) / app_name
    if system == "Darwin":
        return Path.home() / "Library" / "Application Support" / app_name
    base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / app_name


@dataclass
class StoreOptions:
    """Everything a :class:`store.Store` can be configured with."""
    name: str = DEFAULT_NAME
    path: Optional[str] = None
    app_name: Optional[str] = None
    defaults: dict = field(default_factory=dict)
    encryption_key: Optional[str] = None
    use_as_integrity_check: bool = False
    save_error_handler: ErrorHandler = _ignore_error
    decrypt_error_handler: ErrorHandler = _ignore_error
    async_writes: bool = True
    indent: Optional[int] = None
    kdf_iterations: int = DEFAULT_KDF_ITERATIONS

    def __post_init__(self):
        if not self.name:
            self.name = DEFAULT_NAME
        if self.defaults is None:
            self.defaults = {}
        if self.save_error_handler is None:
            self.save_error_handler = _ignore_error
        if self.decrypt_error_handler is None:
            self.decrypt_error_handler = _ignore_error

    def resolve_directory(self) -> Path:
        """Directory holding the document; ``path`` wins over ``app_name``."""
        if self.path:
            return Path(self.path).expanduser()
        if self.app_name:
            return user_data_dir(self.app_name)
        raise ValueError("StoreOptions needs either 'path' or 'app_name'")

    def replace(self, **overrides: Any) -> "StoreOptions":
        unknown = [k for k in overrides if not hasattr(self, k)]
        if unknown:
            raise TypeError(f"Unknown store option(s): {', '.join(sorted(unknown))}")
        values = {k: getattr(self, k) for k in self.__dataclass_fields__}
        values.update(overrides)
        return StoreOptions(**values)
