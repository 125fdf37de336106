"""JSON Store — a self-saving configuration document.

A :class:`Store` loads ``<directory>/<name>.json`` into :attr:`Store.data`.
Any change made through that tree, however deeply nested, is written back
to disk atomically (and encrypted when a key is configured) without an
explicit :meth:`Store.save` call::

    store = Store(path="~/.myapp", defaults={"theme": "dark"})
    store.data["window"] = {"width": 800}
    store.data["window"]["height"] = 600   # saved again
"""

import copy
import json
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional

from atomic_io import SaveWriter, temp_path_for, write_or_report
from config import FILE_SUFFIX, StoreOptions
from editor import open_in_editor
from errors import CorruptFileError, LoadError, SaveError, StoreError
from observable import is_observable, observe
from store_crypto import PasswordCipher

logger = logging.getLogger("jsonstore.store")

_MISSING = object()


class Store:
    """Persistent key-value document with transparent write-back.

    Load problems never raise out of the constructor. A missing file yields
    a copy of ``defaults``. An unreadable one either yields defaults too
    (``use_as_integrity_check``) or is passed to ``decrypt_error_handler``,
    in which case :attr:`is_valid` is False and :attr:`data` is None.
    """

    def __init__(self, options: Optional[StoreOptions] = None, **overrides):
        options = options or StoreOptions()
        if overrides:
            options = options.replace(**overrides)
        self.options = options
        self.name = options.name
        self.directory = options.resolve_directory()
        self.defaults = options.defaults
        self.use_as_integrity_check = options.use_as_integrity_check
        self.save_error_handler = options.save_error_handler
        self.decrypt_error_handler = options.decrypt_error_handler
        self.encryption_key: Optional[str] = None
        self._cipher: Optional[PasswordCipher] = None
        self._set_key(options.encryption_key)
        self._writer = SaveWriter(name=f"JsonStoreWriter-{self.name}") if options.async_writes else None
        self._batch_depth = 0
        self._dirty = False
        self._valid = True
        self._data: Any = None
        self.load()

    def __repr__(self):
        return f"Store({str(self.file_path)!r}, encrypted={self.encrypted}, valid={self._valid})"

    # -- Properties ---------------------------------------------------------

    @property
    def file_path(self) -> Path:
        return self.directory / f"{self.name}{FILE_SUFFIX}"

    @property
    def temp_path(self) -> Path:
        return temp_path_for(self.file_path)

    @property
    def encrypted(self) -> bool:
        return self._cipher is not None

    @property
    def is_valid(self) -> bool:
        """False after a load failure was reported to ``decrypt_error_handler``."""
        return self._valid

    @property
    def data(self) -> Any:
        return self._data

    @data.setter
    def data(self, value: Any):
        self._replace(value)
        self.save()

    # -- Loading ------------------------------------------------------------

    def load(self) -> Any:
        """(Re)read the document from disk and install it as :attr:`data`."""
        if is_observable(self._data):
            self._data.bind(None)
        self._valid = True
        value = self._read_document()
        if self._valid:
            self._install(value)
        else:
            self._data = None
        return self._data

    def _read_document(self) -> Any:
        path = self.file_path
        try:
            content = path.read_bytes()
        except (FileNotFoundError, NotADirectoryError):
            logger.info("No document at %s, starting from defaults", path)
            return self._fresh_defaults()
        except OSError as e:
            return self._load_failed(LoadError(f"Could not read {path}: {e}", path), e)
        try:
            value = self._parse(content)
        except LoadError as e:
            return self._load_failed(e)
        logger.debug("Loaded %s", path)
        return value

    def _parse(self, content: bytes) -> Any:
        path = self.file_path
        try:
            text = content.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CorruptFileError(f"{path} is not UTF-8 text", path) from e
        if self._cipher is not None:
            try:
                text = self._cipher.decrypt(text)
            except LoadError as e:
                e.path = path
                raise
        try:
            return json.loads(text)
        except ValueError as e:
            raise CorruptFileError(f"{path} is not valid JSON: {e}", path) from e

    def _load_failed(self, err: LoadError, cause: Optional[BaseException] = None) -> Any:
        if cause is not None and err.__cause__ is None:
            err.__cause__ = cause
        if self.use_as_integrity_check:
            logger.warning("Ignoring unreadable document %s (%s), using defaults", self.file_path, err)
            return self._fresh_defaults()
        logger.error("Could not load %s: %s", self.file_path, err)
        self._valid = False
        self.decrypt_error_handler(err)
        return None

    def _fresh_defaults(self) -> dict:
        return copy.deepcopy(self.defaults) if self.defaults else {}

    def _install(self, value: Any):
        """Make *value* the data tree, with interception over every container."""
        if isinstance(value, dict):
            self._data = observe(value, self._notify)
        else:
            logger.warning(
                "Store data must be a JSON object, got %s; changes to it will not be saved automatically",
                type(value).__name__,
            )
            self._data = value

    def _replace(self, value: Any):
        # detached references to the old tree must not save the new one
        if is_observable(self._data):
            self._data.bind(None)
        self._valid = True
        self._install(value)

    # -- Saving -------------------------------------------------------------

    def _notify(self):
        if self._batch_depth:
            self._dirty = True
            return
        self.save()

    def _serialize(self) -> bytes:
        text = json.dumps(self._data, indent=self.options.indent, ensure_ascii=False)
        if self._cipher is not None:
            text = self._cipher.encrypt(text)
        return text.encode("utf-8")

    def _report_save_error(self, err: Exception):
        self.save_error_handler(err)

    def _write(self, path: Path, label: str) -> bool:
        if not self._valid:
            logger.warning("Not writing %s %s: the store failed to load", label, path)
            return False
        try:
            payload = self._serialize()
        except (TypeError, ValueError) as e:
            err = SaveError(f"Store data is not JSON serializable: {e}", path)
            err.__cause__ = e
            logger.error("Save failed: %s", err)
            self._report_save_error(err)
            return False
        if self._writer is not None:
            self._writer.submit(path, payload, self._report_save_error)
            return True
        return write_or_report(path, payload, self._report_save_error)

    def save(self) -> bool:
        """Write the whole tree to :attr:`file_path`.

        With ``async_writes`` the write is queued and this returns at once;
        use :meth:`flush` to wait for it. Failures go to
        ``save_error_handler`` and never roll back :attr:`data`.
        """
        return self._write(self.file_path, "document")

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued writes. False if *timeout* elapsed first."""
        if self._writer is None:
            return True
        return self._writer.flush(timeout)

    def close(self):
        if self._writer is not None:
            self._writer.flush()
            self._writer.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    @contextmanager
    def batch(self):
        """Group mutations so they are saved once, on exit."""
        self._batch_depth += 1
        try:
            yield self._data
        finally:
            self._batch_depth -= 1
            if not self._batch_depth and self._dirty:
                self._dirty = False
                self.save()

    # -- Whole-document operations -----------------------------------------

    def reset(self):
        """Replace the data with a fresh copy of ``defaults`` and save."""
        self._replace(self._fresh_defaults())
        self.save()

    def clear(self):
        self._replace({})
        self.save()

    def backup(self, target_directory) -> Path:
        """Save a copy to ``<target_directory>/<name>.json``; :attr:`file_path` is unchanged."""
        target = Path(target_directory).expanduser() / self.file_path.name
        if self._write(target, "backup"):
            logger.info("Backup of %s queued to %s", self.file_path, target)
        return target

    def _set_key(self, key: Optional[str]):
        self.encryption_key = key or None
        self._cipher = PasswordCipher(key, self.options.kdf_iterations) if key else None

    def change_password(self, new_key: Optional[str]):
        """Re-save under *new_key*; ``None`` or ``""`` stores plain JSON."""
        self._set_key(new_key)
        logger.info("Encryption key changed for %s (encrypted=%s)", self.file_path, self.encrypted)
        self.save()

    def change_save_location(self, new_directory, new_name: Optional[str] = None):
        """Point the store at a new directory (and name) and save there.

        The previous file is left where it was.
        """
        old = self.file_path
        self.directory = Path(new_directory).expanduser()
        if new_name:
            self.name = new_name
        logger.info("Save location changed: %s -> %s", old, self.file_path)
        self.save()

    def open_in_editor(self) -> bool:
        self.flush()
        return open_in_editor(self.file_path)

    # -- Dotted-key access --------------------------------------------------

    def _root(self) -> dict:
        if not self._valid:
            raise StoreError(f"Store {self.file_path} failed to load", self.file_path)
        if not isinstance(self._data, dict):
            raise StoreError("Store data is not a JSON object", self.file_path)
        return self._data

    def get(self, key: str, default: Any = None) -> Any:
        """Look up ``"a.b.c"`` through nested objects."""
        if not self._valid or not isinstance(self._data, dict):
            return default
        node: Any = self._data
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set(self, key: str, value: Any):
        """Assign ``"a.b.c"``, creating intermediate objects, with one save."""
        node = self._root()
        parts = key.split(".")
        with self.batch():
            for part in parts[:-1]:
                child = node.get(part)
                if not isinstance(child, dict):
                    node[part] = {}
                    child = node[part]
                node = child
            node[parts[-1]] = value

    def delete(self, key: str) -> bool:
        """Remove ``"a.b.c"``. False, with no save, if it does not exist."""
        if not self._valid or not isinstance(self._data, dict):
            return False
        parts = key.split(".")
        parent = self.get(".".join(parts[:-1]), _MISSING) if len(parts) > 1 else self._data
        if not isinstance(parent, dict):
            return False
        return parent.discard(parts[-1])
