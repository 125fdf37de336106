"""JSON Store — command-line entry point for inspecting and editing a store."""

import argparse
import json
import logging
import os
import sys
from typing import Optional

from config import DEFAULT_NAME, LOG_LEVEL_ENV, StoreOptions
from store import Store

logger = logging.getLogger("jsonstore.main")

_NOT_FOUND = object()


def parse_value(raw: str):
    """JSON if it parses, otherwise the literal string."""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _dump(value) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False)


class StoreCLI:
    """Routes a parsed command line to the matching :class:`Store` operation."""

    def __init__(self, store: Store, out=None):
        self.store = store
        self.out = out or sys.stdout

    def _print(self, text: str):
        print(text, file=self.out)

    def run(self, args: argparse.Namespace) -> int:
        handlers = {
            "show": self._handle_show,
            "get": self._handle_get,
            "set": self._handle_set,
            "delete": self._handle_delete,
            "reset": self._handle_reset,
            "clear": self._handle_clear,
            "backup": self._handle_backup,
            "passwd": self._handle_passwd,
            "move": self._handle_move,
            "edit": self._handle_edit,
            "path": self._handle_path,
        }
        logger.debug("Running '%s' on %s", args.command, self.store.file_path)
        return handlers[args.command](args)

    def _handle_show(self, args) -> int:
        self._print(_dump(self.store.data))
        return 0

    def _handle_get(self, args) -> int:
        value = self.store.get(args.key, _NOT_FOUND)
        if value is _NOT_FOUND:
            print(f"Key not found: {args.key}", file=sys.stderr)
            return 1
        self._print(_dump(value))
        return 0

    def _handle_set(self, args) -> int:
        self.store.set(args.key, parse_value(args.value))
        return 0

    def _handle_delete(self, args) -> int:
        if not self.store.delete(args.key):
            print(f"Key not found: {args.key}", file=sys.stderr)
            return 1
        return 0

    def _handle_reset(self, args) -> int:
        self.store.reset()
        return 0

    def _handle_clear(self, args) -> int:
        self.store.clear()
        return 0

    def _handle_backup(self, args) -> int:
        self._print(str(self.store.backup(args.directory)))
        return 0

    def _handle_passwd(self, args) -> int:
        self.store.change_password(args.new_key)
        return 0

    def _handle_move(self, args) -> int:
        self.store.change_save_location(args.directory, args.new_name)
        self._print(str(self.store.file_path))
        return 0

    def _handle_edit(self, args) -> int:
        return 0 if self.store.open_in_editor() else 1

    def _handle_path(self, args) -> int:
        self._print(str(self.store.file_path))
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="jsonstore", description="Inspect and edit a JSON Store document.")
    location = parser.add_mutually_exclusive_group(required=True)
    location.add_argument("--path", help="directory holding the document")
    location.add_argument("--app", dest="app_name", help="application name; uses its user data directory")
    parser.add_argument("--name", default=DEFAULT_NAME, help="document base name (default: %(default)s)")
    parser.add_argument("--key", dest="encryption_key", default=os.environ.get("JSONSTORE_KEY"),
                        help="encryption password (or set JSONSTORE_KEY)")
    parser.add_argument("--integrity-check", action="store_true",
                        help="treat an unreadable document as missing")
    parser.add_argument("--indent", type=int, default=None, help="indent written JSON")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("show", help="print the whole document")
    sub.add_parser("path", help="print the document path")
    p = sub.add_parser("get", help="print one value (dotted key)")
    p.add_argument("key")
    p = sub.add_parser("set", help="assign a value (JSON or plain string)")
    p.add_argument("key")
    p.add_argument("value")
    p = sub.add_parser("delete", help="remove a key")
    p.add_argument("key")
    sub.add_parser("reset", help="restore defaults")
    sub.add_parser("clear", help="empty the document")
    p = sub.add_parser("backup", help="write a copy into another directory")
    p.add_argument("directory")
    p = sub.add_parser("passwd", help="re-encrypt under a new password (omit to decrypt)")
    p.add_argument("new_key", nargs="?", default=None)
    p = sub.add_parser("move", help="save to a new directory (and name)")
    p.add_argument("directory")
    p.add_argument("new_name", nargs="?", default=None)
    sub.add_parser("edit", help="open the document in the default editor")
    return parser


def open_store(args: argparse.Namespace) -> tuple[Store, list]:
    load_errors: list = []
    save_errors: list = []
    options = StoreOptions(
        name=args.name,
        path=args.path,
        app_name=args.app_name,
        encryption_key=args.encryption_key,
        use_as_integrity_check=args.integrity_check,
        decrypt_error_handler=load_errors.append,
        save_error_handler=save_errors.append,
        async_writes=False,
        indent=args.indent,
    )
    store = Store(options)
    if load_errors:
        print(f"Could not load {store.file_path}: {load_errors[0]}", file=sys.stderr)
    return store, save_errors


def main(argv: Optional[list] = None) -> int:
    logging.basicConfig(
        level=os.environ.get(LOG_LEVEL_ENV, "WARNING").upper(),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler()],
    )
    args = build_parser().parse_args(argv)
    store, save_errors = open_store(args)
    if not store.is_valid and args.command not in ("reset", "clear", "path"):
        return 1
    with store:
        code = StoreCLI(store).run(args)
    if save_errors:
        print(f"Save failed: {save_errors[0]}", file=sys.stderr)
        return 1
    return code


if __name__ == "__main__":
    sys.exit(main())
