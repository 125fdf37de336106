"""Tests for the self-saving Store."""
import json
import subprocess
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from atomic_io import write_or_report
from config import StoreOptions
from errors import CorruptFileError, DecryptionError, LoadError, SaveError, StoreError
from observable import ObservableDict, ObservableList, is_observable
from store import Store

ITERATIONS = 1000


@pytest.fixture
def make_store(tmp_path):
    def _make(**kwargs):
        kwargs.setdefault("path", str(tmp_path))
        kwargs.setdefault("async_writes", False)
        kwargs.setdefault("kdf_iterations", ITERATIONS)
        return Store(**kwargs)
    return _make


@pytest.fixture
def writes():
    with patch("store.write_or_report", wraps=write_or_report) as w:
        yield w


def read_json(path):
    return json.loads(path.read_text(encoding="utf-8"))


class TestFirstRun:
    def test_defaults_without_file(self, make_store, tmp_path):
        on_load_error = MagicMock()
        store = make_store(defaults={"theme": "dark"}, decrypt_error_handler=on_load_error)
        assert store.data == {"theme": "dark"}
        assert store.is_valid
        on_load_error.assert_not_called()
        assert store.file_path == tmp_path / "config.json"
        assert not store.file_path.exists()

    def test_defaults_are_not_aliased(self, make_store):
        defaults = {"ui": {"theme": "dark"}}
        store = make_store(defaults=defaults)
        store.data["ui"]["theme"] = "light"
        assert defaults == {"ui": {"theme": "dark"}}

    def test_custom_name(self, make_store, tmp_path):
        store = make_store(name="settings")
        assert store.file_path == tmp_path / "settings.json"
        assert store.temp_path == tmp_path / "settings.json.tmp"

    def test_app_name_resolves_user_data_dir(self, tmp_path):
        with patch("config.user_data_dir", return_value=tmp_path / "MyApp") as udd:
            store = Store(app_name="MyApp", async_writes=False)
        udd.assert_called_once_with("MyApp")
        assert store.file_path == tmp_path / "MyApp" / "config.json"

    def test_location_required(self):
        with pytest.raises(ValueError):
            Store()

    def test_unknown_option(self, tmp_path):
        with pytest.raises(TypeError):
            Store(path=str(tmp_path), colour="blue")

    def test_options_object_with_overrides(self, tmp_path):
        store = Store(StoreOptions(path=str(tmp_path), async_writes=False), name="other")
        assert store.file_path.name == "other.json"


class TestWriteThrough:
    def test_write_triggers_save(self, make_store):
        store = make_store()
        store.data["a"] = 1
        assert read_json(store.file_path) == {"a": 1}
        assert not store.temp_path.exists()

    def test_nested_write_triggers_save(self, make_store):
        store = make_store()
        store.data["a"] = {}
        store.data["a"]["b"] = 2
        assert read_json(store.file_path) == {"a": {"b": 2}}

    def test_loaded_tree_is_fully_wrapped(self, make_store, tmp_path):
        (tmp_path / "config.json").write_text('{"a": {"b": [{"c": 1}]}}')
        store = make_store()
        assert isinstance(store.data, ObservableDict)
        assert isinstance(store.data["a"]["b"], ObservableList)
        store.data["a"]["b"][0]["c"] = 2
        assert read_json(store.file_path) == {"a": {"b": [{"c": 2}]}}

    def test_every_write_saves_once(self, make_store, writes):
        store = make_store()
        store.data["items"] = []
        store.data["items"].append({"id": 1})
        store.data["items"].extend([2, 3])
        assert writes.call_count == 3
        assert read_json(store.file_path) == {"items": [{"id": 1}, 2, 3]}

    def test_delete_existing_persists(self, make_store):
        store = make_store(defaults={"a": 1, "b": 2})
        del store.data["a"]
        assert read_json(store.file_path) == {"b": 2}

    def test_delete_missing_does_not_write(self, make_store, writes):
        store = make_store(defaults={"a": 1})
        with pytest.raises(KeyError):
            del store.data["missing"]
        assert not store.data.discard("missing")
        writes.assert_not_called()
        assert not store.file_path.exists()

    def test_batch_saves_once(self, make_store, writes):
        store = make_store()
        with store.batch() as data:
            data["a"] = 1
            data["b"] = {"c": 2}
            data["b"]["d"] = 3
        assert writes.call_count == 1
        assert read_json(store.file_path) == {"a": 1, "b": {"c": 2, "d": 3}}

    def test_batch_without_changes_does_not_write(self, make_store, writes):
        store = make_store()
        with store.batch():
            pass
        writes.assert_not_called()

    def test_replacing_root_keeps_interception(self, make_store):
        store = make_store()
        store.data = {"a": {"b": 1}}
        store.data["a"]["b"] = 5
        assert read_json(store.file_path) == {"a": {"b": 5}}


class TestRoundTrip:
    DOC = {
        "name": "zoë",
        "count": 3,
        "ratio": 0.5,
        "enabled": True,
        "missing": None,
        "tags": ["a", "b"],
        "nested": {"deep": {"list": [1, {"x": [2]}]}},
    }

    def test_plain(self, make_store):
        store = make_store()
        store.data = self.DOC
        reloaded = make_store()
        assert reloaded.data == self.DOC

    def test_indent(self, make_store):
        store = make_store(indent=2)
        store.data["a"] = 1
        assert store.file_path.read_text() == '{\n  "a": 1\n}'

    def test_encrypted(self, make_store):
        store = make_store(encryption_key="s3cret")
        store.data = self.DOC
        with pytest.raises(ValueError):
            json.loads(store.file_path.read_text())
        reloaded = make_store(encryption_key="s3cret")
        assert reloaded.data == self.DOC

    def test_reload_picks_up_file(self, make_store):
        store = make_store()
        store.file_path.write_text('{"fresh": true}')
        assert store.load() == {"fresh": True}
        assert is_observable(store.data)


class TestLoadFailures:
    def _encrypted_file(self, make_store):
        store = make_store(encryption_key="right")
        store.data["secret"] = 42
        return store.file_path

    def test_wrong_key_reports_error(self, make_store):
        path = self._encrypted_file(make_store)
        before = path.read_bytes()
        on_load_error = MagicMock()
        store = make_store(encryption_key="wrong", decrypt_error_handler=on_load_error)
        on_load_error.assert_called_once()
        err = on_load_error.call_args[0][0]
        assert isinstance(err, DecryptionError)
        assert err.path == path
        assert not store.is_valid
        assert store.data is None
        assert not store.save()
        assert path.read_bytes() == before

    def test_wrong_key_integrity_check_uses_defaults(self, make_store):
        self._encrypted_file(make_store)
        on_load_error = MagicMock()
        store = make_store(
            encryption_key="wrong",
            use_as_integrity_check=True,
            defaults={"fresh": True},
            decrypt_error_handler=on_load_error,
        )
        on_load_error.assert_not_called()
        assert store.is_valid
        assert store.data == {"fresh": True}

    def test_corrupt_plain_file(self, make_store, tmp_path):
        (tmp_path / "config.json").write_text('{"a": ')
        on_load_error = MagicMock()
        make_store(decrypt_error_handler=on_load_error)
        err = on_load_error.call_args[0][0]
        assert isinstance(err, CorruptFileError)
        assert isinstance(err.__cause__, ValueError)

    def test_plain_file_read_with_key(self, make_store, tmp_path):
        (tmp_path / "config.json").write_text('{"a": 1}')
        on_load_error = MagicMock()
        make_store(encryption_key="pw", decrypt_error_handler=on_load_error)
        assert isinstance(on_load_error.call_args[0][0], CorruptFileError)

    def test_binary_garbage(self, make_store, tmp_path):
        (tmp_path / "config.json").write_bytes(b"\xff\xfe\x00")
        on_load_error = MagicMock()
        make_store(decrypt_error_handler=on_load_error)
        assert isinstance(on_load_error.call_args[0][0], LoadError)

    def test_read_error(self, make_store, tmp_path):
        on_load_error = MagicMock()
        with patch("pathlib.Path.read_bytes", side_effect=PermissionError("denied")):
            store = make_store(decrypt_error_handler=on_load_error)
        err = on_load_error.call_args[0][0]
        assert type(err) is LoadError
        assert isinstance(err.__cause__, PermissionError)
        assert not store.is_valid

    def test_reset_revalidates(self, make_store):
        path = self._encrypted_file(make_store)
        store = make_store(encryption_key="wrong", defaults={"a": 1})
        assert not store.is_valid
        store.reset()
        assert store.is_valid
        assert make_store(encryption_key="wrong").data == {"a": 1}
        assert path.exists()

    def test_non_mapping_is_passive(self, make_store, tmp_path, writes):
        (tmp_path / "config.json").write_text("[1, 2]")
        on_load_error = MagicMock()
        store = make_store(decrypt_error_handler=on_load_error)
        on_load_error.assert_not_called()
        assert store.is_valid
        assert store.data == [1, 2]
        assert not is_observable(store.data)
        store.data.append(3)
        writes.assert_not_called()


class TestSaveFailures:
    def test_write_failure_goes_to_handler(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("x")
        on_save_error = MagicMock()
        store = Store(path=str(blocker / "sub"), async_writes=False, save_error_handler=on_save_error)
        store.data["a"] = 1
        on_save_error.assert_called_once()
        assert isinstance(on_save_error.call_args[0][0], SaveError)
        assert store.data == {"a": 1}

    def test_unserializable_value(self, make_store):
        on_save_error = MagicMock()
        store = make_store(save_error_handler=on_save_error)
        store.data["bad"] = {1, 2}
        err = on_save_error.call_args[0][0]
        assert isinstance(err, SaveError)
        assert isinstance(err.__cause__, TypeError)
        assert "bad" in store.data


class TestWholeDocument:
    def test_reset_restores_defaults_and_rewraps(self, make_store):
        defaults = {"ui": {"theme": "dark"}}
        store = make_store(defaults=defaults)
        store.data["ui"]["theme"] = "light"
        store.data["extra"] = 1
        store.reset()
        assert store.data == {"ui": {"theme": "dark"}}
        assert read_json(store.file_path) == {"ui": {"theme": "dark"}}
        store.data["ui"]["size"] = 3
        assert read_json(store.file_path) == {"ui": {"theme": "dark", "size": 3}}
        assert defaults == {"ui": {"theme": "dark"}}

    def test_clear_rewraps(self, make_store):
        store = make_store(defaults={"a": 1})
        store.clear()
        assert read_json(store.file_path) == {}
        store.data["b"] = {}
        store.data["b"]["c"] = 1
        assert read_json(store.file_path) == {"b": {"c": 1}}

    def test_backup_keeps_primary_path(self, make_store, tmp_path):
        store = make_store()
        store.data["a"] = 1
        target = store.backup(tmp_path / "backups")
        assert target == tmp_path / "backups" / "config.json"
        assert read_json(target) == {"a": 1}
        assert store.file_path == tmp_path / "config.json"
        store.data["a"] = 2
        assert read_json(store.file_path) == {"a": 2}
        assert read_json(target) == {"a": 1}

    def test_change_password(self, make_store):
        store = make_store(encryption_key="old")
        store.data["a"] = 1
        store.change_password("new")
        assert make_store(encryption_key="new").data == {"a": 1}
        on_load_error = MagicMock()
        make_store(encryption_key="old", decrypt_error_handler=on_load_error)
        on_load_error.assert_called_once()

    def test_change_password_to_none_decrypts(self, make_store):
        store = make_store(encryption_key="old")
        store.data["a"] = 1
        store.change_password(None)
        assert not store.encrypted
        assert read_json(store.file_path) == {"a": 1}

    def test_change_save_location_keeps_old_file(self, make_store, tmp_path):
        store = make_store()
        store.data["a"] = 1
        old = store.file_path
        store.change_save_location(tmp_path / "moved", "renamed")
        assert store.file_path == tmp_path / "moved" / "renamed.json"
        assert read_json(store.file_path) == {"a": 1}
        assert old.exists()
        store.data["b"] = 2
        assert read_json(store.file_path) == {"a": 1, "b": 2}
        assert read_json(old) == {"a": 1}

    def test_open_in_editor(self, make_store):
        store = make_store()
        with patch("store.open_in_editor", return_value=True) as opener:
            assert store.open_in_editor()
        opener.assert_called_once_with(store.file_path)


class TestDottedKeys:
    def test_get(self, make_store):
        store = make_store(defaults={"a": {"b": {"c": 1}}})
        assert store.get("a.b.c") == 1
        assert store.get("a.x", "dflt") == "dflt"
        assert store.get("a.b.c.d") is None

    def test_set_creates_parents_with_one_save(self, make_store, writes):
        store = make_store()
        store.set("window.size.width", 800)
        assert writes.call_count == 1
        assert read_json(store.file_path) == {"window": {"size": {"width": 800}}}
        store.data["window"]["size"]["height"] = 600
        assert writes.call_count == 2

    def test_delete(self, make_store, writes):
        store = make_store(defaults={"a": {"b": 1}, "c": 2})
        assert not store.delete("a.x")
        assert not store.delete("nope.x")
        writes.assert_not_called()
        assert store.delete("a.b")
        assert store.delete("c")
        assert read_json(store.file_path) == {"a": {}}

    def test_set_on_failed_store(self, make_store, tmp_path):
        (tmp_path / "config.json").write_text("not json")
        store = make_store()
        with pytest.raises(StoreError):
            store.set("a", 1)
        assert store.get("a", 0) == 0
        assert not store.delete("a")


class TestAsyncWrites:
    def test_save_returns_before_write_then_flush(self, tmp_path):
        with Store(path=str(tmp_path)) as store:
            for i in range(10):
                store.data["n"] = i
            assert store.flush(timeout=5)
            assert read_json(store.file_path) == {"n": 9}

    def test_async_errors_reach_handler(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("x")
        on_save_error = MagicMock()
        with Store(path=str(blocker / "sub"), save_error_handler=on_save_error) as store:
            store.data["a"] = 1
            store.flush()
        on_save_error.assert_called_once()

    def test_last_write_lands_on_normal_exit(self, tmp_path):
        script = (
            "import sys\n"
            "from store import Store\n"
            "store = Store(path=sys.argv[1])\n"
            "store.data['blob'] = 'x' * 2000000\n"
            "store.data['a'] = 1\n"
        )
        subprocess.run(
            [sys.executable, "-c", script, str(tmp_path)],
            cwd=str(Path(__file__).parent), check=True, timeout=60,
        )
        doc = read_json(tmp_path / "config.json")
        assert doc["a"] == 1
        assert len(doc["blob"]) == 2000000


class TestDetachedTrees:
    def test_stale_reference_after_reset_does_not_save(self, make_store, writes):
        store = make_store(defaults={"ui": {"theme": "dark"}})
        old = store.data["ui"]
        store.reset()
        writes.reset_mock()
        old["theme"] = "light"
        writes.assert_not_called()
        assert store.data["ui"]["theme"] == "dark"
        store.data["ui"]["theme"] = "blue"
        assert writes.call_count == 1

    def test_stale_root_after_assignment_does_not_save(self, make_store, writes):
        store = make_store()
        old = store.data
        store.data = {"fresh": True}
        writes.reset_mock()
        old["x"] = 1
        writes.assert_not_called()

    def test_subtree_moved_between_stores_is_copied(self, tmp_path):
        store_a = Store(path=str(tmp_path / "a"), async_writes=False)
        store_b = Store(path=str(tmp_path / "b"), async_writes=False)
        store_a.data["y"] = {"n": 1}
        store_b.data["x"] = store_a.data["y"]
        assert store_b.data["x"] is not store_a.data["y"]
        store_a.data["y"]["n"] = 2
        assert read_json(store_a.file_path) == {"y": {"n": 2}}
        assert read_json(store_b.file_path) == {"x": {"n": 1}}
        store_b.data["x"]["n"] = 3
        assert read_json(store_b.file_path) == {"x": {"n": 3}}
        assert read_json(store_a.file_path) == {"y": {"n": 2}}
