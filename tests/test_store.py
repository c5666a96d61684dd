from datetime import datetime, timedelta

import pytest

from conftest import PUBLIC_KEY
from shellpilot.errors import InvalidRequest, NotFound
from shellpilot.models import STATUS_RUNNING
from shellpilot.store import MemoryStore


class TestConnections:
    def test_create_defaults(self, store):
        connection = store.create_connection("", "example.org", "admin")

        assert connection.name == "admin@example.org"
        assert connection.port == 22
        assert connection.is_active is False
        assert store.get_connection(connection.id) is connection

    def test_host_and_user_required(self, store):
        with pytest.raises(InvalidRequest):
            store.create_connection("x", "", "admin")

    def test_at_most_one_active(self, store):
        a = store.create_connection("a", "h1", "u")
        b = store.create_connection("b", "h2", "u")

        store.set_connection_active(a.id, True)
        store.set_connection_active(b.id, True)

        assert (a.is_active, b.is_active) == (False, True)
        assert store.active_connection() is b

        store.set_connection_active(b.id, False)
        assert store.active_connection() is None

    def test_require_missing_has_hint(self, store):
        with pytest.raises(NotFound) as excinfo:
            store.require_connection("missing")

        assert "connection_create" in excinfo.value.hint

    def test_delete(self, store):
        connection = store.create_connection("a", "h1", "u")

        assert store.delete_connection(connection.id) is True
        assert store.delete_connection(connection.id) is False
        assert store.list_connections() == []


class TestKeys:
    def test_create_parses_type_and_fingerprint(self, store):
        record = store.create_key("laptop", PUBLIC_KEY)

        assert record.key_type == "ed25519"
        assert record.fingerprint.startswith("SHA256:")
        assert store.list_keys() == [record]

    def test_invalid_key_rejected(self, store):
        with pytest.raises(InvalidRequest):
            store.create_key("bad", "not a key")

    def test_delete_is_soft(self, store):
        record = store.create_key("laptop", PUBLIC_KEY)

        assert store.delete_key(record.id) is True

        assert store.list_keys() == []
        assert store.get_key(record.id).is_active is False

    def test_touch_sets_last_used(self, store):
        record = store.create_key("laptop", PUBLIC_KEY)

        store.touch_key(record.id)

        assert record.last_used is not None


class TestCommandHistory:
    def test_newest_first_per_connection(self, store):
        older = store.create_command("c1", "a", "ls")
        newer = store.create_command("c1", "b", "pwd")
        other = store.create_command("c2", "c", "whoami")
        older.created_at = datetime.now() - timedelta(minutes=5)

        assert store.list_commands("c1") == [newer, older]
        assert len(store.list_commands()) == 3
        assert other in store.list_commands("c2")

    def test_plain_text_defaults_to_command(self, store):
        assert store.create_command("c1", "", "uptime").plain_text_input == "uptime"

    def test_status_and_result_updates(self, store):
        record = store.create_command("c1", "list", "ls")

        store.update_command_status(record.id, STATUS_RUNNING)
        assert record.status == STATUS_RUNNING

        store.update_command_result(record.id, "a\nb\n", 0, "success", 12)
        assert (record.output, record.exit_code, record.status, record.execution_time_ms) == ("a\nb\n", 0, "success", 12)
        assert record.completed_at is not None

    def test_clear_history_only_touches_one_connection(self, store):
        store.create_command("c1", "a", "ls")
        store.create_command("c1", "b", "pwd")
        kept = store.create_command("c2", "c", "whoami")

        assert store.clear_command_history("c1") == 2
        assert store.list_commands() == [kept]

    def test_updates_to_missing_rows_are_ignored(self):
        store = MemoryStore()

        store.update_command_status("missing", STATUS_RUNNING)
        store.update_command_result("missing", "", 0, "success", 1)

        assert store.list_commands() == []
