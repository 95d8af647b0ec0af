import threading

import pytest
from bson import ObjectId
from google.auth.exceptions import RefreshError

from core.errors import ConfigurationError
from core.formatters import FINANCE_HEADERS, USER_HEADERS
from core.full_sync import FullSync
from core.incremental_sync import _KEY_LOCKS, IncrementalSyncEngine, schedule_record_sync
from core.pull_reconciler import PullReconciler

from conftest import make_form, make_payment, make_user

FINANCE = "**Finance (Do Not Open)**"


def _engine(store, client_factory, settings):
    return IncrementalSyncEngine(store, client_factory, settings)


def test_sync_appends_once_and_then_updates_in_place(sheets, client_factory, store, database, settings):
    sheets.add_tab(FINANCE, [list(FINANCE_HEADERS)])
    owner = make_user(database)
    make_form(database, owner, "Football", 3)
    payment_id = make_payment(database, owner)
    engine = _engine(store, client_factory, settings)

    first = engine.sync_record("payments", str(payment_id))
    second = engine.sync_record("payments", str(payment_id))

    assert first.success and second.success
    rows = sheets.data_rows(FINANCE)
    assert len(rows) == 1
    assert rows[0][3] == str(payment_id)
    assert [name for name, _ in sheets.calls].count("values.append") == 1
    assert [name for name, _ in sheets.calls].count("values.update") == 1


def test_update_replaces_the_matching_row_and_keeps_row_count(sheets, client_factory, store, database, settings):
    owner = make_user(database)
    payment_id = make_payment(database, owner, registrationStatus="Confirmed")
    other = ["01/01/2024", "10:00 am", "T0", str(ObjectId()), "800"]
    stale = ["01/01/2024", "10:00 am", "OLD", str(payment_id), "1"]
    sheets.add_tab(FINANCE, [list(FINANCE_HEADERS), other, stale])
    engine = _engine(store, client_factory, settings)

    result = engine.sync_record("payments", str(payment_id))

    assert result.success
    rows = sheets.data_rows(FINANCE)
    assert len(rows) == 2
    assert rows[0][:5] == other
    assert rows[1][2] == "TXN-001"
    assert rows[1][13] == "Confirmed"
    assert ("values.update", f"'{FINANCE}'!A3:O3") in sheets.calls


def test_users_are_matched_on_normalised_email(sheets, client_factory, store, database, settings):
    user_id = make_user(database, email="Foo@Bar.com", name="Foo")
    sheets.add_tab("Users", [list(USER_HEADERS), ["Old Name", " FOO@bar.com ", "", "", "No", "No", "No", ""]])
    engine = _engine(store, client_factory, settings)

    result = engine.sync_record("users", str(user_id))

    assert result.success
    rows = sheets.data_rows("Users")
    assert len(rows) == 1
    assert rows[0][0] == "Foo"
    assert rows[0][1] == "foo@bar.com"


def test_key_column_found_by_header_name_when_columns_move(sheets, client_factory, store, database, settings):
    user_id = make_user(database, email="asha@uni.example")
    moved = ["Notes"] + list(USER_HEADERS)
    sheets.add_tab("Users", [moved, ["vip", "Asha", "asha@uni.example"]])
    engine = _engine(store, client_factory, settings)

    engine.sync_record("users", str(user_id))

    assert len(sheets.data_rows("Users")) == 1
    assert ("values.get", "'Users'!C:C") in sheets.calls


def test_empty_sheet_gets_header_and_row_in_one_append(sheets, client_factory, store, database, settings):
    sheets.add_tab("Users")
    user_id = make_user(database)
    engine = _engine(store, client_factory, settings)

    result = engine.sync_record("users", str(user_id))

    assert result.success
    assert sheets.tabs["Users"][0] == list(USER_HEADERS)
    assert len(sheets.data_rows("Users")) == 1
    assert [name for name, _ in sheets.calls].count("values.append") == 1


def test_form_rows_land_in_registrations_keyed_by_form_id(sheets, client_factory, store, database, settings):
    sheets.add_tab("Registrations")
    owner = make_user(database)
    form_id = make_form(database, owner, "Chess", 1)
    engine = _engine(store, client_factory, settings)

    engine.sync_record("form", str(form_id))
    engine.sync_record("form", str(form_id))

    rows = sheets.data_rows("Registrations")
    assert len(rows) == 1
    assert rows[0][0] == str(form_id)
    assert rows[0][3] == "Riverside University"


def test_missing_record_is_a_failure_result(sheets, client_factory, store, settings):
    sheets.add_tab("Users")
    engine = _engine(store, client_factory, settings)

    result = engine.sync_record("users", str(ObjectId()))

    assert not result.success
    assert "Record not found" in result.message
    assert sheets.calls == []


def test_malformed_id_is_a_failure_result(client_factory, store, settings):
    result = _engine(store, client_factory, settings).sync_record("payments", "not-an-id")

    assert not result.success
    assert "Invalid record id" in result.message


def test_missing_configuration_is_a_failure_result(store, database, settings):
    user_id = make_user(database)

    def factory():
        raise ConfigurationError("GOOGLE_SHEET_ID not configured")

    result = _engine(store, factory, settings).sync_record("users", str(user_id))

    assert not result.success
    assert result.message == "GOOGLE_SHEET_ID not configured"


def test_sheet_api_failure_is_a_failure_result(sheets, client_factory, store, database, settings):
    sheets.add_tab("Users", [list(USER_HEADERS)])
    sheets.fail_on.add("values.append")
    user_id = make_user(database)

    result = _engine(store, client_factory, settings).sync_record("users", str(user_id))

    assert not result.success
    assert "values.append" in result.message


def test_disabled_sync_does_not_touch_the_sheet(sheets, client_factory, store, database, settings):
    settings.sheets_sync_enabled = False
    user_id = make_user(database)

    result = _engine(store, client_factory, settings).sync_record("users", str(user_id))

    assert not result.success
    assert sheets.calls == []


def test_concurrent_syncs_of_one_record_append_once(sheets, client_factory, store, database, settings):
    sheets.add_tab("Users", [list(USER_HEADERS)])
    user_id = make_user(database)
    engine = _engine(store, client_factory, settings)
    barrier = threading.Barrier(4)
    results = []

    def worker():
        barrier.wait()
        results.append(engine.sync_record("users", str(user_id)))

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert all(result.success for result in results)
    assert len(sheets.data_rows("Users")) == 1


def test_scheduled_failures_are_dead_lettered(sheets, client_factory, store, database, settings, runner):
    sheets.add_tab("Users", [list(USER_HEADERS)])
    sheets.fail_on.add("values.append")
    user_id = make_user(database)
    engine = _engine(store, client_factory, settings)

    schedule_record_sync(runner, engine, "users", user_id)

    pending = runner.dead_letters.pending()
    assert len(pending) == 1
    assert pending[0]["collection"] == "users"
    assert pending[0]["record_id"] == str(user_id)


@pytest.mark.parametrize(
    "error",
    [RefreshError("invalid_grant"), ConnectionResetError("connection reset by peer")],
    ids=["revoked-credentials", "dropped-connection"],
)
def test_auth_and_network_failures_are_failure_results(sheets, client_factory, store, database, settings, error):
    sheets.add_tab("Users", [list(USER_HEADERS), ["Asha", "asha@uni.example"]])
    user_id = make_user(database)
    sheets.raise_on["values.get"] = error
    sheets.raise_on["values.clear"] = error

    pushed = _engine(store, client_factory, settings).sync_record("users", str(user_id))
    pulled = PullReconciler(store, client_factory, settings).pull_from_sheet("Users", "users")
    rewritten = FullSync(store, client_factory, settings).full_sync("users", "Users")

    assert [pushed.success, pulled.success, rewritten.success] == [False, False, False]
    assert str(error) in pushed.message
    assert database.total_updates() == 0


def test_concurrent_first_writes_to_an_empty_sheet_share_one_header(sheets, client_factory, store, database, settings):
    sheets.add_tab("Users")
    user_ids = [
        make_user(database, email="asha@uni.example"),
        make_user(database, email="ravi@uni.example", name="Ravi"),
    ]
    engine = _engine(store, client_factory, settings)
    barrier = threading.Barrier(len(user_ids))
    results = []

    def worker(user_id):
        barrier.wait()
        results.append(engine.sync_record("users", str(user_id)))

    threads = [threading.Thread(target=worker, args=(user_id,)) for user_id in user_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert all(result.success for result in results)
    assert sheets.tabs["Users"][0] == list(USER_HEADERS)
    assert sheets.tabs["Users"].count(list(USER_HEADERS)) == 1
    assert sorted(row[1] for row in sheets.data_rows("Users")) == ["asha@uni.example", "ravi@uni.example"]


def test_key_locks_are_released_after_each_sync(sheets, client_factory, store, database, settings):
    sheets.add_tab("Users")
    engine = _engine(store, client_factory, settings)

    for index in range(5):
        user_id = make_user(database, email=f"player{index}@uni.example")
        assert engine.sync_record("users", str(user_id)).success

    assert len(sheets.data_rows("Users")) == 5
    assert len(_KEY_LOCKS) == 0
