import sqlite3
from datetime import UTC, datetime

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from auditkit.models import EntityRevision, RevisionCounter, RevisionInfo, User
from auditkit.models.revision import ChangeKind
from auditkit.services.revisions import (
    RevisionStore,
    changes_at,
    get_revision,
    get_revision_info,
    latest_revision_id,
    list_revisions,
    translate_storage_error,
)
from auditkit.utils.errors import (
    ConcurrentWriteConflict,
    InvalidRevisionSequenceError,
    MissingActorError,
    NotFoundError,
    StorageError,
)

AT = datetime(2026, 2, 1, 8, 30, tzinfo=UTC)


def _record(store, db_session, entity_id, change_kind, payload=None, *, entity_type="Widget", actor="AdminUser"):
    return store.record(
        db_session,
        entity_type=entity_type,
        entity_id=entity_id,
        change_kind=change_kind,
        payload=payload or {"id": entity_id},
        actor=actor,
        timestamp=AT,
    )


def _write(store, db_session, entity_id, change_kind, payload=None, **kwargs):
    with store.unit_of_work(db_session):
        return _record(store, db_session, entity_id, change_kind, payload, **kwargs)


def test_revisions_are_listed_in_ascending_order(users, make_user, db_session):
    user = make_user()
    users.update(user.id, {"is_active": False}, actor="AdminUser")
    users.update(user.id, {"is_active": True}, actor="AdminUser")
    users.delete(user.id, actor="AdminUser")

    revisions = list_revisions(db_session, "User", user.id)

    ids = [r.revision_id for r in revisions]
    assert ids == sorted(ids) and len(set(ids)) == len(ids)
    assert revisions[0].change_kind is ChangeKind.INSERT
    assert revisions[-1].change_kind is ChangeKind.DELETE
    assert all(r.change_kind is ChangeKind.UPDATE for r in revisions[1:-1])


def test_revision_ids_are_global_across_entity_types(store, db_session):
    assert _write(store, db_session, 1, ChangeKind.INSERT, entity_type="Widget") == 1
    assert _write(store, db_session, 1, ChangeKind.INSERT, entity_type="Gadget") == 2
    assert _write(store, db_session, 1, ChangeKind.UPDATE, entity_type="Widget") == 3

    assert [r.revision_id for r in list_revisions(db_session, "Widget", 1)] == [1, 3]
    assert latest_revision_id(db_session) == 3


def test_get_revision_unknown_number_is_not_found(make_user, db_session):
    user = make_user()

    with pytest.raises(NotFoundError) as excinfo:
        get_revision(db_session, "User", user.id, 999)

    assert excinfo.value.to_response()["error"]["code"] == "NOT_FOUND"
    assert excinfo.value.details["revision_id"] == 999


def test_get_revision_of_another_identity_is_not_found(make_user, db_session):
    first = make_user()
    second = make_user()

    with pytest.raises(NotFoundError):
        get_revision(db_session, "User", second.id, 1)
    assert get_revision(db_session, "User", first.id, 1).entity_id == str(first.id)


def test_get_revision_is_repeatable(users, make_user, db_session):
    user = make_user(username="stable")
    users.update(user.id, {"username": "moved"}, actor="AdminUser")

    reads = [get_revision(db_session, "User", user.id, 1).model_dump_json() for _ in range(3)]

    assert reads[0] == reads[1] == reads[2]
    assert '"username":"stable"' in reads[0]


def test_returned_payloads_are_copies(make_user, db_session):
    user = make_user(username="original")
    revision = get_revision(db_session, "User", user.id, 1)

    revision.payload["username"] = "tampered"

    assert get_revision(db_session, "User", user.id, 1).payload["username"] == "original"


def test_first_revision_must_be_insert(store, db_session):
    with pytest.raises(InvalidRevisionSequenceError):
        _write(store, db_session, 7, ChangeKind.UPDATE)
    with pytest.raises(InvalidRevisionSequenceError):
        _write(store, db_session, 7, ChangeKind.DELETE)

    assert list_revisions(db_session, "Widget", 7) == []


def test_insert_cannot_repeat_for_a_live_identity(store, db_session):
    _write(store, db_session, 7, ChangeKind.INSERT)

    with pytest.raises(InvalidRevisionSequenceError) as excinfo:
        _write(store, db_session, 7, ChangeKind.INSERT)

    assert excinfo.value.details["latest"] == "INSERT"


def test_nothing_follows_a_delete(store, db_session):
    _write(store, db_session, 7, ChangeKind.INSERT)
    _write(store, db_session, 7, ChangeKind.DELETE)

    for kind in (ChangeKind.UPDATE, ChangeKind.DELETE, ChangeKind.INSERT):
        with pytest.raises(InvalidRevisionSequenceError):
            _write(store, db_session, 7, kind)

    assert [r.change_kind for r in list_revisions(db_session, "Widget", 7)] == [
        ChangeKind.INSERT,
        ChangeKind.DELETE,
    ]


def test_restart_policy_allows_insert_after_delete(db_session):
    store = RevisionStore(key_reuse="restart")
    _write(store, db_session, 7, ChangeKind.INSERT)
    _write(store, db_session, 7, ChangeKind.DELETE)

    assert _write(store, db_session, 7, ChangeKind.INSERT) == 3
    with pytest.raises(InvalidRevisionSequenceError):
        _write(store, db_session, 7, ChangeKind.INSERT)


def test_unknown_key_reuse_policy_is_rejected():
    with pytest.raises(ValueError):
        RevisionStore(key_reuse="sometimes")


def test_key_reuse_policy_defaults_to_settings(monkeypatch):
    monkeypatch.setenv("REVISION_KEY_REUSE", "restart")

    assert RevisionStore().key_reuse == "restart"


def test_one_unit_of_work_shares_one_revision(store, db_session):
    with store.unit_of_work(db_session):
        first = _record(store, db_session, 1, ChangeKind.INSERT, entity_type="Order")
        second = _record(store, db_session, 10, ChangeKind.INSERT, entity_type="OrderLine")
        third = _record(store, db_session, 11, ChangeKind.INSERT, entity_type="OrderLine")

    assert first == second == third == 1
    changed = changes_at(db_session, 1)
    assert [(r.entity_type, r.entity_id) for r in changed] == [("Order", "1"), ("OrderLine", "10"), ("OrderLine", "11")]
    assert get_revision_info(db_session, 1).actor == "AdminUser"


def test_identity_recorded_twice_in_one_revision_is_rejected(store, db_session):
    with pytest.raises(InvalidRevisionSequenceError):
        with store.unit_of_work(db_session):
            _record(store, db_session, 1, ChangeKind.INSERT)
            _record(store, db_session, 1, ChangeKind.UPDATE)

    assert list_revisions(db_session, "Widget", 1) == []


def test_record_requires_an_actor(store, db_session):
    with pytest.raises(MissingActorError):
        _write(store, db_session, 1, ChangeKind.INSERT, actor=" ")


def test_failed_unit_of_work_leaves_nothing_behind(store, db_session, clock):
    with pytest.raises(RuntimeError):
        with store.unit_of_work(db_session):
            now = clock.now()
            db_session.add(
                User(
                    username="half",
                    email="half@example.com",
                    created_at=now,
                    created_by="AdminUser",
                    modified_at=now,
                    modified_by="AdminUser",
                )
            )
            db_session.flush()
            _record(store, db_session, 1, ChangeKind.INSERT, entity_type="User")
            raise RuntimeError("request timed out")

    assert db_session.scalar(select(func.count()).select_from(User)) == 0
    assert db_session.scalar(select(func.count()).select_from(EntityRevision)) == 0
    assert db_session.scalar(select(func.count()).select_from(RevisionCounter)) == 0
    assert latest_revision_id(db_session) is None

    # The next committed write still starts at revision 1.
    assert _write(store, db_session, 1, ChangeKind.INSERT) == 1


def test_get_revision_info_unknown(db_session):
    with pytest.raises(NotFoundError):
        get_revision_info(db_session, 42)
    assert changes_at(db_session, 42) == []


def test_purge_deleted_removes_only_finished_histories(users, make_user, store, db_session):
    gone = make_user()
    kept = make_user()
    gone_id = gone.id
    delete_revision = users.delete(gone_id, actor="AdminUser")

    removed = store.purge_deleted(db_session, deleted_at_or_before=delete_revision)

    assert removed == 2
    assert list_revisions(db_session, "User", gone_id) == []
    assert [r.revision_id for r in list_revisions(db_session, "User", kept.id)] == [2]
    assert db_session.scalars(select(RevisionInfo.id).order_by(RevisionInfo.id)).all() == [2]


def test_purge_respects_the_cutoff(users, make_user, store, db_session):
    user = make_user()
    delete_revision = users.delete(user.id, actor="AdminUser")

    assert store.purge_deleted(db_session, deleted_at_or_before=delete_revision - 1) == 0
    assert len(list_revisions(db_session, "User", user.id)) == 2


def test_revision_bookkeeping_collision_is_a_conflict():
    exc = IntegrityError("INSERT INTO revision_info (id, actor, timestamp) VALUES (?, ?, ?)", {}, Exception("UNIQUE"))

    assert isinstance(translate_storage_error(exc), ConcurrentWriteConflict)


def test_live_table_constraint_is_a_storage_error():
    exc = IntegrityError("INSERT INTO users (username) VALUES (?)", {}, Exception("UNIQUE"))

    error = translate_storage_error(exc)
    assert isinstance(error, StorageError)
    assert error.code == "STORAGE_FAILURE"


def test_locked_database_is_a_conflict():
    locked = OperationalError("UPDATE revision_counter", {}, sqlite3.OperationalError("database is locked"))
    gone = OperationalError("SELECT 1", {}, sqlite3.OperationalError("unable to open database file"))

    assert isinstance(translate_storage_error(locked), ConcurrentWriteConflict)
    assert isinstance(translate_storage_error(gone), StorageError)


def test_postgres_serialization_failure_is_a_conflict():
    class SerializationFailure(Exception):
        pgcode = "40001"

    exc = OperationalError("UPDATE users SET ...", {}, SerializationFailure("could not serialize access"))

    assert isinstance(translate_storage_error(exc), ConcurrentWriteConflict)


def test_stale_row_is_a_conflict():
    error = translate_storage_error(StaleDataError("UPDATE statement on table 'users' expected to update 1 row(s); 0 were matched."))

    assert isinstance(error, ConcurrentWriteConflict)
    assert error.details["reason"] == "stale_data"
