"""
Tests for the SQLite document store: writes, owner rule, batches, live queries.
"""
import pytest

from pkg.ampel.docstore import (
    SERVER_TIMESTAMP,
    DocumentStore,
    NotFound,
    PermissionDenied,
    Query,
)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Single-document writes
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_add_and_get(store, signed_in):
    """Added documents come back with their id"""
    doc_id = store.add("notes", {"owner": signed_in.uid, "text": "hello"})

    doc = store.get("notes", doc_id)
    assert doc["id"] == doc_id
    assert doc["text"] == "hello"
    assert doc["owner"] == signed_in.uid


def test_server_timestamp_resolved_at_commit(store, signed_in, clock):
    """SERVER_TIMESTAMP is replaced by the store clock"""
    doc_id = store.add("notes", {"owner": signed_in.uid, "created_at": SERVER_TIMESTAMP})

    assert store.get("notes", doc_id)["created_at"] == clock.now.isoformat()


def test_update_merges_fields(store, signed_in):
    doc_id = store.add("notes", {"owner": signed_in.uid, "text": "a", "color": "red"})

    store.update("notes", doc_id, {"color": "green"})

    doc = store.get("notes", doc_id)
    assert doc["text"] == "a"
    assert doc["color"] == "green"


def test_update_missing_document_raises(store):
    with pytest.raises(NotFound):
        store.update("notes", "nope", {"text": "x"})


def test_delete_missing_document_is_noop(store, signed_in):
    store.delete("notes", "nope")  # Should not raise


def test_get_all_filters_by_predicate_in_insertion_order(store, signed_in):
    uid = signed_in.uid
    a = store.add("stacks", {"owner": uid, "category_id": "c1", "title": "A"})
    store.add("stacks", {"owner": uid, "category_id": "c2", "title": "B"})
    c = store.add("stacks", {"owner": uid, "category_id": "c1", "title": "C"})

    docs = store.get_all(Query("stacks", uid, (("category_id", "c1"),)))
    assert [d["id"] for d in docs] == [a, c]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Owner rule
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_write_for_other_owner_denied(store, signed_in):
    with pytest.raises(PermissionDenied):
        store.add("notes", {"owner": "someone-else", "text": "x"})


def test_read_for_other_owner_denied(store, signed_in):
    with pytest.raises(PermissionDenied):
        store.get_all(Query("notes", "someone-else"))


def test_guest_has_no_access(store, identity):
    guest = identity.ensure_guest()
    with pytest.raises(PermissionDenied):
        store.add("notes", {"owner": guest.uid, "text": "x"})


def test_owner_cannot_be_changed(store, signed_in):
    doc_id = store.add("notes", {"owner": signed_in.uid, "text": "x"})
    with pytest.raises(PermissionDenied):
        store.update("notes", doc_id, {"owner": "someone-else"})


def test_store_without_identity_has_no_rule(db_path):
    store = DocumentStore(db_path)
    doc_id = store.add("notes", {"owner": "anyone", "text": "x"})
    assert store.get("notes", doc_id)["owner"] == "anyone"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Batches
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_batch_commits_all_ops(store, signed_in):
    uid = signed_in.uid
    n1 = store.add("notes", {"owner": uid, "category_id": "c"})
    s1 = store.add("stacks", {"owner": uid, "category_id": "c"})

    batch = store.batch()
    batch.update("notes", n1, {"category_id": None})
    batch.delete("stacks", s1)
    batch.commit()

    assert store.get("notes", n1)["category_id"] is None
    assert store.get("stacks", s1) is None


def test_batch_rolls_back_on_failure(store, signed_in):
    """A failing op leaves every earlier op in the batch unapplied"""
    uid = signed_in.uid
    n1 = store.add("notes", {"owner": uid, "category_id": "c"})
    s1 = store.add("stacks", {"owner": uid, "category_id": "c"})

    batch = store.batch()
    batch.update("notes", n1, {"category_id": None})
    batch.delete("stacks", s1)
    batch.update("notes", "vanished", {"category_id": None})
    with pytest.raises(NotFound):
        batch.commit()

    assert store.get("notes", n1)["category_id"] == "c"
    assert store.get("stacks", s1) is not None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Live queries
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_listen_delivers_initial_and_updated_snapshots(store, signed_in):
    uid = signed_in.uid
    store.add("notes", {"owner": uid, "text": "first"})
    seen = []

    store.listen(Query("notes", uid), lambda snap: seen.append([d["text"] for d in snap.docs]))
    store.add("notes", {"owner": uid, "text": "second"})

    assert seen == [["first"], ["first", "second"]]


def test_listen_skips_commits_that_do_not_change_result(store, signed_in):
    uid = signed_in.uid
    seen = []
    store.listen(Query("stacks", uid, (("category_id", "c1"),)), seen.append)

    store.add("stacks", {"owner": uid, "category_id": "c2"})

    assert len(seen) == 1  # only the initial snapshot


def test_deliveries_wait_for_flush_without_autoflush(db_path, identity, signed_in):
    store = DocumentStore(db_path, identity=identity, autoflush=False)
    seen = []
    store.listen(Query("notes", signed_in.uid), seen.append)
    store.add("notes", {"owner": signed_in.uid, "text": "x"})

    assert seen == []
    assert store.pending == 2
    assert store.flush() == 2
    assert [len(s) for s in seen] == [0, 1]


def test_removed_listener_still_gets_in_flight_delivery(db_path, identity, signed_in):
    """Queued snapshots are dispatched even after remove(); consumers filter them"""
    store = DocumentStore(db_path, identity=identity, autoflush=False)
    seen = []
    registration = store.listen(Query("notes", signed_in.uid), seen.append)
    store.add("notes", {"owner": signed_in.uid, "text": "x"})
    registration.remove()

    assert not registration.active
    store.flush()
    assert len(seen) == 2

    store.add("notes", {"owner": signed_in.uid, "text": "y"})
    store.flush()
    assert len(seen) == 2


def test_listen_for_other_owner_reports_error(store, signed_in):
    errors = []
    registration = store.listen(Query("notes", "someone-else"), lambda s: None, errors.append)

    assert len(errors) == 1
    assert isinstance(errors[0], PermissionDenied)
    assert not registration.active


def test_listener_terminated_when_principal_loses_access(store, identity, signed_in):
    errors = []
    store.listen(Query("notes", signed_in.uid), lambda s: None, errors.append)

    identity.sign_out()
    # A commit by the new owner re-evaluates every live query
    identity.sign_in("Other")
    store.add("notes", {"owner": identity.current.uid, "text": "x"})

    assert len(errors) == 1
