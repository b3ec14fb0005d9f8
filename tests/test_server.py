"""Tests for the board server API (Flask test client)."""
import pytest

from notes_server import create_app
from pkg.ampel.config import Config
from pkg.ampel.docstore import DocumentStore
from pkg.ampel.identity import IdentityProvider
from pkg.ampel.session import NotesSession

API_KEY = "test-key"
HEADERS = {"X-API-Key": API_KEY}


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("AMPEL_API_SECRET", API_KEY)
    cfg = Config(db_path=str(tmp_path / "server.db"))
    identity = IdentityProvider()
    store = DocumentStore(cfg.db_path, identity=identity)
    session = NotesSession(store, identity)
    identity.ensure_guest()
    session.start()
    app = create_app(cfg, session)
    app.config["TESTING"] = True
    with app.test_client() as c:
        yield c
    session.stop()


@pytest.fixture
def signed_in_client(client):
    resp = client.post("/api/auth/sign-in", json={"display_name": "Ada"}, headers=HEADERS)
    assert resp.status_code == 200
    return client


def post(client, url, payload=None):
    return client.post(url, json=payload or {}, headers=HEADERS)


class TestAuth:

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.get_json()["access"] is False

    def test_missing_key_is_401(self, client):
        resp = client.post("/api/auth/sign-in", json={})
        assert resp.status_code == 401

    def test_wrong_key_is_403(self, client):
        resp = client.post("/api/auth/sign-in", json={}, headers={"X-API-Key": "nope"})
        assert resp.status_code == 403

    def test_unset_secret_is_503(self, client, monkeypatch):
        monkeypatch.delenv("AMPEL_API_SECRET")
        resp = post(client, "/api/auth/sign-in")
        assert resp.status_code == 503

    def test_guest_cannot_create(self, client):
        resp = post(client, "/api/categories", {"name": "Work"})
        assert resp.status_code == 403

    def test_sign_in_and_out(self, client):
        resp = post(client, "/api/auth/sign-in", {"display_name": "Ada"})
        assert resp.get_json()["board"]["access"] is True

        resp = post(client, "/api/auth/sign-out")
        assert resp.get_json()["board"]["access"] is False


class TestBoard:

    def test_create_and_read_board(self, signed_in_client):
        c = signed_in_client
        work = post(c, "/api/categories", {"name": "Work"}).get_json()["id"]
        sprint = post(c, "/api/stacks", {"category_id": work, "title": "Sprint1"}).get_json()["id"]
        resp = post(c, "/api/notes", {
            "text": "ship it", "color": "red", "category_id": work, "stack_id": sprint,
        })
        assert resp.status_code == 201

        board = c.get("/api/board").get_json()
        assert [cat["name"] for cat in board["categories"]] == ["Work"]
        assert board["notes"][0]["text"] == "ship it"
        assert board["counts"]["red"] == 1

    def test_filter_returns_columns(self, signed_in_client):
        c = signed_in_client
        work = post(c, "/api/categories", {"name": "Work"}).get_json()["id"]
        post(c, "/api/notes", {"text": "loose", "category_id": work})

        board = post(c, "/api/filter", {"category_id": work}).get_json()

        assert board["filter"] == work
        assert board["creation_category"] == work
        assert len(board["columns"]) == 1

    def test_note_uses_creation_selection(self, signed_in_client):
        c = signed_in_client
        work = post(c, "/api/categories", {"name": "Work"}).get_json()["id"]
        sprint = post(c, "/api/stacks", {"category_id": work, "title": "Sprint1"}).get_json()["id"]
        post(c, "/api/filter", {"category_id": work})
        post(c, "/api/creation/stack", {"stack_id": sprint})

        post(c, "/api/notes", {"text": "from form"})

        [note] = c.get("/api/board").get_json()["notes"]
        assert note["category_id"] == work
        assert note["stack_id"] == sprint

    def test_empty_text_is_400(self, signed_in_client):
        resp = post(signed_in_client, "/api/notes", {"text": "  "})
        assert resp.status_code == 400

    def test_patch_note(self, signed_in_client):
        c = signed_in_client
        note_id = post(c, "/api/notes", {"text": "x"}).get_json()["id"]

        resp = c.patch(f"/api/notes/{note_id}", json={"color": "yellow"}, headers=HEADERS)
        assert resp.status_code == 200
        assert c.get("/api/board").get_json()["notes"][0]["color"] == "yellow"

        resp = c.patch(f"/api/notes/{note_id}", json={}, headers=HEADERS)
        assert resp.status_code == 400

    def test_patch_with_several_fields_changes_nothing(self, signed_in_client):
        c = signed_in_client
        note_id = post(c, "/api/notes", {"text": "x", "color": "green"}).get_json()["id"]

        resp = c.patch(f"/api/notes/{note_id}", json={"color": "red", "text": "y"}, headers=HEADERS)

        assert resp.status_code == 400
        [note] = c.get("/api/board").get_json()["notes"]
        assert note["color"] == "green"
        assert note["text"] == "x"

    def test_toggle_edit_and_delete_note(self, signed_in_client):
        c = signed_in_client
        note_id = post(c, "/api/notes", {"text": "x"}).get_json()["id"]

        assert post(c, f"/api/notes/{note_id}/edit").get_json()["editing"] is True
        resp = c.delete(f"/api/notes/{note_id}", headers=HEADERS)
        assert resp.get_json()["deleted"] is True
        assert c.get("/api/board").get_json()["notes"] == []


class TestCascadeConfirmation:

    def test_category_delete_needs_confirmation(self, signed_in_client):
        c = signed_in_client
        work = post(c, "/api/categories", {"name": "Work"}).get_json()["id"]
        post(c, "/api/stacks", {"category_id": work, "title": "Sprint1"})
        post(c, "/api/notes", {"text": "n", "category_id": work})

        first = c.delete(f"/api/categories/{work}", headers=HEADERS).get_json()
        assert first["committed"] is False
        assert first["confirm_required"] is True
        assert first["plan"]["notes"] == 1
        assert first["plan"]["stacks"] == 1
        assert len(c.get("/api/board").get_json()["categories"]) == 1

        second = c.delete(f"/api/categories/{work}?confirm=1", headers=HEADERS).get_json()
        assert second["committed"] is True
        board = c.get("/api/board").get_json()
        assert board["categories"] == []
        assert board["notes"][0]["category_id"] is None

    def test_stack_delete_with_confirmation(self, signed_in_client):
        c = signed_in_client
        work = post(c, "/api/categories", {"name": "Work"}).get_json()["id"]
        sprint = post(c, "/api/stacks", {"category_id": work, "title": "Sprint1"}).get_json()["id"]
        post(c, "/api/notes", {"text": "n", "category_id": work, "stack_id": sprint})

        resp = c.delete(f"/api/stacks/{sprint}?confirm=true", headers=HEADERS).get_json()

        assert resp["committed"] is True
        [note] = c.get("/api/board").get_json()["notes"]
        assert note["stack_id"] is None
        assert note["category_id"] == work
