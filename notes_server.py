#!/usr/bin/env python3
"""
Ampel Notes Server
------------------
Thin JSON API over one live NotesSession backed by the SQLite document store.

Usage:
    python notes_server.py
    python notes_server.py --config config.yaml --port 3000

API:
    GET    /api/board                  → JSON: session state and derived views
    POST   /api/auth/sign-in           → JSON body: { display_name }
    POST   /api/auth/sign-out
    POST   /api/filter                 → JSON body: { category_id | "ALL" }
    POST   /api/creation/stack         → JSON body: { stack_id | null }
    POST   /api/categories             → JSON body: { name }
    POST   /api/stacks                 → JSON body: { category_id, title }
    POST   /api/notes                  → JSON body: { text, color, category_id?, stack_id? }
    PATCH  /api/notes/<id>             → JSON body: exactly one of text | color | category_id | stack_id
    POST   /api/notes/<id>/edit        → toggle local edit mode
    DELETE /api/notes/<id>
    DELETE /api/categories/<id>        → returns the confirmation prompt
    DELETE /api/categories/<id>?confirm=1  → runs the cascade
    DELETE /api/stacks/<id>[?confirm=1]    → same two steps for stacks

Mutating routes require an X-API-Key header matching $AMPEL_API_SECRET.
"""

import hmac
import logging
from functools import wraps

from flask import Flask, jsonify, request

from pkg.ampel.config import Config, setup_logging
from pkg.ampel.docstore import DocumentStore
from pkg.ampel.identity import IdentityProvider
from pkg.ampel.mutations import MutationError
from pkg.ampel.session import FROM_SELECTION, NotesSession

logger = logging.getLogger(__name__)


def create_app(cfg: Config = None, session: NotesSession = None) -> Flask:
    """Build the Flask app around a started NotesSession."""
    cfg = cfg or Config.load()
    if session is None:
        identity = IdentityProvider()
        store = DocumentStore(cfg.db_path, identity=identity)
        session = NotesSession(store, identity, recheck_cascades=cfg.recheck_cascades)
        identity.ensure_guest()
        session.start()

    app = Flask(__name__)
    app.config["AMPEL"] = cfg
    app.extensions["ampel_session"] = session

    # ── Auth ─────────────────────────────────────────────────────────────────

    def require_api_key(f):
        """Decorator: reject requests without a valid X-API-Key header."""
        @wraps(f)
        def decorated(*args, **kwargs):
            secret = cfg.api_secret
            if not secret:
                return jsonify({"error": f"{cfg.api_secret_env} not set"}), 503
            provided = request.headers.get("X-API-Key", "").strip()
            if not hmac.compare_digest(provided, secret):
                code = 401 if not provided else 403
                return jsonify({"error": "Unauthorized"}), code
            return f(*args, **kwargs)
        return decorated

    def require_access(f):
        """Decorator: notes are only reachable for a fully signed-in principal."""
        @wraps(f)
        def decorated(*args, **kwargs):
            if not session.has_access:
                return jsonify({"error": "Sign in to continue"}), 403
            return f(*args, **kwargs)
        return decorated

    def body() -> dict:
        return request.get_json(force=True, silent=True) or {}

    @app.errorhandler(MutationError)
    def on_mutation_error(e):
        return jsonify({"error": str(e)}), 400

    @app.errorhandler(ValueError)
    def on_value_error(e):
        return jsonify({"error": str(e)}), 400

    # ── Routes ───────────────────────────────────────────────────────────────

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "db": cfg.db_path, "access": session.has_access})

    @app.route("/api/board")
    def api_board():
        return jsonify(session.to_dict())

    @app.route("/api/auth/sign-in", methods=["POST"])
    @require_api_key
    def api_sign_in():
        principal = session.identity.sign_in(body().get("display_name", ""))
        return jsonify({"uid": principal.uid, "board": session.to_dict()})

    @app.route("/api/auth/sign-out", methods=["POST"])
    @require_api_key
    def api_sign_out():
        session.identity.sign_out()
        return jsonify({"board": session.to_dict()})

    @app.route("/api/filter", methods=["POST"])
    @require_api_key
    @require_access
    def api_filter():
        session.set_filter(body().get("category_id"))
        return jsonify(session.to_dict())

    @app.route("/api/creation/stack", methods=["POST"])
    @require_api_key
    @require_access
    def api_pick_stack():
        session.pick_stack(body().get("stack_id"))
        return jsonify(session.to_dict())

    @app.route("/api/categories", methods=["POST"])
    @require_api_key
    @require_access
    def api_create_category():
        category_id = session.create_category(body().get("name", ""))
        return jsonify({"id": category_id}), 201

    @app.route("/api/stacks", methods=["POST"])
    @require_api_key
    @require_access
    def api_create_stack():
        data = body()
        stack_id = session.create_stack(data.get("category_id", ""), data.get("title", ""))
        return jsonify({"id": stack_id}), 201

    @app.route("/api/notes", methods=["POST"])
    @require_api_key
    @require_access
    def api_create_note():
        data = body()
        note_id = session.create_note(
            data.get("text", ""),
            data.get("color", "green"),
            data.get("category_id", FROM_SELECTION),
            data.get("stack_id", FROM_SELECTION),
        )
        return jsonify({"id": note_id}), 201

    @app.route("/api/notes/<note_id>", methods=["PATCH"])
    @require_api_key
    @require_access
    def api_update_note(note_id):
        data = body()
        given = [k for k in ("text", "color", "category_id", "stack_id") if k in data]
        if len(given) > 1:
            return jsonify({"error": f"one field per update, got {', '.join(given)}"}), 400
        if "category_id" in data:
            session.update_note_category(note_id, data["category_id"])
        elif "stack_id" in data:
            session.update_note_stack(note_id, data["stack_id"])
        elif "color" in data:
            session.update_note_color(note_id, data["color"])
        elif "text" in data:
            session.update_note_text(note_id, data["text"])
        else:
            return jsonify({"error": "one of text, color, category_id, stack_id is required"}), 400
        return jsonify({"id": note_id})

    @app.route("/api/notes/<note_id>/edit", methods=["POST"])
    @require_api_key
    @require_access
    def api_toggle_edit(note_id):
        return jsonify({"id": note_id, "editing": session.ui.toggle_edit(note_id)})

    @app.route("/api/notes/<note_id>", methods=["DELETE"])
    @require_api_key
    @require_access
    def api_delete_note(note_id):
        session.delete_note(note_id)
        return jsonify({"id": note_id, "deleted": True})

    def cascade(delete, target_id):
        # First call only describes the cascade; ?confirm=1 runs it
        confirmed = request.args.get("confirm") in ("1", "true", "yes")
        result = delete(target_id, confirm=lambda plan: confirmed)
        payload = {"plan": result.plan.to_dict(), "committed": result.committed}
        if not result.committed:
            payload["confirm_required"] = True
        return jsonify(payload)

    @app.route("/api/categories/<category_id>", methods=["DELETE"])
    @require_api_key
    @require_access
    def api_delete_category(category_id):
        return cascade(session.delete_category, category_id)

    @app.route("/api/stacks/<stack_id>", methods=["DELETE"])
    @require_api_key
    @require_access
    def api_delete_stack(stack_id):
        return cascade(session.delete_stack, stack_id)

    return app


# ── Main ─────────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Ampel Notes Server")
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument("--host", help="Bind address (overrides config)")
    parser.add_argument("--port", type=int, help="Port (overrides config)")
    args = parser.parse_args()

    cfg = Config.load(args.config)
    setup_logging(cfg)
    host = args.host or cfg.server_host
    port = args.port or cfg.server_port

    print(f"""
╔═══════════════════════════════════════╗
║  Ampel Notes Server                   ║
╠═══════════════════════════════════════╣
║  URL:  http://{host}:{port:<20}║
║  DB:   {cfg.db_path:<31}║
╚═══════════════════════════════════════╝
""")

    # One session, one thread: snapshots and mutations run in request order
    create_app(cfg).run(host=host, port=port, debug=False, threaded=False)
