#!/usr/bin/env python3
"""
Order Board Server
------------------
JSON API for the order board: customer-order tasks with per-task file
folders, workflow columns, zip downloads and AI search. State lives in
<storage>/metadata.json plus <storage>/tasks/<task_id>/.

Usage:
    python kanban_server.py
    python kanban_server.py --storage /srv/orderboard --port 3000

API:
    GET  /api/board, /api/jobs          → BoardData { tasks, columns }
    POST /api/board, PUT /api/jobs      → replace whole board, { ok: true }
    POST /api/jobs                      → create task (multipart)
    POST /api/jobs/<id>/upload          → add files (multipart: files)
    POST /api/jobs/<id>/update-file     → replace file (multipart: newFile, oldFilename)
    POST /api/jobs/<id>/delete-file     → JSON body: { filename }
    POST /api/jobs/<id>/move            → JSON body: { columnId }
    POST /api/jobs/<id>/reconcile       → rebuild manifest from disk
    GET  /api/jobs/<id>/zip             → zip of the task folder
    GET  /api/search?q=                 → [{ task, columnTitle }], at most 3
    GET  /health
"""

import argparse
import logging
import re
import sys
from typing import List, Optional
from urllib.parse import quote

from flask import Blueprint, Flask, Response, current_app, jsonify, request
from werkzeug.datastructures import FileStorage
from werkzeug.exceptions import HTTPException

from pkg.orderboard.config import Settings
from pkg.orderboard.errors import BoardError
from pkg.orderboard.files import Upload
from pkg.orderboard.operations import BoardService, MutationResult

bp = Blueprint("board", __name__)


# ── Helpers ──────────────────────────────────────────────────────────────────

def get_service() -> BoardService:
    return current_app.extensions["orderboard"]


def content_disposition(filename: str) -> str:
    """RFC 6266 attachment header: ASCII fallback plus UTF-8 filename*."""
    ascii_name = re.sub(r"[^\x00-\x7F]", "_", filename).replace('"', "_")
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(filename, safe='')}"


def error_response(e: Exception, context: str):
    """Map core errors to JSON. 5xx never leaks details to the client."""
    if isinstance(e, HTTPException):
        # Request-level rejections (413 from MAX_CONTENT_LENGTH) keep their status
        return jsonify({"error": e.name}), e.code
    if isinstance(e, BoardError) and e.status < 500:
        return jsonify({"error": str(e)}), e.status
    current_app.logger.exception(f"{context}: {e}")
    return jsonify({"error": "Internal Server Error"}), 500


def pair_uploads(storages: List[FileStorage], paths: List[str]) -> List[Upload]:
    """
    Pair uploaded files with filePaths entries by position.

    Empty file inputs are dropped only after pairing so they cannot shift
    later paths onto the wrong file.
    """
    uploads = []
    for i, storage in enumerate(storages):
        if not storage.filename:
            continue
        rel = paths[i] if i < len(paths) and paths[i] else None
        uploads.append(Upload(filename=storage.filename, data=storage.read(), relative_path=rel))
    return uploads


def uploads_from_request(*field_names: str) -> List[Upload]:
    storages = []
    for name in field_names:
        storages.extend(request.files.getlist(name))
    paths = request.form.getlist("filePaths") or request.form.getlist("filePaths[]")
    return pair_uploads(storages, paths)


def mutation_response(result: MutationResult, status: int = 200):
    resp = jsonify(result.task.to_dict())
    resp.status_code = status
    if result.skipped:
        resp.headers["X-Skipped-Files"] = str(len(result.skipped))
    return resp


# ── Routes ───────────────────────────────────────────────────────────────────

@bp.route("/api/board", methods=["GET"])
@bp.route("/api/jobs", methods=["GET"])
def api_board():
    try:
        return jsonify(get_service().get_board().to_dict())
    except Exception as e:
        return error_response(e, "Failed to load board")


@bp.route("/api/board", methods=["POST"])
@bp.route("/api/jobs", methods=["PUT"])
def api_replace_board():
    payload = request.get_json(force=True, silent=True)
    try:
        get_service().replace_board(payload)
        return jsonify({"ok": True})
    except Exception as e:
        return error_response(e, "Failed to update board")


@bp.route("/api/jobs", methods=["POST"])
def api_create_task():
    try:
        form = request.form
        result = get_service().create_task(
            customer_name=form.get("customerName", ""),
            representative=form.get("representative", ""),
            order_date=form.get("orderDate", ""),
            notes=form.get("notes", ""),
            uploads=uploads_from_request("files", "file"),
            folder_name=form.get("folderName"),
        )
        return mutation_response(result)
    except Exception as e:
        return error_response(e, "Failed to create job")


@bp.route("/api/jobs/<task_id>/upload", methods=["POST"])
def api_upload(task_id):
    try:
        result = get_service().upload_files(
            task_id,
            uploads_from_request("files"),
            folder_name=request.form.get("folderName"),
        )
        return mutation_response(result)
    except Exception as e:
        return error_response(e, f"Failed to upload files for task {task_id}")


@bp.route("/api/jobs/<task_id>/update-file", methods=["POST"])
def api_update_file(task_id):
    try:
        new_file = request.files.get("newFile")
        upload: Optional[Upload] = None
        if new_file and new_file.filename:
            upload = Upload(filename=new_file.filename, data=new_file.read())
        task = get_service().replace_file(task_id, request.form.get("oldFilename", ""), upload)
        return jsonify(task.to_dict())
    except Exception as e:
        return error_response(e, f"Failed to update file for task {task_id}")


@bp.route("/api/jobs/<task_id>/delete-file", methods=["POST"])
def api_delete_file(task_id):
    data = request.get_json(force=True, silent=True) or {}
    try:
        task = get_service().delete_file(task_id, data.get("filename", ""))
        return jsonify(task.to_dict())
    except Exception as e:
        return error_response(e, f"Failed to delete file for task {task_id}")


@bp.route("/api/jobs/<task_id>/move", methods=["POST"])
def api_move(task_id):
    data = request.get_json(force=True, silent=True) or {}
    try:
        task = get_service().move_task(task_id, (data.get("columnId") or "").strip())
        return jsonify(task.to_dict())
    except Exception as e:
        return error_response(e, f"Failed to move task {task_id}")


@bp.route("/api/jobs/<task_id>/reconcile", methods=["POST"])
def api_reconcile(task_id):
    try:
        return jsonify(get_service().reconcile_files(task_id).to_dict())
    except Exception as e:
        return error_response(e, f"Failed to reconcile files for task {task_id}")


@bp.route("/api/jobs/<task_id>/zip", methods=["GET"])
def api_zip(task_id):
    try:
        filename, data = get_service().archive(task_id)
    except Exception as e:
        return error_response(e, f"Failed to create zip for task {task_id}")
    return Response(
        data,
        mimetype="application/zip",
        headers={"Content-Disposition": content_disposition(filename)},
    )


@bp.route("/api/search", methods=["GET"])
def api_search():
    query = request.args.get("q", "").strip()
    if not query:
        return jsonify([])
    try:
        return jsonify(get_service().search(query))
    except Exception as e:
        current_app.logger.warning(f"AI search error: {e}")
        return jsonify([])


@bp.route("/health")
def health():
    service = get_service()
    return jsonify({
        "status": "ok",
        "storage": str(service.store.storage_dir),
        "manifest_strategy": service.manifest_strategy,
    })


# ── App factory ──────────────────────────────────────────────────────────────

def create_app(settings: Optional[Settings] = None) -> Flask:
    settings = settings or Settings.load()
    settings.validate()

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = settings.max_upload_mb * 1024 * 1024
    app.extensions["orderboard"] = BoardService.from_settings(settings)
    app.register_blueprint(bp)
    return app


# ── Main ─────────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Order Board Server")
    parser.add_argument("--host", default=None,
                        help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--storage", help="Storage directory (overrides ORDERBOARD_STORAGE)")
    parser.add_argument("--config", help="Path to orderboard.yaml")
    args = parser.parse_args()

    settings = Settings.load(args.config)
    if args.storage:
        settings.storage_dir = args.storage
    host = args.host or settings.host
    port = args.port or settings.port

    logging.basicConfig(
        level=getattr(logging, str(settings.log_level).upper(), logging.INFO),
        format="%(asctime)s [orderboard] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    search = "on" if settings.search_relay_url else "off"
    print(f"""
╔═══════════════════════════════════════╗
║  Order Board Server                   ║
╠═══════════════════════════════════════╣
║  URL:      http://{host}:{port:<16}║
║  Storage:  {str(settings.storage_path):<27}║
║  Manifest: {settings.manifest_strategy:<27}║
║  Search:   {search:<27}║
╚═══════════════════════════════════════╝
""")

    create_app(settings).run(host=host, port=port, debug=False, threaded=True)
