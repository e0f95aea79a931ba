#!/usr/bin/env python3
"""
Task Board Server
-----------------
Serves the task board query/mutation API as JSON over HTTP, backed by the
SQLite document store.

Usage:
    taskboard-server --config taskboard.yaml
    python taskboard_server.py --port 5000 --db /tmp/taskboard.db

API:
    POST /graphql → JSON body: { query, variables?, operationName? }
                    Returns: { data, errors? } (errors carry extensions.type)
    GET  /graphql → GraphiQL explorer
    GET  /health  → JSON: { status, db }
"""

import argparse
import logging
import sys
from typing import Optional

from ariadne.explorer import ExplorerGraphiQL
from flask import Flask, jsonify, request

from taskboard.api import TaskBoardAPI
from taskboard.config import Config
from taskboard.integrity import IntegrityEngine
from taskboard.store import SQLiteEntityStore

logger = logging.getLogger(__name__)

EXPLORER_HTML = ExplorerGraphiQL(title="Task Board").html(None)


def create_app(config: Optional[Config] = None) -> Flask:
    """Build the Flask app around one store, engine and API instance."""
    config = config or Config.load()

    store = SQLiteEntityStore(config.db_path, timeout=config.sqlite_timeout)
    engine = IntegrityEngine(store, rollback_on_failure=config.rollback_on_failure)

    app = Flask(__name__)
    app.config["TASKBOARD"] = config
    app.extensions["taskboard_api"] = TaskBoardAPI(engine)

    # ── CORS ─────────────────────────────────────────────────────────────────

    @app.after_request
    def allow_origin(response):
        response.headers["Access-Control-Allow-Origin"] = config.cors_origin
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        return response

    # ── Routes ───────────────────────────────────────────────────────────────

    @app.route("/graphql", methods=["GET"])
    def graphql_explorer():
        return EXPLORER_HTML, 200

    @app.route("/graphql", methods=["POST"])
    def graphql_server():
        data = request.get_json(force=True, silent=True)
        success, result = app.extensions["taskboard_api"].execute(data, debug=app.debug)
        return jsonify(result), 200 if success else 400

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "db": config.db_path})

    return app


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s [taskboard] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def main(argv=None):
    parser = argparse.ArgumentParser(description="Task Board Server")
    parser.add_argument("--config", help="Path to taskboard.yaml (overrides TASKBOARD_CONFIG)")
    parser.add_argument("--host", help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int)
    parser.add_argument("--db", help="Path to the SQLite store (overrides TASKBOARD_DB)")
    args = parser.parse_args(argv)

    config = Config.load(args.config)
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.db:
        config.db_path = args.db
        config.resolve_paths()

    setup_logging(config.log_level)
    app = create_app(config)

    logger.info(f"Task board on http://{config.host}:{config.port} (db: {config.db_path})")
    app.run(host=config.host, port=config.port, debug=False, threaded=True)


if __name__ == "__main__":
    main()
