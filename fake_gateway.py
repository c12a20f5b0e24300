#!/usr/bin/env python3
"""
fake_gateway.py
===============
Stand-in for the sqliterg gateway, for exercising the harness without the
real binary.  Same command line, same request/response shapes, none of the
real gateway's features beyond that.

    python fake_gateway.py --mem-db test
    python fake_gateway.py --db test.db --port 32123
    python fake_gateway.py --serve-dir .
    python fake_gateway.py --mem-db test --basic-auth alice:secret

Endpoints:

    POST /<db>            { "transaction": [ {"query": ...} | {"statement": ...} ] }
    POST /<db>/exec       same
    GET  /<path>          static file from --serve-dir

Exits with status 1 when no database and no directory are given, or when
two databases share an id (file stem for --db, ID for --mem-db ID[:cfg]).
"""

import argparse
import logging
import os
import sqlite3
import sys

from flask import Flask, abort, jsonify, request, send_from_directory
from flask_cors import CORS

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
log = logging.getLogger("fake-gateway")

app = Flask(__name__)
CORS(
    app,
    origins="*",
    allow_headers=["Content-Type", "Authorization", "Accept"],
    methods=["GET", "POST", "OPTIONS"],
)

# ---------------------------------------------------------------------------
# Runtime config  (populated by argparse in main())
# ---------------------------------------------------------------------------
CFG = {
    "serve_dir":  None,
    "basic_auth": None,     # (user, password)
}

_dbs: dict = {}             # id -> sqlite3.Connection


class ConfigError(Exception):
    pass


def open_databases(files, mems) -> dict:
    dbs = {}

    def _add(db_id, conn):
        if db_id in dbs:
            conn.close()
            raise ConfigError(f"Database id '{db_id}' given more than once")
        dbs[db_id] = conn

    for path in files:
        db_id = os.path.splitext(os.path.basename(path))[0]
        if db_id in dbs:
            raise ConfigError(f"Database id '{db_id}' given more than once")
        conn = sqlite3.connect(path, check_same_thread=False)
        conn.execute("PRAGMA journal_mode = WAL")
        _add(db_id, conn)
    for mem in mems:
        db_id = mem.split(":", 1)[0]
        _add(db_id, sqlite3.connect(":memory:", check_same_thread=False))
    return dbs


def _err(msg: str, status: int = 500, req_idx: int = -1):
    return jsonify({"reqIdx": req_idx, "message": msg}), status


def _authorized() -> bool:
    if CFG["basic_auth"] is None:
        return True
    auth = request.authorization
    return auth is not None and (auth.username, auth.password) == CFG["basic_auth"]


def run_transaction(conn, items) -> list:
    """Everything or nothing; a failing item rolls back the whole request."""
    results = []
    with conn:
        for idx, item in enumerate(items):
            query, stmt = item.get("query"), item.get("statement")
            if (query is None) == (stmt is None):
                raise ValueError(idx, "exactly one of 'query' or 'statement' is required")
            try:
                cur = conn.execute(query if query is not None else stmt,
                                   item.get("values") or ())
                if query is not None:
                    if cur.description is None:
                        raise sqlite3.ProgrammingError("query did not return a result set")
                    cols = [c[0] for c in cur.description]
                    results.append({"success": True,
                                    "resultSet": [dict(zip(cols, row)) for row in cur]})
                else:
                    if cur.description is not None:
                        raise sqlite3.ProgrammingError("statement returned a result set")
                    results.append({"success": True, "rowsUpdated": cur.rowcount})
            except sqlite3.Error as exc:
                if item.get("noFail"):
                    results.append({"success": False, "error": str(exc)})
                    continue
                raise ValueError(idx, str(exc)) from exc
    return results


@app.route("/<db_id>", methods=["POST"])
@app.route("/<db_id>/exec", methods=["POST"])
def exec_request(db_id):
    conn = _dbs.get(db_id)
    if conn is None:
        return _err(f"Unknown database '{db_id}'", 404)
    if not _authorized():
        return _err("Authentication failed", 401)

    body  = request.get_json(force=True, silent=True) or {}
    items = body.get("transaction")
    if not isinstance(items, list) or not items:
        return _err("Request body must include a non-empty 'transaction'", 400)

    log.info("[GW]  %s | %d item(s)", db_id, len(items))
    try:
        return jsonify({"results": run_transaction(conn, items)})
    except ValueError as exc:
        idx, msg = exc.args
        log.warning("[GW]  %s | item %d failed: %s", db_id, idx, msg)
        return _err(msg, 500, idx)


@app.route("/<path:filename>", methods=["GET"])
def serve_file(filename):
    if not CFG["serve_dir"]:
        abort(404)
    return send_from_directory(CFG["serve_dir"], filename)


# ===========================================================================
# Entry point
# ===========================================================================
def main(argv=None):
    parser = argparse.ArgumentParser(description="sqliterg stand-in")
    parser.add_argument("-b", "--bind-host", default="0.0.0.0",           help="The host to bind")
    parser.add_argument("-d", "--db",        action="append", default=[], help="Repeatable; paths of file-based databases")
    parser.add_argument("-m", "--mem-db",    action="append", default=[], help="Repeatable; ID[:configFilePath] of memory databases")
    parser.add_argument("-p", "--port",      type=int, default=12321,     help="Port for the web service")
    parser.add_argument("-s", "--serve-dir", default=None,                help="A directory to serve")
    parser.add_argument("--basic-auth",      default=None,                help="USER:PASSWORD required on every request")
    parser.add_argument("--debug",           action="store_true",         help="Enable Flask debug logging")
    args = parser.parse_args(argv)

    if not args.db and not args.mem_db and not args.serve_dir:
        log.error("Nothing to do: give at least one of --db, --mem-db, --serve-dir")
        return 1

    try:
        _dbs.update(open_databases(args.db, args.mem_db))
    except (ConfigError, sqlite3.Error) as exc:
        log.error("%s", exc)
        return 1

    CFG["serve_dir"] = os.path.abspath(args.serve_dir) if args.serve_dir else None
    if args.basic_auth:
        user, _, password = args.basic_auth.partition(":")
        CFG["basic_auth"] = (user, password)

    log.info("Listening on http://%s:%d  dbs=%s  serve_dir=%s",
             args.bind_host, args.port, sorted(_dbs), CFG["serve_dir"])

    if not args.debug:
        logging.getLogger("werkzeug").setLevel(logging.WARNING)

    try:
        app.run(host=args.bind_host, port=args.port, debug=False, threaded=True)
    except OSError as exc:
        log.error("Cannot bind %s:%d: %s", args.bind_host, args.port, exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
