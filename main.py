#!/usr/bin/env python3
"""
CrossAuth -- Cross-domain authentication core.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8000
  python main.py serve --reload
  python main.py audit --limit 50
  python main.py audit --user user-123

Environment variables:
  SECRET_KEY        Required unless DEBUG=true. At least 32 characters.
  AUDIT_DB_URL      SQLAlchemy URL for the account/IP/audit store. Defaults to
                    a local SQLite file.
  OPERATOR_API_KEY  Enables the /api/v1/auth/monitoring endpoints.
"""

import argparse
import json
import sys

from auth.store import SecurityStore
from core.config import get_settings


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("asgi:app", host=args.host, port=args.port, reload=args.reload, log_level="info")
    return 0


def _audit(args: argparse.Namespace) -> int:
    """Print the persisted audit trail, newest first, one JSON object per line.

    Reads the durable store only -- the in-memory ring of a running server is
    not reachable from here.
    """
    settings = get_settings()
    store = SecurityStore(db_url=settings.audit_db_url) if settings.audit_db_url else SecurityStore()
    try:
        for record in store.recent_audit(limit=args.limit, user_id=args.user):
            print(
                json.dumps(
                    {
                        "type": record.type,
                        "domain": record.domain,
                        "timestamp": record.timestamp,
                        "success": record.success,
                        "user_id": record.user_id,
                        "metadata": record.metadata,
                    },
                    default=str,
                )
            )
    finally:
        store.close()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="crossauth",
        description="Cross-domain authentication core: API server and audit tooling.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true", help="Reload on code changes (development only)")
    serve.set_defaults(func=_serve)

    audit = sub.add_parser("audit", help="Print persisted audit records")
    audit.add_argument("--limit", type=int, default=100)
    audit.add_argument("--user", default=None, metavar="USER_ID", help="Only records for this user")
    audit.set_defaults(func=_audit)

    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
