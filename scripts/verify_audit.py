#!/usr/bin/env python3
"""
=============================================================================
CHAINAUDIT - AUDIT CHAIN VERIFICATION
=============================================================================

Walks the audit hash chain and reports the first broken record.

Output:
    OK (checked 5000)
    BROKEN at id=1234: hash_mismatch

Exit codes:
    0 - chain intact (possibly truncated by --limit / --deadline)
    1 - chain broken
    2 - could not run (bad arguments, database unreachable)

Usage:
    # Verify from genesis with the configured limit
    python scripts/verify_audit.py

    # Resume from the newest checkpoint and store a new one
    python scripts/verify_audit.py --resume

    # Verify a slice chained from a known hash
    python scripts/verify_audit.py --start-id 10001 --anchor-hash <64 hex>

    # Machine-readable result
    python scripts/verify_audit.py --json
=============================================================================
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

BASE_DIR = Path(__file__).resolve().parent.parent
sys.path.append(str(BASE_DIR))
load_dotenv(dotenv_path=BASE_DIR / ".env")

from chainaudit.core.config import settings  # noqa: E402
from chainaudit.core.errors import AuditQueryError  # noqa: E402
from chainaudit.db.session import build_engine  # noqa: E402
from chainaudit.services.audit_snapshot_service import AuditSnapshotService  # noqa: E402
from chainaudit.services.chain_verifier import ChainVerifier  # noqa: E402

logger = logging.getLogger("verify_audit")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Verify the audit hash chain.")
    parser.add_argument("--database-url", default=None, help="Defaults to DATABASE_URL")
    parser.add_argument("--start-id", type=int, default=None)
    parser.add_argument("--limit", type=int, default=settings.AUDIT_VERIFY_LIMIT)
    parser.add_argument("--anchor-hash", default=None)
    parser.add_argument("--deadline", type=float, default=None, help="Time budget in seconds")
    parser.add_argument(
        "--resume",
        action="store_true",
        help="Continue from the newest checkpoint and save a new one",
    )
    parser.add_argument("--json", action="store_true", help="Print the full result as JSON")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(message)s")

    if args.resume and (args.start_id or args.anchor_hash):
        print("--resume cannot be combined with --start-id/--anchor-hash", file=sys.stderr)
        return 2

    engine = build_engine(args.database_url or settings.DATABASE_URL)
    Session = sessionmaker(bind=engine, autoflush=False)
    db = Session()
    try:
        if args.resume:
            result = AuditSnapshotService(db).verify_incremental(
                limit=args.limit, deadline_seconds=args.deadline
            )
        else:
            result = ChainVerifier(db).verify(
                start_id=args.start_id,
                limit=args.limit,
                anchor_hash=args.anchor_hash,
                deadline_seconds=args.deadline,
            )
    except AuditQueryError as exc:
        print(exc.message, file=sys.stderr)
        return 2
    except SQLAlchemyError as exc:
        logger.error("Verification could not run: %s", exc)
        return 2
    finally:
        db.close()
        engine.dispose()

    if args.json:
        print(json.dumps(result.model_dump(), indent=2))
    else:
        print(result.describe())
        if result.truncated and result.end_hash:
            print(f"Resume with --start-id {result.next_start_id} --anchor-hash {result.end_hash}")
    return 0 if result.ok else 1


if __name__ == "__main__":
    sys.exit(main())
