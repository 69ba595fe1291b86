"""Batched ORM inserts with row-by-row fallback.

Each batch is flushed inside its own SAVEPOINT.  When a batch fails, its rows
are retried one at a time (again one SAVEPOINT each) so a single bad row only
costs itself.  The caller owns the outer transaction and commits.
"""
import logging
from typing import List, Sequence, Tuple
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from config import settings

logger = logging.getLogger("StatementImporter.BatchWriter")


def _insert_one(db: Session, row) -> bool:
    try:
        with db.begin_nested():
            db.add(row)
        return True
    except SQLAlchemyError as e:
        logger.warning(f"  ⚠️ Row insert failed, skipping: {e.__class__.__name__}: {e}")
        return False


def insert_with_fallback(
    db: Session,
    rows: Sequence,
    batch_size: int = None,
    label: str = "rows",
) -> Tuple[List, List]:
    """Insert ``rows`` and return ``(persisted, failed)``."""
    batch_size = batch_size or settings.INSERT_BATCH_SIZE
    persisted, failed = [], []

    for start in range(0, len(rows), batch_size):
        batch = list(rows[start:start + batch_size])
        try:
            with db.begin_nested():
                db.add_all(batch)
            persisted.extend(batch)
            continue
        except SQLAlchemyError as e:
            logger.warning(
                f"  ⚠️ Batch insert of {len(batch)} {label} failed "
                f"({e.__class__.__name__}), retrying row by row"
            )

        for row in batch:
            if _insert_one(db, row):
                persisted.append(row)
            else:
                failed.append(row)

    if failed:
        logger.error(f"  ❌ {len(failed)} of {len(rows)} {label} could not be inserted")
    else:
        logger.info(f"  💾 Inserted {len(persisted)} {label}")
    return persisted, failed
