# Overview: Service-layer operations for document numbering; per-day server-side sequences.

from __future__ import annotations

from datetime import date

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence
from ..time_utils import business_date
from .concurrency import run_with_retry


class DocumentSequenceError(Exception):
    """Raised when document sequence operations fail."""
    pass


def _current(document_type: str, on_date: date) -> int | None:
    return (
        db.session.query(DocumentSequence.next_number)
        .filter_by(document_type=document_type, sequence_date=on_date)
        .scalar()
    )


def next_daily_number(
    document_type: str,
    prefix: str,
    *,
    on_date: date | None = None,
    pad: int = 4,
) -> str:
    """
    Atomically allocate the next document number for a type and day.

    Format: PREFIX-YYYYMMDD-NNNN, NNNN restarting at 0001 every day.

    The increment is flushed, not committed; the caller commits it together
    with the document that uses the number so a failed insert releases it.
    """
    if not document_type:
        raise DocumentSequenceError("document_type is required")
    if not prefix:
        raise DocumentSequenceError("prefix is required")

    day = on_date or business_date()

    def _op() -> str:
        stmt = (
            update(DocumentSequence)
            .where(
                DocumentSequence.document_type == document_type,
                DocumentSequence.sequence_date == day,
            )
            .values(next_number=DocumentSequence.next_number + 1)
            .execution_options(synchronize_session=False)
        )

        result = db.session.execute(stmt)
        if result.rowcount:
            db.session.flush()
            next_num = _current(document_type, day) - 1
        else:
            seq = DocumentSequence(document_type=document_type, sequence_date=day, next_number=2)
            db.session.add(seq)
            try:
                db.session.flush()
                next_num = 1
            except IntegrityError:
                # First use of the day raced with another writer
                db.session.rollback()
                result = db.session.execute(stmt)
                if not result.rowcount:
                    raise DocumentSequenceError(
                        f"Could not allocate {document_type} number for {day.isoformat()}"
                    )
                db.session.flush()
                next_num = _current(document_type, day) - 1

        return f"{prefix}-{day:%Y%m%d}-{next_num:0{pad}d}"

    return run_with_retry(_op)
