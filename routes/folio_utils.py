"""
Folio numbering for agreements and liquidations.

Folios are drawn from a per-(organization, kind) counter row locked FOR UPDATE,
so they are unique and strictly increasing within an organization even with
concurrent callers. A folio consumed by a rolled-back transaction is reused.
"""
from sqlalchemy.exc import IntegrityError

from models import db, FolioSequence
from routes.errors import Conflict

FOLIO_PREFIXES = {
    'agreement': 'ACU',
    'liquidation': 'LIQ',
}


def ensure_folio_sequences(organization_id):
    """Create the counter rows for a new organization (caller commits)."""
    existing = {
        s.kind for s in FolioSequence.query.filter_by(organization_id=organization_id).all()
    }
    for kind in FOLIO_PREFIXES:
        if kind not in existing:
            db.session.add(FolioSequence(organization_id=organization_id, kind=kind, last_value=0))
    db.session.flush()


def next_folio(organization_id, kind):
    """Return (folio_string, folio_number) for the next document of ``kind``."""
    if kind not in FOLIO_PREFIXES:
        raise ValueError(f"Unknown folio kind {kind!r}")

    seq = (FolioSequence.query
           .filter_by(organization_id=organization_id, kind=kind)
           .populate_existing()
           .with_for_update()
           .first())
    if seq is None:
        seq = FolioSequence(organization_id=organization_id, kind=kind, last_value=0)
        db.session.add(seq)
        try:
            db.session.flush()
        except IntegrityError:
            raise Conflict('Folio sequence was created concurrently; retry the request')

    seq.last_value = int(seq.last_value or 0) + 1
    db.session.flush()
    number = seq.last_value
    return f"{FOLIO_PREFIXES[kind]}-{number:06d}", number
