import logging
from datetime import datetime

from shared.db import DialEvent, Lead

logger = logging.getLogger(__name__)


def record_dial(
    db,
    *,
    session_id: str,
    user_id: str,
    lead_id: str | None = None,
    campaign_id: str | None = None,
    to_number: str | None = None,
    twilio_call_sid: str | None = None,
) -> tuple[DialEvent, bool]:
    """
    Account one outbound attempt for a dialer session.
    Returns (event, created); a second call for the same session is a no-op.
    """
    event = db.query(DialEvent).filter_by(session_id=session_id).one_or_none()
    if event:
        if twilio_call_sid and not event.twilio_call_sid:
            event.twilio_call_sid = twilio_call_sid
            db.flush()
        return event, False

    now = datetime.utcnow()
    lead = db.query(Lead).filter_by(id=lead_id, user_id=user_id).one_or_none() if lead_id else None
    event = DialEvent(
        session_id=session_id,
        user_id=user_id,
        lead_id=lead.id if lead else None,
        campaign_id=campaign_id or (lead.campaign_id if lead else None),
        to_number=to_number,
        twilio_call_sid=twilio_call_sid,
        created_at=now,
    )
    db.add(event)
    if lead:
        lead.dial_count = (lead.dial_count or 0) + 1
        lead.last_dialed_at = now
    db.flush()
    logger.info("Dial recorded session=%s lead=%s", session_id, lead.id if lead else "manual")
    return event, True


def count_dials(db, user_id: str, lead_id: str | None = None) -> int:
    query = db.query(DialEvent).filter(DialEvent.user_id == user_id)
    if lead_id:
        query = query.filter(DialEvent.lead_id == lead_id)
    return query.count()
