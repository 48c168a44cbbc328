from __future__ import annotations

import re
from datetime import datetime
from typing import Iterable, List, Optional, Tuple
from uuid import uuid4

from shared.db import Campaign, Lead, UserScript

DISPOSITION_PLACEHOLDER = "Select Disposition..."
DEFAULT_LEAD_STATUS = "New"
DEFAULT_SCRIPT = """INTRO / PATTERN INTERRUPT:
"Hey is this [Name]?"
"Hey [Name], this is [Your Name] from Horizon AI, how've you been?"

REASON FOR CALL:
"I'm calling because I saw you were looking into AI automation solutions recently..."
"""

_EDITABLE_FIELDS = ("name", "phone", "email", "status", "summary")


def lead_sort_order(lead_id: str) -> int:
    """Numeric suffix of an id like 'camp1-lead-12'; 0 when the last segment has no digits."""
    suffix = str(lead_id or "").split("-")[-1]
    match = re.search(r"\d+", suffix)
    return int(match.group(0)) if match else 0


def sort_leads(leads: Iterable[Lead]) -> List[Lead]:
    return sorted(leads, key=lambda lead: lead_sort_order(lead.id))


def campaign_to_dict(campaign: Campaign) -> dict:
    return {
        "id": campaign.id,
        "name": campaign.name,
        "description": campaign.description,
        "createdAt": campaign.created_at.isoformat() if campaign.created_at else None,
    }


def lead_to_dict(lead: Lead) -> dict:
    return {
        "id": lead.id,
        "campaignId": lead.campaign_id,
        "name": lead.name,
        "phone": lead.phone,
        "email": lead.email,
        "status": lead.status,
        "summary": lead.summary,
        "dialCount": lead.dial_count or 0,
        "lastDialedAt": lead.last_dialed_at.isoformat() if lead.last_dialed_at else None,
        "updatedAt": lead.updated_at.isoformat() if lead.updated_at else None,
    }


def list_campaigns(db, user_id: str) -> List[Campaign]:
    return (
        db.query(Campaign)
        .filter(Campaign.user_id == str(user_id))
        .order_by(Campaign.created_at.asc(), Campaign.id.asc())
        .all()
    )


def get_campaign(db, user_id: str, campaign_id: str) -> Optional[Campaign]:
    return db.query(Campaign).filter_by(id=str(campaign_id), user_id=str(user_id)).one_or_none()


def create_campaign(db, user_id: str, name: str, description: Optional[str] = None, campaign_id: Optional[str] = None) -> Campaign:
    cleaned = str(name or "").strip()
    if not cleaned:
        raise ValueError("name is required")
    now = datetime.utcnow()
    campaign = Campaign(
        id=str(campaign_id or "").strip() or f"camp-{uuid4().hex[:12]}",
        user_id=str(user_id),
        name=cleaned,
        description=str(description or "").strip() or None,
        created_at=now,
        updated_at=now,
    )
    db.add(campaign)
    db.flush()
    return campaign


def list_campaign_leads(db, user_id: str, campaign_id: str) -> List[Lead]:
    leads = db.query(Lead).filter(Lead.user_id == str(user_id), Lead.campaign_id == str(campaign_id)).all()
    return sort_leads(leads)


def get_lead(db, user_id: str, lead_id: str) -> Optional[Lead]:
    return db.query(Lead).filter_by(id=str(lead_id), user_id=str(user_id)).one_or_none()


def create_lead(db, user_id: str, payload: dict) -> Lead:
    name = str(payload.get("name") or "").strip()
    if not name:
        raise ValueError("name is required")
    campaign_id = str(payload.get("campaignId") or "").strip() or None
    if campaign_id and not get_campaign(db, user_id, campaign_id):
        raise ValueError("campaign not found")
    now = datetime.utcnow()
    lead = Lead(
        id=str(payload.get("id") or "").strip() or f"{campaign_id or 'lead'}-{uuid4().hex[:8]}",
        campaign_id=campaign_id,
        user_id=str(user_id),
        name=name,
        phone=str(payload.get("phone") or "").strip() or None,
        email=str(payload.get("email") or "").strip() or None,
        status=str(payload.get("status") or "").strip() or DEFAULT_LEAD_STATUS,
        summary=str(payload.get("summary") or "").strip() or None,
        dial_count=0,
        created_at=now,
        updated_at=now,
    )
    db.add(lead)
    db.flush()
    return lead


def update_lead(db, lead: Lead, changes: dict) -> Lead:
    for field in _EDITABLE_FIELDS:
        if field not in changes:
            continue
        value = str(changes.get(field) or "").strip()
        if field == "name" and not value:
            raise ValueError("name cannot be empty")
        if field == "status" and not value:
            raise ValueError("status cannot be empty")
        setattr(lead, field, value or None)
    lead.updated_at = datetime.utcnow()
    db.flush()
    return lead


def delete_lead(db, lead: Lead) -> None:
    db.delete(lead)
    db.flush()


def apply_disposition(db, user_id: str, lead: Lead, outcome: str, note: Optional[str]) -> Tuple[Lead, Optional[Lead]]:
    """
    Save the call outcome and notes, then return the next lead in the
    campaign's dial order (None at the end of the list).
    """
    cleaned_outcome = str(outcome or "").strip()
    if not cleaned_outcome or cleaned_outcome == DISPOSITION_PLACEHOLDER:
        raise ValueError("outcome is required")
    lead.status = cleaned_outcome
    lead.summary = str(note or "").strip()
    lead.updated_at = datetime.utcnow()
    db.flush()

    if not lead.campaign_id:
        return lead, None
    ordered = list_campaign_leads(db, user_id, lead.campaign_id)
    ids = [item.id for item in ordered]
    index = ids.index(lead.id) if lead.id in ids else -1
    if index != -1 and index < len(ordered) - 1:
        return lead, ordered[index + 1]
    return lead, None


def get_script(db, user_id: str) -> str:
    row = db.query(UserScript).filter_by(user_id=str(user_id)).one_or_none()
    return row.script_content if row else DEFAULT_SCRIPT


def save_script(db, user_id: str, content: str) -> UserScript:
    if content is None:
        raise ValueError("script is required")
    row = db.query(UserScript).filter_by(user_id=str(user_id)).one_or_none()
    if row is None:
        row = UserScript(user_id=str(user_id))
        db.add(row)
    row.script_content = str(content)
    row.updated_at = datetime.utcnow()
    db.flush()
    return row
