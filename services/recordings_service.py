from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from shared.db import Campaign, CallRecording

logger = logging.getLogger(__name__)

TESTING_BUCKET = "testing"


def _to_int(value, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def save_completed_recording(db, *, params: dict, form: dict) -> Optional[CallRecording]:
    """
    Persist a recording from Twilio's recording-status callback.
    Only completed recordings with a known owner are stored.
    """
    status = str(form.get("RecordingStatus") or "").strip().lower()
    user_id = str(params.get("userId") or "").strip()
    if status != "completed" or not user_id:
        return None
    recording_sid = str(form.get("RecordingSid") or "").strip()
    if not recording_sid:
        raise ValueError("RecordingSid is required")
    existing = find_by_sid(db, recording_sid)
    if existing is not None:
        logger.info("Recording %s already stored; retried callback ignored", recording_sid)
        return existing

    recording = CallRecording(
        user_id=user_id,
        lead_id=str(params.get("leadId") or "").strip() or None,
        campaign_id=str(params.get("campaignId") or "").strip() or None,
        lead_name=str(params.get("leadName") or "").strip() or "Unknown",
        phone_number=str(params.get("phone") or "").strip() or "Unknown",
        recording_url=str(form.get("RecordingUrl") or "").strip() or None,
        recording_sid=recording_sid,
        duration=max(0, _to_int(form.get("RecordingDuration"))),
        call_date=datetime.utcnow(),
        created_at=datetime.utcnow(),
    )
    db.add(recording)
    db.flush()
    return recording


def list_recordings(db, user_id: str) -> List[CallRecording]:
    return (
        db.query(CallRecording)
        .filter(CallRecording.user_id == str(user_id))
        .order_by(CallRecording.call_date.desc(), CallRecording.id.desc())
        .all()
    )


def get_recording(db, recording_id, user_id: Optional[str] = None) -> Optional[CallRecording]:
    query = db.query(CallRecording).filter(CallRecording.id == _to_int(recording_id, -1))
    if user_id is not None:
        query = query.filter(CallRecording.user_id == str(user_id))
    return query.one_or_none()


def find_by_sid(db, recording_sid: str, user_id: Optional[str] = None) -> Optional[CallRecording]:
    query = db.query(CallRecording).filter(CallRecording.recording_sid == str(recording_sid or ""))
    if user_id is not None:
        query = query.filter(CallRecording.user_id == str(user_id))
    return query.first()


def rename_recording(db, recording: CallRecording, name: str) -> CallRecording:
    cleaned = str(name or "").strip()
    if not cleaned:
        raise ValueError("Name cannot be empty")
    recording.lead_name = cleaned
    db.flush()
    return recording


def delete_recording(db, recording: CallRecording) -> None:
    db.delete(recording)
    db.flush()


def group_by_campaign(recordings: Iterable[CallRecording]) -> Dict[str, List[CallRecording]]:
    grouped: Dict[str, List[CallRecording]] = {}
    for recording in recordings:
        grouped.setdefault(recording.campaign_id or TESTING_BUCKET, []).append(recording)
    return grouped


def campaign_display_name(campaign_id: str, campaigns: Dict[str, Campaign]) -> str:
    if campaign_id == TESTING_BUCKET:
        return "Testing"
    campaign = campaigns.get(campaign_id)
    return campaign.name if campaign and campaign.name else "Unknown Campaign"


def format_duration(seconds) -> str:
    total = max(0, _to_int(seconds))
    return f"{total // 60}:{total % 60:02d}"


def format_call_date(value: datetime, now: Optional[datetime] = None) -> str:
    """Today / Yesterday / weekday within a week / 'Mon D' (plus year if not this year)."""
    now = now or datetime.utcnow()
    diff_days = (now.date() - value.date()).days
    if diff_days == 0:
        return "Today"
    if diff_days == 1:
        return "Yesterday"
    if 0 < diff_days < 7:
        return value.strftime("%A")
    label = f"{value.strftime('%b')} {value.day}"
    if value.year != now.year:
        label = f"{label}, {value.year}"
    return label


def format_call_time(value: datetime) -> str:
    hour = value.hour % 12 or 12
    suffix = "AM" if value.hour < 12 else "PM"
    return f"{hour}:{value.minute:02d} {suffix}"


def recording_to_dict(recording: CallRecording, now: Optional[datetime] = None) -> dict:
    call_date = recording.call_date or recording.created_at
    return {
        "id": recording.id,
        "userId": recording.user_id,
        "leadId": recording.lead_id,
        "campaignId": recording.campaign_id,
        "leadName": recording.lead_name,
        "phoneNumber": recording.phone_number,
        "recordingUrl": recording.recording_url,
        "recordingSid": recording.recording_sid,
        "duration": recording.duration,
        "durationLabel": format_duration(recording.duration),
        "callDate": call_date.isoformat() if call_date else None,
        "dateLabel": format_call_date(call_date, now) if call_date else None,
        "timeLabel": format_call_time(call_date) if call_date else None,
    }


def build_library(db, user_id: str, now: Optional[datetime] = None) -> dict:
    recordings = list_recordings(db, user_id)
    campaigns = {c.id: c for c in db.query(Campaign).filter(Campaign.user_id == str(user_id)).all()}
    groups = [
        {
            "campaignId": campaign_id,
            "campaignName": campaign_display_name(campaign_id, campaigns),
            "count": len(items),
            "recordings": [recording_to_dict(item, now) for item in items],
        }
        for campaign_id, items in group_by_campaign(recordings).items()
    ]
    return {
        "recordings": [recording_to_dict(item, now) for item in recordings],
        "groups": groups,
        "count": len(recordings),
    }
