from __future__ import annotations

import logging

import azure.functions as func

from dialer_shared import json_response, parse_json_body, require_user_id
from function_app import app
from services.leads_service import (
    apply_disposition,
    campaign_to_dict,
    create_campaign,
    create_lead,
    delete_lead,
    get_campaign,
    get_lead,
    get_script,
    lead_to_dict,
    list_campaign_leads,
    list_campaigns,
    save_script,
    update_lead,
)
from shared.db import SessionLocal
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)


def _campaigns_response(req: func.HttpRequest, cors: dict) -> func.HttpResponse:
    body = parse_json_body(req) if req.method == "POST" else {}
    user_id, error_response = require_user_id(req, body, cors)
    if error_response:
        return error_response

    db = SessionLocal()
    try:
        if req.method == "POST":
            campaign = create_campaign(
                db,
                user_id,
                body.get("name"),
                description=body.get("description"),
                campaign_id=body.get("id"),
            )
            db.commit()
            return json_response(campaign_to_dict(campaign), 201, cors)
        items = [campaign_to_dict(item) for item in list_campaigns(db, user_id)]
        return json_response({"items": items, "count": len(items)}, 200, cors)
    except ValueError as exc:
        db.rollback()
        return json_response({"error": str(exc)}, 400, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Campaign request failed for user=%s: %s", user_id, exc)
        return json_response({"error": "Failed to load campaigns"}, 500, cors)
    finally:
        db.close()


def _campaign_leads_response(req: func.HttpRequest, cors: dict) -> func.HttpResponse:
    user_id, error_response = require_user_id(req, None, cors)
    if error_response:
        return error_response
    campaign_id = req.route_params.get("campaignId")

    db = SessionLocal()
    try:
        if get_campaign(db, user_id, campaign_id) is None:
            return json_response({"error": "Campaign not found"}, 404, cors)
        items = [lead_to_dict(lead) for lead in list_campaign_leads(db, user_id, campaign_id)]
    finally:
        db.close()
    return json_response({"items": items, "count": len(items)}, 200, cors)


def _create_lead_response(req: func.HttpRequest, cors: dict) -> func.HttpResponse:
    body = parse_json_body(req)
    user_id, error_response = require_user_id(req, body, cors)
    if error_response:
        return error_response

    db = SessionLocal()
    try:
        lead = create_lead(db, user_id, body)
        db.commit()
        return json_response(lead_to_dict(lead), 201, cors)
    except ValueError as exc:
        db.rollback()
        return json_response({"error": str(exc)}, 400, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Lead create failed for user=%s: %s", user_id, exc)
        return json_response({"error": "Failed to create lead"}, 500, cors)
    finally:
        db.close()


def _lead_item_response(req: func.HttpRequest, cors: dict) -> func.HttpResponse:
    body = parse_json_body(req) if req.method == "PATCH" else {}
    user_id, error_response = require_user_id(req, body, cors)
    if error_response:
        return error_response

    db = SessionLocal()
    try:
        lead = get_lead(db, user_id, req.route_params.get("leadId"))
        if lead is None:
            return json_response({"error": "Lead not found"}, 404, cors)
        if req.method == "DELETE":
            delete_lead(db, lead)
            db.commit()
            return json_response({"success": True}, 200, cors)
        update_lead(db, lead, body)
        db.commit()
        return json_response(lead_to_dict(lead), 200, cors)
    except ValueError as exc:
        db.rollback()
        return json_response({"error": str(exc)}, 400, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Lead update failed: %s", exc)
        return json_response({"error": "Failed to update lead"}, 500, cors)
    finally:
        db.close()


def _disposition_response(req: func.HttpRequest, cors: dict) -> func.HttpResponse:
    body = parse_json_body(req)
    user_id, error_response = require_user_id(req, body, cors)
    if error_response:
        return error_response

    db = SessionLocal()
    try:
        lead = get_lead(db, user_id, req.route_params.get("leadId"))
        if lead is None:
            return json_response({"error": "Lead not found"}, 404, cors)
        lead, next_lead = apply_disposition(db, user_id, lead, body.get("outcome"), body.get("note"))
        db.commit()
        logger.info("Disposition saved lead=%s outcome=%s", lead.id, lead.status)
        return json_response(
            {"lead": lead_to_dict(lead), "nextLead": lead_to_dict(next_lead) if next_lead else None},
            200,
            cors,
        )
    except ValueError as exc:
        db.rollback()
        return json_response({"error": str(exc)}, 400, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Disposition save failed: %s", exc)
        return json_response({"error": "Failed to save disposition"}, 500, cors)
    finally:
        db.close()


def _script_response(req: func.HttpRequest, cors: dict) -> func.HttpResponse:
    body = parse_json_body(req) if req.method == "PUT" else {}
    user_id, error_response = require_user_id(req, body, cors)
    if error_response:
        return error_response

    db = SessionLocal()
    try:
        if req.method == "PUT":
            save_script(db, user_id, body.get("script"))
            db.commit()
        return json_response({"script": get_script(db, user_id)}, 200, cors)
    except ValueError as exc:
        db.rollback()
        return json_response({"error": str(exc)}, 400, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Script save failed for user=%s: %s", user_id, exc)
        return json_response({"error": "Failed to save script"}, 500, cors)
    finally:
        db.close()


@app.function_name(name="Campaigns")
@app.route(route="campaigns", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def campaigns(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return _campaigns_response(req, cors)


@app.function_name(name="CampaignLeads")
@app.route(route="campaigns/{campaignId}/leads", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def campaign_leads(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return _campaign_leads_response(req, cors)


@app.function_name(name="Leads")
@app.route(route="leads", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def leads(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return _create_lead_response(req, cors)


@app.function_name(name="LeadItem")
@app.route(route="leads/{leadId}", methods=["PATCH", "DELETE", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def lead_item(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["PATCH", "DELETE", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return _lead_item_response(req, cors)


@app.function_name(name="LeadDisposition")
@app.route(route="leads/{leadId}/disposition", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def lead_disposition(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return _disposition_response(req, cors)


@app.function_name(name="Scripts")
@app.route(route="scripts", methods=["GET", "PUT", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def scripts(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "PUT", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return _script_response(req, cors)
