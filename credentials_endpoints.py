from __future__ import annotations

import logging

import azure.functions as func

from dialer_shared import json_response, parse_json_body, require_user_id
from function_app import app
from services.credentials_service import (
    add_phone_number,
    credentials_to_dict,
    delete_phone_number,
    get_credentials,
    list_phone_numbers,
    phone_number_to_dict,
    set_default_phone_number,
    upsert_credentials,
)
from shared.db import SessionLocal
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)


def _credentials_response(req: func.HttpRequest, cors: dict) -> func.HttpResponse:
    body = parse_json_body(req) if req.method == "PUT" else {}
    user_id, error_response = require_user_id(req, body, cors)
    if error_response:
        return error_response

    db = SessionLocal()
    try:
        if req.method == "GET":
            return json_response({"credentials": credentials_to_dict(get_credentials(db, user_id))}, 200, cors)
        credentials = upsert_credentials(db, user_id, body)
        db.commit()
        return json_response({"credentials": credentials_to_dict(credentials)}, 200, cors)
    except ValueError as exc:
        db.rollback()
        return json_response({"error": str(exc)}, 400, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Credential save failed for user=%s: %s", user_id, exc)
        return json_response({"error": "Failed to save credentials"}, 500, cors)
    finally:
        db.close()


def _phone_numbers_response(req: func.HttpRequest, cors: dict) -> func.HttpResponse:
    body = parse_json_body(req) if req.method == "POST" else {}
    user_id, error_response = require_user_id(req, body, cors)
    if error_response:
        return error_response

    db = SessionLocal()
    try:
        if req.method == "POST":
            add_phone_number(
                db,
                user_id,
                body.get("phoneNumber"),
                friendly_name=body.get("friendlyName"),
                is_default=bool(body.get("isDefault")),
            )
            db.commit()
        items = [phone_number_to_dict(line) for line in list_phone_numbers(db, user_id)]
        return json_response({"items": items, "count": len(items)}, 201 if req.method == "POST" else 200, cors)
    except ValueError as exc:
        db.rollback()
        return json_response({"error": str(exc)}, 400, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Phone number update failed for user=%s: %s", user_id, exc)
        return json_response({"error": "Failed to update phone numbers"}, 500, cors)
    finally:
        db.close()


def _phone_number_item_response(req: func.HttpRequest, cors: dict, make_default: bool) -> func.HttpResponse:
    user_id, error_response = require_user_id(req, None, cors)
    if error_response:
        return error_response
    line_id = req.route_params.get("lineId")

    db = SessionLocal()
    try:
        if make_default:
            found = set_default_phone_number(db, user_id, line_id) is not None
        else:
            found = delete_phone_number(db, user_id, line_id)
        if not found:
            return json_response({"error": "Phone number not found"}, 404, cors)
        db.commit()
        items = [phone_number_to_dict(line) for line in list_phone_numbers(db, user_id)]
        return json_response({"items": items, "count": len(items)}, 200, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Phone number change failed line=%s: %s", line_id, exc)
        return json_response({"error": "Failed to update phone numbers"}, 500, cors)
    finally:
        db.close()


@app.function_name(name="Credentials")
@app.route(route="credentials", methods=["GET", "PUT", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def credentials(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "PUT", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return _credentials_response(req, cors)


@app.function_name(name="CredentialPhoneNumbers")
@app.route(route="credentials/phone-numbers", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def credential_phone_numbers(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return _phone_numbers_response(req, cors)


@app.function_name(name="CredentialPhoneNumberDefault")
@app.route(
    route="credentials/phone-numbers/{lineId:int}/default",
    methods=["POST", "OPTIONS"],
    auth_level=func.AuthLevel.ANONYMOUS,
)
def credential_phone_number_default(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return _phone_number_item_response(req, cors, make_default=True)


@app.function_name(name="CredentialPhoneNumberItem")
@app.route(route="credentials/phone-numbers/{lineId:int}", methods=["DELETE", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def credential_phone_number_item(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["DELETE", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return _phone_number_item_response(req, cors, make_default=False)
