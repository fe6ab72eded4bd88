"""
HTTP surface for tenderdesk.

Health probes plus JSON endpoints over the TenderDesk façade. Caller
identity is taken as given from the X-Caller-Id and X-Caller-Role
headers, set by whatever authenticates requests in front of this
service.
"""

import sqlite3
from decimal import InvalidOperation
from typing import Any

from flask import Flask, jsonify, request
from pydantic import ValidationError

from tenderdesk.desk import TenderDesk, rejection_payload
from tenderdesk.kernel.errors import (
    InvariantViolation,
    RejectionCode,
    StoreError,
    TransitionRejected,
)
from tenderdesk.kernel.logging import generate_correlation_id, get_logger, set_correlation_id
from tenderdesk.kernel.tender_store import SQLiteTenderStore
from tenderdesk.tender.models import summarize
from tenderdesk.tender.visibility import can_view, can_view_proposals

logger = get_logger(__name__)

app = Flask(__name__)

# Set by initialize_http_server()
_desk: TenderDesk | None = None

CALLER_ID_HEADER = "X-Caller-Id"
CALLER_ROLE_HEADER = "X-Caller-Role"

STATUS_BY_CODE = {
    RejectionCode.TENDER_NOT_FOUND: 404,
    RejectionCode.NOT_AUTHORIZED: 403,
    RejectionCode.APPLY_DENIED: 403,
    RejectionCode.SEALED_TENDER_LOCKED: 403,
    RejectionCode.ALREADY_REVEALED: 409,
    RejectionCode.ALREADY_TRANSITIONED: 409,
    RejectionCode.ALREADY_FLAGGED: 409,
    RejectionCode.DEADLINE_PASSED: 409,
    RejectionCode.DUPLICATE_PROPOSAL: 409,
    RejectionCode.TENDER_DELETED: 410,
}


def initialize_http_server(desk: TenderDesk) -> None:
    """Attach the façade the endpoints will use"""
    global _desk
    _desk = desk
    logger.info("HTTP server initialized", store=type(desk.store).__name__)


def _get_desk() -> TenderDesk:
    if _desk is None:
        raise RuntimeError("HTTP server not initialized")
    return _desk


def _caller() -> tuple[str | None, str | None]:
    return request.headers.get(CALLER_ID_HEADER), request.headers.get(CALLER_ROLE_HEADER)


def _require_caller() -> tuple[str, str]:
    caller_id, caller_role = _caller()
    if not caller_id or not caller_role:
        raise TransitionRejected(
            RejectionCode.NOT_AUTHORIZED,
            f"{CALLER_ID_HEADER} and {CALLER_ROLE_HEADER} headers are required",
        )
    return caller_id, caller_role


def _body() -> dict[str, Any]:
    return request.get_json(silent=True) or {}


@app.before_request
def _bind_correlation_id() -> None:
    set_correlation_id(request.headers.get("X-Correlation-Id") or generate_correlation_id())


@app.errorhandler(TransitionRejected)
def _handle_rejection(error: TransitionRejected) -> tuple[Any, int]:
    return jsonify(rejection_payload(error)), STATUS_BY_CODE.get(error.code, 400)


@app.errorhandler(ValidationError)
def _handle_validation(error: ValidationError) -> tuple[Any, int]:
    return (
        jsonify(
            {
                "success": False,
                "code": "INVALID_REQUEST",
                "errors": error.errors(
                    include_url=False, include_context=False, include_input=False
                ),
            }
        ),
        400,
    )


@app.errorhandler(InvalidOperation)
@app.errorhandler(ValueError)
def _handle_value_error(error: ValueError | InvalidOperation) -> tuple[Any, int]:
    return jsonify({"success": False, "code": "INVALID_REQUEST", "message": str(error)}), 400


@app.errorhandler(InvariantViolation)
def _handle_invariant(error: InvariantViolation) -> tuple[Any, int]:
    logger.error("Invariant violation reached the API", error=str(error))
    return jsonify({"success": False, "code": "INVARIANT_VIOLATION", "message": str(error)}), 422


@app.errorhandler(StoreError)
def _handle_store_error(error: StoreError) -> tuple[Any, int]:
    logger.error("Store error", error=str(error))
    return jsonify({"success": False, "code": "STORE_ERROR", "message": str(error)}), 503


def _tender_response(desk: TenderDesk, tender_id: str, status: int = 200) -> tuple[Any, int]:
    caller_id, caller_role = _caller()
    return jsonify({"success": True, "tender": desk.view_tender(tender_id, caller_id, caller_role)}), status


# ============================================================================
# Health probes
# ============================================================================


@app.route("/health/live", methods=["GET"])
def liveness() -> tuple[Any, int]:
    """Liveness probe - the process is up"""
    return jsonify({"status": "alive", "service": "tenderdesk"}), 200


@app.route("/health/ready", methods=["GET"])
def readiness() -> tuple[Any, int]:
    """
    Readiness probe - the store answers a query

    503 while uninitialized or when the database cannot be read.
    """
    if _desk is None:
        return jsonify({"status": "not_ready", "reason": "not_initialized"}), 503

    store = _desk.store
    if isinstance(store, SQLiteTenderStore) and not store.db_path.exists():
        return (
            jsonify({"status": "not_ready", "reason": "database_file_not_found", "db_path": str(store.db_path)}),
            503,
        )
    try:
        counts = store.count_by_status() if hasattr(store, "count_by_status") else {}
    except sqlite3.OperationalError as e:
        logger.error("Readiness check failed: DB operational error", error=str(e))
        return jsonify({"status": "not_ready", "reason": "database_operational_error", "error": str(e)}), 503
    return jsonify({"status": "ready", "tender_count": sum(counts.values())}), 200


@app.route("/health", methods=["GET"])
def detailed_health() -> tuple[Any, int]:
    """Store counts and scheduler state"""
    if _desk is None:
        return jsonify({"status": "degraded", "reason": "not_initialized"}), 503

    health_data: dict[str, Any] = {"status": "healthy", "service": "tenderdesk"}
    try:
        store = _desk.store
        health_data["tenders_by_status"] = (
            store.count_by_status() if hasattr(store, "count_by_status") else {}
        )
    except Exception as e:
        logger.error("Store health check failed", error=str(e))
        health_data["status"] = "degraded"
        health_data["store_error"] = str(e)

    health_data["scheduler_running"] = _desk.scheduler.running
    health_data["recent_notifications"] = len(_desk.outbox.received)
    return jsonify(health_data), 200 if health_data["status"] == "healthy" else 503


# ============================================================================
# Tenders
# ============================================================================


@app.route("/tenders", methods=["GET"])
def list_tenders() -> tuple[Any, int]:
    caller_id, caller_role = _caller()
    tenders = _get_desk().list_tenders(
        caller_id,
        caller_role,
        status=request.args.get("status"),
        owner_id=request.args.get("owner_id"),
    )
    return jsonify({"success": True, "tenders": tenders}), 200


@app.route("/tenders", methods=["POST"])
def create_tender() -> tuple[Any, int]:
    caller_id, caller_role = _require_caller()
    body = _body()
    desk = _get_desk()
    tender = desk.create_tender(
        caller_id,
        caller_role,
        title=body.get("title", ""),
        description=body.get("description", ""),
        category=body.get("category", "professional"),
        workflow_type=body.get("workflow_type", "open"),
        deadline=body.get("deadline"),
        budget=body.get("budget"),
        visibility_type=body.get("visibility_type", "public"),
        invited_users=body.get("invited_users"),
        allowed_companies=body.get("allowed_companies"),
    )
    return jsonify({"success": True, "tender": summarize(tender)}), 201


@app.route("/tenders/<tender_id>", methods=["GET"])
def get_tender(tender_id: str) -> tuple[Any, int]:
    return _tender_response(_get_desk(), tender_id)


@app.route("/tenders/<tender_id>", methods=["PATCH"])
def edit_tender(tender_id: str) -> tuple[Any, int]:
    caller_id, caller_role = _require_caller()
    desk = _get_desk()
    desk.edit_tender(tender_id, caller_id, caller_role, **_body())
    return _tender_response(desk, tender_id)


@app.route("/tenders/<tender_id>", methods=["DELETE"])
def delete_tender(tender_id: str) -> tuple[Any, int]:
    caller_id, caller_role = _require_caller()
    _get_desk().delete_tender(tender_id, caller_id, caller_role)
    return jsonify({"success": True, "tender_id": tender_id, "deleted": True}), 200


@app.route("/tenders/<tender_id>/access", methods=["GET"])
def tender_access(tender_id: str) -> tuple[Any, int]:
    caller_id, caller_role = _caller()
    return jsonify(_get_desk().access(tender_id, caller_id, caller_role)), 200


@app.route("/tenders/<tender_id>/publish", methods=["POST"])
def publish_tender(tender_id: str) -> tuple[Any, int]:
    caller_id, _ = _require_caller()
    desk = _get_desk()
    desk.publish_tender(tender_id, caller_id)
    return _tender_response(desk, tender_id)


@app.route("/tenders/<tender_id>/reveal", methods=["POST"])
def reveal_proposals(tender_id: str) -> tuple[Any, int]:
    caller_id, caller_role = _require_caller()
    desk = _get_desk()
    desk.reveal_proposals(tender_id, caller_id, caller_role)
    return _tender_response(desk, tender_id)


@app.route("/tenders/<tender_id>/moderation", methods=["POST"])
def moderate_tender(tender_id: str) -> tuple[Any, int]:
    caller_id, caller_role = _require_caller()
    body = _body()
    desk = _get_desk()
    desk.moderate_tender(
        tender_id, body.get("action", ""), caller_id, caller_role, reason=body.get("reason")
    )
    return _tender_response(desk, tender_id)


@app.route("/tenders/<tender_id>/save", methods=["POST"])
def toggle_saved(tender_id: str) -> tuple[Any, int]:
    caller_id, _ = _require_caller()
    tender = _get_desk().toggle_saved(tender_id, caller_id)
    return jsonify({"success": True, "saved": caller_id in tender.metadata.saved_by}), 200


# ============================================================================
# Proposals
# ============================================================================


@app.route("/tenders/<tender_id>/proposals", methods=["GET"])
def list_proposals(tender_id: str) -> tuple[Any, int]:
    caller_id, caller_role = _caller()
    desk = _get_desk()
    tender = desk.get_tender(tender_id)
    if not can_view(tender, caller_id, caller_role):
        raise TransitionRejected(
            RejectionCode.TENDER_NOT_FOUND, f"Tender {tender_id} not found", tender_id
        )
    if not can_view_proposals(tender, caller_id, caller_role):
        raise TransitionRejected(
            RejectionCode.NOT_AUTHORIZED,
            "Proposals are sealed until the owner reveals them"
            if tender.is_sealed
            else "Only the tender owner can view proposals",
            tender_id,
        )
    return (
        jsonify({"success": True, "proposals": [p.model_dump(mode="json") for p in tender.proposals]}),
        200,
    )


@app.route("/tenders/<tender_id>/proposals", methods=["POST"])
def submit_proposal(tender_id: str) -> tuple[Any, int]:
    caller_id, caller_role = _require_caller()
    body = _body()
    if "bid_amount" not in body:
        raise TransitionRejected(RejectionCode.INVALID_BID, "bid_amount is required", tender_id)
    tender = _get_desk().submit_proposal(
        tender_id, caller_id, caller_role, str(body["bid_amount"]), body.get("proposal_id")
    )
    proposal = next(p for p in reversed(tender.proposals) if p.bidder_id == caller_id)
    return jsonify({"success": True, "proposal_id": proposal.proposal_id}), 201


def run_http_server(port: int = 8080, debug: bool = False) -> None:
    """Serve the app with Flask's built-in server"""
    logger.info("Starting HTTP server", port=port)
    app.run(host="0.0.0.0", port=port, debug=debug)
