from __future__ import annotations

from flask import Blueprint, jsonify, request

from activity_engine.contexts.principal_activity.application.engine import get_engine
from activity_engine.errors import AppError, ValidationError


principal_activity_bp = Blueprint("principal_activity", __name__, url_prefix="/api/principals")


def _parse_int(value: str | None, field_name: str) -> int | None:
    if value is None or str(value).strip() == "":
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationError(
            code="validation_error",
            http_status=400,
            critical=False,
            payload={"field": field_name},
        )


def _parse_bool(value, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _parse_timeout(value) -> float:
    if value is None:
        return 10.0
    try:
        timeout = float(value)
    except (TypeError, ValueError):
        raise ValidationError(
            code="validation_error",
            http_status=400,
            critical=False,
            payload={"field": "timeout_seconds"},
        )
    return max(0.1, min(timeout, 60.0))


@principal_activity_bp.route("/<string:principal_id>/summary", methods=["GET"])
def principal_summary(principal_id: str):
    snapshot = get_engine().queries.get_summary(principal_id)
    return jsonify(snapshot.summary_dict())


@principal_activity_bp.route("/<string:principal_id>/timeline", methods=["GET"])
def principal_timeline(principal_id: str):
    page = get_engine().queries.get_timeline(
        principal_id,
        start=request.args.get("start"),
        end=request.args.get("end"),
        limit=_parse_int(request.args.get("limit"), "limit"),
        event_types=request.args.get("event_types"),
        cursor=request.args.get("cursor"),
    )
    payload = page.to_dict()
    payload["principal_id"] = principal_id
    return jsonify(payload)


@principal_activity_bp.route("/<string:principal_id>/products", methods=["GET"])
def principal_products(principal_id: str):
    records = get_engine().queries.get_product_performance(principal_id)
    return jsonify({"principal_id": principal_id, "items": [record.to_dict() for record in records]})


@principal_activity_bp.route("/<string:principal_id>/relationships", methods=["GET"])
def principal_relationships(principal_id: str):
    records = get_engine().queries.get_distributor_relationships(principal_id)
    return jsonify({"principal_id": principal_id, "items": [record.to_dict() for record in records]})


@principal_activity_bp.route("/kpis", methods=["GET"])
def dashboard_kpis():
    payload = get_engine().queries.get_dashboard_kpis(
        {
            "activity_status": request.args.get("activity_status"),
            "min_engagement_score": request.args.get("min_engagement_score"),
            "top_n": request.args.get("top_n"),
            "principal_ids": request.args.get("principal_ids"),
        }
    )
    return jsonify(payload)


@principal_activity_bp.route("/engagement-breakdown", methods=["GET"])
def engagement_breakdown():
    return jsonify(get_engine().queries.get_engagement_breakdown())


@principal_activity_bp.route("/follow-ups", methods=["GET"])
def follow_up_principals():
    snapshots = get_engine().queries.get_follow_up_principals()
    return jsonify({"items": [snapshot.summary_dict() for snapshot in snapshots]})


@principal_activity_bp.route("/search", methods=["GET"])
def search_principals():
    snapshots = get_engine().queries.search_principals(
        request.args.get("q"),
        active_only=_parse_bool(request.args.get("active_only"), default=True),
        limit=_parse_int(request.args.get("limit"), "limit"),
    )
    return jsonify({"items": [snapshot.summary_dict() for snapshot in snapshots]})


@principal_activity_bp.route("/<string:principal_id>/refresh", methods=["POST"])
def trigger_refresh(principal_id: str):
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        raise ValidationError(code="validation_error", http_status=400, critical=False)
    wait = _parse_bool(payload.get("wait"), default=True)
    timeout = _parse_timeout(payload.get("timeout_seconds"))

    engine = get_engine()
    outcome = engine.scheduler.refresh_now(principal_id, wait=wait, timeout=timeout)
    if outcome is None:
        return jsonify({"principal_id": principal_id, "status": "accepted"}), 202
    if outcome.timed_out:
        return jsonify({"status": "pending", **outcome.to_dict()}), 202
    if not outcome.succeeded:
        raise AppError(
            code="refresh_failed",
            message_key="refresh_failed",
            http_status=503,
            critical=False,
            details=outcome.error,
            payload={"refresh": outcome.to_dict()},
        )
    if outcome.version is None:
        return jsonify({"status": "discarded", **outcome.to_dict()})

    response = {"status": "refreshed", **outcome.to_dict()}
    snapshot = engine.store.find_current(principal_id)
    if snapshot is not None:
        response["summary"] = snapshot.summary_dict()
    return jsonify(response)
