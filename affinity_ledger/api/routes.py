"""Flask blueprint exposing the ledger API."""

from __future__ import annotations

from flask import Blueprint, jsonify, request

from ..services.pipeline import LedgerPipeline, PipelineResult
from . import schemas


def _respond(result: PipelineResult):
    envelope = (
        schemas.success(result.payload)
        if result.ok
        else schemas.failure(result.error or "error")
    )
    status = 200 if result.ok else schemas.status_for(result.code)
    return jsonify(envelope.to_dict()), status


def _bad_request(message: str):
    return jsonify(schemas.failure(message).to_dict()), 400


def create_blueprint(pipeline: LedgerPipeline, telemetry) -> Blueprint:
    bp = Blueprint("ledger_api", __name__)

    @bp.route("/health", methods=["GET"])
    def health():
        return jsonify(schemas.success({"status": "ok"}).to_dict())

    @bp.route("/events", methods=["POST"])
    def append_event():
        payload = request.get_json(force=True, silent=True) or {}
        result = pipeline.append_event(payload)
        if result.ok and result.payload.get("created"):
            return jsonify(schemas.success(result.payload).to_dict()), 201
        return _respond(result)

    @bp.route("/events/reset-failed", methods=["POST"])
    def reset_failed():
        return _respond(pipeline.reset_failed())

    @bp.route("/runs", methods=["POST"])
    def run_batch():
        payload = request.get_json(force=True, silent=True) or {}
        max_events = payload.get("max_events")
        if max_events is not None:
            try:
                max_events = int(max_events)
            except (TypeError, ValueError):
                return _bad_request("max_events must be an integer")
        return _respond(pipeline.run_batch(max_events))

    @bp.route("/runs", methods=["GET"])
    def recent_runs():
        try:
            limit = int(request.args.get("limit", 20))
        except ValueError:
            return _bad_request("limit must be an integer")
        return _respond(pipeline.recent_runs(limit=limit))

    @bp.route("/profiles/<user_id>", methods=["GET"])
    def get_profile(user_id: str):
        return _respond(pipeline.get_profile(user_id))

    @bp.route("/profiles/<user_id>/preferences", methods=["GET"])
    def get_preferences(user_id: str):
        return _respond(pipeline.get_preferences(user_id))

    @bp.route("/profiles/<user_id>/preferences", methods=["PUT"])
    def set_preferences(user_id: str):
        payload = request.get_json(force=True, silent=True) or {}
        return _respond(pipeline.set_preferences(user_id, payload))

    @bp.route("/entities/<entity_id>", methods=["PUT"])
    def upsert_entity(entity_id: str):
        payload = request.get_json(force=True, silent=True) or {}
        payload["entity_id"] = entity_id
        return _respond(pipeline.upsert_entity_profile(payload))

    @bp.route("/entities/<entity_id>/strength", methods=["GET"])
    def domain_strength(entity_id: str):
        category = request.args.get("category")
        if not category:
            return _bad_request("category is required")
        return _respond(pipeline.get_domain_strength(entity_id, category))

    @bp.route("/entities/<entity_id>/mutations", methods=["GET"])
    def mutation_breakdown(entity_id: str):
        window_days = request.args.get("window_days")
        try:
            window = float(window_days) if window_days else None
        except ValueError:
            return _bad_request("window_days must be numeric")
        return _respond(
            pipeline.get_mutation_breakdown(
                entity_id, category=request.args.get("category"), window_days=window
            )
        )

    @bp.route("/leaderboards/<category>/<window>", methods=["GET"])
    def leaderboard(category: str, window: str):
        try:
            limit = int(request.args.get("limit", 10))
        except ValueError:
            return _bad_request("limit must be an integer")
        return _respond(pipeline.get_leaderboard(category, window, limit=limit))

    @bp.route("/aggregates/rebuild", methods=["POST"])
    def rebuild():
        return _respond(pipeline.rebuild_aggregates())

    @bp.route("/stats", methods=["GET"])
    def stats():
        result = pipeline.stats()
        payload = result.payload | {"telemetry": telemetry.snapshot()}
        return jsonify(schemas.success(payload).to_dict())

    return bp
