"""HTTP interface: feature lifecycle, pipeline runs and handoff packets."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any

from flask import Flask, jsonify, request
from pydantic import BaseModel, ValidationError

from featureflow import service, state_machine
from featureflow.config import FeatureflowConfig
from featureflow.diagnostics import diagnose
from featureflow.models import AgentType, FeatureStatus, PacketOutput
from featureflow.packets import HandoffPacketStore, NoPreviousVersion, PacketNotFound
from featureflow.runner import PipelineRunner, StopReason
from featureflow.state_db import ConflictError, FeatureNotFound, StateDB, utc_now
from featureflow.steps import build_step_configs, derive_steps

# Run outcomes that mean the request could not be carried out as asked.
_CONFLICT_STOPS = frozenset({StopReason.REJECTED_TRANSITION, StopReason.CONFLICT})


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


def _body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _require_status(value: Any, field: str) -> FeatureStatus:
    status = state_machine.parse_status(value if isinstance(value, str) else None)
    if status is None:
        raise ValueError(f"Invalid {field}: {value!r}")
    return status


def create_app(
    db: StateDB,
    config: FeatureflowConfig | None = None,
    runner: PipelineRunner | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> Flask:
    config = config or FeatureflowConfig()
    steps = build_step_configs(config.agents)
    packets = HandoffPacketStore(
        db, max_summary_chars=config.packets.max_summary_chars, clock=clock
    )
    runner = runner or PipelineRunner(db, config, clock=clock)

    app = Flask(__name__)

    # ── Error mapping ────────────────────────────────────────────────

    @app.errorhandler(FeatureNotFound)
    @app.errorhandler(PacketNotFound)
    def not_found(exc: LookupError):
        return jsonify({"error": str(exc)}), 404

    @app.errorhandler(state_machine.InvalidTransition)
    def invalid_transition(exc: state_machine.InvalidTransition):
        return jsonify({
            "error": str(exc),
            "from_status": exc.from_status.value,
            "to_status": exc.to_status.value,
        }), 409

    @app.errorhandler(ConflictError)
    def conflict(exc: ConflictError):
        return jsonify({"error": str(exc)}), 409

    @app.errorhandler(NoPreviousVersion)
    def no_previous(exc: NoPreviousVersion):
        return jsonify({"error": str(exc)}), 400

    @app.errorhandler(ValidationError)
    def invalid_payload(exc: ValidationError):
        return jsonify({"error": f"Invalid payload: {exc}"}), 400

    @app.errorhandler(ValueError)
    def bad_request(exc: ValueError):
        return jsonify({"error": str(exc)}), 400

    # ── Features ─────────────────────────────────────────────────────

    def feature_view(feature_id: str) -> dict[str, Any]:
        feature = service.load_feature(db, feature_id)
        now_ms = int(clock().timestamp() * 1000)
        return {
            "feature": _dump(feature),
            "steps": [_dump(s) for s in derive_steps(feature, now_ms, steps)],
            "diagnostics": _dump(diagnose(feature, now_ms, config.diagnostics)),
        }

    @app.route("/features", methods=["GET"])
    def list_features():
        status = request.args.get("status")
        if status is not None:
            status = _require_status(status, "status").value
        rows = db.list_features(status=status)
        return jsonify([_dump(service.load_feature(db, r["id"])) for r in rows])

    @app.route("/features", methods=["POST"])
    def create_feature():
        title = _body().get("title")
        if not isinstance(title, str) or not title.strip():
            return jsonify({"error": "Missing title"}), 400
        feature = service.create_feature(db, title.strip())
        return jsonify({"feature": _dump(feature)}), 201

    @app.route("/features/<feature_id>", methods=["GET"])
    def get_feature(feature_id: str):
        return jsonify(feature_view(feature_id))

    @app.route("/features/<feature_id>", methods=["PATCH"])
    def update_feature(feature_id: str):
        data = _body()
        status = _require_status(data.get("status"), "status")
        feature = service.update_status(
            db, feature_id, status, assigned_to=data.get("assigned_to"), clock=clock
        )
        return jsonify({"feature": _dump(feature)})

    @app.route("/features/<feature_id>/approve", methods=["POST"])
    def approve(feature_id: str):
        data = _body()
        target = _require_status(data.get("target_status"), "target_status")
        feature = service.approve(
            db, feature_id, target, data.get("approved_by"), steps=steps, clock=clock
        )
        return jsonify({"feature": _dump(feature)})

    @app.route("/features/<feature_id>/review-verdict", methods=["POST"])
    def review_verdict(feature_id: str):
        data = _body()
        verdict = data.get("verdict")
        reviewer = data.get("reviewer")
        if verdict not in ("approve", "revise", "reject"):
            return jsonify({"error": "Invalid verdict. Must be approve, revise, or reject"}), 400
        if not reviewer:
            return jsonify({"error": "Missing reviewer"}), 400
        feature = service.submit_review_verdict(
            db,
            feature_id,
            verdict,
            reviewer,
            feedback=data.get("feedback"),
            steps=steps,
            clock=clock,
        )
        return jsonify({"feature": _dump(feature)})

    @app.route("/features/<feature_id>/run-pipeline", methods=["POST"])
    def run_pipeline(feature_id: str):
        result = runner.run(feature_id)
        payload = {
            "feature": _dump(result.feature),
            "stopped_reason": result.stopped_reason.value,
            "steps_run": result.steps_run,
            "error": result.error,
        }
        status_code = 409 if result.stopped_reason in _CONFLICT_STOPS else 200
        return jsonify(payload), status_code

    @app.route("/features/<feature_id>/activity", methods=["GET"])
    def activity(feature_id: str):
        service.load_feature(db, feature_id)
        return jsonify(db.get_activity(feature_id))

    # ── Handoff packets ──────────────────────────────────────────────

    def feature_packet(feature_id: str, packet_id: str):
        packet = packets.get(packet_id)
        if packet.feature_id != feature_id:
            raise PacketNotFound(packet_id)
        return packet

    @app.route("/features/<feature_id>/handoff-packets", methods=["GET"])
    def list_packets(feature_id: str):
        service.load_feature(db, feature_id)
        return jsonify([_dump(p) for p in packets.list_for_feature(feature_id)])

    @app.route("/features/<feature_id>/handoff-packets", methods=["POST"])
    def create_packet(feature_id: str):
        data = _body()
        phase = _require_status(data.get("phase"), "phase")
        agent_id = data.get("agent_id")
        if not agent_id:
            return jsonify({"error": "Missing agent_id"}), 400
        agent_type = AgentType(data.get("agent_type", AgentType.AI_AGENT.value))
        packet = packets.create_version(feature_id, phase, agent_id, agent_type)
        return jsonify(_dump(packet)), 201

    @app.route("/features/<feature_id>/handoff-packets/<packet_id>/complete", methods=["POST"])
    def complete_packet(feature_id: str, packet_id: str):
        data = _body()
        feature_packet(feature_id, packet_id)
        output = PacketOutput.model_validate(
            {k: data[k] for k in ("summary", "artifacts", "decisions") if k in data}
        )
        packet = packets.complete(packet_id, output, agent_id=data.get("agent_id"))
        return jsonify(_dump(packet))

    @app.route("/features/<feature_id>/handoff-packets/<packet_id>/reject", methods=["POST"])
    def reject_packet(feature_id: str, packet_id: str):
        reason = _body().get("reason")
        if not reason:
            return jsonify({"error": "Missing reason"}), 400
        feature_packet(feature_id, packet_id)
        return jsonify(_dump(packets.reject(packet_id, reason)))

    @app.route("/features/<feature_id>/handoff-packets/<packet_id>/diff", methods=["GET"])
    def packet_diff(feature_id: str, packet_id: str):
        service.load_feature(db, feature_id)
        return jsonify(_dump(packets.diff_view(feature_id, packet_id)))

    return app
