"""
routes.py — HTTP surface for the intake pipeline (Flask blueprint)

All routes require Basic auth (API_USER / API_PASS).

  GET    /api/health            settings summary + which secrets are set
  POST   /api/classify          message JSON → ClassificationVerdict
  POST   /api/attachments       message JSON → classified attachments + groups
  POST   /api/pipeline          message JSON → PipelineResult
  GET    /api/traces            recent decision traces (?status=warn&limit=20)
  GET    /api/traces/<id>       one trace
  DELETE /api/traces            clear traces

Message JSON: {"id", "sender", "subject", "body", "body_html"?,
"message_id"?, "in_reply_to"?, "references"?, "received_at"?, "headers"?,
"attachments": [{"filename", "content_type", "content_base64"}]}
"""

import binascii
import functools
import logging

from flask import Blueprint, Response, current_app, jsonify, request

from src.agents.attachment_classifier import classify_attachments, group_attachments
from src.api.trace import clear_traces, get_summary, get_trace, get_traces, record_trace
from src.auto.pipeline import run_pipeline
from src.core.models import InboundMessage
from src.core.secrets import get_key, validate_all

log = logging.getLogger("api")

bp = Blueprint("intake", __name__)


# ═══════════════════════════════════════════════════════════════════════
# Auth
# ═══════════════════════════════════════════════════════════════════════

def check_auth(username, password):
    expected = get_key("api_pass")
    return bool(expected) and username == get_key("api_user") and password == expected


def auth_required(f):
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        auth = request.authorization
        if not auth or not check_auth(auth.username, auth.password):
            return Response(
                "Login required", 401,
                {"WWW-Authenticate": 'Basic realm="RFQ Intake API"'})
        return f(*args, **kwargs)
    return decorated


# ═══════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════

def _context():
    return current_app.config["PIPELINE_CONTEXT"]


def _message_from_request():
    """→ (InboundMessage, None) or (None, error response)."""
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return None, (jsonify({"ok": False, "error": "JSON object body required"}), 400)
    try:
        return InboundMessage.from_dict(payload), None
    except (binascii.Error, ValueError, TypeError) as e:
        return None, (jsonify({"ok": False, "error": f"invalid message: {e}"}), 400)


# ═══════════════════════════════════════════════════════════════════════
# Routes
# ═══════════════════════════════════════════════════════════════════════

@bp.route("/api/health")
@auth_required
def api_health():
    s = _context().settings
    return jsonify({
        "ok": True,
        "llm_mode": s.llm_mode,
        "llm_min_items": s.llm_min_items,
        "llm_min_confidence": s.llm_min_confidence,
        "fallback": type(_context().fallback).__name__,
        "secrets": validate_all()["secrets"],
        "traces": get_summary(),
    })


@bp.route("/api/classify", methods=["POST"])
@auth_required
def api_classify():
    msg, err = _message_from_request()
    if err:
        return err
    verdict = _context().classifier().classify(msg)
    return jsonify({"ok": True, "message_id": msg.id, **verdict.to_dict()})


@bp.route("/api/attachments", methods=["POST"])
@auth_required
def api_attachments():
    msg, err = _message_from_request()
    if err:
        return err
    ctx = _context()
    classified = classify_attachments(msg.attachments, brand_lookup=ctx.brands, settings=ctx.settings)
    groups = group_attachments(classified)
    return jsonify({
        "ok": True,
        "attachments": [c.to_dict() for c in classified],
        "groups": [{
            "documents": [d.filename for d in g.documents],
            "technical_sheets": [s.filename for s in g.technical_sheets],
            "brand": g.brand,
        } for g in groups],
    })


@bp.route("/api/pipeline", methods=["POST"])
@auth_required
def api_pipeline():
    msg, err = _message_from_request()
    if err:
        return err
    result = run_pipeline(msg, _context())
    if result.trace:
        record_trace(result.trace)
    log.info("API pipeline %s → %s", msg.id, result.verdict.verdict.value,
             extra={"route": "/api/pipeline", "message_id": msg.id,
                    "requests": len(result.requests)})
    return jsonify({"ok": True, **result.to_dict()})


@bp.route("/api/traces")
@auth_required
def api_traces():
    limit = request.args.get("limit", 50, type=int)
    return jsonify({
        "ok": True,
        "traces": get_traces(workflow=request.args.get("workflow"),
                             status=request.args.get("status"), limit=limit),
    })


@bp.route("/api/traces/<trace_id>")
@auth_required
def api_trace(trace_id):
    t = get_trace(trace_id)
    if not t:
        return jsonify({"ok": False, "error": "trace not found"}), 404
    return jsonify({"ok": True, "trace": t})


@bp.route("/api/traces", methods=["DELETE"])
@auth_required
def api_clear_traces():
    clear_traces()
    return jsonify({"ok": True})
