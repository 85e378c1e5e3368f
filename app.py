from __future__ import annotations
from typing import Any, Dict, Optional
from flask import Flask, jsonify, request as http_request
import logging
from concepts import Dictionary, FileTracker, Library, PasswordAuthentication, Requesting, Sessioning
from engine import Engine, EngineError
from settings import Settings, get_settings
from sync import make_syncs

logger = logging.getLogger(__name__)

# ====== Build & Run ======

def build_engine(settings: Optional[Settings] = None) -> Engine:
    settings = settings or get_settings()
    concepts = [Requesting(), Sessioning(), PasswordAuthentication(), Library(), FileTracker(), Dictionary()]
    return Engine(concepts, make_syncs(), max_depth=settings.MAX_CASCADE_DEPTH,
                  strict_responses=settings.STRICT_RESPONSES)


def make_app(eng: Engine, settings: Optional[Settings] = None) -> Flask:
    settings = settings or get_settings()
    app = Flask(__name__)
    base = settings.REQUESTING_BASE_URL
    requesting: Requesting = eng.concepts["Requesting"]

    async def passthrough(concept: str, action: str, body: Dict[str, Any]):
        # Included routes talk to the concept directly; no Requesting.request is recorded
        if action.startswith("_"):
            return jsonify(await eng.query(concept, action, **body))
        cascade = await eng.invoke(concept, action, body)
        return jsonify(dict(cascade.root.output))

    @app.post(f"{base}/<path:route>")
    async def handle(route: str):
        body = http_request.get_json(silent=True)
        if body is None:
            body = {}
        if not isinstance(body, dict):
            return jsonify({"error": "Request body must be a JSON object"}), 400
        full = f"{base}/{route}"
        try:
            if full in settings.PASSTHROUGH_INCLUSIONS:
                concept, _, action = route.partition("/")
                if concept not in eng.concepts or not action:
                    return jsonify({"error": f"No passthrough target for {full}"}), 404
                return await passthrough(concept, action, body)
            body.pop("path", None)
            cascade = await eng.invoke("Requesting", "request", {"path": f"/{route}", **body})
        except EngineError as exc:
            logger.exception("engine defect while handling %s", full)
            aborted = exc.cascade
            if aborted is not None and aborted.records and aborted.root.concept == requesting.name:
                requesting.take_response(aborted.root.output.get("request"))
            return jsonify({"error": "Internal engine error"}), 500
        if cascade.root.is_error:
            return jsonify(dict(cascade.root.output)), 400
        rid = cascade.root.output.get("request")
        response = requesting.take_response(rid)
        if response is None:
            logger.warning("request %s for %s settled without a response", rid, full)
            return jsonify({"error": f"Request {rid} for /{route} was not answered"}), 504
        return jsonify(response)

    return app
