from __future__ import annotations

import os
import uuid
from pathlib import Path
from typing import Optional, Tuple

from flask import Flask, Response, jsonify, request
from pydantic import ValidationError

from m365_provisioner.audit import InMemoryAuditStore, JsonAuditLogger
from m365_provisioner.config import AppConfig
from m365_provisioner.errors import (
    ConnectivityError,
    M365Error,
    NotConnectedError,
    ProvisioningError,
    SessionBusyError,
)
from m365_provisioner.models import ProvisioningRequest
from m365_provisioner.session_manager import SessionManager


def _int_arg(name: str, default: int) -> int:
    raw = request.args.get(name)
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def create_app(
    config_path: str | os.PathLike[str] = "config/tenants.yaml",
    manager: Optional[SessionManager] = None,
    audit_store: Optional[InMemoryAuditStore] = None,
) -> Flask:
    audit_store = audit_store or InMemoryAuditStore()
    if manager is None:
        config = AppConfig.load(Path(config_path))
        manager = SessionManager(config, audit_logger=JsonAuditLogger(store=audit_store))

    app = Flask(__name__)
    app.config["SESSION_MANAGER"] = manager
    app.config["AUDIT_STORE"] = audit_store

    @app.errorhandler(M365Error)
    def handle_m365_error(exc: M365Error) -> Tuple[Response, int]:
        if isinstance(exc, (SessionBusyError, NotConnectedError)):
            status = 409
        elif isinstance(exc, ConnectivityError):
            status = 502
        elif isinstance(exc, ProvisioningError):
            status = 422
        else:
            status = 500
        return jsonify(exc.to_dict()), status

    @app.errorhandler(ValidationError)
    def handle_validation_error(exc: ValidationError) -> Tuple[Response, int]:
        details = [
            {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
            for error in exc.errors()
        ]
        return jsonify({"error": "invalid_request", "details": details}), 400

    @app.get("/")
    def index() -> Response:
        tenants = [
            {"tenant_id": tenant.tenant_id, "display_name": tenant.display_name, "auth_type": tenant.auth.type}
            for tenant in manager.config.tenants
        ]
        return jsonify({"session": manager.status().to_dict(), "tenants": tenants})

    @app.post("/connect")
    def connect() -> Tuple[Response, int]:
        payload = request.get_json(silent=True) or request.form
        tenant_id = payload.get("tenant_id")
        if not tenant_id:
            return jsonify({"error": "invalid_request", "message": "tenant_id is required"}), 400
        try:
            session = manager.connect(tenant_id)
        except KeyError as exc:
            return jsonify({"error": "unknown_tenant", "message": str(exc.args[0])}), 404
        return jsonify({"session": session.to_dict(), "counts": manager.snapshot.counts()}), 200

    @app.post("/disconnect")
    def disconnect() -> Response:
        return jsonify(manager.disconnect().to_dict())

    @app.post("/exchange")
    def ensure_exchange() -> Response:
        connected = manager.ensure_exchange_connected()
        return jsonify({"exchange_connected": connected, "session": manager.status().to_dict()})

    @app.post("/discover")
    def discover() -> Response:
        snapshot = manager.discover()
        return jsonify({"counts": snapshot.counts(), "warnings": snapshot.warnings})

    @app.get("/snapshot")
    def snapshot() -> Response:
        return jsonify(manager.snapshot.to_dict())

    @app.post("/provision")
    def provision() -> Tuple[Response, int]:
        provisioning_request = ProvisioningRequest.model_validate(request.get_json(silent=True) or {})
        correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
        result = manager.provision(provisioning_request, correlation_id=correlation_id)
        body = result.to_dict() | {"correlation_id": correlation_id}
        return jsonify(body), 201

    @app.get("/audit.json")
    def audit_json() -> Response:
        events = audit_store.list(limit=_int_arg("limit", 100), tenant_id=request.args.get("tenant_id"))
        payload = [event.to_dict() for event in events]
        return jsonify({"events": payload, "count": len(payload)})

    return app


if __name__ == "__main__":
    app = create_app(os.getenv("M365_PROVISIONER_CONFIG", "config/tenants.yaml"))
    app.run(host="127.0.0.1", port=int(os.getenv("PORT", 5000)), debug=False)
