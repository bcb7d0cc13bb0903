from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, List, Optional

import yaml
from pydantic import ValidationError

from m365_provisioner.audit import JsonAuditLogger
from m365_provisioner.config import AppConfig
from m365_provisioner.errors import M365Error, PartialProvisioningFailure
from m365_provisioner.models import ProvisioningRequest
from m365_provisioner.session_manager import SessionManager


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Microsoft 365 tenant discovery and user provisioning (console mode)")
    parser.add_argument("--config", required=True, help="Path to tenant configuration YAML")
    parser.add_argument("--tenant-id", required=True, help="Tenant ID to connect to")
    parser.add_argument(
        "--operation",
        required=True,
        choices=["discover", "provision"],
        help="Operation to run",
    )
    parser.add_argument("--request", help="YAML/JSON file with the provisioning request")
    parser.add_argument("--summary", action="store_true", help="Print collection counts instead of the full snapshot")
    return parser.parse_args(argv)


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    if args.operation == "provision" and not args.request:
        raise SystemExit("--request is required for provisioning")

    config = AppConfig.load(Path(args.config))
    try:
        config.get_tenant(args.tenant_id)
    except KeyError:
        raise SystemExit(f"Unknown tenant: {args.tenant_id}")

    request = None
    if args.request:
        with Path(args.request).open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
        try:
            request = ProvisioningRequest.model_validate(raw)
        except ValidationError as exc:
            raise SystemExit(f"Invalid provisioning request {args.request}:\n{exc}")

    manager = SessionManager(config, audit_logger=JsonAuditLogger())

    exit_code = 0
    try:
        session = manager.connect(args.tenant_id)
        if args.operation == "discover":
            snapshot = manager.snapshot
            _emit({"session": session.to_dict(), "snapshot": snapshot.counts() if args.summary else snapshot.to_dict()})
        elif request is not None:
            result = manager.provision(request)
            _emit(result.to_dict())
            try:
                result.raise_for_failures()
            except PartialProvisioningFailure as exc:
                print(f"{exc} ({exc.hint})", file=sys.stderr)
                exit_code = 2
    except M365Error as exc:
        _emit(exc.to_dict())
        exit_code = 1
    finally:
        manager.disconnect()
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
