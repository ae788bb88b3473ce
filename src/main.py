"""CLI for the agent bridge: inspect the host environment and answer pending vision requests."""

from __future__ import annotations

import argparse
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from desktop_hybrid.config import BRIDGE_DIR
from desktop_hybrid.models import AgentEnvironment
from desktop_hybrid.vlm.agent_bridge import AgentBridge, detect_agent_environment


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect and answer desktop-hybrid agent bridge requests.")
    parser.add_argument("--bridge-dir", default=str(BRIDGE_DIR), help="Scratch directory shared with the test process.")
    parser.add_argument("--log-level", default="INFO", help="Python logging level.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("detect", help="Print the detected agent environment.")
    subparsers.add_parser("pending", help="List bridge requests that have no response yet.")

    respond = subparsers.add_parser("respond", help="Write the response for a pending request.")
    respond.add_argument("request_id", help="Identifier printed in the request block.")
    respond.add_argument("payload", help="Response JSON, or @path to a file holding it.")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    log_file = _configure_logging(args.log_level)
    logging.debug("Log file: %s", log_file)

    if args.command == "detect":
        environment = detect_agent_environment()
        print(environment.value)
        return 0 if environment != AgentEnvironment.NONE else 1

    bridge = AgentBridge(Path(args.bridge_dir).expanduser(), environment=detect_agent_environment())
    if args.command == "pending":
        requests = bridge.pending_requests()
        if not requests:
            print("No pending requests.")
        for request in requests:
            print(_describe_request(request))
        return 0

    payload = _load_payload(args.payload)
    path = bridge.respond(args.request_id, payload)
    print(f"Wrote {path}")
    return 0


def _describe_request(request: Dict[str, Any]) -> str:
    detail = request.get("description") or request.get("instruction") or request.get("assertion") or ""
    return f"{request.get('id')}\t{request.get('type')}\t{request.get('screenshot')}\t{detail}"


def _load_payload(raw: str) -> Dict[str, Any]:
    if raw.startswith("@"):
        source = Path(raw[1:]).expanduser()
        if not source.is_file():
            raise SystemExit(f"Response file not found: {source}")
        raw = source.read_text(encoding="utf-8")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise SystemExit(f"Response is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise SystemExit("Response must be a JSON object.")
    return payload


def _configure_logging(log_level: str) -> Path:
    level = getattr(logging, log_level.upper(), logging.INFO)
    log_dir = Path("logs")
    log_dir.mkdir(exist_ok=True)
    log_file = log_dir / f"desktop-hybrid-{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}.log"
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(formatter)
    logging.basicConfig(level=level, handlers=[stream_handler, file_handler])
    return log_file


if __name__ == "__main__":
    raise SystemExit(main())
