"""Answer vision queries through a host agent session instead of a metered API.

When the tests are themselves driven by an agent that can look at images, each
query is written to a scratch directory as ``request_<id>.json`` next to the
screenshot, and announced on the console. The agent answers by writing
``response_<id>.json`` (or, for scripted harnesses, by queueing a response in
process). Nothing here blocks: an unanswered request comes back as a pending,
negative result and the caller decides whether to ask again.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
import os
import sys
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Deque, Dict, List, Mapping, Optional, Sequence, TextIO, Tuple

from pydantic import BaseModel, ValidationError

from ..config import BRIDGE_DIR, BRIDGE_RESPONSE_VAR
from ..errors import BridgeNotReady
from ..models import AgentEnvironment, ElementLocation, NextAction, VisualAssertion, VisualIssue
from .backends import strip_data_url

logger = logging.getLogger(__name__)

BRIDGE_PROTOCOL_VERSION = 1

_ENVIRONMENT_MARKERS: Tuple[Tuple[AgentEnvironment, Tuple[str, ...]], ...] = (
    (AgentEnvironment.IDE_EMBEDDED, ("CURSOR_SESSION", "CURSOR_WORKSPACE", "CURSOR_IDE", "CURSOR_TRACE_ID")),
    (AgentEnvironment.CLI_AGENT, ("CLAUDE_CODE", "CLAUDECODE", "CLAUDE_CLI", "ANTHROPIC_AGENT", "CLAUDE_SESSION_ID")),
    (AgentEnvironment.EDITOR_PLUGIN, ("VSCODE_CLAUDE", "CLAUDE_VSCODE")),
    (AgentEnvironment.DESKTOP_APP, ("CLAUDE_DESKTOP", "CLAUDE_APP")),
    (AgentEnvironment.PROTOCOL_MARKER, ("MCP_SERVER", "MCP_SESSION")),
)

_REQUEST_TITLES = {
    "find": "Find Element",
    "action": "Get Next Action",
    "assert": "Visual Assertion",
    "issues": "Detect Visual Issues",
}


def detect_agent_environment(
    environ: Optional[Mapping[str, str]] = None,
    stdout_isatty: Optional[bool] = None,
) -> AgentEnvironment:
    """Classify the host context. First match wins; no match means metered providers."""
    env = os.environ if environ is None else environ

    for environment, names in _ENVIRONMENT_MARKERS:
        if any(env.get(name) for name in names):
            return environment
        if environment == AgentEnvironment.EDITOR_PLUGIN and env.get("VSCODE_PID") and "ANTHROPIC_API_KEY" not in env:
            return environment

    if stdout_isatty is None:
        isatty = getattr(sys.stdout, "isatty", None)
        stdout_isatty = bool(isatty()) if callable(isatty) else False
    if not stdout_isatty and (env.get("TERM_PROGRAM") == "vscode" or env.get("TERM") == "xterm-256color"):
        return AgentEnvironment.HEURISTIC

    if (env.get("USE_AGENT_MODE") or "").lower() == "true":
        return AgentEnvironment.HEURISTIC

    return AgentEnvironment.NONE


def should_use_agent_mode(
    environ: Optional[Mapping[str, str]] = None,
    stdout_isatty: Optional[bool] = None,
) -> bool:
    env = os.environ if environ is None else environ
    if detect_agent_environment(env, stdout_isatty) != AgentEnvironment.NONE:
        return True
    return (env.get("USE_CURSOR") or "").lower() == "true"


class AgentBridge:
    """File-based handoff of vision queries to the host agent."""

    def __init__(
        self,
        scratch_dir: Optional[Path] = None,
        environment: Optional[AgentEnvironment] = None,
        *,
        stream: Optional[TextIO] = None,
        response_var: str = BRIDGE_RESPONSE_VAR,
    ) -> None:
        self.scratch_dir = Path(scratch_dir or BRIDGE_DIR)
        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        self.environment = environment or detect_agent_environment()
        self.response_var = response_var
        self.request_count = 0
        self._stream = stream
        self._preset: Deque[Dict[str, Any]] = deque()
        logger.info("Agent bridge initialized (environment: %s, dir: %s)", self.environment.value, self.scratch_dir)

    def queue_response(self, payload: Mapping[str, Any]) -> None:
        """Queue an answer for the next request (scripted harnesses)."""
        self._preset.append(dict(payload))

    async def find_element(self, screenshot: str, description: str, context: Optional[str] = None) -> ElementLocation:
        request_id, payload = await self._submit("find", {"description": description, "context": context}, screenshot)
        if payload is None:
            return ElementLocation(
                confidence=0.0,
                reasoning="Waiting for host agent to analyze screenshot",
                not_found=True,
                alternative="Answer the bridge request or provide coordinates manually",
                pending=True,
                request_id=request_id,
            )
        result = _validate(ElementLocation, payload)
        if result is None:
            return ElementLocation(reasoning="Unusable agent response", not_found=True, request_id=request_id)
        if result.coordinates is None:
            result.not_found = True
        result.request_id = request_id
        return result

    async def get_next_action(self, screenshot: str, instruction: str, action_space: Sequence[str]) -> NextAction:
        request_id, payload = await self._submit(
            "action", {"instruction": instruction, "actionSpace": list(action_space)}, screenshot
        )
        if payload is None:
            return NextAction(
                action_type="wait",
                thought="Waiting for host agent to provide action",
                finished=False,
                pending=True,
                request_id=request_id,
            )
        result = _validate(NextAction, payload)
        if result is None:
            return NextAction(action_type="wait", thought="Unusable agent response", request_id=request_id)
        result.request_id = request_id
        return result

    async def assert_visual(self, screenshot: str, assertion: str, expected: Optional[str] = None) -> VisualAssertion:
        request_id, payload = await self._submit("assert", {"assertion": assertion, "expected": expected}, screenshot)
        if payload is None:
            return VisualAssertion(
                passed=False,
                reasoning="Waiting for host agent to verify assertion",
                actual="Pending verification",
                pending=True,
                request_id=request_id,
            )
        result = _validate(VisualAssertion, payload)
        if result is None:
            return VisualAssertion(passed=False, reasoning="Unusable agent response", actual="Unknown", request_id=request_id)
        result.request_id = request_id
        return result

    async def detect_visual_issues(self, screenshot: str) -> List[VisualIssue]:
        _, payload = await self._submit("issues", {}, screenshot)
        if payload is None:
            return []
        issues: List[VisualIssue] = []
        for entry in payload.get("issues") or []:
            issue = _validate(VisualIssue, entry) if isinstance(entry, dict) else None
            if issue is not None:
                issues.append(issue)
        return issues

    def request_id_for(self, kind: str, fields: Mapping[str, Any]) -> str:
        """Ids are content-derived so a caller polling the same question sees the same response file."""
        material = json.dumps({"type": kind, **fields}, sort_keys=True, default=str)
        return hashlib.sha1(material.encode("utf-8")).hexdigest()[:12]

    def pending_requests(self) -> List[Dict[str, Any]]:
        pending: List[Dict[str, Any]] = []
        for path in sorted(self.scratch_dir.glob("request_*.json")):
            request_id = path.stem[len("request_") :]
            if self._response_path(request_id).exists():
                continue
            try:
                pending.append(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Skipping unreadable bridge request %s: %s", path, exc)
        return pending

    def respond(self, request_id: str, payload: Mapping[str, Any]) -> Path:
        """Write the answer for ``request_id``; the next poll of that request picks it up."""
        path = self._response_path(request_id)
        document = {"version": BRIDGE_PROTOCOL_VERSION, "id": request_id, "response": dict(payload)}
        path.write_text(json.dumps(document, indent=2), encoding="utf-8")
        logger.info("Response written to %s", path)
        return path

    async def _submit(
        self, kind: str, fields: Dict[str, Any], screenshot: str
    ) -> Tuple[str, Optional[Dict[str, Any]]]:
        request_id = self.request_id_for(kind, fields)
        self.request_count += 1
        screenshot_path = await asyncio.to_thread(self._write_screenshot, request_id, screenshot)
        request = {
            "version": BRIDGE_PROTOCOL_VERSION,
            "id": request_id,
            "type": kind,
            "screenshot": str(screenshot_path),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **{key: value for key, value in fields.items() if value is not None},
        }
        await asyncio.to_thread(self._write_json, self._request_path(request_id), request)
        self._announce(kind, request_id, screenshot_path, fields)

        try:
            payload = await asyncio.to_thread(self._take_response, request_id)
        except BridgeNotReady:
            logger.debug("Bridge request %s (%s) is waiting for the host agent", request_id, kind)
            return request_id, None
        logger.debug("Bridge request %s (%s) answered", request_id, kind)
        return request_id, payload

    def _take_response(self, request_id: str) -> Dict[str, Any]:
        if self._preset:
            return self._preset.popleft()

        raw = os.environ.pop(self.response_var, None)
        if raw:
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("Ignoring %s: not valid JSON", self.response_var)
            else:
                if isinstance(payload, dict):
                    return payload
                logger.warning("Ignoring %s: expected a JSON object", self.response_var)

        path = self._response_path(request_id)
        if not path.exists():
            raise BridgeNotReady(request_id)
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            # Likely still being written by the agent.
            raise BridgeNotReady(request_id)
        if not isinstance(document, dict):
            raise BridgeNotReady(request_id)
        if document.get("id") not in (None, request_id):
            logger.warning("Response %s carries id %s; ignoring it", path, document.get("id"))
            raise BridgeNotReady(request_id)

        payload = document.get("response") if isinstance(document.get("response"), dict) else document
        payload = {key: value for key, value in payload.items() if key not in {"id", "version"}}
        for consumed in (path, self._request_path(request_id)):
            try:
                consumed.unlink()
            except FileNotFoundError:
                pass
        return payload

    def _write_screenshot(self, request_id: str, screenshot: str) -> Path:
        path = self.scratch_dir / f"screenshot_{request_id}.png"
        path.write_bytes(base64.b64decode(strip_data_url(screenshot)))
        return path

    def _write_json(self, path: Path, payload: Mapping[str, Any]) -> None:
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def _request_path(self, request_id: str) -> Path:
        return self.scratch_dir / f"request_{request_id}.json"

    def _response_path(self, request_id: str) -> Path:
        return self.scratch_dir / f"response_{request_id}.json"

    def _announce(self, kind: str, request_id: str, screenshot_path: Path, fields: Mapping[str, Any]) -> None:
        rule = "-" * 60
        lines = [
            "",
            f"+{rule}",
            f"| AGENT VLM REQUEST: {_REQUEST_TITLES.get(kind, kind)}",
            f"+{rule}",
            f"| Request id: {request_id}",
            f"| Screenshot: {screenshot_path}",
        ]
        for key, value in fields.items():
            if value is None:
                continue
            if isinstance(value, list):
                lines.append(f"| {key}:")
                lines.extend(f"|   - {item}" for item in value[:8])
            else:
                lines.append(f"| {key}: {value}")
        lines.extend(
            [
                f"+{rule}",
                f"| Answer with JSON in {self._response_path(request_id)}",
                f"| or set {self.response_var} before the next call.",
                f"+{rule}",
                "",
            ]
        )
        print("\n".join(lines), file=self._stream or sys.stdout, flush=True)


def _validate(model: type[BaseModel], payload: Mapping[str, Any]) -> Optional[Any]:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        logger.warning("Agent response failed validation for %s: %s", model.__name__, exc)
        return None
