"""Control channel backed by a browser-automation command-line tool.

Every operation is one invocation of ``<tool> [--session=<id>] <verb> [args] --json``.
The tool answers ``{"success": bool, "data": ..., "error": ...}``. This layer
never retries or falls back; failures surface as :mod:`errors` exceptions and
the engine decides what to do with them.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
import subprocess
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from .config import CONTROL_TOOL, DEFAULT_ENDPOINT, DEFAULT_TIMEOUT_MS
from .errors import (
    ChannelCommandError,
    ChannelConnectionError,
    ChannelReplyError,
    ChannelTimeoutError,
    DesktopHybridError,
    NotConnectedError,
    UnsupportedLocatorError,
)
from .models import ChannelSnapshot, ElementRef, Locator, LocatorStrategy

logger = logging.getLogger(__name__)

Target = Union[ElementRef, Locator, str]

_POINTER_SCRIPT = r"""
(() => {
  const x = __X__, y = __Y__, events = __EVENTS__;
  const el = document.elementFromPoint(x, y);
  if (!el) return false;
  const init = { bubbles: true, cancelable: true, view: window, clientX: x, clientY: y };
  if (events.includes("click") && typeof el.focus === "function") el.focus();
  let clicks = 0;
  for (const type of events) {
    if (type === "mousedown") clicks += 1;
    el.dispatchEvent(new MouseEvent(type, { ...init, detail: Math.max(clicks, 1) }));
  }
  return true;
})()
"""

_INSERT_TEXT_SCRIPT = r"""
(() => {
  const text = __TEXT__, replace = __REPLACE__;
  const el = document.activeElement;
  if (!el || el === document.body) return false;
  if (el.isContentEditable) {
    document.execCommand('insertText', false, text);
    return true;
  }
  if ('value' in el) {
    el.value = replace ? text : (el.value || '') + text;
    el.dispatchEvent(new Event('input', { bubbles: true }));
    el.dispatchEvent(new Event('change', { bubbles: true }));
    return true;
  }
  return false;
})()
"""


def locator_to_selector(locator: Locator) -> str:
    """Translate a locator into the tool's selector syntax."""
    strategy = locator.strategy
    value = locator.value
    if strategy == LocatorStrategy.REF:
        selector = value if value.startswith("@") else f"@{value}"
    elif strategy == LocatorStrategy.CSS:
        selector = value
    elif strategy == LocatorStrategy.XPATH:
        selector = value if value.startswith("xpath=") else f"xpath={value}"
    elif strategy == LocatorStrategy.TEXT:
        selector = f"text={value}"
    elif strategy == LocatorStrategy.ROLE:
        selector = f"role={value}"
    elif strategy == LocatorStrategy.TESTID:
        selector = value if value.startswith("[") else f'[data-testid="{value}"]'
    else:
        raise UnsupportedLocatorError(f"{strategy.value} locators have no selector form: {value!r}")

    if locator.within is not None:
        selector = f"{locator_to_selector(locator.within)} >> {selector}"
    if locator.nth is not None:
        selector = f"{selector} >> nth={locator.nth}"
    return selector


class ControlChannel:
    """Async wrapper around the control tool."""

    def __init__(
        self,
        tool: str = CONTROL_TOOL,
        *,
        session: Optional[str] = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> None:
        self.tool = tool
        self.session = session
        self.timeout_ms = timeout_ms
        self.endpoint: Optional[str] = None
        self.connected = False
        self._ref_counter = 0

    async def connect(self, endpoint: str = DEFAULT_ENDPOINT) -> None:
        try:
            await self._run(["open", f"--cdp={endpoint}"])
        except DesktopHybridError as exc:
            raise ChannelConnectionError(f"Failed to connect to {endpoint} via {self.tool}: {exc}") from exc
        self.endpoint = endpoint
        self.connected = True
        logger.info("Connected to %s via %s", endpoint, self.tool)

    async def disconnect(self) -> None:
        if not self.connected:
            return
        try:
            await self._run(["close"])
        except DesktopHybridError as exc:
            logger.debug("Ignoring error while closing channel: %s", exc)
        finally:
            self.connected = False
            logger.info("Disconnected from %s", self.endpoint)

    async def open(self, url: str) -> None:
        self._ensure_connected()
        await self._run(["open", url])

    async def get_snapshot(self, interactive: bool = True, include_screenshot: bool = False) -> ChannelSnapshot:
        self._ensure_connected()
        args = ["snapshot"]
        if interactive:
            args.append("-i")
        data = await self._run_json(args) or {}

        refs: Dict[str, ElementRef] = {}
        for key, value in (data.get("refs") or {}).items():
            value = value or {}
            refs[key] = ElementRef(
                id=key,
                role=value.get("role") or "element",
                name=value.get("name"),
                source="dom",
                selector=f"@{key}",
            )

        screenshot = await self.screenshot_base64() if include_screenshot else None
        return ChannelSnapshot(tree=data.get("snapshot") or "", refs=refs, screenshot=screenshot)

    async def find(self, locator: Locator) -> Optional[ElementRef]:
        self._ensure_connected()
        selector = locator_to_selector(locator)
        try:
            data = await self._run_json(["is", "visible", selector]) or {}
        except ChannelReplyError as exc:
            logger.debug("find(%s) missed: %s", selector, exc)
            return None
        if not data.get("visible"):
            return None
        return self._new_ref(locator, selector)

    async def find_all(self, locator: Locator) -> List[ElementRef]:
        self._ensure_connected()
        selector = locator_to_selector(locator)
        try:
            data = await self._run_json(["get", "count", selector]) or {}
        except ChannelReplyError as exc:
            logger.debug("find_all(%s) missed: %s", selector, exc)
            return []
        count = int(data.get("count") or 0)
        return [self._new_ref(locator, f"{selector} >> nth={index}", nth=index) for index in range(count)]

    async def click(self, target: Target) -> None:
        self._ensure_connected()
        await self._run(["click", self._selector_for(target)])

    async def dblclick(self, target: Target) -> None:
        self._ensure_connected()
        await self._run(["dblclick", self._selector_for(target)])

    async def type(self, target: Target, text: str) -> None:
        self._ensure_connected()
        await self._run(["type", self._selector_for(target), text])

    async def fill(self, target: Target, text: str) -> None:
        """Replace the field's value rather than appending to it."""
        self._ensure_connected()
        await self._run(["fill", self._selector_for(target), text])

    async def press(self, key: str) -> None:
        self._ensure_connected()
        await self._run(["press", key])

    async def hover(self, target: Target) -> None:
        self._ensure_connected()
        await self._run(["hover", self._selector_for(target)])

    async def scroll(self, direction: str = "down", amount: int = 300) -> None:
        self._ensure_connected()
        await self._run(["scroll", direction, str(amount)])

    async def drag(self, source: Target, target: Target) -> None:
        self._ensure_connected()
        await self._run(["drag", self._selector_for(source), self._selector_for(target)])

    async def click_at(self, x: float, y: float, count: int = 1) -> None:
        """Click whatever element sits at viewport coordinates (x, y)."""
        events = ["mousedown", "mouseup", "click"] * max(int(count), 1)
        if count == 2:
            events.append("dblclick")
        await self._pointer_at(x, y, events)

    async def hover_at(self, x: float, y: float) -> None:
        await self._pointer_at(x, y, ["mouseover", "mouseenter", "mousemove"])

    async def insert_text(self, text: str, replace: bool = False) -> None:
        """Type into the focused element, appending unless ``replace`` is set."""
        script = _INSERT_TEXT_SCRIPT.replace("__TEXT__", json.dumps(text)).replace("__REPLACE__", json.dumps(replace))
        if not await self.evaluate(script):
            raise ChannelCommandError("No focused text field to type into", command=self._command(["eval", "<insert_text>"]))

    async def _pointer_at(self, x: float, y: float, events: List[str]) -> None:
        script = (
            _POINTER_SCRIPT.replace("__X__", json.dumps(x))
            .replace("__Y__", json.dumps(y))
            .replace("__EVENTS__", json.dumps(events))
        )
        if not await self.evaluate(script):
            raise ChannelCommandError(f"No element at ({x}, {y})", command=self._command(["eval", "<pointer>"]))

    async def get_text(self, target: Target) -> str:
        self._ensure_connected()
        data = await self._run_json(["get", "text", self._selector_for(target)]) or {}
        return data.get("text") or ""

    async def get_value(self, target: Target) -> str:
        self._ensure_connected()
        data = await self._run_json(["get", "value", self._selector_for(target)]) or {}
        return data.get("value") or ""

    async def get_attribute(self, target: Target, name: str) -> Optional[str]:
        self._ensure_connected()
        data = await self._run_json(["get", "attr", self._selector_for(target), name]) or {}
        return data.get("value")

    async def get_url(self) -> str:
        self._ensure_connected()
        data = await self._run_json(["get", "url"]) or {}
        return data.get("url") or ""

    async def get_title(self) -> str:
        self._ensure_connected()
        data = await self._run_json(["get", "title"]) or {}
        return data.get("title") or ""

    async def is_visible(self, target: Target) -> bool:
        self._ensure_connected()
        try:
            data = await self._run_json(["is", "visible", self._selector_for(target)]) or {}
        except ChannelReplyError:
            return False
        return bool(data.get("visible"))

    async def is_enabled(self, target: Target) -> bool:
        self._ensure_connected()
        try:
            data = await self._run_json(["is", "enabled", self._selector_for(target)]) or {}
        except ChannelReplyError:
            return False
        return bool(data.get("enabled"))

    async def evaluate(self, script: str) -> Any:
        self._ensure_connected()
        data = await self._run_json(["eval", script])
        if isinstance(data, dict) and "result" in data:
            return data["result"]
        return data

    async def screenshot(self, path: Optional[str] = None, full_page: bool = False) -> str:
        self._ensure_connected()
        args = ["screenshot"]
        if path:
            args.append(path)
        if full_page:
            args.append("--full")
        data = await self._run_json(args) or {}
        return data.get("path") or path or ""

    async def screenshot_base64(self) -> str:
        self._ensure_connected()
        fd, temp_path = tempfile.mkstemp(prefix="desktop-hybrid-", suffix=".png")
        os.close(fd)
        path = Path(temp_path)
        try:
            await self._run(["screenshot", str(path)])
            data = await asyncio.to_thread(path.read_bytes)
        finally:
            path.unlink(missing_ok=True)
        return base64.b64encode(data).decode("ascii")

    async def wait_for_idle(self, timeout_ms: int = 5000) -> None:
        self._ensure_connected()
        await self._run(["wait", "--load", "networkidle"], timeout_ms=timeout_ms)

    def _ensure_connected(self) -> None:
        if not self.connected:
            raise NotConnectedError("Control channel not connected. Call connect() first.")

    def _new_ref(self, locator: Locator, selector: str, nth: Optional[int] = None) -> ElementRef:
        self._ref_counter += 1
        return ElementRef(
            id=f"cdp_{self._ref_counter}",
            role="element",
            name=locator.value,
            nth=nth,
            source="dom",
            selector=selector,
        )

    def _selector_for(self, target: Target) -> str:
        if isinstance(target, ElementRef):
            return target.selector or f"@{target.id}"
        return locator_to_selector(Locator.parse(target))

    def _command(self, args: Sequence[str]) -> List[str]:
        command = [self.tool]
        if self.session:
            command.append(f"--session={self.session}")
        command.extend(args)
        return command

    async def _run(self, args: Sequence[str], *, timeout_ms: Optional[int] = None) -> str:
        command = self._command(args)
        limit_ms = timeout_ms or self.timeout_ms
        logger.debug("Running %s", " ".join(command))
        try:
            completed = await asyncio.to_thread(
                subprocess.run,
                command,
                capture_output=True,
                text=True,
                timeout=limit_ms / 1000.0,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise ChannelTimeoutError(
                f"{self.tool} command timed out after {limit_ms}ms", command=command, timeout_ms=limit_ms
            ) from exc
        except OSError as exc:
            raise ChannelCommandError(f"Could not run {self.tool}: {exc}", command=command) from exc

        if completed.returncode != 0:
            raise ChannelCommandError(
                f"{self.tool} command failed",
                command=command,
                stdout=completed.stdout or "",
                stderr=completed.stderr or "",
                returncode=completed.returncode,
            )
        output = (completed.stdout or "").strip()
        if output.startswith("{"):
            try:
                reply = json.loads(output)
            except json.JSONDecodeError:
                reply = None
            self._check_reply(reply, command, output)
        return output

    async def _run_json(self, args: Sequence[str], *, timeout_ms: Optional[int] = None) -> Any:
        json_args = [*args, "--json"]
        output = await self._run(json_args, timeout_ms=timeout_ms)
        try:
            reply = json.loads(output)
        except json.JSONDecodeError as exc:
            raise ChannelCommandError(
                f"{self.tool} returned non-JSON output", command=self._command(json_args), stdout=output
            ) from exc
        if isinstance(reply, dict) and "success" in reply:
            return reply.get("data")
        return reply

    def _check_reply(self, reply: Any, command: List[str], output: str) -> None:
        """Exit code 0 with ``{"success": false}`` is still a failed command."""
        if isinstance(reply, dict) and "success" in reply and not reply["success"]:
            raise ChannelReplyError(
                reply.get("error") or f"{self.tool} reported failure",
                command=command,
                stdout=output,
            )
