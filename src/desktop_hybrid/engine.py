"""Locate-and-act façade: refs first, then raw selectors, then the vision model."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from itertools import count
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from .channel import ControlChannel, Target
from .config import load_engine_config
from .errors import (
    ChannelCommandError,
    NotConnectedError,
    OperationTimeout,
    ProviderTransportError,
    ResolutionMiss,
    UnknownRefError,
)
from .models import (
    ActionResult,
    ActionStatus,
    Bounds,
    ChannelSnapshot,
    CostSummary,
    ElementRef,
    EngineConfig,
    Locator,
    LocatorStrategy,
    ProviderConfig,
    RunMode,
    Snapshot,
    SnapshotOptions,
)
from .ref_manager import RefManager, is_ref
from .vlm.client import VisionClient
from .vlm.cost_tracker import CostTracker

logger = logging.getLogger(__name__)

LocatorLike = Union[Locator, str]

AI_ACTION_SPACE = (
    "click(x, y)",
    "double_click(x, y)",
    "type(text)",
    "press(key)",
    "scroll(direction, amount)",
    "wait(ms)",
)

DEFAULT_MAX_STEPS = 10

_BOUNDS_SCRIPT = r"""
(() => {
  const el = document.querySelector(__SELECTOR__);
  if (!el) return null;
  const rect = el.getBoundingClientRect();
  return { x: rect.x, y: rect.y, width: rect.width, height: rect.height };
})()
"""


class ResolutionEngine:
    """One session against one application window.

    ``find`` and every action walk the cascade ref -> selector -> visual,
    strictly in that order. Deterministic mode never reaches the visual tier;
    visual mode and ``visual=`` locators skip the DOM tiers.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        channel: Optional[Any] = None,
        vision: Optional[VisionClient] = None,
        cost_tracker: Optional[CostTracker] = None,
    ) -> None:
        self.config = config or load_engine_config()
        self.channel = channel or ControlChannel(
            self.config.tool, session=self.config.session, timeout_ms=self.config.timeout_ms
        )
        self.refs = RefManager(self.channel)
        if vision is not None:
            self.cost_tracker = vision.cost_tracker
        else:
            self.cost_tracker = cost_tracker or CostTracker()
        if vision is None and self.config.mode != RunMode.DETERMINISTIC:
            vision = VisionClient(self.config.vlm or ProviderConfig(), cost_tracker=self.cost_tracker)
        self.vision = vision
        self._connected = False
        self._vlm_refs = count(1)

        if self.config.debug:
            logger.setLevel(logging.DEBUG)

    # Lifecycle

    async def connect(self) -> None:
        await self.channel.connect(self.config.endpoint)
        self._connected = True
        logger.info("Engine connected (mode=%s)", self.config.mode.value)

    async def disconnect(self) -> None:
        if not self._connected:
            return
        await self.channel.disconnect()
        self._connected = False
        if self.vision is not None and self.cost_tracker.call_count:
            self.cost_tracker.log_summary()

    async def __aenter__(self) -> "ResolutionEngine":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    async def navigate(self, url: str) -> None:
        self._ensure_connected()
        await self.channel.open(url)
        self.refs.invalidate()

    # Snapshots

    async def snapshot(self, interactive: bool = True) -> ChannelSnapshot:
        self._ensure_connected()
        return await self.channel.get_snapshot(interactive=interactive)

    async def ref_snapshot(self, options: Optional[SnapshotOptions] = None) -> Snapshot:
        self._ensure_connected()
        return await self.refs.snapshot(options)

    # Location

    async def find(self, locator: LocatorLike) -> ElementRef:
        target, _ = await self._locate(Locator.parse(locator))
        return target

    async def find_all(self, locator: LocatorLike) -> List[ElementRef]:
        self._ensure_connected()
        return await self.channel.find_all(self._dom_locator(Locator.parse(locator)))

    async def count(self, locator: LocatorLike) -> int:
        return len(await self.find_all(locator))

    async def bounding_box(self, locator: LocatorLike) -> Optional[Bounds]:
        target = await self.find(locator)
        if target.bounds is not None:
            return target.bounds
        selector = target.selector or ""
        if not selector or Locator.parse(selector).strategy != LocatorStrategy.CSS:
            return None
        rect = await self.channel.evaluate(_BOUNDS_SCRIPT.replace("__SELECTOR__", json.dumps(selector)))
        return Bounds.model_validate(rect) if rect else None

    async def wait_for(self, locator: LocatorLike, timeout_ms: Optional[int] = None, interval_ms: int = 250) -> ElementRef:
        """Poll until the element appears. Only visual mode polls the vision model."""
        parsed = Locator.parse(locator)
        deadline = time.monotonic() + (timeout_ms or self.config.timeout_ms) / 1000.0
        allow_visual = self.config.mode == RunMode.VISUAL
        while True:
            try:
                target, _ = await self._locate(parsed, allow_visual=allow_visual)
                return target
            except ResolutionMiss:
                if time.monotonic() >= deadline:
                    raise
            await asyncio.sleep(interval_ms / 1000.0)

    async def _locate(self, locator: Locator, *, allow_visual: bool = True) -> Tuple[ElementRef, bool]:
        """Return the element and whether the vision model found it."""
        self._ensure_connected()
        tiers: List[str] = []
        known = self.refs.get_element(locator.value) if locator.strategy == LocatorStrategy.REF else None
        dom_allowed = self.config.mode != RunMode.VISUAL and locator.strategy != LocatorStrategy.VISUAL

        if dom_allowed:
            if known is not None:
                tiers.append("ref")
                resolution = await self.refs.resolve(known.ref)
                if resolution is not None and resolution.valid:
                    logger.debug("Resolved %s via ref tier", locator.value)
                    return self._ref_target(known.ref), False
                logger.debug("Ref %s failed re-verification; trying its selector", known.ref)

            tiers.append("selector")
            found = await self.channel.find(self._dom_locator(locator))
            if found is not None:
                logger.debug("Resolved %s via selector tier", locator.value)
                return found, False

        location = None
        if allow_visual and self.config.mode != RunMode.DETERMINISTIC and self.vision is not None:
            tiers.append("visual")
            description = locator.describe()
            if known is not None:
                description = f'{known.role} "{known.name}"' if known.name else f"{known.role} element"
            screenshot = await self.channel.screenshot_base64()
            location = await self.vision.find_element(screenshot, description)
            if location.coordinates is not None and not location.not_found:
                logger.debug(
                    "Resolved %s via visual tier at (%s, %s) confidence=%.2f",
                    locator.value,
                    location.coordinates.x,
                    location.coordinates.y,
                    location.confidence,
                )
                target = ElementRef(
                    id=f"vlm_{next(self._vlm_refs)}",
                    role="element",
                    name=locator.value,
                    bounds=Bounds(x=location.coordinates.x, y=location.coordinates.y),
                    source="vlm",
                )
                return target, True

        raise ResolutionMiss(locator.value, tiers, location=location)

    def _ref_target(self, ref: str) -> ElementRef:
        element = self.refs.get_element(ref)
        if element is None:
            raise UnknownRefError(ref)
        selector = self.refs.get_locator(ref)
        if element.nth_index is not None and selector.startswith("role="):
            selector = f"{selector} >> nth={element.nth_index}"
        return ElementRef(
            id=element.ref,
            role=element.role,
            name=element.name or None,
            nth=element.nth_index,
            bounds=element.bounds,
            source="accessibility",
            selector=selector,
        )

    def _dom_locator(self, locator: Locator) -> Locator:
        """Swap refs from our own snapshot for the selector they were captured with."""
        if locator.strategy == LocatorStrategy.REF and is_ref(locator.value):
            element = self.refs.get_element(locator.value)
            if element is not None and element.selector:
                return Locator.parse(element.selector)
        return locator

    # Actions

    async def click(self, locator: LocatorLike) -> ActionResult:
        async def perform(target: ElementRef) -> None:
            if target.source == "vlm":
                await self.channel.click_at(*_point(target))
            else:
                await self.channel.click(target)

        return await self._act("click", locator, perform)

    async def dblclick(self, locator: LocatorLike) -> ActionResult:
        async def perform(target: ElementRef) -> None:
            if target.source == "vlm":
                await self.channel.click_at(*_point(target), count=2)
            else:
                await self.channel.dblclick(target)

        return await self._act("dblclick", locator, perform)

    async def type(self, locator: LocatorLike, text: str) -> ActionResult:
        async def perform(target: ElementRef) -> None:
            if target.source == "vlm":
                await self.channel.click_at(*_point(target))
                await self.channel.insert_text(text)
            else:
                await self.channel.type(target, text)

        return await self._act("type", locator, perform)

    async def fill(self, locator: LocatorLike, text: str) -> ActionResult:
        async def perform(target: ElementRef) -> None:
            if target.source == "vlm":
                await self.channel.click_at(*_point(target))
                await self.channel.insert_text(text, replace=True)
            else:
                await self.channel.fill(target, text)

        return await self._act("fill", locator, perform)

    async def clear(self, locator: LocatorLike) -> ActionResult:
        return await self.fill(locator, "")

    async def hover(self, locator: LocatorLike) -> ActionResult:
        async def perform(target: ElementRef) -> None:
            if target.source == "vlm":
                await self.channel.hover_at(*_point(target))
            else:
                await self.channel.hover(target)

        return await self._act("hover", locator, perform)

    async def press(self, key: str) -> ActionResult:
        async def operation() -> ActionResult:
            await self.channel.press(key)
            return ActionResult(status=ActionStatus.SUCCESS, data={"key": key})

        return await self._guard(f"press {key}", operation)

    async def scroll(self, direction: str = "down", amount: int = 300) -> ActionResult:
        async def operation() -> ActionResult:
            await self.channel.scroll(direction, amount)
            return ActionResult(status=ActionStatus.SUCCESS, data={"direction": direction, "amount": amount})

        return await self._guard(f"scroll {direction}", operation)

    async def drag(self, source: LocatorLike, target: LocatorLike) -> ActionResult:
        async def operation() -> ActionResult:
            start, _ = await self._locate(Locator.parse(source), allow_visual=False)
            end, _ = await self._locate(Locator.parse(target), allow_visual=False)
            await self.channel.drag(start, end)
            return ActionResult(status=ActionStatus.SUCCESS, data={"source": start, "target": end})

        return await self._guard("drag", operation)

    async def click_text(self, text: str) -> ActionResult:
        return await self.click(Locator(strategy=LocatorStrategy.TEXT, value=text))

    async def click_image(self, description: str) -> ActionResult:
        return await self.click(Locator(strategy=LocatorStrategy.VISUAL, value=description))

    async def ai(self, instruction: str, max_steps: int = DEFAULT_MAX_STEPS) -> ActionResult:
        """Let the vision model drive, one action per screenshot, until it reports done."""

        async def operation() -> ActionResult:
            if self.vision is None:
                return ActionResult(status=ActionStatus.FAILED, error="AI actions need a vision model; mode is deterministic")
            history: List[Dict[str, Any]] = []
            for step in range(1, max_steps + 1):
                screenshot = await self.channel.screenshot_base64()
                action = await self.vision.get_next_action(screenshot, instruction, AI_ACTION_SPACE)
                if action.pending:
                    return ActionResult(
                        status=ActionStatus.FAILED,
                        error="Waiting for the host agent to choose an action",
                        data={"pending": True, "request_id": action.request_id, "steps": history},
                        used_vlm=True,
                    )
                history.append(action.model_dump(exclude={"pending", "request_id"}))
                logger.debug("ai step %d: %s %s (%s)", step, action.action_type, action.action_params, action.thought)
                if action.finished:
                    return ActionResult(
                        status=ActionStatus.VLM_FALLBACK, data={"steps": history}, used_vlm=True
                    )
                await self._apply_action(action.action_type, action.action_params)
            return ActionResult(
                status=ActionStatus.FAILED,
                error=f"Instruction not completed after {max_steps} steps",
                data={"steps": history},
                used_vlm=True,
            )

        return await self._guard(f"ai {instruction!r}", operation)

    async def _apply_action(self, action_type: str, params: Dict[str, Any]) -> None:
        """Perform one model-chosen step. Steps with unusable parameters are skipped."""
        kind = (action_type or "").lower()
        try:
            if kind in ("click", "double_click", "dblclick"):
                x, y = params.get("x"), params.get("y")
                if x is None or y is None:
                    logger.warning("Skipping %s without coordinates: %r", kind, params)
                    return
                await self.channel.click_at(float(x), float(y), count=1 if kind == "click" else 2)
            elif kind == "type":
                await self.channel.insert_text(str(params.get("text", "")))
            elif kind == "press":
                key = params.get("key")
                if not key:
                    logger.warning("Skipping press without a key: %r", params)
                    return
                await self.channel.press(str(key))
            elif kind == "scroll":
                await self.channel.scroll(str(params.get("direction", "down")), int(params.get("amount", 300)))
            elif kind == "wait":
                await asyncio.sleep(float(params.get("ms", 500)) / 1000.0)
            else:
                logger.warning("Ignoring unknown action %r from vision model", action_type)
        except (TypeError, ValueError) as exc:
            logger.warning("Skipping %s with malformed parameters %r: %s", kind, params, exc)

    async def assert_visual(self, assertion: str, expected: Optional[str] = None) -> ActionResult:
        async def operation() -> ActionResult:
            if self.vision is None:
                return ActionResult(status=ActionStatus.FAILED, error="Visual assertions need a vision model; mode is deterministic")
            screenshot = await self.channel.screenshot_base64()
            verdict = await self.vision.assert_visual(screenshot, assertion, expected)
            if verdict.passed:
                return ActionResult(status=ActionStatus.VLM_FALLBACK, data=verdict, used_vlm=True)
            return ActionResult(status=ActionStatus.FAILED, data=verdict, error=verdict.reasoning, used_vlm=True)

        return await self._guard(f"assert {assertion!r}", operation)

    async def _act(
        self, name: str, locator: LocatorLike, perform: Callable[[ElementRef], Awaitable[None]]
    ) -> ActionResult:
        parsed = Locator.parse(locator)

        async def operation() -> ActionResult:
            target, used_vlm = await self._locate(parsed)
            await perform(target)
            status = ActionStatus.VLM_FALLBACK if used_vlm else ActionStatus.SUCCESS
            return ActionResult(status=status, data=target, used_vlm=used_vlm)

        return await self._guard(f"{name} {parsed.value}", operation)

    async def _guard(self, label: str, operation: Callable[[], Awaitable[ActionResult]]) -> ActionResult:
        """Run one action, turning expected failures into a result status."""
        self._ensure_connected()
        started = time.perf_counter()
        calls_before = self.cost_tracker.call_count
        spent_before = self.cost_tracker.total_cost
        try:
            result = await operation()
        except ResolutionMiss as exc:
            data = None
            if exc.location is not None and exc.location.pending:
                data = {"pending": True, "request_id": exc.location.request_id}
            result = ActionResult(status=ActionStatus.NOT_FOUND, error=str(exc), data=data)
        except OperationTimeout as exc:
            result = ActionResult(status=ActionStatus.TIMEOUT, error=str(exc))
        except (ChannelCommandError, ProviderTransportError) as exc:
            result = ActionResult(status=ActionStatus.FAILED, error=str(exc))

        result.duration = (time.perf_counter() - started) * 1000.0
        if self.cost_tracker.call_count > calls_before:
            result.vlm_cost = self.cost_tracker.total_cost - spent_before
        logger.debug("%s -> %s in %.0fms", label, result.status.value, result.duration)
        return result

    # Getters

    async def get_text(self, locator: LocatorLike) -> str:
        return await self.channel.get_text(self._getter_target(locator))

    async def get_value(self, locator: LocatorLike) -> str:
        return await self.channel.get_value(self._getter_target(locator))

    async def get_attribute(self, locator: LocatorLike, name: str) -> Optional[str]:
        return await self.channel.get_attribute(self._getter_target(locator), name)

    async def is_visible(self, locator: LocatorLike) -> bool:
        return await self.channel.is_visible(self._getter_target(locator))

    async def is_enabled(self, locator: LocatorLike) -> bool:
        return await self.channel.is_enabled(self._getter_target(locator))

    async def get_url(self) -> str:
        self._ensure_connected()
        return await self.channel.get_url()

    async def get_title(self) -> str:
        self._ensure_connected()
        return await self.channel.get_title()

    async def evaluate(self, script: str) -> Any:
        self._ensure_connected()
        return await self.channel.evaluate(script)

    async def screenshot(self, path: Optional[str] = None, full_page: bool = False) -> str:
        self._ensure_connected()
        return await self.channel.screenshot(path, full_page=full_page)

    def _getter_target(self, locator: LocatorLike) -> Target:
        self._ensure_connected()
        parsed = Locator.parse(locator)
        if parsed.strategy == LocatorStrategy.REF and self.refs.get_element(parsed.value) is not None:
            return self._ref_target(parsed.value)
        return parsed

    # Cost

    def cost_summary(self) -> CostSummary:
        return self.cost_tracker.summary()

    def reset_cost_tracking(self) -> None:
        self.cost_tracker.reset()

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise NotConnectedError("Engine not connected. Call connect() first.")


def _point(target: ElementRef) -> Tuple[float, float]:
    if target.bounds is None:
        raise ResolutionMiss(target.name or target.id, ["visual"])
    return target.bounds.center
