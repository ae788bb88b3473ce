from __future__ import annotations

import sys
from collections import deque
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from desktop_hybrid.engine import ResolutionEngine  # noqa: E402
from desktop_hybrid.errors import (  # noqa: E402
    ChannelCommandError,
    ChannelConnectionError,
    ChannelTimeoutError,
    NotConnectedError,
    UnknownRefError,
)
from desktop_hybrid.models import (  # noqa: E402
    ActionStatus,
    ElementLocation,
    ElementRef,
    EngineConfig,
    Locator,
    LocatorStrategy,
    NextAction,
    Point,
    RunMode,
    VisualAssertion,
)
from desktop_hybrid.vlm.cost_tracker import CostTracker  # noqa: E402

SCREENSHOT = "iVBORw0KGgoAAAANSUhEUg=="


def el(tag, text="", children=(), attrs=None):
    return {
        "tag": tag,
        "text": text,
        "attributes": attrs or {},
        "bounds": {"x": 10, "y": 10, "width": 80, "height": 24},
        "children": list(children),
    }


def form_page():
    return el("body", children=[el("button", "Submit", attrs={"id": "submit"})])


class FakeChannel:
    """Records every call; ``present`` holds the selectors the DOM tier can see."""

    def __init__(self, events, present=()) -> None:
        self.events = events
        self.present = set(present)
        self.root = form_page()
        self.visible = True
        self.failures = {}

    def _record(self, name, *args):
        self.events.append((name,) + args)
        failure = self.failures.get(name)
        if failure is not None:
            raise failure

    async def connect(self, endpoint):
        self._record("connect", endpoint)

    async def disconnect(self):
        self._record("disconnect")

    async def open(self, url):
        self._record("open", url)

    async def evaluate(self, script):
        self._record("evaluate")
        return {"url": "app://form", "title": "Form", "root": self.root}

    async def is_visible(self, target):
        self._record("is_visible")
        return self.visible

    async def find(self, locator):
        self._record("find", locator.value)
        if locator.value in self.present:
            return ElementRef(id="cdp_1", selector=locator.value)
        return None

    async def screenshot_base64(self, full_page=False):
        self._record("screenshot")
        return SCREENSHOT

    async def click(self, target):
        self._record("click", target.selector)

    async def dblclick(self, target):
        self._record("dblclick", target.selector)

    async def type(self, target, text):
        self._record("type", target.selector, text)

    async def fill(self, target, text):
        self._record("fill", target.selector, text)

    async def hover(self, target):
        self._record("hover", target.selector)

    async def press(self, key):
        self._record("press", key)

    async def scroll(self, direction="down", amount=300):
        self._record("scroll", direction, amount)

    async def click_at(self, x, y, count=1):
        self._record("click_at", x, y, count)

    async def insert_text(self, text, replace=False):
        self._record("insert_text", text, replace)

    async def hover_at(self, x, y):
        self._record("hover_at", x, y)

    async def get_text(self, target):
        self._record("get_text", getattr(target, "selector", None))
        return "Submit"


class FakeVision:
    def __init__(self, events) -> None:
        self.events = events
        self.cost_tracker = CostTracker()
        self.locations = deque()
        self.actions = deque()
        self.verdicts = deque()

    async def find_element(self, screenshot, description, context=None):
        self.events.append(("vision.find", description))
        self.cost_tracker.track("openai", "gpt-4o", 1000, 100, "find")
        if self.locations:
            return self.locations.popleft()
        return ElementLocation(not_found=True)

    async def get_next_action(self, screenshot, instruction, action_space):
        self.events.append(("vision.action", instruction))
        self.cost_tracker.track("openai", "gpt-4o", 1000, 100, "action")
        return self.actions.popleft()

    async def assert_visual(self, screenshot, assertion, expected=None):
        self.events.append(("vision.assert", assertion))
        self.cost_tracker.track("openai", "gpt-4o", 1000, 100, "assert")
        return self.verdicts.popleft()


def names(events):
    return [event[0] for event in events]


async def make_engine(mode=RunMode.HYBRID, present=()):
    events = []
    channel = FakeChannel(events, present)
    vision = FakeVision(events)
    engine = ResolutionEngine(EngineConfig(mode=mode, timeout_ms=200), channel=channel, vision=vision)
    await engine.connect()
    events.clear()
    return engine, channel, vision, events


@pytest.mark.asyncio
async def test_actions_require_connection():
    events = []
    engine = ResolutionEngine(EngineConfig(), channel=FakeChannel(events), vision=FakeVision(events))

    with pytest.raises(NotConnectedError):
        await engine.click("#submit")
    with pytest.raises(NotConnectedError):
        await engine.find("#submit")
    assert events == []


@pytest.mark.asyncio
async def test_dom_hit_never_consults_vision():
    engine, _, _, events = await make_engine(present={"#submit"})

    result = await engine.click("#submit")

    assert result.status == ActionStatus.SUCCESS
    assert result.used_vlm is False
    assert result.vlm_cost is None
    assert events == [("find", "#submit"), ("click", "#submit")]


@pytest.mark.asyncio
async def test_visual_fallback_clicks_coordinates_and_reports_cost():
    engine, _, vision, events = await make_engine()
    vision.locations.append(ElementLocation(coordinates=Point(x=40, y=60), confidence=0.9))

    result = await engine.click("#settings-gear")

    assert result.status == ActionStatus.VLM_FALLBACK
    assert result.used_vlm is True
    assert names(events) == ["find", "screenshot", "vision.find", "click_at"]
    assert events[-1] == ("click_at", 40.0, 60.0, 1)
    assert result.vlm_cost == pytest.approx(vision.cost_tracker.total_cost)
    assert result.vlm_cost > 0
    assert result.data.source == "vlm"


@pytest.mark.asyncio
async def test_deterministic_mode_never_reaches_vision():
    engine, _, _, events = await make_engine(mode=RunMode.DETERMINISTIC)

    result = await engine.click("#missing")

    assert result.status == ActionStatus.NOT_FOUND
    assert "selector" in result.error
    assert "vision.find" not in names(events)
    assert "screenshot" not in names(events)


@pytest.mark.asyncio
async def test_visual_mode_skips_dom_tiers():
    engine, _, vision, events = await make_engine(mode=RunMode.VISUAL, present={"#submit"})
    vision.locations.append(ElementLocation(coordinates=Point(x=5, y=5), confidence=0.7))

    result = await engine.hover("#submit")

    assert result.status == ActionStatus.VLM_FALLBACK
    assert names(events) == ["screenshot", "vision.find", "hover_at"]


@pytest.mark.asyncio
async def test_visual_locator_goes_straight_to_vision():
    engine, _, vision, events = await make_engine(present={"red badge"})
    vision.locations.append(ElementLocation(coordinates=Point(x=300, y=20), confidence=0.8))

    result = await engine.click_image("red badge")

    assert result.status == ActionStatus.VLM_FALLBACK
    assert events[1] == ("vision.find", "red badge")
    assert "find" not in names(events)


@pytest.mark.asyncio
async def test_valid_ref_uses_accessibility_locator():
    engine, _, vision, events = await make_engine()
    await engine.ref_snapshot()
    events.clear()

    result = await engine.click("@e1")

    assert result.status == ActionStatus.SUCCESS
    assert result.data.source == "accessibility"
    assert events == [("is_visible",), ("click", 'role=button[name="Submit"]')]
    assert vision.cost_tracker.call_count == 0


@pytest.mark.asyncio
async def test_invalid_ref_falls_back_to_its_selector():
    engine, channel, _, events = await make_engine(present={"#submit"})
    await engine.ref_snapshot()
    channel.visible = False
    events.clear()

    result = await engine.click("@e1")

    assert result.status == ActionStatus.SUCCESS
    assert events == [("is_visible",), ("find", "#submit"), ("click", "#submit")]


@pytest.mark.asyncio
async def test_channel_timeout_and_failure_become_statuses():
    engine, channel, _, _ = await make_engine(present={"#submit"})

    channel.failures["click"] = ChannelTimeoutError("click timed out", timeout_ms=200)
    timed_out = await engine.click("#submit")
    channel.failures["click"] = ChannelCommandError("click failed", stderr="detached")
    failed = await engine.click("#submit")

    assert timed_out.status == ActionStatus.TIMEOUT
    assert failed.status == ActionStatus.FAILED
    assert "detached" in failed.error
    assert failed.duration >= 0


@pytest.mark.asyncio
async def test_pending_bridge_answer_is_not_found_with_request_id():
    engine, _, vision, _ = await make_engine()
    vision.locations.append(ElementLocation(not_found=True, pending=True, request_id="abc123"))

    result = await engine.click("#gear")

    assert result.status == ActionStatus.NOT_FOUND
    assert result.data == {"pending": True, "request_id": "abc123"}


@pytest.mark.asyncio
async def test_dblclick_and_fill_use_dom_verbs():
    engine, _, _, events = await make_engine(present={"#row", "#name"})

    await engine.dblclick("#row")
    await engine.fill("#name", "Ada")

    assert ("dblclick", "#row") in events
    assert ("fill", "#name", "Ada") in events


@pytest.mark.asyncio
async def test_visual_type_clicks_then_inserts_text():
    engine, _, vision, events = await make_engine()
    vision.locations.append(ElementLocation(coordinates=Point(x=12, y=34), confidence=0.8))

    result = await engine.type(Locator(strategy=LocatorStrategy.TEXT, value="Search"), "hello")

    assert result.status == ActionStatus.VLM_FALLBACK
    assert events[-2:] == [("click_at", 12.0, 34.0, 1), ("insert_text", "hello", False)]


@pytest.mark.asyncio
async def test_ai_runs_until_finished():
    engine, _, vision, events = await make_engine()
    vision.actions.extend(
        [
            NextAction(action_type="click", action_params={"x": 1, "y": 2}, thought="open menu"),
            NextAction(action_type="wait", thought="done", finished=True),
        ]
    )

    result = await engine.ai("open the menu")

    assert result.status == ActionStatus.VLM_FALLBACK
    assert result.used_vlm is True
    assert len(result.data["steps"]) == 2
    assert ("click_at", 1.0, 2.0, 1) in events
    assert result.vlm_cost == pytest.approx(vision.cost_tracker.total_cost)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "action",
    [
        NextAction(action_type="click", action_params={"coordinates": [1, 2]}),
        NextAction(action_type="double_click", action_params={"x": "left", "y": 2}),
        NextAction(action_type="press", action_params={}),
        NextAction(action_type="scroll", action_params={"amount": "a lot"}),
        NextAction(action_type="wait", action_params={"ms": None}),
    ],
)
async def test_ai_skips_steps_with_unusable_parameters(action):
    engine, _, vision, events = await make_engine()
    vision.actions.extend([action, NextAction(action_type="wait", finished=True)])

    result = await engine.ai("press submit")

    assert result.status == ActionStatus.VLM_FALLBACK
    assert len(result.data["steps"]) == 2
    assert not {"click_at", "press", "scroll"} & set(names(events))


@pytest.mark.asyncio
async def test_ref_target_for_unknown_ref_raises():
    engine, _, _, _ = await make_engine()

    with pytest.raises(UnknownRefError):
        engine._ref_target("@e9")


@pytest.mark.asyncio
async def test_ai_gives_up_after_max_steps():
    engine, _, vision, _ = await make_engine()
    vision.actions.extend([NextAction(action_type="wait", action_params={"ms": 0})] * 2)

    result = await engine.ai("do the impossible", max_steps=2)

    assert result.status == ActionStatus.FAILED
    assert "2 steps" in result.error


@pytest.mark.asyncio
async def test_ai_reports_pending_agent_answer():
    engine, _, vision, _ = await make_engine()
    vision.actions.append(NextAction(pending=True, request_id="req1"))

    result = await engine.ai("open settings")

    assert result.status == ActionStatus.FAILED
    assert result.data["pending"] is True
    assert result.data["request_id"] == "req1"


@pytest.mark.asyncio
async def test_assert_visual_statuses():
    engine, _, vision, _ = await make_engine()
    vision.verdicts.extend(
        [
            VisualAssertion(passed=True, reasoning="dialog shown", actual="dialog"),
            VisualAssertion(passed=False, reasoning="no dialog", actual="empty"),
        ]
    )

    passed = await engine.assert_visual("A dialog is open")
    failed = await engine.assert_visual("A dialog is open")

    assert passed.status == ActionStatus.VLM_FALLBACK
    assert failed.status == ActionStatus.FAILED
    assert failed.error == "no dialog"
    assert passed.used_vlm and failed.used_vlm


@pytest.mark.asyncio
async def test_navigate_invalidates_refs():
    engine, _, _, events = await make_engine()
    await engine.ref_snapshot()

    await engine.navigate("app://other")

    assert ("open", "app://other") in events
    assert engine.refs.current_snapshot is None


@pytest.mark.asyncio
async def test_getter_uses_ref_locator():
    engine, _, _, events = await make_engine()
    await engine.ref_snapshot()

    assert await engine.get_text("@e1") == "Submit"
    assert events[-1] == ("get_text", 'role=button[name="Submit"]')


@pytest.mark.asyncio
async def test_connection_failure_propagates():
    events = []
    channel = FakeChannel(events)
    channel.failures["connect"] = ChannelConnectionError("cannot reach 9222")
    engine = ResolutionEngine(EngineConfig(), channel=channel, vision=FakeVision(events))

    with pytest.raises(ChannelConnectionError):
        await engine.connect()
    with pytest.raises(NotConnectedError):
        await engine.press("Enter")


@pytest.mark.asyncio
async def test_cost_summary_and_reset():
    engine, _, vision, _ = await make_engine()
    vision.locations.append(ElementLocation(coordinates=Point(x=1, y=1), confidence=0.5))
    await engine.click("#anything")

    assert engine.cost_summary().total_calls == 1
    engine.reset_cost_tracking()
    assert engine.cost_summary().total_calls == 0
    assert engine.cost_summary().total_cost == 0


@pytest.mark.asyncio
async def test_context_manager_disconnects():
    events = []
    channel = FakeChannel(events, present={"#submit"})
    async with ResolutionEngine(EngineConfig(), channel=channel, vision=FakeVision(events)) as engine:
        await engine.press("Tab")

    assert names(events) == ["connect", "press", "disconnect"]
