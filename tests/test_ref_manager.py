from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from desktop_hybrid.errors import ChannelReplyError, UnknownRefError  # noqa: E402
from desktop_hybrid.models import SnapshotOptions  # noqa: E402
from desktop_hybrid.ref_manager import RefManager, is_ref, parse_ref  # noqa: E402


def el(tag, text="", children=(), attrs=None, width=80, height=24, **style):
    node = {
        "tag": tag,
        "text": text,
        "attributes": attrs or {},
        "bounds": {"x": 10, "y": 10, "width": width, "height": height},
        "children": list(children),
    }
    node.update(style)
    return node


class FakeChannel:
    def __init__(self, root, *, as_string: bool = False) -> None:
        self.root = root
        self.as_string = as_string
        self.visible = True
        self.visibility_checks = []
        self.evaluations = 0

    async def evaluate(self, script):
        self.evaluations += 1
        payload = {"url": "app://main", "title": "Main window", "root": self.root}
        return json.dumps(payload) if self.as_string else payload

    async def is_visible(self, target):
        self.visibility_checks.append(target)
        if isinstance(self.visible, Exception):
            raise self.visible
        return self.visible


def submit_page():
    return el(
        "body",
        children=[
            el("button", "Submit", attrs={"id": "submit"}),
            el("input", attrs={"type": "text", "name": "secret"}, display="none"),
        ],
    )


def toolbar_page():
    return el(
        "body",
        children=[
            el("button", "Save", attrs={"id": "save"}),
            el("button", "Cancel"),
            el("button", "Delete", attrs={"class": "danger"}),
            el("button", "Delete", attrs={"class": "danger"}),
            el("input", attrs={"data-testid": "search", "placeholder": "Search"}),
        ],
    )


def test_ref_helpers():
    assert is_ref("@e12")
    assert not is_ref("e12")
    assert not is_ref("@e")
    assert parse_ref("@e7") == 7
    assert parse_ref("#id") is None


@pytest.mark.asyncio
async def test_visible_button_and_hidden_input_yield_single_ref():
    manager = RefManager(FakeChannel(submit_page()))

    snapshot = await manager.snapshot(SnapshotOptions(interactive_only=True, include_hidden=False))

    assert len(snapshot.elements) == 1
    element = snapshot.elements[0]
    assert element.ref == "@e1"
    assert element.role == "button"
    assert element.name == "Submit"
    assert element.selector == "#submit"
    assert snapshot.url == "app://main"
    assert snapshot.title == "Main window"


@pytest.mark.asyncio
async def test_string_payload_from_channel_is_decoded():
    manager = RefManager(FakeChannel(submit_page(), as_string=True))

    snapshot = await manager.snapshot()

    assert [element.name for element in snapshot.elements] == ["Submit"]


@pytest.mark.asyncio
async def test_refs_are_stable_until_invalidated():
    channel = FakeChannel(toolbar_page())
    manager = RefManager(channel)
    snapshot = await manager.snapshot()

    for element in snapshot.elements:
        resolution = await manager.resolve(element.ref)
        assert resolution.method == "ref"
        assert resolution.valid is True
        assert resolution.element.role == element.role
        assert resolution.element.name == element.name
        assert resolution.element.selector == element.selector

    # Resolving refs must not rescan the page.
    assert channel.evaluations == 1


@pytest.mark.asyncio
async def test_unknown_ref_after_invalidation_raises():
    manager = RefManager(FakeChannel(toolbar_page()))
    await manager.snapshot()
    assert manager.get_element("@e3") is not None

    manager.invalidate()

    assert manager.current_snapshot is None
    with pytest.raises(UnknownRefError, match="snapshot first"):
        await manager.resolve("@e3")


@pytest.mark.asyncio
async def test_vanished_element_resolves_invalid_with_cached_data():
    channel = FakeChannel(submit_page())
    manager = RefManager(channel)
    await manager.snapshot()

    channel.visible = False
    resolution = await manager.resolve("@e1")

    assert resolution.valid is False
    assert resolution.element.name == "Submit"
    assert channel.visibility_checks[0].value == "#submit"


@pytest.mark.asyncio
async def test_channel_failure_during_reverification_is_not_raised():
    channel = FakeChannel(submit_page())
    manager = RefManager(channel)
    await manager.snapshot()

    channel.visible = ChannelReplyError("element detached")

    resolution = await manager.resolve("@e1")
    assert resolution.valid is False


@pytest.mark.asyncio
async def test_duplicate_role_and_name_get_occurrence_index():
    manager = RefManager(FakeChannel(toolbar_page()))
    snapshot = await manager.snapshot()

    deletes = manager.find_by_name("Delete")
    assert [element.nth_index for element in deletes] == [None, 1]
    assert [element.ref for element in snapshot.elements] == ["@e1", "@e2", "@e3", "@e4", "@e5"]


@pytest.mark.asyncio
async def test_locator_preference():
    manager = RefManager(FakeChannel(toolbar_page()))
    await manager.snapshot()

    assert manager.get_locator("@e1") == 'role=button[name="Save"]'
    assert manager.get_locator("@e5") == '[data-testid="search"]'
    with pytest.raises(UnknownRefError):
        manager.get_locator("@e99")


@pytest.mark.asyncio
async def test_locator_escapes_quotes_in_names():
    page = el("body", children=[el("button", 'Say "hi"'), el("input", attrs={"data-testid": 'x"y'})])
    manager = RefManager(FakeChannel(page))
    await manager.snapshot()

    assert manager.get_locator("@e1") == r'role=button[name="Say \"hi\""]'
    assert manager.get_locator("@e2") == r'[data-testid="x\"y"]'


@pytest.mark.asyncio
async def test_locator_falls_back_to_selector():
    page = el("body", children=[el("input", attrs={"id": "query"})])
    manager = RefManager(FakeChannel(page))
    await manager.snapshot()

    assert manager.get_locator("@e1") == "#query"


@pytest.mark.asyncio
async def test_non_ref_input_matches_fresh_scan():
    manager = RefManager(FakeChannel(submit_page()))

    by_selector = await manager.resolve("#submit")
    by_text = await manager.resolve("Submit")
    by_xpath = await manager.resolve("xpath=/html[1]/body[1]/input[1]")
    missing = await manager.resolve("#nope")

    assert by_selector.method == "selector"
    assert by_selector.valid is True
    assert by_text.method == "text"
    assert by_xpath.method == "xpath"
    assert by_xpath.element.tag_name == "input"
    assert by_xpath.valid is False
    assert missing is None


@pytest.mark.asyncio
async def test_new_snapshot_replaces_previous_table():
    channel = FakeChannel(toolbar_page())
    manager = RefManager(channel)
    first = await manager.snapshot()
    channel.root = submit_page()

    second = await manager.snapshot()

    assert first.snapshot_id != second.snapshot_id
    assert manager.get_element("@e5") is None
    assert manager.get_element("@e1").name == "Submit"


@pytest.mark.asyncio
async def test_compact_and_raw_tree_options():
    manager = RefManager(FakeChannel(toolbar_page()))

    compact = await manager.snapshot(SnapshotOptions(compact=True))
    full = await manager.snapshot(SnapshotOptions(include_raw_tree=True))

    assert all(element.bounds is None and element.text is None for element in compact.elements)
    assert compact.raw_tree is None
    assert full.raw_tree is not None
    assert full.raw_tree.tag == "body"
    assert full.elements[4].placeholder == "Search"


@pytest.mark.asyncio
async def test_queries_and_text_rendering():
    manager = RefManager(FakeChannel(toolbar_page()))
    assert manager.to_text().startswith("No snapshot available")
    assert manager.to_json() == "{}"

    await manager.snapshot()

    assert [element.ref for element in manager.find_by_role("button", "del")] == ["@e3", "@e4"]
    assert [element.ref for element in manager.find_by_text("cancel")] == ["@e2"]
    assert len(manager.get_interactive()) == 5
    listing = manager.to_text(max_elements=2)
    assert '@e1 button "Save"' in listing
    assert "... and 3 more" in listing
    assert json.loads(manager.to_json())["title"] == "Main window"
