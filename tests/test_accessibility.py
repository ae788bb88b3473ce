import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from desktop_hybrid.accessibility import (  # noqa: E402
    SnapshotVisitor,
    accessible_name,
    build_selector,
    implicit_role,
    is_focusable,
    role_of,
)
from desktop_hybrid.models import Bounds, SnapshotOptions, UINode  # noqa: E402

BOX = Bounds(x=0, y=0, width=120, height=24)


def _node(tag, attrs=None, text="", children=None, bounds=BOX, **fields) -> UINode:
    return UINode(tag=tag, attributes=attrs or {}, text=text, children=children or [], bounds=bounds, **fields)


def _names(candidates):
    return [(candidate.role, candidate.name) for candidate in candidates]


def test_input_role_depends_on_type():
    assert implicit_role(_node("input", {"type": "checkbox"})) == "checkbox"
    assert implicit_role(_node("input", {"type": "search"})) == "searchbox"
    assert implicit_role(_node("input", {"type": "submit"})) == "button"
    assert implicit_role(_node("input")) == "textbox"
    assert implicit_role(_node("a")) == "generic"
    assert implicit_role(_node("a", {"href": "/home"})) == "link"


def test_explicit_role_attribute_wins():
    assert role_of(_node("div", {"role": "button"})) == "button"
    assert role_of(_node("button", {"role": "tab"})) == "tab"


def test_labelledby_beats_aria_label():
    heading = _node("span", {"id": "email-label"}, text="Email address")
    field = _node("input", {"aria-labelledby": "email-label", "aria-label": "ignored"})

    name = accessible_name(field, "textbox", ids={"email-label": heading}, labels_for={})

    assert name == "Email address"


def test_label_for_and_title_and_alt_order():
    label = _node("label", {"for": "full-name"}, text="Full name")
    field = _node("input", {"id": "full-name", "title": "tooltip"})
    image = _node("img", {"title": "Logo title", "alt": "Logo"})

    assert accessible_name(field, "textbox", ids={}, labels_for={"full-name": label}) == "Full name"
    assert accessible_name(image, "img", ids={}, labels_for={}) == "Logo title"


def test_content_name_only_for_content_roles():
    button = _node("button", children=[_node("span", text="Save"), _node("span", text="changes")])
    section = _node("section", text="Lots of prose")

    assert accessible_name(button, "button", ids={}, labels_for={}) == "Save changes"
    assert accessible_name(section, "region", ids={}, labels_for={}) == ""


def test_input_value_is_last_resort():
    field = _node("input", {"type": "submit"}, value="Send")
    assert accessible_name(field, "button", ids={}, labels_for={}) == "Send"


def test_selector_preference():
    assert build_selector(_node("button", {"id": "save", "data-testid": "save-btn"})) == "#save"
    assert build_selector(_node("button", {"data-testid": "save-btn", "class": "a b"})) == '[data-testid="save-btn"]'
    assert build_selector(_node("button", {"class": "btn hover:bg primary large"})) == "button.btn.primary"
    assert build_selector(_node("div")) == "div"


def test_focusability():
    assert is_focusable(_node("div", {"tabindex": "0"}))
    assert not is_focusable(_node("div", {"tabindex": "-1"}))
    assert not is_focusable(_node("button", disabled=True))
    assert is_focusable(_node("a", {"href": "#"}))
    assert not is_focusable(_node("div"))


def test_focusability_prefers_live_tab_index():
    # The page parses odd attribute values itself; trust its number.
    lenient = UINode.model_validate(
        {"tag": "div", "attributes": {"tabindex": "1.5"}, "tabIndex": 1, "bounds": BOX.model_dump()}
    )
    assert is_focusable(lenient)
    assert not is_focusable(_node("button", {"tabindex": "-1x"}, tab_index=-1))
    assert not is_focusable(_node("div", {"tabindex": "junk"}))


def test_hidden_ancestor_prunes_subtree():
    root = _node(
        "body",
        children=[
            _node("div", children=[_node("button", text="Hidden")], display="none"),
            _node("button", text="Shown"),
        ],
    )

    visible_only = SnapshotVisitor(root, SnapshotOptions()).candidates()
    with_hidden = SnapshotVisitor(root, SnapshotOptions(include_hidden=True)).candidates()

    assert _names(visible_only) == [("button", "Shown")]
    hidden = [candidate for candidate in with_hidden if candidate.name == "Hidden"]
    assert len(hidden) == 1
    assert hidden[0].visible is False


def test_zero_box_and_aria_hidden_are_invisible():
    root = _node(
        "body",
        children=[
            _node("button", text="Collapsed", bounds=Bounds(x=0, y=0, width=0, height=0)),
            _node("button", {"aria-hidden": "true"}, text="Decorative"),
            _node("button", text="Faded", opacity=0.0),
            _node("button", text="Real"),
        ],
    )

    assert _names(SnapshotVisitor(root).candidates()) == [("button", "Real")]


def test_wrapping_label_names_control():
    root = _node(
        "body",
        children=[_node("label", text="Remember me", children=[_node("input", {"type": "checkbox"})])],
    )

    assert _names(SnapshotVisitor(root).candidates()) == [("checkbox", "Remember me")]


def test_xpath_is_index_based():
    root = _node("body", children=[_node("button", text="One"), _node("div"), _node("button", text="Two")])

    candidates = SnapshotVisitor(root).candidates()

    assert [candidate.xpath for candidate in candidates] == [
        "/html[1]/body[1]/button[1]",
        "/html[1]/body[1]/button[2]",
    ]


def test_max_depth_limits_descent():
    root = _node("body", children=[_node("div", children=[_node("div", children=[_node("button", text="Deep")])])])

    assert SnapshotVisitor(root, SnapshotOptions(max_depth=2)).candidates() == []
    assert _names(SnapshotVisitor(root, SnapshotOptions(max_depth=3)).candidates()) == [("button", "Deep")]


def test_non_interactive_nodes_kept_when_requested():
    root = _node("body", children=[_node("h1", text="Settings"), _node("button", text="Save")])

    everything = SnapshotVisitor(root, SnapshotOptions(interactive_only=False)).candidates()

    assert _names(everything) == [("heading", "Settings"), ("button", "Save")]
