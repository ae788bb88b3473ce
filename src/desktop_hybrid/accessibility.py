"""Role, name, visibility and selector rules over serialized UI trees.

Everything here is a pure function of :class:`UINode` values, so the same
rules apply whether the tree came from a live webview or from a test fixture.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

from .models import Bounds, SnapshotOptions, UINode

IMPLICIT_ROLES: Dict[str, str] = {
    "button": "button",
    "select": "combobox",
    "textarea": "textbox",
    "article": "article",
    "aside": "complementary",
    "footer": "contentinfo",
    "form": "form",
    "header": "banner",
    "main": "main",
    "nav": "navigation",
    "section": "region",
    "img": "img",
    "ul": "list",
    "ol": "list",
    "li": "listitem",
    "table": "table",
    "tr": "row",
    "td": "cell",
    "th": "columnheader",
    "h1": "heading",
    "h2": "heading",
    "h3": "heading",
    "h4": "heading",
    "h5": "heading",
    "h6": "heading",
    "dialog": "dialog",
    "progress": "progressbar",
    "meter": "meter",
    "option": "option",
    "menu": "menu",
    "summary": "button",
    "details": "group",
}

INPUT_ROLES: Dict[str, str] = {
    "button": "button",
    "submit": "button",
    "reset": "button",
    "image": "button",
    "checkbox": "checkbox",
    "radio": "radio",
    "range": "slider",
    "search": "searchbox",
    "number": "spinbutton",
    "text": "textbox",
    "email": "textbox",
    "password": "textbox",
    "tel": "textbox",
    "url": "textbox",
}

INTERACTIVE_ROLES = frozenset(
    {
        "button",
        "link",
        "textbox",
        "checkbox",
        "radio",
        "combobox",
        "listbox",
        "option",
        "menuitem",
        "menuitemcheckbox",
        "menuitemradio",
        "tab",
        "tabpanel",
        "slider",
        "spinbutton",
        "switch",
        "searchbox",
        "treeitem",
        "gridcell",
    }
)

INTERACTIVE_TAGS = frozenset({"a", "button", "input", "select", "textarea", "details", "summary"})

FOCUSABLE_TAGS = frozenset({"button", "input", "select", "textarea", "summary"})

# Roles whose accessible name falls back to their own text content.
NAME_FROM_CONTENT_ROLES = frozenset(
    {
        "button",
        "link",
        "heading",
        "menuitem",
        "menuitemcheckbox",
        "menuitemradio",
        "tab",
        "option",
        "cell",
        "columnheader",
        "gridcell",
        "listitem",
        "treeitem",
        "checkbox",
        "radio",
        "switch",
        "tooltip",
    }
)

MAX_NAME_LENGTH = 100

_WHITESPACE = re.compile(r"\s+")


def _squash(text: Optional[str]) -> str:
    return _WHITESPACE.sub(" ", text or "").strip()


def role_of(node: UINode) -> str:
    explicit = _squash(node.attributes.get("role"))
    if explicit:
        return explicit.split(" ")[0]
    return implicit_role(node)


def implicit_role(node: UINode) -> str:
    tag = node.tag.lower()
    if tag == "a":
        return "link" if "href" in node.attributes else "generic"
    if tag == "input":
        input_type = (node.attributes.get("type") or "text").lower()
        return INPUT_ROLES.get(input_type, "textbox")
    return IMPLICIT_ROLES.get(tag, "generic")


def text_content(node: UINode) -> str:
    parts: List[str] = []
    stack = [node]
    while stack:
        current = stack.pop()
        if current.text:
            parts.append(current.text)
        stack.extend(reversed(current.children))
    return _squash(" ".join(parts))


def is_hidden_by_style(node: UINode) -> bool:
    if node.display == "none" or node.visibility == "hidden":
        return True
    if node.opacity <= 0:
        return True
    if "hidden" in node.attributes:
        return True
    return node.attributes.get("aria-hidden") == "true"


def has_box(bounds: Optional[Bounds]) -> bool:
    return bounds is not None and bounds.width > 0 and bounds.height > 0


def is_enabled(node: UINode) -> bool:
    return not node.disabled and node.attributes.get("aria-disabled") != "true"


def is_focusable(node: UINode) -> bool:
    if node.disabled:
        return False
    raw_tabindex = node.attributes.get("tabindex")
    if raw_tabindex is not None:
        # tab_index is the live property, already parsed by the page.
        if node.tab_index is not None:
            return node.tab_index >= 0
        try:
            return int(raw_tabindex) >= 0
        except ValueError:
            pass
    tag = node.tag.lower()
    if tag in FOCUSABLE_TAGS:
        return True
    if tag == "a" and "href" in node.attributes:
        return True
    return node.attributes.get("contenteditable") in ("", "true")


def is_interactive(node: UINode, role: str) -> bool:
    return (
        role in INTERACTIVE_ROLES
        or node.tag.lower() in INTERACTIVE_TAGS
        or "onclick" in node.attributes
        or "tabindex" in node.attributes
    )


def accessible_name(
    node: UINode,
    role: str,
    *,
    ids: Mapping[str, UINode],
    labels_for: Mapping[str, UINode],
    wrapping_label: Optional[UINode] = None,
) -> str:
    """First non-empty of: aria-labelledby, aria-label, label, title, alt, content, value."""
    labelledby = node.attributes.get("aria-labelledby")
    if labelledby:
        referenced = [text_content(ids[ref]) for ref in labelledby.split() if ref in ids]
        name = _squash(" ".join(referenced))
        if name:
            return name[:MAX_NAME_LENGTH]

    for candidate in _label_candidates(node, role, labels_for, wrapping_label):
        name = _squash(candidate)
        if name:
            return name[:MAX_NAME_LENGTH]
    return ""


def _label_candidates(
    node: UINode, role: str, labels_for: Mapping[str, UINode], wrapping_label: Optional[UINode]
) -> Iterator[str]:
    yield node.attributes.get("aria-label", "")
    element_id = node.attributes.get("id")
    if element_id and element_id in labels_for:
        yield text_content(labels_for[element_id])
    if wrapping_label is not None:
        yield text_content(wrapping_label)
    yield node.attributes.get("title", "")
    yield node.attributes.get("alt", "")
    if role in NAME_FROM_CONTENT_ROLES:
        yield text_content(node)
    if node.tag.lower() in ("input", "textarea", "select"):
        yield node.value or ""


def build_selector(node: UINode) -> str:
    element_id = node.attributes.get("id")
    if element_id:
        return f"#{element_id}"
    testid = node.attributes.get("data-testid")
    if testid:
        return f'[data-testid="{testid}"]'
    selector = node.tag.lower()
    classes = [cls for cls in (node.attributes.get("class") or "").split() if ":" not in cls]
    if classes:
        selector += "." + ".".join(classes[:2])
    return selector


@dataclass
class Candidate:
    """One element found by :class:`SnapshotVisitor`, before a ref is assigned."""

    node: UINode
    role: str
    name: str
    xpath: str
    selector: str
    visible: bool
    enabled: bool
    focusable: bool
    interactive: bool


class SnapshotVisitor:
    """Depth-first walk of a serialized tree that applies the rules above.

    Hidden subtrees are pruned unless ``include_hidden`` is set; a hidden
    ancestor always makes its descendants invisible.
    """

    def __init__(self, root: UINode, options: Optional[SnapshotOptions] = None, *, root_xpath: str = "/html[1]") -> None:
        self.root = root
        self.options = options or SnapshotOptions()
        self.root_xpath = root_xpath
        self.ids: Dict[str, UINode] = {}
        self.labels_for: Dict[str, UINode] = {}
        self._index(root)

    def _index(self, root: UINode) -> None:
        stack = [root]
        while stack:
            node = stack.pop()
            element_id = node.attributes.get("id")
            if element_id and element_id not in self.ids:
                self.ids[element_id] = node
            target = node.attributes.get("for")
            if node.tag.lower() == "label" and target and target not in self.labels_for:
                self.labels_for[target] = node
            stack.extend(node.children)

    def candidates(self) -> List[Candidate]:
        found: List[Candidate] = []
        root_path = f"{self.root_xpath}/{self.root.tag.lower()}[1]"
        for child, xpath in _child_paths(self.root, root_path):
            self._visit(child, xpath, depth=1, ancestor_hidden=False, label=None, found=found)
        return found

    def _visit(
        self,
        node: UINode,
        xpath: str,
        *,
        depth: int,
        ancestor_hidden: bool,
        label: Optional[UINode],
        found: List[Candidate],
    ) -> None:
        max_depth = self.options.max_depth
        if max_depth is not None and depth > max_depth:
            return

        hidden = ancestor_hidden or is_hidden_by_style(node)
        if hidden and not self.options.include_hidden:
            return

        role = role_of(node)
        visible = not hidden and has_box(node.bounds)
        interactive = is_interactive(node, role)
        keep = (interactive or not self.options.interactive_only) and (visible or self.options.include_hidden)
        if keep:
            found.append(
                Candidate(
                    node=node,
                    role=role,
                    name=accessible_name(node, role, ids=self.ids, labels_for=self.labels_for, wrapping_label=label),
                    xpath=xpath,
                    selector=build_selector(node),
                    visible=visible,
                    enabled=is_enabled(node),
                    focusable=is_focusable(node),
                    interactive=interactive,
                )
            )

        if node.tag.lower() == "label" and "for" not in node.attributes:
            label = node
        for child, child_xpath in _child_paths(node, xpath):
            self._visit(child, child_xpath, depth=depth + 1, ancestor_hidden=hidden, label=label, found=found)


def _child_paths(node: UINode, xpath: str) -> Iterator[Tuple[UINode, str]]:
    seen: Dict[str, int] = {}
    for child in node.children:
        tag = child.tag.lower()
        seen[tag] = seen.get(tag, 0) + 1
        yield child, f"{xpath}/{tag}[{seen[tag]}]"
