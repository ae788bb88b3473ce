"""Snapshot the live UI once and hand out stable ``@eN`` refs for its elements."""

from __future__ import annotations

import json
import logging
import re
import time
from itertools import count
from typing import Any, Dict, List, Optional, Tuple

from .accessibility import INTERACTIVE_ROLES, Candidate, SnapshotVisitor, text_content
from .errors import ChannelCommandError, OperationTimeout, UnknownRefError
from .models import Locator, RefElement, RefResolution, Snapshot, SnapshotOptions, UINode

logger = logging.getLogger(__name__)

REF_PATTERN = re.compile(r"^@e(\d+)$")

# Serializes document.body into the UINode shape. Only direct text nodes go in
# ``text``; full text content is rebuilt from the children.
_TREE_SCRIPT = r"""
(() => {
  const MAX_TEXT = 200;
  const serialize = (el) => {
    const rect = el.getBoundingClientRect();
    const style = window.getComputedStyle(el);
    const attributes = {};
    for (const attr of Array.from(el.attributes)) attributes[attr.name] = attr.value;
    let text = '';
    for (const child of Array.from(el.childNodes)) {
      if (child.nodeType === Node.TEXT_NODE) text += child.textContent;
    }
    return {
      tag: el.tagName.toLowerCase(),
      attributes,
      text: text.replace(/\s+/g, ' ').trim().slice(0, MAX_TEXT),
      value: typeof el.value === 'string' ? el.value : null,
      bounds: {
        x: Math.round(rect.x),
        y: Math.round(rect.y),
        width: Math.round(rect.width),
        height: Math.round(rect.height),
      },
      display: style.display,
      visibility: style.visibility,
      opacity: parseFloat(style.opacity),
      disabled: !!el.disabled,
      tabIndex: el.tabIndex,
      children: Array.from(el.children).map(serialize),
    };
  };
  return { url: location.href, title: document.title, root: serialize(document.body) };
})()
"""


def is_ref(value: str) -> bool:
    return bool(REF_PATTERN.match(value or ""))


def parse_ref(value: str) -> Optional[int]:
    match = REF_PATTERN.match(value or "")
    return int(match.group(1)) if match else None


class RefManager:
    """Owns one snapshot at a time. A new snapshot replaces the old one wholesale."""

    def __init__(self, channel: Any) -> None:
        self.channel = channel
        self._snapshot: Optional[Snapshot] = None
        self._refs: Dict[str, RefElement] = {}
        self._snapshot_seq = count(1)

    @property
    def current_snapshot(self) -> Optional[Snapshot]:
        return self._snapshot

    async def snapshot(self, options: Optional[SnapshotOptions] = None) -> Snapshot:
        options = options or SnapshotOptions()
        url, title, root = await self._read_tree()
        candidates = SnapshotVisitor(root, options).candidates()
        elements = self._assign_refs(candidates, compact=options.compact)

        snapshot = Snapshot(
            snapshot_id=f"snap_{int(time.time() * 1000)}_{next(self._snapshot_seq)}",
            url=url,
            title=title,
            elements=tuple(elements),
            raw_tree=root if options.include_raw_tree else None,
        )
        self._snapshot = snapshot
        self._refs = {element.ref: element for element in elements}
        logger.debug("Snapshot %s captured %d elements from %s", snapshot.snapshot_id, len(elements), url or "<unknown>")
        return snapshot

    async def resolve(self, ref_or_selector: str) -> Optional[RefResolution]:
        """Look up a ref in the current snapshot, or match a selector against a fresh scan.

        Unknown refs raise :class:`UnknownRefError`. A known ref whose element
        no longer checks out as visible comes back with ``valid=False``.
        """
        if is_ref(ref_or_selector):
            element = self._refs.get(ref_or_selector)
            if element is None:
                raise UnknownRefError(ref_or_selector)
            return RefResolution(element=element, method="ref", valid=await self._still_visible(element))

        _, _, root = await self._read_tree()
        scan = SnapshotOptions(interactive_only=False, include_hidden=True)
        elements = self._assign_refs(SnapshotVisitor(root, scan).candidates(), compact=False)
        wanted = ref_or_selector[len("xpath="):] if ref_or_selector.startswith("xpath=") else ref_or_selector
        for element in elements:
            if element.selector == ref_or_selector:
                return RefResolution(element=element, method="selector", valid=element.visible)
            if element.xpath == wanted:
                return RefResolution(element=element, method="xpath", valid=element.visible)
            if ref_or_selector in (element.text, element.name):
                return RefResolution(element=element, method="text", valid=element.visible)
        return None

    def get_locator(self, ref: str) -> str:
        """Selector handed to the control layer for ``ref``."""
        element = self._refs.get(ref)
        if element is None:
            raise UnknownRefError(ref)
        if element.role and element.name:
            return f"role={element.role}[name={json.dumps(element.name, ensure_ascii=False)}]"
        testid = element.attributes.get("data-testid")
        if testid:
            return f"[data-testid={json.dumps(testid, ensure_ascii=False)}]"
        return element.selector

    def invalidate(self) -> None:
        self._snapshot = None
        self._refs = {}
        logger.debug("Ref table invalidated")

    def get_element(self, ref: str) -> Optional[RefElement]:
        return self._refs.get(ref)

    def find_by_role(self, role: str, name: Optional[str] = None) -> List[RefElement]:
        matches = [element for element in self._refs.values() if element.role == role]
        if name is not None:
            lowered = name.lower()
            matches = [element for element in matches if lowered in element.name.lower()]
        return matches

    def find_by_name(self, name: str) -> List[RefElement]:
        lowered = name.lower()
        return [element for element in self._refs.values() if lowered in element.name.lower()]

    def find_by_text(self, text: str) -> List[RefElement]:
        lowered = text.lower()
        return [element for element in self._refs.values() if element.text and lowered in element.text.lower()]

    def get_interactive(self) -> List[RefElement]:
        return [element for element in self._refs.values() if element.role in INTERACTIVE_ROLES or element.focusable]

    def to_text(self, include_refs: bool = True, max_elements: int = 100) -> str:
        """Compact listing of the snapshot for prompts and logs."""
        if self._snapshot is None:
            return "No snapshot available. Call snapshot() first."
        elements = self._snapshot.elements
        lines = [
            f"Page: {self._snapshot.title}",
            f"URL: {self._snapshot.url}",
            f"Elements ({len(elements)}):",
            "",
        ]
        for element in elements[:max_elements]:
            prefix = f"{element.ref} " if include_refs else ""
            name = f' "{element.name}"' if element.name else ""
            text = f" [{element.text[:50]}]" if element.text and element.text != element.name else ""
            lines.append(f"  {prefix}{element.role}{name}{text}")
        if len(elements) > max_elements:
            lines.append(f"  ... and {len(elements) - max_elements} more")
        return "\n".join(lines)

    def to_json(self) -> str:
        if self._snapshot is None:
            return "{}"
        return self._snapshot.model_dump_json(indent=2)

    async def _read_tree(self) -> Tuple[str, str, UINode]:
        payload = await self.channel.evaluate(_TREE_SCRIPT)
        if isinstance(payload, str):
            payload = json.loads(payload)
        payload = payload or {}
        root = UINode.model_validate(payload.get("root") or {"tag": "body"})
        return payload.get("url") or "", payload.get("title") or "", root

    async def _still_visible(self, element: RefElement) -> bool:
        selector = element.selector or (f"xpath={element.xpath}" if element.xpath else "")
        if not selector:
            return False
        try:
            return bool(await self.channel.is_visible(Locator.parse(selector)))
        except (ChannelCommandError, OperationTimeout) as exc:
            logger.debug("Re-verification of %s failed: %s", element.ref, exc)
            return False

    def _assign_refs(self, candidates: List[Candidate], compact: bool) -> List[RefElement]:
        elements: List[RefElement] = []
        occurrences: Dict[Tuple[str, str], int] = {}
        for index, candidate in enumerate(candidates, start=1):
            key = (candidate.role, candidate.name)
            seen = occurrences.get(key, 0)
            occurrences[key] = seen + 1
            node = candidate.node
            text = text_content(node)[:100]
            elements.append(
                RefElement(
                    ref=f"@e{index}",
                    role=candidate.role,
                    name=candidate.name,
                    tag_name=node.tag.lower(),
                    selector=candidate.selector,
                    xpath=candidate.xpath,
                    visible=candidate.visible,
                    enabled=candidate.enabled,
                    focusable=candidate.focusable,
                    bounds=None if compact else node.bounds,
                    text=None if compact else (text or None),
                    value=None if compact else node.value,
                    placeholder=None if compact else node.attributes.get("placeholder"),
                    attributes=dict(node.attributes),
                    nth_index=seen if seen > 0 else None,
                )
            )
        return elements
