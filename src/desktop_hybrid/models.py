"""Core data models for the hybrid desktop engine."""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class RunMode(str, Enum):
    DETERMINISTIC = "deterministic"
    VISUAL = "visual"
    HYBRID = "hybrid"


class LocatorStrategy(str, Enum):
    REF = "ref"
    CSS = "css"
    XPATH = "xpath"
    ROLE = "role"
    TEXT = "text"
    TESTID = "testid"
    VISUAL = "visual"


class ActionStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    VLM_FALLBACK = "vlm_fallback"


class VLMProvider(str, Enum):
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    VOLCENGINE = "volcengine"
    DOUBAO = "doubao"
    CUSTOM = "custom"
    AGENT = "agent"


class AgentEnvironment(str, Enum):
    IDE_EMBEDDED = "ide-embedded-agent"
    CLI_AGENT = "cli-agent"
    EDITOR_PLUGIN = "editor-plugin-agent"
    DESKTOP_APP = "desktop-agent-app"
    PROTOCOL_MARKER = "generic-protocol-marker"
    HEURISTIC = "heuristic-unknown"
    NONE = "none"


class Bounds(BaseModel):
    x: float = 0
    y: float = 0
    width: float = 0
    height: float = 0

    @property
    def center(self) -> Tuple[float, float]:
        return (self.x + self.width / 2.0, self.y + self.height / 2.0)


class Point(BaseModel):
    x: float
    y: float


class Locator(BaseModel):
    """Strategy-tagged description of how to find an element."""

    strategy: LocatorStrategy
    value: str
    within: Optional[Locator] = None
    nth: Optional[int] = None

    @classmethod
    def parse(cls, raw: str | Locator) -> Locator:
        if isinstance(raw, Locator):
            return raw
        text = raw.strip()
        if text.startswith("@"):
            return cls(strategy=LocatorStrategy.REF, value=text)
        if text.startswith("//") or text.startswith("xpath="):
            return cls(strategy=LocatorStrategy.XPATH, value=text[6:] if text.startswith("xpath=") else text)
        if text.startswith("text="):
            return cls(strategy=LocatorStrategy.TEXT, value=text[5:])
        if text.startswith("role="):
            return cls(strategy=LocatorStrategy.ROLE, value=text[5:])
        if text.startswith("[data-testid="):
            return cls(strategy=LocatorStrategy.TESTID, value=text)
        if text.startswith("visual="):
            return cls(strategy=LocatorStrategy.VISUAL, value=text[7:])
        return cls(strategy=LocatorStrategy.CSS, value=text)

    def describe(self) -> str:
        """Natural-language description handed to the vision tier."""
        if self.strategy == LocatorStrategy.TEXT:
            return f'element with text "{self.value}"'
        if self.strategy == LocatorStrategy.ROLE:
            return f"{self.value} element"
        if self.strategy == LocatorStrategy.VISUAL:
            return self.value
        return f"element matching {self.value}"


class ElementRef(BaseModel):
    """Channel-level handle to an element, however it was found."""

    id: str
    role: str = "element"
    name: Optional[str] = None
    nth: Optional[int] = None
    bounds: Optional[Bounds] = None
    source: Literal["dom", "accessibility", "vlm"] = "dom"
    selector: Optional[str] = None


class ChannelSnapshot(BaseModel):
    tree: str = ""
    refs: Dict[str, ElementRef] = Field(default_factory=dict)
    timestamp: float = Field(default_factory=time.time)
    screenshot: Optional[str] = None


class UINode(BaseModel):
    """Platform-neutral node of the live element tree."""

    model_config = ConfigDict(populate_by_name=True)

    tag: str = "div"
    attributes: Dict[str, str] = Field(default_factory=dict)
    text: str = ""
    value: Optional[str] = None
    bounds: Optional[Bounds] = None
    display: str = ""
    visibility: str = ""
    opacity: float = 1.0
    disabled: bool = False
    tab_index: Optional[int] = Field(default=None, alias="tabIndex")
    children: List[UINode] = Field(default_factory=list)


class RefElement(BaseModel):
    model_config = ConfigDict(frozen=True)

    ref: str
    role: str
    name: str = ""
    tag_name: str = "div"
    selector: str = ""
    xpath: str = ""
    visible: bool = True
    enabled: bool = True
    focusable: bool = False
    bounds: Optional[Bounds] = None
    text: Optional[str] = None
    value: Optional[str] = None
    placeholder: Optional[str] = None
    attributes: Dict[str, str] = Field(default_factory=dict)
    nth_index: Optional[int] = None


class Snapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    snapshot_id: str
    timestamp: float = Field(default_factory=time.time)
    url: str = ""
    title: str = ""
    elements: Tuple[RefElement, ...] = ()
    raw_tree: Optional[UINode] = None


class SnapshotOptions(BaseModel):
    interactive_only: bool = True
    include_hidden: bool = False
    max_depth: Optional[int] = None
    include_raw_tree: bool = False
    compact: bool = False


class RefResolution(BaseModel):
    element: RefElement
    method: Literal["ref", "selector", "xpath", "text"]
    valid: bool


class ActionResult(BaseModel):
    status: ActionStatus
    data: Any = None
    error: Optional[str] = None
    duration: float = 0.0
    used_vlm: bool = False
    vlm_cost: Optional[float] = None
    screenshot: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (ActionStatus.SUCCESS, ActionStatus.VLM_FALLBACK)


class CostEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    images: int
    cost: float
    timestamp: float = Field(default_factory=time.time)
    operation: Literal["find", "action", "assert", "analyze"]


class CostSummary(BaseModel):
    total_cost: float = 0.0
    total_calls: int = 0
    by_provider: Dict[str, float] = Field(default_factory=dict)
    by_operation: Dict[str, float] = Field(default_factory=dict)
    entries: List[CostEntry] = Field(default_factory=list)


class ProviderConfig(BaseModel):
    provider: str = "openai"
    model: Optional[str] = None
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    track_cost: bool = True
    auto_agent: bool = True
    timeout: Optional[float] = None  # seconds


class ElementLocation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    coordinates: Optional[Point] = None
    confidence: float = 0.0
    reasoning: str = ""
    not_found: bool = Field(default=False, alias="notFound")
    alternative: Optional[str] = None
    pending: bool = False
    request_id: Optional[str] = None


class NextAction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action_type: str = Field(default="wait", alias="actionType")
    action_params: Dict[str, Any] = Field(default_factory=dict, alias="actionParams")
    thought: str = ""
    reflection: Optional[str] = None
    finished: bool = False
    pending: bool = False
    request_id: Optional[str] = None


class VisualAssertion(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    passed: bool = False
    reasoning: str = ""
    actual: str = ""
    suggestions: Optional[List[str]] = None
    pending: bool = False
    request_id: Optional[str] = None


class VisualIssue(BaseModel):
    type: str
    severity: str = "medium"
    description: str = ""
    location: Optional[Bounds] = None
    suggestion: Optional[str] = None


class EngineConfig(BaseModel):
    mode: RunMode = RunMode.HYBRID
    endpoint: str = "9222"
    tool: str = "agent-browser"
    session: Optional[str] = None
    timeout_ms: int = 30000
    vlm: Optional[ProviderConfig] = None
    screenshot_dir: str = "./screenshots"
    debug: bool = False


Locator.model_rebuild()
UINode.model_rebuild()
