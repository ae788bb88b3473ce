"""Vision-model client that routes each query to a metered provider or the agent bridge."""

from __future__ import annotations

import logging
from typing import Any, List, Mapping, Optional, Sequence, Type, TypeVar

from pydantic import BaseModel, ValidationError

from ..config import DEFAULT_MODELS, FALLBACK_MODEL, get_api_key, has_provider_credentials
from ..errors import ProviderReplyUnparseable, ProviderTransportError
from ..models import (
    AgentEnvironment,
    CostSummary,
    ElementLocation,
    NextAction,
    ProviderConfig,
    VisualAssertion,
    VisualIssue,
)
from . import prompts
from .agent_bridge import AgentBridge, detect_agent_environment
from .backends import Completion, VisionBackend, create_backend
from .cost_tracker import CostTracker
from .parsing import parse_json_reply

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

PROVIDER_ALIASES = {
    "anthropic": "anthropic",
    "claude": "anthropic",
    "openai": "openai",
    "gpt": "openai",
    "volcengine": "volcengine",
    "volc": "volcengine",
    "doubao": "doubao",
    "custom": "custom",
    "agent": "agent",
    "auto": "agent",
    "cursor": "agent",
}

DEFAULT_ACTION_SPACE = (
    "click(x, y)",
    "double_click(x, y)",
    "type(text)",
    "press(key)",
    "scroll(direction, amount)",
    "wait(ms)",
)


def normalize_provider(name: Optional[str]) -> str:
    """Map user-facing provider names onto the backend table; unknown names are custom endpoints."""
    return PROVIDER_ALIASES.get((name or "").strip().lower(), "custom")


class VisionClient:
    """Answers find/act/assert questions about a screenshot.

    Whether queries go to a metered provider or to the host agent bridge is
    decided once, here in the constructor.
    """

    def __init__(
        self,
        config: Optional[ProviderConfig] = None,
        *,
        cost_tracker: Optional[CostTracker] = None,
        environment: Optional[AgentEnvironment] = None,
        bridge: Optional[AgentBridge] = None,
        backend: Optional[VisionBackend] = None,
    ) -> None:
        self.config = config or ProviderConfig()
        self.provider = normalize_provider(self.config.provider)
        self.model = self.config.model or DEFAULT_MODELS.get(self.provider, FALLBACK_MODEL)
        self.cost_tracker = cost_tracker or CostTracker()
        self._environment = environment if environment is not None else detect_agent_environment()
        self._bridge: Optional[AgentBridge] = None
        self._backend: Optional[VisionBackend] = None

        if self.provider == "agent":
            use_bridge = True
        elif backend is None and self.config.auto_agent and not self._has_credentials():
            use_bridge = self._environment != AgentEnvironment.NONE
            if use_bridge:
                logger.info(
                    "No %s credentials found; agent environment %s detected, switching to agent bridge",
                    self.provider,
                    self._environment.value,
                )
        else:
            use_bridge = False

        if use_bridge:
            self._bridge = bridge or AgentBridge(environment=self._environment)
            logger.info("VLM queries will be answered by the host agent (%s)", self._environment.value)
        else:
            self._backend = backend or create_backend(self.provider, self.model, self.config)
            logger.debug("VLM client ready provider=%s model=%s", self.provider, self.model)

    def _has_credentials(self) -> bool:
        return bool(self.config.api_key or get_api_key(self.provider) or has_provider_credentials())

    @property
    def agent_environment(self) -> AgentEnvironment:
        return self._environment

    @property
    def bridge(self) -> Optional[AgentBridge]:
        return self._bridge

    def is_using_agent_mode(self) -> bool:
        return self._bridge is not None

    async def find_element(
        self, screenshot: str, description: str, context: Optional[str] = None
    ) -> ElementLocation:
        if self._bridge is not None:
            result = await self._bridge.find_element(screenshot, description, context)
            self._track_bridge("find")
            return result

        completion = await self._call(
            prompts.FIND_SYSTEM_PROMPT, prompts.find_user_prompt(description, context), screenshot, "find"
        )
        location = self._decode(ElementLocation, completion, "find")
        if location is None:
            return ElementLocation(confidence=0.0, reasoning="Failed to parse model response", not_found=True)
        if location.coordinates is None:
            location.not_found = True
        return location

    async def get_next_action(
        self, screenshot: str, instruction: str, action_space: Sequence[str] = DEFAULT_ACTION_SPACE
    ) -> NextAction:
        if self._bridge is not None:
            result = await self._bridge.get_next_action(screenshot, instruction, action_space)
            self._track_bridge("action")
            return result

        completion = await self._call(
            prompts.action_system_prompt(action_space), prompts.action_user_prompt(instruction), screenshot, "action"
        )
        action = self._decode(NextAction, completion, "action")
        if action is None:
            return NextAction(action_type="wait", thought="Failed to parse model response", finished=False)
        return action

    async def assert_visual(
        self, screenshot: str, assertion: str, expected: Optional[str] = None
    ) -> VisualAssertion:
        if self._bridge is not None:
            result = await self._bridge.assert_visual(screenshot, assertion, expected)
            self._track_bridge("assert")
            return result

        completion = await self._call(
            prompts.ASSERT_SYSTEM_PROMPT, prompts.assert_user_prompt(assertion, expected), screenshot, "assert"
        )
        verdict = self._decode(VisualAssertion, completion, "assert")
        if verdict is None:
            return VisualAssertion(passed=False, reasoning="Failed to parse model response", actual="Unknown")
        return verdict

    async def detect_visual_issues(self, screenshot: str) -> List[VisualIssue]:
        if self._bridge is not None:
            issues = await self._bridge.detect_visual_issues(screenshot)
            self._track_bridge("analyze")
            return issues

        completion = await self._call(
            prompts.ISSUES_SYSTEM_PROMPT, prompts.ISSUES_USER_PROMPT, screenshot, "analyze"
        )
        try:
            payload = parse_json_reply(completion.text)
        except ProviderReplyUnparseable as exc:
            logger.warning("Unparseable analyze reply from %s: %s", self.provider, exc)
            return []

        issues: List[VisualIssue] = []
        for entry in payload.get("issues") or []:
            if not isinstance(entry, Mapping):
                continue
            try:
                issues.append(VisualIssue.model_validate(entry))
            except ValidationError as exc:
                logger.debug("Skipping malformed visual issue %r: %s", entry, exc)
        return issues

    def cost_summary(self) -> CostSummary:
        return self.cost_tracker.summary()

    def reset_cost_tracking(self) -> None:
        self.cost_tracker.reset()

    async def _call(self, system_prompt: str, user_prompt: str, screenshot: str, operation: str) -> Completion:
        if self._backend is None:
            raise ProviderTransportError("No provider backend configured", provider=self.provider)
        logger.debug("VLM %s request provider=%s model=%s prompt=%r", operation, self.provider, self.model, user_prompt)
        completion = await self._backend.complete(system_prompt, user_prompt, screenshot)
        if self.config.track_cost:
            self.cost_tracker.track(
                self.provider, self.model, completion.input_tokens, completion.output_tokens, operation
            )
        return completion

    def _track_bridge(self, operation: str) -> None:
        if self.config.track_cost:
            self.cost_tracker.track("agent", DEFAULT_MODELS["agent"], 0, 0, operation)

    def _decode(self, model: Type[ModelT], completion: Completion, operation: str) -> Optional[ModelT]:
        try:
            payload: Any = parse_json_reply(completion.text)
            return model.model_validate(payload)
        except ProviderReplyUnparseable as exc:
            logger.warning("Unparseable %s reply from %s: %s", operation, self.provider, exc)
        except ValidationError as exc:
            logger.warning("Malformed %s reply from %s: %s", operation, self.provider, exc)
        return None
