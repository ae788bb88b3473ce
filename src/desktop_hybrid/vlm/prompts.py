"""Prompt pairs sent to vision models for each operation."""

from __future__ import annotations

from typing import Optional, Sequence

FIND_SYSTEM_PROMPT = (
    "You are a GUI automation assistant. Your task is to find UI elements in screenshots.\n"
    "Given a screenshot and an element description:\n"
    "1. Locate the described element in the screenshot.\n"
    "2. Return the center coordinates (x, y) of the element in screenshot pixels, usable for clicking.\n"
    "3. Provide your confidence level between 0 and 1.\n"
    "4. Explain your reasoning briefly.\n"
    "If the element cannot be found, set notFound to true and suggest a similar element that does exist.\n"
    "Respond ONLY with a JSON object."
)

ACTION_SYSTEM_PROMPT = (
    "You are a GUI automation agent controlling a desktop application to complete a user instruction.\n"
    "Available actions:\n{actions}\n"
    "For each step analyze the current screenshot, decide the single best action and return it with parameters.\n"
    "Think step by step, perform only one action at a time and be precise with coordinates.\n"
    "When the instruction is complete, return finished: true.\n"
    "Respond ONLY with a JSON object."
)

ASSERT_SYSTEM_PROMPT = (
    "You are a QA automation assistant verifying UI states.\n"
    "Given a screenshot and an assertion, analyze the screenshot carefully, decide whether the assertion holds, "
    "give detailed reasoning, and when it fails suggest how to fix it.\n"
    "Respond ONLY with a JSON object."
)

ISSUES_SYSTEM_PROMPT = (
    "You are a UI quality assurance expert. Detect visual issues and UI defects in screenshots.\n"
    "Respond ONLY with a JSON object."
)


def find_user_prompt(description: str, context: Optional[str] = None) -> str:
    lines = [
        "Find the following element in the screenshot:",
        f'"{description}"',
    ]
    if context:
        lines.append(f"Context: {context}")
    lines.extend(
        [
            "",
            "Return a JSON object with:",
            "- coordinates: { x: number, y: number } or null if not found",
            "- confidence: number (0-1)",
            "- reasoning: string",
            "- notFound: boolean",
            "- alternative: string (if not found, a similar element that exists)",
        ]
    )
    return "\n".join(lines)


def action_system_prompt(action_space: Sequence[str]) -> str:
    return ACTION_SYSTEM_PROMPT.format(actions="\n".join(f"- {action}" for action in action_space))


def action_user_prompt(instruction: str) -> str:
    return "\n".join(
        [
            f'Instruction: "{instruction}"',
            "",
            "Based on the current screenshot, what action should be taken next?",
            "",
            "Return a JSON object with:",
            "- actionType: string (one of the available actions)",
            "- actionParams: object (parameters for the action)",
            "- thought: string (your reasoning)",
            "- reflection: string (any observations)",
            "- finished: boolean (true if the instruction is complete)",
        ]
    )


def assert_user_prompt(assertion: str, expected: Optional[str] = None) -> str:
    lines = [f'Assertion: "{assertion}"']
    if expected:
        lines.append(f"Expected: {expected}")
    lines.extend(
        [
            "",
            "Analyze the screenshot and verify the assertion.",
            "",
            "Return a JSON object with:",
            "- passed: boolean",
            "- reasoning: string (detailed explanation)",
            "- actual: string (what you actually observed)",
            "- suggestions: string[] (if failed, how to fix)",
        ]
    )
    return "\n".join(lines)


ISSUES_USER_PROMPT = (
    "Analyze this screenshot for visual issues and UI defects.\n"
    "Check for text truncation or overflow, element overlap, alignment issues, color contrast problems, "
    "blurry or distorted elements, inconsistent spacing and layout errors.\n\n"
    'Return a JSON object: {"issues": [{"type": "text_truncation|overlap|misalignment|contrast|blur|spacing|layout", '
    '"severity": "critical|high|medium|low", "description": "...", '
    '"location": {"x": 0, "y": 0, "width": 0, "height": 0}, "suggestion": "..."}]}'
)
