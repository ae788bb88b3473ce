import logging
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from desktop_hybrid.errors import ProviderReplyUnparseable  # noqa: E402
from desktop_hybrid.vlm.parsing import parse_json_reply  # noqa: E402

PAYLOAD = {"coordinates": {"x": 120, "y": 48}, "confidence": 0.9, "reasoning": "top bar"}
RAW = '{"coordinates": {"x": 120, "y": 48}, "confidence": 0.9, "reasoning": "top bar"}'


@pytest.mark.parametrize(
    "reply",
    [
        RAW,
        f"```json\n{RAW}\n```",
        f"```\n{RAW}\n```",
        f"I looked at the screenshot. The answer is {RAW} and that should do it.",
    ],
)
def test_same_object_from_bare_fenced_and_prose(reply):
    assert parse_json_reply(reply) == PAYLOAD


def test_fenced_block_after_chatter(caplog):
    reply = 'Sure! ```json\n{"passed":true}\n```'

    with caplog.at_level(logging.DEBUG, logger="desktop_hybrid.vlm.parsing"):
        assert parse_json_reply(reply) == {"passed": True}

    assert "fenced" in caplog.text


def test_brace_matching_ignores_braces_inside_strings():
    reply = 'Result: {"reasoning": "the } is a trap", "nested": {"ok": true}} done.'

    assert parse_json_reply(reply) == {"reasoning": "the } is a trap", "nested": {"ok": True}}


def test_skips_leading_non_json_braces():
    reply = 'Options {a, b} considered. Final: {"finished": false, "actionType": "wait"}'

    assert parse_json_reply(reply) == {"finished": False, "actionType": "wait"}


def test_css_escapes_are_sanitized():
    reply = '{"selector": "#a\\:b"}'

    assert parse_json_reply(reply) == {"selector": "#a:b"}


@pytest.mark.parametrize("reply", ["", "   ", "I could not find it.", "[1, 2, 3]", "{broken"])
def test_unparseable_replies_raise(reply):
    with pytest.raises(ProviderReplyUnparseable):
        parse_json_reply(reply)


def test_error_keeps_original_reply():
    with pytest.raises(ProviderReplyUnparseable) as excinfo:
        parse_json_reply("nothing useful")

    assert excinfo.value.reply == "nothing useful"
