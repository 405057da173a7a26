"""
Pytest configuration for sweepy tests

Provides record factories and a scripted classification service shared
across unit and integration tests.
"""

from __future__ import annotations

import json
import re
import threading
from collections.abc import Callable

import pytest

from sweepy.llm.client import LlmCompletion
from sweepy.observability import telemetry
from sweepy.storage.models import EmailRecord

_EMAIL_ID_RE = re.compile(r"^--- EMAIL (\S+) ---$", re.MULTILINE)


def prompt_email_ids(prompt: str) -> list[str]:
    """Email ids in the order they appear in a batch prompt."""
    return _EMAIL_ID_RE.findall(prompt)


class ScriptedService:
    """
    Stand-in for the classification service.

    ``answer`` maps an email id to (category, confidence); ids it does not
    know are answered ``unknown``/0.5. ``cost_usd`` may map the first email
    id of a batch to that call's cost. ``script`` lets a test replace whole
    calls: each entry is either an exception to raise or a function from the
    prompt's email ids to the raw response text.
    """

    def __init__(
        self,
        answer: dict[str, tuple[str, float]] | None = None,
        script: list | None = None,
        cost_usd: float | dict[str, float] | None = None,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
    ):
        self.answer = answer or {}
        self.script = list(script or [])
        self.cost_usd = cost_usd
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.prompts: list[str] = []
        self._lock = threading.Lock()

    @property
    def calls(self) -> int:
        return len(self.prompts)

    def complete(self, prompt: str, system_instruction: str, timeout: float) -> LlmCompletion:
        with self._lock:
            self.prompts.append(prompt)
            step = self.script.pop(0) if self.script else None
        ids = prompt_email_ids(prompt)
        if isinstance(step, Exception):
            raise step
        text = step(ids) if callable(step) else self.respond(ids)
        return LlmCompletion(
            text=text,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cost_usd=self.cost_usd.get(ids[0]) if isinstance(self.cost_usd, dict) else self.cost_usd,
        )

    def respond(self, ids: list[str]) -> str:
        results = []
        for email_id in ids:
            category, confidence = self.answer.get(email_id, ("unknown", 0.5))
            results.append(
                {
                    "emailId": email_id,
                    "category": category,
                    "confidence": confidence,
                    "reasoning": f"scripted {category}",
                }
            )
        return json.dumps({"results": results})


@pytest.fixture(autouse=True)
def reset_telemetry():
    """Counters are process-wide; start every test from zero."""
    telemetry.reset()
    yield
    telemetry.reset()


@pytest.fixture
def make_record() -> Callable[..., EmailRecord]:
    """
    Build an EmailRecord from wire-style keyword overrides.

    Defaults describe a plain personal-looking email with no bulk signals.
    """

    def _make(email_id: str = "m1", sender: str = "friend@personal.example", **overrides):
        data = {
            "id": email_id,
            "threadId": f"t-{email_id}",
            "from": {"address": sender, "name": ""},
            "subject": "Lunch on Friday?",
            "snippet": "Are you free around noon, the usual place",
            "date": "2026-10-18T09:30:00Z",
            "isRead": False,
            "bodyLength": 1200,
            "linkCount": 0,
            "imageCount": 0,
        }
        data.update(overrides)
        return EmailRecord.model_validate(data)

    return _make


@pytest.fixture
def scripted_service() -> Callable[..., ScriptedService]:
    return ScriptedService
