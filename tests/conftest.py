from __future__ import annotations

import asyncio
import json
import os
from typing import Any, Callable, Dict, List, Union

import pytest


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Keep tests deterministic and isolated from developer machine env.
    """
    for k in list(os.environ.keys()):
        if k.startswith("TRIAGEFIX_"):
            monkeypatch.delenv(k, raising=False)


Scripted = Union[str, Dict[str, Any], Exception, float]


class ScriptedClient:
    """
    Completion client that replays canned responses in call order.

    A dict is sent back as JSON text, an Exception is raised, and a float
    makes the call sleep that many seconds (for timeout tests).
    """

    def __init__(self, responses: List[Scripted]):
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, *, system_prompt, user_content, temperature=0.3, response_as_json=True, max_tokens=4000) -> str:
        self.calls.append({"system_prompt": system_prompt, "user_content": user_content, "max_tokens": max_tokens})
        if not self.responses:
            raise RuntimeError("no scripted response left")
        r = self.responses.pop(0)
        if isinstance(r, Exception):
            raise r
        if isinstance(r, float):
            await asyncio.sleep(r)
            return "{}"
        if isinstance(r, dict):
            return json.dumps(r)
        return r

    def prompt_text(self, index: int) -> str:
        return "\n".join(str(p.get("text", "")) for p in self.calls[index]["user_content"])


@pytest.fixture
def scripted_client() -> Callable[[List[Scripted]], ScriptedClient]:
    return ScriptedClient
