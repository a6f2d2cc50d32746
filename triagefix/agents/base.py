from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from triagefix.errors import AgentParseError
from triagefix.llm.openai_client import CompletionClient, ContentPart, image_part, text_part
from triagefix.models import AgentContext, AgentResult

logger = logging.getLogger(__name__)

TIn = TypeVar("TIn")
TOut = TypeVar("TOut")
E = TypeVar("E", bound=Enum)


@dataclass(frozen=True)
class AgentConfig:
    timeout_s: float = 60.0
    temperature: float = 0.3
    max_tokens: int = 4000
    # Log prompt heads at debug level.
    verbose: bool = False

    @classmethod
    def from_settings(cls, settings: Any) -> "AgentConfig":
        return cls(timeout_s=settings.agent_timeout_s, temperature=settings.agent_temperature, max_tokens=settings.openai_max_tokens)


DEFAULT_AGENT_CONFIG = AgentConfig()


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """
    Return the first balanced `{...}` object in `text` that parses as JSON.

    Models wrap JSON in prose or markdown fences, so strict framing is never
    assumed. Braces inside string literals do not count towards balance.
    """
    if not text:
        return None
    start = text.find("{")
    while start != -1:
        depth = 0
        in_str = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_str:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_str = False
                continue
            if ch == '"':
                in_str = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    try:
                        obj = json.loads(text[start : i + 1])
                    except json.JSONDecodeError:
                        break
                    if isinstance(obj, dict):
                        return obj
                    break
        start = text.find("{", start + 1)
    return None


# ---- normalization helpers shared by the stage parsers


def as_str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if isinstance(v, (str, int, float)) and str(v).strip()]


def as_number(value: Any) -> Optional[float]:
    # bool is an int subclass; "true" is not a confidence.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def clamp_confidence(value: float) -> float:
    return max(0.0, min(100.0, value))


def coerce_enum(enum_cls: Type[E], value: Any, default: E) -> E:
    if isinstance(value, str):
        try:
            return enum_cls(value.strip().upper())
        except ValueError:
            return default
    return default


class BaseAgent(Generic[TIn, TOut]):
    """
    Agent execution shell shared by the model-backed stages.

    Subclasses provide the system prompt, the user prompt and a parser that
    raises AgentParseError when a required field is missing. `execute` never
    raises for stage failures: timeouts, transport errors and parse failures
    all come back as a failed AgentResult.
    """

    name = "BaseAgent"
    output_model: Type[Any] = object

    def __init__(self, client: Optional[CompletionClient], config: Optional[AgentConfig] = None):
        self.client = client
        self.config = config or DEFAULT_AGENT_CONFIG

    async def execute(self, input: TIn, context: AgentContext) -> AgentResult[TOut]:
        return await self._execute_with_timeout(input, context)

    def system_prompt(self) -> str:
        raise NotImplementedError

    def build_user_prompt(self, input: TIn, context: AgentContext) -> str:
        raise NotImplementedError

    def parse_response(self, response: str, input: TIn, context: AgentContext) -> TOut:
        raise NotImplementedError

    def build_user_content(self, input: TIn, context: AgentContext) -> List[ContentPart]:
        parts: List[ContentPart] = [text_part(self.build_user_prompt(input, context))]
        for shot in context.screenshots:
            if shot.base64_data:
                parts.append(image_part(shot.base64_data))
        return parts

    def load_json(self, response: str) -> Dict[str, Any]:
        obj = extract_json_object(response)
        if obj is None:
            raise AgentParseError(self.name, "no JSON object found in response")
        return obj

    async def _execute_with_timeout(self, input: TIn, context: AgentContext) -> AgentResult[TOut]:
        started = time.monotonic()
        api_calls = 0
        logger.info("[%s] Starting execution...", self.name)
        try:
            api_calls += 1
            # wait_for cancels the pending completion call on timeout.
            data = await asyncio.wait_for(self._run(input, context), timeout=self.config.timeout_s)
        except asyncio.TimeoutError:
            elapsed = _elapsed_ms(started)
            msg = f"{self.name} timed out after {self.config.timeout_s:g}s"
            logger.warning("[%s] Failed: %s", self.name, msg)
            return self._result(success=False, error=msg, execution_time_ms=elapsed, api_calls=api_calls)
        except Exception as e:  # noqa: BLE001 (agent boundary: every failure becomes a typed result)
            elapsed = _elapsed_ms(started)
            logger.warning("[%s] Failed: %s", self.name, e)
            return self._result(success=False, error=str(e) or type(e).__name__, execution_time_ms=elapsed, api_calls=api_calls)

        elapsed = _elapsed_ms(started)
        logger.info("[%s] Completed in %dms", self.name, elapsed)
        return self._result(success=True, data=data, execution_time_ms=elapsed, api_calls=api_calls)

    def _result(self, **fields: Any) -> AgentResult[TOut]:
        # Parametrized so results slot into AgentResults fields without revalidation.
        if self.output_model is object:
            return AgentResult(**fields)
        return AgentResult[self.output_model](**fields)  # type: ignore[name-defined]

    async def _run(self, input: TIn, context: AgentContext) -> TOut:
        if self.client is None:
            raise RuntimeError(f"{self.name}: no completion client configured")
        system_prompt = self.system_prompt()
        content = self.build_user_content(input, context)
        if self.config.verbose:
            logger.debug("[%s] System prompt: %s...", self.name, system_prompt[:200])
            logger.debug("[%s] User prompt: %s...", self.name, str(content[0].get("text", ""))[:200])
        response = await self.client.complete(
            system_prompt=system_prompt,
            user_content=content,
            temperature=self.config.temperature,
            response_as_json=True,
            max_tokens=self.config.max_tokens,
        )
        return self.parse_response(response, input, context)


def with_max_tokens(config: Optional[AgentConfig], max_tokens: int) -> AgentConfig:
    return replace(config or DEFAULT_AGENT_CONFIG, max_tokens=max_tokens)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
