"""Text-completion client adapters (schema mapping / validation review)."""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import requests

logger = logging.getLogger(__name__)


class LLMClientError(RuntimeError):
    """Raised when LLM gateway communication fails."""


class LLMBudgetExceededError(LLMClientError):
    """Raised when the per-run call budget is exhausted or LLM use is disabled."""


class LLMResponseParseError(LLMClientError):
    """Raised when an LLM response does not contain valid JSON."""


class CompletionClient(Protocol):
    def chat(
        self,
        prompt: str,
        system: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.1,
    ) -> str: ...


@dataclass(frozen=True)
class CompletionOptions:
    system: str | None = None
    max_tokens: int = 4096
    temperature: float = 0.1
    retries: int = 2


class GatewayLLM:
    """
    Minimal OpenAI-compatible gateway client.

    Default target is a local gateway (`http://localhost:4141`).
    """

    def __init__(
        self,
        gateway_url: str,
        model: str,
        timeout_seconds: float = 60.0,
        api_key: str | None = None,
    ):
        self.gateway_url = str(gateway_url or "").rstrip("/")
        self.model = str(model or "").strip()
        self.timeout_seconds = float(timeout_seconds)
        self.api_key = str(api_key or "").strip() or "gateway"
        self.session = requests.Session()

        if not self.gateway_url:
            raise LLMClientError("gateway_url이 비어 있습니다.")
        if not self.model:
            raise LLMClientError("model이 비어 있습니다.")

    def chat(
        self,
        prompt: str,
        system: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.1,
    ) -> str:
        url = f"{self.gateway_url}/v1/chat/completions"
        messages: list[dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": str(system)})
        messages.append({"role": "user", "content": str(prompt or "")})
        payload = {
            "model": self.model,
            "temperature": float(temperature),
            "max_tokens": int(max_tokens),
            "messages": messages,
        }
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {self.api_key}"}

        try:
            response = self.session.post(
                url,
                json=payload,
                headers=headers,
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise LLMClientError(f"LLM 게이트웨이 호출 실패: {exc}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise LLMClientError("LLM 게이트웨이 JSON 파싱 실패") from exc

        try:
            return str(data["choices"][0]["message"]["content"])
        except (KeyError, IndexError, TypeError) as exc:
            raise LLMClientError("LLM 응답 포맷 오류 (choices/message/content 없음)") from exc


@dataclass
class BudgetedLLMUsage:
    enabled: bool
    max_calls: int
    calls_used: int
    calls_blocked: int
    calls_failed: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "max_calls": self.max_calls,
            "calls_used": self.calls_used,
            "calls_blocked": self.calls_blocked,
            "calls_failed": self.calls_failed,
        }


class BudgetedLLMClient:
    """
    Wrapper that enforces an LLM call budget for one pipeline run.

    - disabled mode or exhausted budget raises LLMBudgetExceededError without a remote call
    - gateway errors are counted and re-raised
    """

    def __init__(
        self,
        base_client: CompletionClient,
        enabled: bool,
        max_calls: int,
    ):
        self.base_client = base_client
        self.enabled = bool(enabled)
        self.max_calls = max(0, int(max_calls))
        self.calls_used = 0
        self.calls_blocked = 0
        self.calls_failed = 0

    def chat(
        self,
        prompt: str,
        system: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.1,
    ) -> str:
        if not self.enabled:
            self.calls_blocked += 1
            raise LLMBudgetExceededError("LLM 호출이 비활성화되어 있습니다.")
        if self.calls_used >= self.max_calls:
            self.calls_blocked += 1
            raise LLMBudgetExceededError(f"LLM 호출 한도 초과 (max_calls={self.max_calls})")

        try:
            result = self.base_client.chat(
                prompt,
                system=system,
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except Exception:
            self.calls_failed += 1
            raise

        self.calls_used += 1
        return str(result)

    def usage(self) -> BudgetedLLMUsage:
        return BudgetedLLMUsage(
            enabled=self.enabled,
            max_calls=self.max_calls,
            calls_used=self.calls_used,
            calls_blocked=self.calls_blocked,
            calls_failed=self.calls_failed,
        )


def complete_text(
    client: CompletionClient,
    prompt: str,
    options: CompletionOptions | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """
    Call `client.chat` up to `retries + 1` times.

    The wait before retry N is N seconds (linear). The last error propagates
    once retries are exhausted; budget errors are never retried.
    """
    opts = options or CompletionOptions()
    retries = max(0, int(opts.retries))
    last_error: Exception | None = None

    for attempt in range(retries + 1):
        try:
            return client.chat(
                prompt,
                system=opts.system,
                max_tokens=opts.max_tokens,
                temperature=opts.temperature,
            )
        except LLMBudgetExceededError:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            last_error = exc
            if attempt < retries:
                wait_seconds = 1.0 * (attempt + 1)
                logger.warning("[LLM] retry %d/%d after %.1fs: %s", attempt + 1, retries, wait_seconds, exc)
                sleep(wait_seconds)

    if last_error is None:
        raise LLMClientError("LLM 호출 실패")
    raise last_error


_FENCED_BLOCK_RE = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```")


def parse_json_response(text: str) -> Any:
    raw = str(text or "")
    match = _FENCED_BLOCK_RE.search(raw)
    candidate = match.group(1) if match else raw
    try:
        return json.loads(candidate.strip())
    except json.JSONDecodeError as exc:
        raise LLMResponseParseError(f"LLM JSON 응답 파싱 실패:\n{raw[:500]}") from exc


def complete_json(
    client: CompletionClient,
    prompt: str,
    options: CompletionOptions | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    return parse_json_response(complete_text(client, prompt, options=options, sleep=sleep))
