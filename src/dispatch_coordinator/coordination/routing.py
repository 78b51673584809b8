"""Intent routing through an external language-model router."""

from __future__ import annotations

import json
import logging
import math
import re
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol, TypeVar

import httpx

from dispatch_coordinator.coordination.errors import RoutingFailure
from dispatch_coordinator.coordination.models import ExecutionTier, ExecutorView, TaskPriority
from dispatch_coordinator.storage.common import from_epoch_millis, from_iso, utc_now

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
RETRYABLE_STATUS_CODES = frozenset({408, 409, 429, 500, 502, 503, 504, 529})
_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?```$", re.DOTALL)

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation flag shared between caller and router call."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RoutingFailure("Router call was cancelled.")

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; True when cancelled meanwhile."""

        return self._event.wait(timeout=max(0.0, seconds))


@dataclass(slots=True)
class RouterRequest:
    """Input handed to the router: the raw intent plus a team snapshot."""

    intent: str
    requester_id: str
    executors: list[ExecutorView]
    now: datetime = field(default_factory=utc_now)


@dataclass(slots=True)
class RoutedIntent:
    """Validated router output."""

    title: str
    description: str
    execution_tier: ExecutionTier
    priority: TaskPriority
    required_skills: list[str]
    routing_reason: str
    assignee_id: str | None = None
    estimated_minutes: int | None = None
    deadline: datetime | None = None
    result: str | None = None


class IntentRouter(Protocol):
    """Anything that turns a routing request into raw model text."""

    def route(self, request: RouterRequest, cancel_token: CancellationToken) -> str: ...


def call_with_deadline(
    fn: Callable[[CancellationToken], T],
    *,
    timeout_seconds: float,
) -> T:
    """Run ``fn`` on a worker thread and give up after ``timeout_seconds``.

    On timeout the token handed to ``fn`` is cancelled and ``RoutingFailure``
    is raised; the caller never waits past the deadline.
    """

    if timeout_seconds <= 0:
        raise ValueError("timeout_seconds must be > 0.")
    token = CancellationToken()
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="intent-router")
    try:
        future = pool.submit(fn, token)
        try:
            return future.result(timeout=timeout_seconds)
        except FutureTimeoutError as error:
            token.cancel()
            logger.warning("Router call exceeded %.1fs deadline; cancelled", timeout_seconds)
            raise RoutingFailure(
                f"Router did not answer within {timeout_seconds:g} seconds.",
            ) from error
    finally:
        pool.shutdown(wait=False, cancel_futures=True)


def route_intent(
    router: IntentRouter,
    request: RouterRequest,
    *,
    timeout_seconds: float,
) -> RoutedIntent:
    """Ask the router and validate its answer; raises ``RoutingFailure``."""

    raw = call_with_deadline(
        lambda token: router.route(request, token),
        timeout_seconds=timeout_seconds,
    )
    return parse_routed_intent(raw)


def parse_routed_intent(text: str) -> RoutedIntent:  # noqa: C901, PLR0912
    """Parse raw router text into a ``RoutedIntent``.

    Accepts bare JSON or JSON wrapped in a Markdown code fence. Any shape
    problem raises ``RoutingFailure``.
    """

    payload = _load_json_object(text)

    title = payload.get("title")
    if not isinstance(title, str) or not title.strip():
        raise RoutingFailure("Router output is missing a non-empty 'title'.")

    try:
        tier = ExecutionTier(str(payload.get("executionTier", "")).strip())
    except ValueError as error:
        raise RoutingFailure(
            f"Router output has invalid executionTier: {payload.get('executionTier')!r}",
        ) from error

    raw_priority = payload.get("priority")
    if raw_priority is None:
        priority = TaskPriority.MEDIUM
    else:
        try:
            priority = TaskPriority(str(raw_priority).strip().lower())
        except ValueError as error:
            raise RoutingFailure(f"Router output has invalid priority: {raw_priority!r}") from error

    raw_skills = payload.get("requiredSkills")
    if raw_skills is None:
        raw_skills = []
    if not isinstance(raw_skills, list) or not all(isinstance(item, str) for item in raw_skills):
        raise RoutingFailure("Router output 'requiredSkills' must be a list of strings.")

    assignee_id = payload.get("assigneeId")
    if assignee_id is not None and not isinstance(assignee_id, str):
        raise RoutingFailure("Router output 'assigneeId' must be a string or null.")

    estimated = payload.get("estimatedMinutes")
    if estimated is not None:
        if isinstance(estimated, bool) or not isinstance(estimated, int | float) or estimated < 0:
            raise RoutingFailure("Router output 'estimatedMinutes' must be a non-negative number.")
        estimated = int(estimated)

    description = payload.get("description")
    if description is not None and not isinstance(description, str):
        raise RoutingFailure("Router output 'description' must be a string.")

    result = payload.get("result")
    if result is not None and not isinstance(result, str):
        raise RoutingFailure("Router output 'result' must be a string.")

    return RoutedIntent(
        title=title.strip(),
        description=description or "",
        execution_tier=tier,
        priority=priority,
        required_skills=[skill.strip() for skill in raw_skills if skill.strip()],
        routing_reason=str(payload.get("routingReason") or ""),
        assignee_id=(assignee_id or "").strip() or None,
        estimated_minutes=estimated,
        deadline=_parse_deadline(payload.get("deadline")),
        result=result,
    )


def build_router_prompt(executors: Sequence[ExecutorView], now: datetime) -> str:
    """System prompt with the team snapshot, tiers, deadline rules and output contract."""

    team = "\n".join(
        f"- {executor.name} (id={executor.executor_id}, {executor.role}): "
        f"Skills=[{', '.join(executor.skills)}], "
        f"Capacity={executor.load}/{executor.max_concurrent_tasks}"
        for executor in executors
    )
    if not team:
        team = "- (no team members registered)"
    friday = _next_friday_5pm(now)
    friday_ms = int(friday.timestamp() * 1000)
    now_ms = int(now.timestamp() * 1000)
    return f"""You are a task coordinator. Analyze the request and route it to the best executor.

Current time: {now.isoformat()} ({now_ms} ms since epoch)

## Team Members
{team}

## Execution Tiers
- "ai_direct": you can complete the task yourself (analysis, writing, summarization, code). \
Put your answer in "result".
- "ai_agent": needs a specific person's tool setup. Route to the member whose skills match.
- "human": needs human judgment, approval or real-world action. Route to the best-matched member.

## Deadline Parsing
Convert any mentioned deadline to Unix time in milliseconds.
- "by Friday" -> {friday_ms} ({friday.isoformat()})
- "by end of day" -> today at 17:00
- "within 2 hours" -> current time + 2 hours
- "ASAP" -> current time + 1 hour
Omit "deadline" if none is mentioned.

## Rules
1. Prefer "ai_direct" for writing, summarization, analysis and data tasks.
2. Match required skills to team member skills.
3. Respect capacity limits.
4. Explain the routing decision in one sentence.

## Output Format
Respond with ONLY a JSON object:
{{
  "title": "Short task title",
  "description": "What needs to be done",
  "executionTier": "ai_direct" | "ai_agent" | "human",
  "assigneeId": "member id or null",
  "priority": "low" | "medium" | "high" | "urgent",
  "estimatedMinutes": 30,
  "requiredSkills": ["skill"],
  "routingReason": "Why this routing was chosen",
  "deadline": 1234567890000,
  "result": "only for ai_direct"
}}"""


class HttpIntentRouter:
    """Router backed by an Anthropic-compatible Messages API."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        base_url: str,
        api_key: str,
        model: str,
        max_tokens: int = 2000,
        max_attempts: int = 2,
        timeout_seconds: float = 30.0,
        retry_delay_seconds: float = 1.0,
        client: httpx.Client | None = None,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be a positive integer.")
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.max_tokens = max_tokens
        self.max_attempts = max_attempts
        self.retry_delay_seconds = retry_delay_seconds
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "x-api-key": api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "content-type": "application/json",
            },
        )

    def close(self) -> None:
        self._client.close()

    def route(self, request: RouterRequest, cancel_token: CancellationToken) -> str:
        body = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": build_router_prompt(request.executors, request.now),
            "messages": [{"role": "user", "content": request.intent}],
        }
        last_error = "no attempts made"
        for attempt in range(1, self.max_attempts + 1):
            cancel_token.raise_if_cancelled()
            try:
                response = self._client.post(f"{self.base_url}/v1/messages", json=body)
            except httpx.TimeoutException:
                last_error = "timeout"
                logger.warning(
                    "Router request timed out (attempt %d/%d)",
                    attempt,
                    self.max_attempts,
                )
            except httpx.HTTPError as exc:
                last_error = str(exc)
                logger.warning(
                    "Router request failed (attempt %d/%d): %s",
                    attempt,
                    self.max_attempts,
                    exc,
                )
            else:
                if response.is_success:
                    return _extract_text(response)
                last_error = f"HTTP {response.status_code}"
                if response.status_code not in RETRYABLE_STATUS_CODES:
                    raise RoutingFailure(f"Router rejected the request: {last_error}")
                logger.warning(
                    "Router returned %s (attempt %d/%d)",
                    last_error,
                    attempt,
                    self.max_attempts,
                )
            if attempt < self.max_attempts and cancel_token.wait(
                self.retry_delay_seconds * attempt,
            ):
                cancel_token.raise_if_cancelled()
        raise RoutingFailure(
            f"Router failed after {self.max_attempts} attempt(s): {last_error}",
        )


def _extract_text(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError as error:
        raise RoutingFailure("Router response is not JSON.") from error
    content = data.get("content") if isinstance(data, dict) else None
    if not isinstance(content, list):
        raise RoutingFailure("Router response has no content blocks.")
    text = "".join(
        block.get("text", "")
        for block in content
        if isinstance(block, dict) and block.get("type") == "text"
    )
    if not text.strip():
        raise RoutingFailure("Router response has no text content.")
    return text


def _load_json_object(text: str) -> dict[str, Any]:
    cleaned = text.strip()
    fenced = _FENCE_RE.match(cleaned)
    if fenced:
        cleaned = fenced.group(1).strip()
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start < 0 or end <= start:
            raise RoutingFailure("Router output is not JSON.") from None
        try:
            payload = json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError as error:
            raise RoutingFailure(f"Router output is not valid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise RoutingFailure("Router output must be a JSON object.")
    return payload


def _parse_deadline(value: object) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise RoutingFailure(f"Router output has invalid deadline: {value!r}")
    if isinstance(value, int | float):
        return _epoch_deadline(value)
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.isdigit():
            return _epoch_deadline(stripped)
        try:
            return from_iso(stripped)
        except ValueError as error:
            raise RoutingFailure(f"Router output has invalid deadline: {value!r}") from error
    raise RoutingFailure(f"Router output has invalid deadline: {value!r}")


def _epoch_deadline(value: float | str) -> datetime:
    message = f"Router output has invalid deadline: {value!r}"
    try:
        millis = float(value)
    except (OverflowError, ValueError) as error:
        raise RoutingFailure(message) from error
    if not math.isfinite(millis):
        raise RoutingFailure(message)
    try:
        return from_epoch_millis(millis)
    except (OverflowError, OSError, ValueError) as error:
        raise RoutingFailure(message) from error


def _next_friday_5pm(now: datetime) -> datetime:
    days_ahead = (4 - now.weekday()) % 7 or 7
    friday = now + timedelta(days=days_ahead)
    return friday.replace(hour=17, minute=0, second=0, microsecond=0)


class StaticIntentRouter:
    """Returns canned router text; used for offline runs and tests."""

    def __init__(self, text: str) -> None:
        self.text = text
        self.requests: list[RouterRequest] = []

    def route(self, request: RouterRequest, cancel_token: CancellationToken) -> str:
        cancel_token.raise_if_cancelled()
        self.requests.append(request)
        return self.text
