"""Typed events read from a session rollout.

Every event keeps the complete JSON object it was parsed from in ``raw_payload``,
so fields this model does not know about are never lost.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True, kw_only=True)
class SessionEvent:
    timestamp: datetime
    type: str
    raw_payload: dict[str, Any] = field(repr=False, compare=False)

    def raw_json(self) -> str:
        return json.dumps(self.raw_payload, ensure_ascii=False)


@dataclass(frozen=True, kw_only=True)
class UnknownEvent(SessionEvent):
    pass


@dataclass(frozen=True, kw_only=True)
class SessionMetaEvent(SessionEvent):
    session_id: str
    cwd: str | None = None
    model: str | None = None
    originator: str | None = None
    cli_version: str | None = None


@dataclass(frozen=True, kw_only=True)
class UserMessageEvent(SessionEvent):
    text: str
    images: tuple[str, ...] = ()


@dataclass(frozen=True, kw_only=True)
class AgentMessageEvent(SessionEvent):
    text: str


@dataclass(frozen=True, kw_only=True)
class AgentReasoningEvent(SessionEvent):
    text: str


@dataclass(frozen=True, kw_only=True)
class AgentReasoningSectionBreakEvent(SessionEvent):
    pass


# Token usage


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int | None = None
    cached_input_tokens: int | None = None
    output_tokens: int | None = None
    reasoning_output_tokens: int | None = None
    total_tokens: int | None = None


@dataclass(frozen=True)
class RateLimitScope:
    used_percent: float | None = None
    window_minutes: int | None = None
    resets_at: datetime | None = None


@dataclass(frozen=True)
class RateLimitCredits:
    has_credits: bool | None = None
    unlimited: bool | None = None
    balance: str | None = None


@dataclass(frozen=True)
class RateLimits:
    primary: RateLimitScope | None = None
    secondary: RateLimitScope | None = None
    credits: RateLimitCredits | None = None


@dataclass(frozen=True, kw_only=True)
class TokenCountEvent(SessionEvent):
    """Token usage snapshot.

    ``input_tokens``/``output_tokens``/``reasoning_tokens`` are the headline
    counters. They come from ``info.total_token_usage`` when the nested shape is
    present and from the flat payload fields otherwise.
    """

    input_tokens: int | None = None
    output_tokens: int | None = None
    reasoning_tokens: int | None = None
    total_token_usage: TokenUsage | None = None
    last_token_usage: TokenUsage | None = None
    model_context_window: int | None = None
    rate_limits: RateLimits | None = None


@dataclass(frozen=True, kw_only=True)
class TurnContextEvent(SessionEvent):
    cwd: str | None = None
    model: str | None = None
    approval_policy: str | None = None
    sandbox_policy_type: str | None = None
    network_access: bool | None = None


@dataclass(frozen=True, kw_only=True)
class TurnAbortedEvent(SessionEvent):
    reason: str


@dataclass(frozen=True, kw_only=True)
class TurnDiffEvent(SessionEvent):
    unified_diff: str


@dataclass(frozen=True, kw_only=True)
class BackgroundEvent(SessionEvent):
    message: str


@dataclass(frozen=True, kw_only=True)
class CompactionCheckpointWarningEvent(SessionEvent):
    message: str


@dataclass(frozen=True, kw_only=True)
class ErrorEvent(SessionEvent):
    message: str


@dataclass(frozen=True, kw_only=True)
class ContextCompactedEvent(SessionEvent):
    pass


# Review mode


@dataclass(frozen=True)
class ReviewTarget:
    type: str
    branch: str | None = None
    sha: str | None = None
    title: str | None = None
    instructions: str | None = None


@dataclass(frozen=True)
class ReviewLineRange:
    start: int | None = None
    end: int | None = None


@dataclass(frozen=True)
class ReviewCodeLocation:
    absolute_file_path: str | None = None
    line_range: ReviewLineRange | None = None


@dataclass(frozen=True)
class ReviewFinding:
    priority: int | None = None
    confidence_score: float | None = None
    title: str | None = None
    body: str | None = None
    code_location: ReviewCodeLocation | None = None


@dataclass(frozen=True)
class ReviewOutput:
    overall_correctness: str | None = None
    overall_explanation: str | None = None
    overall_confidence_score: float | None = None
    findings: tuple[ReviewFinding, ...] = ()


@dataclass(frozen=True, kw_only=True)
class EnteredReviewModeEvent(SessionEvent):
    prompt: str | None = None
    user_facing_hint: str | None = None
    target: ReviewTarget | None = None


@dataclass(frozen=True, kw_only=True)
class ExitedReviewModeEvent(SessionEvent):
    review_output: ReviewOutput


# Plans and patches


@dataclass(frozen=True)
class PlanStep:
    step: str
    status: str


@dataclass(frozen=True, kw_only=True)
class PlanUpdateEvent(SessionEvent):
    plan: tuple[PlanStep, ...]
    explanation: str | None = None


@dataclass(frozen=True)
class PatchFileChange:
    """One file in a patch. Exactly one of add/update/delete is normally set."""

    kind: str
    content: str | None = None
    unified_diff: str | None = None
    move_path: str | None = None


@dataclass(frozen=True, kw_only=True)
class PatchApplyBeginEvent(SessionEvent):
    call_id: str
    auto_approved: bool | None = None
    changes: tuple[tuple[str, PatchFileChange], ...] = ()

    def changed_paths(self) -> list[str]:
        return [path for path, _ in self.changes]


@dataclass(frozen=True, kw_only=True)
class PatchApplyEndEvent(SessionEvent):
    call_id: str
    stdout: str | None = None
    stderr: str | None = None
    success: bool | None = None


@dataclass(frozen=True, kw_only=True)
class TaskStartedEvent(SessionEvent):
    model_context_window: int | None = None


@dataclass(frozen=True, kw_only=True)
class TaskCompleteEvent(SessionEvent):
    last_agent_message: str | None = None


# Response items


@dataclass(frozen=True, kw_only=True)
class ResponseItemPayload:
    payload_type: str


@dataclass(frozen=True, kw_only=True)
class ReasoningPayload(ResponseItemPayload):
    summary_texts: tuple[str, ...] = ()
    encrypted_content: str | None = None


@dataclass(frozen=True)
class TextContentPart:
    content_type: str
    text: str


@dataclass(frozen=True)
class ImageContentPart:
    content_type: str
    image_url: str


@dataclass(frozen=True)
class UnknownContentPart:
    content_type: str
    raw: Any = field(compare=False)


ContentPart = TextContentPart | ImageContentPart | UnknownContentPart


@dataclass(frozen=True, kw_only=True)
class MessagePayload(ResponseItemPayload):
    role: str | None = None
    content: tuple[ContentPart, ...] = ()

    @property
    def text_parts(self) -> list[str]:
        return [p.text for p in self.content if isinstance(p, TextContentPart) and p.text.strip()]


@dataclass(frozen=True, kw_only=True)
class FunctionCallPayload(ResponseItemPayload):
    name: str | None = None
    arguments_json: str | None = None
    call_id: str | None = None


@dataclass(frozen=True, kw_only=True)
class FunctionCallOutputPayload(ResponseItemPayload):
    call_id: str | None = None
    output: str | None = None


@dataclass(frozen=True, kw_only=True)
class CustomToolCallPayload(ResponseItemPayload):
    status: str | None = None
    call_id: str | None = None
    name: str | None = None
    input: str | None = None


@dataclass(frozen=True, kw_only=True)
class CustomToolCallOutputPayload(ResponseItemPayload):
    call_id: str | None = None
    output: str | None = None


@dataclass(frozen=True)
class WebSearchAction:
    type: str | None = None
    query: str | None = None
    queries: tuple[str, ...] | None = None


@dataclass(frozen=True, kw_only=True)
class WebSearchCallPayload(ResponseItemPayload):
    status: str | None = None
    action: WebSearchAction | None = None


@dataclass(frozen=True)
class GhostCommit:
    id: str | None = None
    parent: str | None = None
    preexisting_untracked_files: tuple[str, ...] | None = None
    preexisting_untracked_dirs: tuple[str, ...] | None = None


@dataclass(frozen=True, kw_only=True)
class GhostSnapshotPayload(ResponseItemPayload):
    ghost_commit: GhostCommit | None = None


@dataclass(frozen=True, kw_only=True)
class CompactionPayload(ResponseItemPayload):
    encrypted_content: str | None = None


@dataclass(frozen=True, kw_only=True)
class UnknownResponseItemPayload(ResponseItemPayload):
    raw: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True, kw_only=True)
class ResponseItemEvent(SessionEvent):
    payload_type: str
    payload: ResponseItemPayload


@dataclass(frozen=True, kw_only=True)
class CompactedEvent(SessionEvent):
    message: str
    replacement_history: tuple[ResponseItemPayload, ...] = ()
