"""Resilient JSONL parser turning rollout lines into typed events.

Malformed or incomplete lines never raise: they are logged and skipped so a
single bad record cannot stop a long-running tail. Unrecognised record types
become :class:`UnknownEvent` with the original object attached.
"""

from __future__ import annotations

import json
import re
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

from loguru import logger

from rollout_stream.events.models import (
    AgentMessageEvent,
    AgentReasoningEvent,
    AgentReasoningSectionBreakEvent,
    BackgroundEvent,
    CompactedEvent,
    CompactionCheckpointWarningEvent,
    CompactionPayload,
    ContentPart,
    ContextCompactedEvent,
    CustomToolCallOutputPayload,
    CustomToolCallPayload,
    EnteredReviewModeEvent,
    ErrorEvent,
    ExitedReviewModeEvent,
    FunctionCallOutputPayload,
    FunctionCallPayload,
    GhostCommit,
    GhostSnapshotPayload,
    ImageContentPart,
    MessagePayload,
    PatchApplyBeginEvent,
    PatchApplyEndEvent,
    PatchFileChange,
    PlanStep,
    PlanUpdateEvent,
    RateLimitCredits,
    RateLimits,
    RateLimitScope,
    ReasoningPayload,
    ResponseItemEvent,
    ResponseItemPayload,
    ReviewCodeLocation,
    ReviewFinding,
    ReviewLineRange,
    ReviewOutput,
    ReviewTarget,
    SessionEvent,
    SessionMetaEvent,
    TaskCompleteEvent,
    TaskStartedEvent,
    TextContentPart,
    TokenCountEvent,
    TokenUsage,
    TurnAbortedEvent,
    TurnContextEvent,
    TurnDiffEvent,
    UnknownContentPart,
    UnknownEvent,
    UnknownResponseItemPayload,
    UserMessageEvent,
    WebSearchAction,
    WebSearchCallPayload,
)

_FRACTION_RE = re.compile(r"\.(\d{7,})")
_PREVIEW_CHARS = 200


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Values without an offset are read as UTC. Returns None if unparsable.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    # datetime only keeps microseconds; producers may write nanoseconds.
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6], text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _preview(line: str) -> str:
    return line if len(line) <= _PREVIEW_CHARS else line[:_PREVIEW_CHARS] + "..."


def _str(obj: dict, key: str) -> str | None:
    value = obj.get(key)
    return value if isinstance(value, str) else None


def _int(obj: dict, key: str) -> int | None:
    value = obj.get(key)
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _float(obj: dict, key: str) -> float | None:
    value = obj.get(key)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


def _bool(obj: dict, key: str) -> bool | None:
    value = obj.get(key)
    return value if isinstance(value, bool) else None


def _dict(obj: dict, key: str) -> dict | None:
    value = obj.get(key)
    return value if isinstance(value, dict) else None


def _str_tuple(obj: dict, key: str) -> tuple[str, ...] | None:
    value = obj.get(key)
    if not isinstance(value, list):
        return None
    return tuple(item for item in value if isinstance(item, str))


class JsonlEventParser:
    """Parses rollout lines into :class:`SessionEvent` instances, 0 or 1 per line."""

    async def parse(self, lines: AsyncIterable[str]) -> AsyncIterator[SessionEvent]:
        async for line in lines:
            event = self.parse_line(line)
            if event is not None:
                yield event

    def parse_all(self, lines: Iterable[str]) -> list[SessionEvent]:
        return [event for event in map(self.parse_line, lines) if event is not None]

    def parse_line(self, line: str) -> SessionEvent | None:
        if not line or not line.strip():
            logger.trace("Skipping blank line")
            return None

        try:
            root = json.loads(line)
        except json.JSONDecodeError as ex:
            logger.warning(f"Skipping malformed JSON line ({ex.msg}): {_preview(line)}")
            return None
        except RecursionError:
            logger.warning(f"Skipping JSON line nested too deeply to decode: {_preview(line)}")
            return None

        if not isinstance(root, dict):
            logger.warning(f"Skipping non-object JSON line: {_preview(line)}")
            return None

        raw_ts = root.get("timestamp")
        if raw_ts is None or raw_ts == "":
            logger.warning(f"Event missing 'timestamp' field, skipping: {_preview(line)}")
            return None
        record_type = root.get("type")
        if not isinstance(record_type, str) or not record_type.strip():
            logger.warning(f"Event missing 'type' field, skipping: {_preview(line)}")
            return None
        timestamp = parse_timestamp(raw_ts)
        if timestamp is None:
            logger.warning(f"Event has unparsable timestamp {raw_ts!r}, skipping")
            return None

        try:
            return self._dispatch(root, record_type, timestamp)
        except (TypeError, ValueError, OverflowError, OSError) as ex:
            logger.warning(f"Skipping {record_type} event with unexpected field shapes: {ex}")
            return None

    def _dispatch(self, root: dict, record_type: str, timestamp: datetime) -> SessionEvent | None:
        payload = root.get("payload")
        body = payload if isinstance(payload, dict) else {}

        match record_type:
            case "session_meta":
                return self._session_meta(root, body, timestamp)
            case "turn_context":
                return self._turn_context(root, body, timestamp)
            case "response_item":
                return self._response_item(root, body, timestamp)
            case "compacted":
                return self._compacted(root, body, timestamp)
            case "event_msg":
                return self._event_msg(root, payload, timestamp)
            case "user_message" | "agent_message" | "agent_reasoning" | "token_count":
                return self._inner_event(root, record_type, body, timestamp)
            case _:
                return UnknownEvent(timestamp=timestamp, type=record_type, raw_payload=root)

    def _event_msg(self, root: dict, payload: Any, timestamp: datetime) -> SessionEvent | None:
        if not isinstance(payload, dict):
            logger.warning("event_msg missing 'payload' object, skipping")
            return None

        inner_type = _str(payload, "type")
        body = payload
        if not inner_type:
            msg = _dict(payload, "msg")
            if msg is not None:
                inner_type = _str(msg, "type")
                body = msg
        if not inner_type:
            logger.debug("event_msg without inner type; returning unknown event")
            return UnknownEvent(timestamp=timestamp, type="event_msg", raw_payload=root)

        return self._inner_event(root, inner_type, body, timestamp)

    def _inner_event(self, root: dict, kind: str, body: dict, ts: datetime) -> SessionEvent | None:
        match kind:
            case "user_message":
                text = self._required_str(body, "message", kind)
                if text is None:
                    return None
                images = _str_tuple(body, "images") or ()
                return UserMessageEvent(timestamp=ts, type=kind, raw_payload=root, text=text, images=images)
            case "agent_message":
                text = self._required_str(body, "message", kind)
                if text is None:
                    return None
                return AgentMessageEvent(timestamp=ts, type=kind, raw_payload=root, text=text)
            case "agent_reasoning":
                text = self._required_str(body, "text", kind)
                if text is None:
                    return None
                return AgentReasoningEvent(timestamp=ts, type=kind, raw_payload=root, text=text)
            case "agent_reasoning_section_break":
                return AgentReasoningSectionBreakEvent(timestamp=ts, type=kind, raw_payload=root)
            case "token_count":
                return self._token_count(root, kind, body, ts)
            case "turn_aborted":
                reason = self._required_str(body, "reason", kind)
                if reason is None:
                    return None
                return TurnAbortedEvent(timestamp=ts, type=kind, raw_payload=root, reason=reason)
            case "turn_diff":
                diff = self._required_str(body, "unified_diff", kind)
                if diff is None:
                    return None
                return TurnDiffEvent(timestamp=ts, type=kind, raw_payload=root, unified_diff=diff)
            case "background_event":
                message = self._required_str(body, "message", kind)
                if message is None:
                    return None
                return BackgroundEvent(timestamp=ts, type=kind, raw_payload=root, message=message)
            case "compaction_checkpoint_warning":
                message = self._required_str(body, "message", kind)
                if message is None:
                    return None
                return CompactionCheckpointWarningEvent(timestamp=ts, type=kind, raw_payload=root, message=message)
            case "error":
                message = self._required_str(body, "message", kind)
                if message is None:
                    return None
                return ErrorEvent(timestamp=ts, type=kind, raw_payload=root, message=message)
            case "entered_review_mode":
                return self._entered_review_mode(root, kind, body, ts)
            case "exited_review_mode":
                return self._exited_review_mode(root, kind, body, ts)
            case "plan_update":
                return self._plan_update(root, kind, body, ts)
            case "patch_apply_begin":
                return self._patch_apply_begin(root, kind, body, ts)
            case "patch_apply_end":
                call_id = self._required_str(body, "call_id", kind)
                if call_id is None:
                    return None
                return PatchApplyEndEvent(
                    timestamp=ts,
                    type=kind,
                    raw_payload=root,
                    call_id=call_id,
                    stdout=_str(body, "stdout"),
                    stderr=_str(body, "stderr"),
                    success=_bool(body, "success"),
                )
            case "task_started":
                return TaskStartedEvent(
                    timestamp=ts, type=kind, raw_payload=root, model_context_window=_int(body, "model_context_window")
                )
            case "task_complete":
                return TaskCompleteEvent(
                    timestamp=ts, type=kind, raw_payload=root, last_agent_message=_str(body, "last_agent_message")
                )
            case "context_compacted":
                return ContextCompactedEvent(timestamp=ts, type=kind, raw_payload=root)
            case _:
                return UnknownEvent(timestamp=ts, type=kind, raw_payload=root)

    @staticmethod
    def _required_str(body: dict, key: str, kind: str) -> str | None:
        value = body.get(key)
        if not isinstance(value, str):
            logger.warning(f"{kind} event missing '{key}' field, skipping")
            return None
        return value

    # -- top-level records --

    def _session_meta(self, root: dict, body: dict, ts: datetime) -> SessionMetaEvent | None:
        session_id = _str(body, "id")
        if not session_id or not session_id.strip():
            logger.warning("session_meta event missing 'payload.id' field, skipping")
            return None
        return SessionMetaEvent(
            timestamp=ts,
            type="session_meta",
            raw_payload=root,
            session_id=session_id,
            cwd=_str(body, "cwd"),
            model=_str(body, "model") or _str(body, "model_provider"),
            originator=_str(body, "originator"),
            cli_version=_str(body, "cli_version"),
        )

    def _turn_context(self, root: dict, body: dict, ts: datetime) -> TurnContextEvent:
        sandbox_type = _str(body, "sandbox_policy_type")
        network_access = None
        sandbox = _dict(body, "sandbox_policy")
        if sandbox is not None:
            sandbox_type = _str(sandbox, "type") or sandbox_type
            network_access = _bool(sandbox, "network_access")
        return TurnContextEvent(
            timestamp=ts,
            type="turn_context",
            raw_payload=root,
            cwd=_str(body, "cwd"),
            model=_str(body, "model"),
            approval_policy=_str(body, "approval_policy"),
            sandbox_policy_type=sandbox_type,
            network_access=network_access,
        )

    def _response_item(self, root: dict, body: dict, ts: datetime) -> ResponseItemEvent | None:
        payload = self.parse_response_item_payload(body)
        if payload is None:
            logger.warning("response_item event missing 'payload.type' field, skipping")
            return None
        return ResponseItemEvent(
            timestamp=ts,
            type="response_item",
            raw_payload=root,
            payload_type=payload.payload_type,
            payload=payload,
        )

    def _compacted(self, root: dict, body: dict, ts: datetime) -> CompactedEvent | None:
        message = _str(body, "message")
        if message is None:
            logger.warning("compacted event missing 'message' field, skipping")
            return None
        history: list[ResponseItemPayload] = []
        history_items = body.get("replacement_history")
        for item in history_items if isinstance(history_items, list) else []:
            if isinstance(item, dict) and (parsed := self.parse_response_item_payload(item)) is not None:
                history.append(parsed)
        return CompactedEvent(
            timestamp=ts, type="compacted", raw_payload=root, message=message, replacement_history=tuple(history)
        )

    # -- token counts --

    def _token_count(self, root: dict, kind: str, body: dict, ts: datetime) -> TokenCountEvent:
        total_usage = last_usage = None
        context_window = None
        info = _dict(body, "info")
        if info is not None:
            total_usage = self._token_usage(_dict(info, "total_token_usage"))
            last_usage = self._token_usage(_dict(info, "last_token_usage"))
            context_window = _int(info, "model_context_window")

        # The nested totals win over the older flat counters.
        if total_usage is not None:
            input_tokens = total_usage.input_tokens
            output_tokens = total_usage.output_tokens
            reasoning_tokens = total_usage.reasoning_output_tokens
        else:
            input_tokens = _int(body, "input_tokens")
            output_tokens = _int(body, "output_tokens")
            reasoning_tokens = _int(body, "reasoning_output_tokens")

        rate_limits = _dict(body, "rate_limits")
        return TokenCountEvent(
            timestamp=ts,
            type=kind,
            raw_payload=root,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            reasoning_tokens=reasoning_tokens,
            total_token_usage=total_usage,
            last_token_usage=last_usage,
            model_context_window=context_window,
            rate_limits=self._rate_limits(rate_limits, ts) if rate_limits is not None else None,
        )

    @staticmethod
    def _token_usage(obj: dict | None) -> TokenUsage | None:
        if obj is None:
            return None
        return TokenUsage(
            input_tokens=_int(obj, "input_tokens"),
            cached_input_tokens=_int(obj, "cached_input_tokens"),
            output_tokens=_int(obj, "output_tokens"),
            reasoning_output_tokens=_int(obj, "reasoning_output_tokens"),
            total_tokens=_int(obj, "total_tokens"),
        )

    def _rate_limits(self, obj: dict, ts: datetime) -> RateLimits:
        credits = _dict(obj, "credits")
        balance = credits.get("balance") if credits is not None else None
        return RateLimits(
            primary=self._rate_limit_scope(_dict(obj, "primary"), ts),
            secondary=self._rate_limit_scope(_dict(obj, "secondary"), ts),
            credits=(
                RateLimitCredits(
                    has_credits=_bool(credits, "has_credits"),
                    unlimited=_bool(credits, "unlimited"),
                    balance=None if balance is None else str(balance),
                )
                if credits is not None
                else None
            ),
        )

    @staticmethod
    def _rate_limit_scope(obj: dict | None, ts: datetime) -> RateLimitScope | None:
        if obj is None:
            return None
        resets_at = None
        raw_reset = obj.get("resets_at")
        if isinstance(raw_reset, str):
            try:
                raw_reset = float(raw_reset)
            except ValueError:
                resets_at = parse_timestamp(raw_reset)
                raw_reset = None
        if isinstance(raw_reset, (int, float)) and not isinstance(raw_reset, bool):
            resets_at = datetime.fromtimestamp(raw_reset, UTC)
        elif resets_at is None:
            resets_in = _float(obj, "resets_in_seconds")
            if resets_in is not None:
                resets_at = ts + timedelta(seconds=resets_in)
        return RateLimitScope(
            used_percent=_float(obj, "used_percent"),
            window_minutes=_int(obj, "window_minutes"),
            resets_at=resets_at,
        )

    # -- review mode --

    def _entered_review_mode(self, root: dict, kind: str, body: dict, ts: datetime) -> EnteredReviewModeEvent:
        target = None
        target_obj = _dict(body, "target")
        if target_obj is not None and (target_type := _str(target_obj, "type")):
            target = ReviewTarget(
                type=target_type,
                branch=_str(target_obj, "branch"),
                sha=_str(target_obj, "sha"),
                title=_str(target_obj, "title"),
                instructions=_str(target_obj, "instructions"),
            )
        return EnteredReviewModeEvent(
            timestamp=ts,
            type=kind,
            raw_payload=root,
            prompt=_str(body, "prompt"),
            user_facing_hint=_str(body, "user_facing_hint"),
            target=target,
        )

    def _exited_review_mode(self, root: dict, kind: str, body: dict, ts: datetime) -> ExitedReviewModeEvent | None:
        output = _dict(body, "review_output")
        if output is None:
            logger.warning(f"{kind} event missing 'review_output' object, skipping")
            return None

        findings = []
        for item in output.get("findings") or []:
            if not isinstance(item, dict):
                continue
            location = None
            loc_obj = _dict(item, "code_location")
            if loc_obj is not None:
                range_obj = _dict(loc_obj, "line_range")
                location = ReviewCodeLocation(
                    absolute_file_path=_str(loc_obj, "absolute_file_path"),
                    line_range=(
                        ReviewLineRange(start=_int(range_obj, "start"), end=_int(range_obj, "end"))
                        if range_obj is not None
                        else None
                    ),
                )
            findings.append(
                ReviewFinding(
                    priority=_int(item, "priority"),
                    confidence_score=_float(item, "confidence_score"),
                    title=_str(item, "title"),
                    body=_str(item, "body"),
                    code_location=location,
                )
            )

        review = ReviewOutput(
            overall_correctness=_str(output, "overall_correctness"),
            overall_explanation=_str(output, "overall_explanation"),
            overall_confidence_score=_float(output, "overall_confidence_score"),
            findings=tuple(findings),
        )
        return ExitedReviewModeEvent(timestamp=ts, type=kind, raw_payload=root, review_output=review)

    # -- plans and patches --

    def _plan_update(self, root: dict, kind: str, body: dict, ts: datetime) -> PlanUpdateEvent | None:
        plan = body.get("plan")
        if not isinstance(plan, list):
            logger.warning(f"{kind} event missing 'plan' list, skipping")
            return None
        steps = tuple(
            PlanStep(step=_str(item, "step") or "", status=_str(item, "status") or "")
            for item in plan
            if isinstance(item, dict)
        )
        return PlanUpdateEvent(
            timestamp=ts,
            type=kind,
            raw_payload=root,
            plan=steps,
            explanation=_str(body, "explanation") or _str(body, "name"),
        )

    def _patch_apply_begin(self, root: dict, kind: str, body: dict, ts: datetime) -> PatchApplyBeginEvent | None:
        call_id = self._required_str(body, "call_id", kind)
        if call_id is None:
            return None
        changes: list[tuple[str, PatchFileChange]] = []
        for path, change in (_dict(body, "changes") or {}).items():
            if isinstance(change, dict):
                changes.append((path, self._file_change(change)))
        return PatchApplyBeginEvent(
            timestamp=ts,
            type=kind,
            raw_payload=root,
            call_id=call_id,
            auto_approved=_bool(body, "auto_approved"),
            changes=tuple(changes),
        )

    @staticmethod
    def _file_change(change: dict) -> PatchFileChange:
        if (add := _dict(change, "add")) is not None:
            return PatchFileChange(kind="add", content=_str(add, "content"))
        if (update := _dict(change, "update")) is not None:
            return PatchFileChange(
                kind="update", unified_diff=_str(update, "unified_diff"), move_path=_str(update, "move_path")
            )
        if "delete" in change:
            return PatchFileChange(kind="delete")
        # Newer producers flatten the change into {"type": ..., ...}.
        kind = _str(change, "type") or "unknown"
        return PatchFileChange(
            kind=kind,
            content=_str(change, "content"),
            unified_diff=_str(change, "unified_diff"),
            move_path=_str(change, "move_path"),
        )

    # -- response items --

    def parse_response_item_payload(self, body: dict) -> ResponseItemPayload | None:
        """Parse the body of a ``response_item`` record; None if it has no type."""
        payload_type = _str(body, "type")
        if not payload_type:
            return None

        match payload_type:
            case "reasoning":
                summary = tuple(
                    text
                    for part in body.get("summary") or []
                    if isinstance(part, dict) and (text := _str(part, "text")) is not None
                )
                return ReasoningPayload(
                    payload_type=payload_type,
                    summary_texts=summary,
                    encrypted_content=_str(body, "encrypted_content"),
                )
            case "message":
                content = tuple(
                    self._content_part(part) for part in body.get("content") or [] if isinstance(part, dict)
                )
                return MessagePayload(payload_type=payload_type, role=_str(body, "role"), content=content)
            case "function_call":
                arguments = body.get("arguments")
                if arguments is not None and not isinstance(arguments, str):
                    arguments = json.dumps(arguments, ensure_ascii=False)
                return FunctionCallPayload(
                    payload_type=payload_type,
                    name=_str(body, "name"),
                    arguments_json=arguments,
                    call_id=_str(body, "call_id"),
                )
            case "function_call_output":
                return FunctionCallOutputPayload(
                    payload_type=payload_type, call_id=_str(body, "call_id"), output=self._output_text(body)
                )
            case "custom_tool_call":
                return CustomToolCallPayload(
                    payload_type=payload_type,
                    status=_str(body, "status"),
                    call_id=_str(body, "call_id"),
                    name=_str(body, "name"),
                    input=_str(body, "input"),
                )
            case "custom_tool_call_output":
                return CustomToolCallOutputPayload(
                    payload_type=payload_type, call_id=_str(body, "call_id"), output=self._output_text(body)
                )
            case "web_search_call":
                action = None
                action_obj = _dict(body, "action")
                if action_obj is not None:
                    action = WebSearchAction(
                        type=_str(action_obj, "type"),
                        query=_str(action_obj, "query"),
                        queries=_str_tuple(action_obj, "queries"),
                    )
                return WebSearchCallPayload(payload_type=payload_type, status=_str(body, "status"), action=action)
            case "ghost_snapshot":
                commit = None
                commit_obj = _dict(body, "ghost_commit")
                if commit_obj is not None:
                    commit = GhostCommit(
                        id=_str(commit_obj, "id"),
                        parent=_str(commit_obj, "parent"),
                        preexisting_untracked_files=_str_tuple(commit_obj, "preexisting_untracked_files"),
                        preexisting_untracked_dirs=_str_tuple(commit_obj, "preexisting_untracked_dirs"),
                    )
                return GhostSnapshotPayload(payload_type=payload_type, ghost_commit=commit)
            case "compaction" | "compaction_summary":
                return CompactionPayload(payload_type=payload_type, encrypted_content=_str(body, "encrypted_content"))
            case _:
                return UnknownResponseItemPayload(payload_type=payload_type, raw=body)

    @staticmethod
    def _content_part(part: dict) -> ContentPart:
        content_type = _str(part, "type") or "unknown"
        match content_type:
            case "input_text" | "output_text" if isinstance(part.get("text"), str):
                return TextContentPart(content_type=content_type, text=part["text"])
            case "input_image" if isinstance(part.get("image_url"), str):
                return ImageContentPart(content_type=content_type, image_url=part["image_url"])
            case _:
                return UnknownContentPart(content_type=content_type, raw=part)

    @staticmethod
    def _output_text(body: dict) -> str | None:
        output = body.get("output")
        if output is None or isinstance(output, str):
            return output
        # Structured outputs are kept as their JSON text.
        return json.dumps(output, ensure_ascii=False)
