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
from rollout_stream.events.parser import JsonlEventParser, parse_timestamp

__all__ = [
    "AgentMessageEvent",
    "AgentReasoningEvent",
    "AgentReasoningSectionBreakEvent",
    "BackgroundEvent",
    "CompactedEvent",
    "CompactionCheckpointWarningEvent",
    "CompactionPayload",
    "ContentPart",
    "ContextCompactedEvent",
    "CustomToolCallOutputPayload",
    "CustomToolCallPayload",
    "EnteredReviewModeEvent",
    "ErrorEvent",
    "ExitedReviewModeEvent",
    "FunctionCallOutputPayload",
    "FunctionCallPayload",
    "GhostCommit",
    "GhostSnapshotPayload",
    "ImageContentPart",
    "JsonlEventParser",
    "MessagePayload",
    "PatchApplyBeginEvent",
    "PatchApplyEndEvent",
    "PatchFileChange",
    "PlanStep",
    "PlanUpdateEvent",
    "RateLimitCredits",
    "RateLimitScope",
    "RateLimits",
    "ReasoningPayload",
    "ResponseItemEvent",
    "ResponseItemPayload",
    "ReviewCodeLocation",
    "ReviewFinding",
    "ReviewLineRange",
    "ReviewOutput",
    "ReviewTarget",
    "SessionEvent",
    "SessionMetaEvent",
    "TaskCompleteEvent",
    "TaskStartedEvent",
    "TextContentPart",
    "TokenCountEvent",
    "TokenUsage",
    "TurnAbortedEvent",
    "TurnContextEvent",
    "TurnDiffEvent",
    "UnknownContentPart",
    "UnknownEvent",
    "UnknownResponseItemPayload",
    "UserMessageEvent",
    "WebSearchAction",
    "WebSearchCallPayload",
    "parse_timestamp",
]
