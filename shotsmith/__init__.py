"""shotsmith: orchestration engine for storyboard image and video generation."""

from shotsmith.batch import BatchCoordinator, BatchReport
from shotsmith.completion import CompletionClient, SSEDecoder
from shotsmith.config import Config, load_config
from shotsmith.director import Director, Session
from shotsmith.errors import (
    ApiKeyError,
    ConfigError,
    ContentPolicyError,
    DownloadError,
    GenerationError,
    HttpError,
    JobTimeoutError,
    NetworkError,
    ParseError,
    RateLimitError,
    RequestTimeoutError,
    ServerBusyError,
    TaskFailedError,
)
from shotsmith.models import GenerationRequest, ProjectState, ResolvedModel
from shotsmith.resolver import ModelResolver
from shotsmith.retry import retry
from shotsmith.state import EntityStateMachine, ProjectStore, apply_update, recover_orphans
from shotsmith.video import VideoJobRunner

__all__ = [
    "ApiKeyError",
    "BatchCoordinator",
    "BatchReport",
    "CompletionClient",
    "Config",
    "ConfigError",
    "ContentPolicyError",
    "Director",
    "DownloadError",
    "EntityStateMachine",
    "GenerationError",
    "GenerationRequest",
    "HttpError",
    "JobTimeoutError",
    "ModelResolver",
    "NetworkError",
    "ParseError",
    "ProjectState",
    "ProjectStore",
    "RateLimitError",
    "RequestTimeoutError",
    "ResolvedModel",
    "SSEDecoder",
    "ServerBusyError",
    "Session",
    "TaskFailedError",
    "VideoJobRunner",
    "apply_update",
    "load_config",
    "recover_orphans",
    "retry",
]
