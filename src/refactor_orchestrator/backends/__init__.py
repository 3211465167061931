from refactor_orchestrator.backends.base import (
    AgentBackend,
    BackendEventHook,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)
from refactor_orchestrator.backends.claude import ClaudeCodeBackend
from refactor_orchestrator.backends.codex import CodexBackend
from refactor_orchestrator.backends.openai_sdk import OpenAIBackend
from refactor_orchestrator.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "BackendEventHook",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "OpenAIBackend",
    "ResilientBackend",
    "RetryPolicy",
]
