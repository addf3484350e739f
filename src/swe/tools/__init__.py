"""Tool integrations used by the pipeline runtime."""

from .modifier import FileModifier, ModificationError, RollbackError
from .resilience import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    OperationTimeoutError,
    RetryPolicy,
    execute_batch,
    retry,
    with_timeout,
)
from .search import KeywordLocator
from .vcs import GitError, GitFinalizer, GitRepository
from .verifier import CommandVerifier

__all__ = [
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    "CommandVerifier",
    "FileModifier",
    "GitError",
    "GitFinalizer",
    "GitRepository",
    "KeywordLocator",
    "ModificationError",
    "OperationTimeoutError",
    "RetryPolicy",
    "RollbackError",
    "execute_batch",
    "retry",
    "with_timeout",
]
