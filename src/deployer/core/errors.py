"""
Structured error types for the deployer.

Every failure the deployer can observe maps onto one class below. Each class
carries a category so the dispatch loop and the service can decide, without
string matching, whether an error is contained (logged, message discarded)
or fatal (propagates to process exit).

Manifesto:
    - **Typed hierarchy:** one class per failure kind
    - **Rich context:** errors carry tag / delivery / action metadata
    - **Error chaining:** the underlying exception is kept as ``cause``

Architecture:
    ::

        DeployerError (category, context, cause)
          ├── ConfigError             CONFIG      fatal at startup only
          ├── MessageDecodeError      DECODE      message discarded
          ├── UnknownDeployableError  LOOKUP      message discarded
          ├── MissingDataError        VALIDATION  message discarded
          ├── ActionError             EXECUTION   pipeline stops
          ├── BrokerError             BROKER      dispatch loop stops
          └── PoolError               CAPACITY
                ├── PoolSaturatedError
                └── PoolClosedError

Tags:
    deployer, error-handling, exception-hierarchy
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error categories used for routing and log fields."""

    CONFIG = "CONFIG"
    DECODE = "DECODE"
    LOOKUP = "LOOKUP"
    VALIDATION = "VALIDATION"
    EXECUTION = "EXECUTION"
    BROKER = "BROKER"
    CAPACITY = "CAPACITY"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Only fields that are set end up in :meth:`to_dict`.
    """

    tag: str | None = None
    delivery_id: int | None = None
    action_index: int | None = None
    path: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["tag", "delivery_id", "action_index", "path"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class DeployerError(Exception):
    """Base exception for all deployer errors.

    Subclasses set ``default_category``. ``fatal`` marks errors that must
    stop the process instead of being contained per message.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    fatal: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> DeployerError:
        """
        Add context to this error (fluent API).

        Usage:
            raise ConfigError("bad file").with_context(path="/etc/deployer.yml")
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CONFIGURATION
# =============================================================================


class ConfigError(DeployerError):
    """Settings or pipeline definition file could not be loaded."""

    default_category = ErrorCategory.CONFIG


# =============================================================================
# PER-MESSAGE ERRORS (contained by the dispatcher)
# =============================================================================


class MessageDecodeError(DeployerError):
    """Inbound message body is not a valid deploy request."""

    default_category = ErrorCategory.DECODE


class UnknownDeployableError(DeployerError):
    """No pipeline is configured for the requested tag."""

    default_category = ErrorCategory.LOOKUP

    def __init__(self, tag: str, **kwargs: Any):
        self.tag = tag
        super().__init__(f"unknown deployable: {tag!r}", **kwargs)


class MissingDataError(DeployerError):
    """Request data lacks keys the pipeline requires."""

    default_category = ErrorCategory.VALIDATION

    def __init__(self, tag: str, missing: list[str], **kwargs: Any):
        self.tag = tag
        self.missing = list(missing)
        super().__init__(
            f"deployable {tag!r} is missing data: {', '.join(self.missing)}",
            **kwargs,
        )


# =============================================================================
# EXECUTION
# =============================================================================


class ActionError(DeployerError):
    """An action of a pipeline did not succeed.

    ``index`` names the stopping point; actions after it were never started.
    ``exit_code`` is set when the process ran and exited non-zero.
    """

    default_category = ErrorCategory.EXECUTION

    def __init__(
        self,
        tag: str,
        index: int,
        reason: str,
        *,
        exit_code: int | None = None,
        cause: BaseException | None = None,
    ):
        self.tag = tag
        self.index = index
        self.reason = reason
        self.exit_code = exit_code
        super().__init__(
            f"action {index} {reason}",
            context=ErrorContext(tag=tag, action_index=index),
            cause=cause,
        )


# =============================================================================
# BROKER
# =============================================================================


class BrokerError(DeployerError):
    """Connection or channel failure talking to the message broker."""

    default_category = ErrorCategory.BROKER
    fatal = True


# =============================================================================
# WORKER POOL
# =============================================================================


class PoolError(DeployerError):
    """Worker pool admission failure."""

    default_category = ErrorCategory.CAPACITY


class PoolSaturatedError(PoolError):
    """The pending queue is full; the request was not admitted."""

    def __init__(self, pending: int, **kwargs: Any):
        self.pending = pending
        super().__init__(f"worker pool saturated ({pending} pending)", **kwargs)


class PoolClosedError(PoolError):
    """The pool is shutting down and accepts no new work."""


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "DeployerError",
    "ConfigError",
    "MessageDecodeError",
    "UnknownDeployableError",
    "MissingDataError",
    "ActionError",
    "BrokerError",
    "PoolError",
    "PoolSaturatedError",
    "PoolClosedError",
]
