"""Exception taxonomy for the agent.

Session errors are fatal for the current loop and are never retried.
Action errors are recovered at the plan level through fallback actions.
Injection errors make the injection system move on to its next strategy.
"""

from typing import Optional


class A11yBotError(Exception):
    """Base class for every error raised by a11y_bot."""


# ===== Session errors =====

class SessionError(A11yBotError):
    """The control-channel session can no longer be used."""


class SessionUnavailable(SessionError):
    """Attach failed: unknown tab, unreachable browser, or tab already attached."""


class SessionLost(SessionError):
    """The attached target closed or navigated away on its own."""


class PermissionDenied(SessionError):
    """The session does not have the capability a primitive needs."""

    def __init__(self, capability: str, message: Optional[str] = None):
        self.capability = capability
        super().__init__(message or f"Session lacks capability: {capability}")


# ===== Action errors =====

class ActionError(A11yBotError):
    """A single action failed; the plan's fallbacks may still succeed."""

    code = "ACTION_FAILED"
    retryable = True


class ElementNotFound(ActionError):
    code = "ELEMENT_NOT_FOUND"

    def __init__(self, selector: str):
        self.selector = selector
        super().__init__(f"Element not found: {selector}")


class ActionTimeout(ActionError):
    code = "ACTION_TIMEOUT"

    def __init__(self, action_type: str, timeout: float):
        self.action_type = action_type
        self.timeout = timeout
        super().__init__(f"Action '{action_type}' timed out after {timeout:.1f}s")


class UnsupportedAction(ActionError):
    code = "UNSUPPORTED_ACTION"
    retryable = False


class ProtocolError(ActionError):
    """The browser rejected a command, e.g. an invalid selector or a script error."""

    code = "PROTOCOL_ERROR"
    retryable = False


# ===== Injection errors =====

INJECTION_ERROR_CODES = (
    "CSP_VIOLATION",
    "CDP_UNAVAILABLE",
    "STYLESHEET_LOCKED",
    "ELEMENT_NOT_FOUND",
    "INVALID_CSS",
    "UNKNOWN",
)

_RETRYABLE_INJECTION_CODES = {"CDP_UNAVAILABLE", "STYLESHEET_LOCKED", "UNKNOWN"}


class InjectionError(A11yBotError):
    """A style injection strategy rejected the fix."""

    def __init__(self, code: str, message: str):
        if code not in INJECTION_ERROR_CODES:
            code = "UNKNOWN"
        self.code = code
        self.retryable = code in _RETRYABLE_INJECTION_CODES
        super().__init__(f"{code}: {message}")


def classify_injection_error(error: BaseException) -> InjectionError:
    """Map a raw failure from an injection attempt to an InjectionError."""
    if isinstance(error, InjectionError):
        return error
    if isinstance(error, ElementNotFound):
        return InjectionError("ELEMENT_NOT_FOUND", str(error))
    if isinstance(error, PermissionDenied):
        return InjectionError("CDP_UNAVAILABLE", str(error))

    message = str(error)
    lowered = message.lower()
    if "content security policy" in lowered or "csp" in lowered:
        return InjectionError("CSP_VIOLATION", message)
    if "cdp" in lowered or "protocol" in lowered or "css.enable" in lowered:
        return InjectionError("CDP_UNAVAILABLE", message)
    if "cssrules" in lowered or "cross-origin" in lowered or "securityerror" in lowered:
        return InjectionError("STYLESHEET_LOCKED", message)
    if "syntax" in lowered or "parse" in lowered or "invalid" in lowered:
        return InjectionError("INVALID_CSS", message)
    if "not found" in lowered:
        return InjectionError("ELEMENT_NOT_FOUND", message)
    return InjectionError("UNKNOWN", message)


# ===== Remediation bookkeeping =====

class InvalidTransition(A11yBotError):
    """A remediation task was moved to a status it may not reach."""

    def __init__(self, task_id: str, current: str, requested: str):
        self.task_id = task_id
        self.current = current
        self.requested = requested
        super().__init__(f"Task {task_id}: cannot move from '{current}' to '{requested}'")


class RollbackError(A11yBotError):
    """Some fixes could not be removed; the ones listed are still applied."""

    def __init__(self, message: str, remaining_fix_ids: list[str]):
        self.remaining_fix_ids = remaining_fix_ids
        super().__init__(message)
