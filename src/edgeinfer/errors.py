"""
Exception hierarchy for edgeinfer.

Load failures are atomic and surface as ModelLoadError. Generation failures
before any token is produced raise; failures mid-loop are reported through
GenerationResult.finish_reason instead.
"""


class EdgeInferError(Exception):
    """Base class for all edgeinfer errors."""


class ModelLoadError(EdgeInferError):
    """Model file missing, unreadable, or refused by the runtime."""


class TokenizationError(EdgeInferError):
    """The tokenizer produced no tokens for a prompt."""


class RuntimeDecodeError(EdgeInferError):
    """The runtime failed to decode the prompt tokens."""


class InvalidArgumentError(EdgeInferError, ValueError):
    """A caller-supplied argument is out of range."""


class InvalidRoleError(InvalidArgumentError):
    """A conversation turn used a role outside system/user/assistant."""


class InvalidSessionError(EdgeInferError):
    """Generation was requested on a released or never-valid session."""


class SessionBusyError(EdgeInferError):
    """A session received a second generation call while generating."""


class ModelNotFoundError(EdgeInferError):
    """A blob lookup matched no candidate, or more than one."""
