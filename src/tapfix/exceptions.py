"""Exception types raised while rewriting completion callbacks."""

from __future__ import annotations


class TapfixError(Exception):
    """Base class for tapfix errors."""


class UnsupportedCallback(TapfixError):
    """The call site has a shape the rewrite does not handle.

    This is not a failure: the site is reported as skipped and left untouched.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class SynthesisAborted(TapfixError):
    """The listener could not be built for one call site.

    Raised when a type the listener needs (the element type or the error
    type) cannot be resolved. Other sites in the same pass are unaffected.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason
