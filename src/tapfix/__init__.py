"""tapfix package root."""

from tapfix.exceptions import SynthesisAborted, TapfixError, UnsupportedCallback

__all__ = ["__version__", "SynthesisAborted", "TapfixError", "UnsupportedCallback"]

__version__ = "0.1.0"
