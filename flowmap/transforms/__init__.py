"""Value transforms applied to source fields before assignment."""

from .engine import TransformContext, TransformEngine, parse_transform_key
from .interactive import INTERACTIVE, Prompt, console_prompter, resolve_interactive

__all__ = [
    "TransformContext",
    "TransformEngine",
    "parse_transform_key",
    "INTERACTIVE",
    "Prompt",
    "console_prompter",
    "resolve_interactive",
]
