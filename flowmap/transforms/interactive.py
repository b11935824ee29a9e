from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from ..errors import MappingStructureError
from .engine import TransformEngine, parse_transform_key
from .numeric import as_number

"""Interactive transforms.

Some transforms need parameters a mapping author may leave out (``round``
instead of ``round:2``). ``resolve_interactive`` turns every such bare key
into a concrete key string before the run starts, either by asking a
prompter or by falling back to the prompt defaults. Row processing only ever
sees concrete keys.
"""

__all__ = [
    "Prompt",
    "InteractiveTransform",
    "INTERACTIVE",
    "Prompter",
    "resolve_interactive",
    "console_prompter",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Prompt:
    label: str
    hint: str = ""
    examples: tuple[str, ...] = ()
    default: str | None = None


@dataclass(frozen=True)
class InteractiveTransform:
    name: str
    prompts: tuple[Prompt, ...]
    build: Callable[[list[str | None]], str | None]


Prompter = Callable[[Prompt], "str | None"]


def _numeric_key(name: str, *, nonzero: bool = False) -> Callable[[list[str | None]], str | None]:
    def build(responses: list[str | None]) -> str | None:
        raw = (responses[0] or "").strip() if responses else ""
        number = as_number(raw)
        if number is None or (nonzero and float(number) == 0):
            return None
        return f"{name}:{raw}"
    return build


def _text_key(name: str, *, allow_empty: bool = False) -> Callable[[list[str | None]], str | None]:
    def build(responses: list[str | None]) -> str | None:
        value = responses[0] if responses else None
        if value is None or (value == "" and not allow_empty):
            return None
        return f"{name}:{value}"
    return build


def _regex_key(responses: list[str | None]) -> str | None:
    pattern = responses[0] if responses else None
    if not pattern:
        return None
    replacement = responses[1] if len(responses) > 1 and responses[1] is not None else ""
    if not (replacement.startswith('"') and replacement.endswith('"') and len(replacement) >= 2):
        replacement = f'"{replacement}"'
    return f"regex_replace({pattern}, {replacement})"


INTERACTIVE: dict[str, InteractiveTransform] = {
    t.name: t
    for t in (
        InteractiveTransform(
            "truncate",
            (Prompt("Enter max length", "Maximum number of characters", ("50", "100", "255"), "255"),),
            _numeric_key("truncate", nonzero=True),
        ),
        InteractiveTransform(
            "round",
            (Prompt("Enter decimal places", "Number of decimal places to round to",
                    ("0 (integer)", "2 (cents)", "4 (precision)"), "2"),),
            _numeric_key("round"),
        ),
        InteractiveTransform(
            "multiply",
            (Prompt("Enter multiplier", "Factor to multiply by", ("100 (to cents)", "1.1 (10% increase)")),),
            _numeric_key("multiply"),
        ),
        InteractiveTransform(
            "divide",
            (Prompt("Enter divisor", "Number to divide by", ("100 (from cents)", "1000 (to thousands)")),),
            _numeric_key("divide", nonzero=True),
        ),
        InteractiveTransform(
            "parse_date",
            (Prompt("What format is your data in?", "strptime directives: %d day, %m month, %Y year",
                    ("%d/%m/%Y (31/12/2024)", "%m/%d/%Y (12/31/2024)", "%Y-%m-%d (2024-12-31)"),
                    "%d/%m/%Y"),),
            _text_key("parse_date"),
        ),
        InteractiveTransform(
            "date_format",
            (Prompt("What output format do you want?", "strftime directives",
                    ("%Y-%m-%d (2024-12-31)", "%d/%m/%Y (31/12/2024)", "%B %d, %Y (December 31, 2024)"),
                    "%Y-%m-%d"),),
            _text_key("date_format"),
        ),
        InteractiveTransform(
            "split",
            (Prompt("Enter delimiter", "Character(s) to split on", (", (comma)", "| (pipe)", "; (semicolon)"), ","),),
            _text_key("split"),
        ),
        InteractiveTransform(
            "prefix",
            (Prompt("Enter prefix text", "Text to add before the value", ("SKU-", "ID_")),),
            _text_key("prefix"),
        ),
        InteractiveTransform(
            "suffix",
            (Prompt("Enter suffix text", "Text to add after the value", ("-EU", "_old")),),
            _text_key("suffix"),
        ),
        InteractiveTransform(
            "default",
            (Prompt("Enter default value", "Used when the field is empty or null", ("0", "N/A", "unknown")),),
            _text_key("default"),
        ),
        InteractiveTransform(
            "coalesce",
            (Prompt("Enter fallback value", "Value to use when field is empty/null", ("N/A", "0", "-")),),
            _text_key("coalesce", allow_empty=True),
        ),
        InteractiveTransform(
            "regex_replace",
            (
                Prompt("Enter regex pattern", "Pattern, optionally as /pattern/flags", (r"/\s+/", "/[^a-z]/i")),
                Prompt("Enter replacement", "Use $1, $2 for captured groups", ('" "', '"-"', '""')),
            ),
            _regex_key,
        ),
    )
}


def _needs_parameters(key: str) -> bool:
    parsed = parse_transform_key(key)
    return parsed.name in INTERACTIVE and parsed.param is None and parsed.args is None


def resolve_interactive(
    chain: Sequence[str],
    engine: TransformEngine | None = None,
    prompter: Prompter | None = None,
) -> tuple[str, ...]:
    """Return ``chain`` with every bare interactive key replaced by a concrete one.

    Without a prompter the prompt defaults are used. A transform whose
    prompts yield no usable parameters raises MappingStructureError. The resolved
    chain is validated against ``engine`` when one is given.
    """
    resolved: list[str] = []
    for key in chain:
        if not _needs_parameters(key):
            resolved.append(key)
            continue
        entry = INTERACTIVE[parse_transform_key(key).name]
        responses: list[str | None] = []
        for prompt in entry.prompts:
            answer = prompter(prompt) if prompter is not None else None
            if answer is None or answer == "":
                answer = prompt.default if prompt.default is not None else answer
            responses.append(answer)
        concrete = entry.build(responses)
        if concrete is None:
            raise MappingStructureError(f"Transform '{key}' needs parameters: {entry.prompts[0].label}")
        logger.debug("interactive transform %s resolved to %s", key, concrete)
        resolved.append(concrete)
    if engine is not None:
        engine.validate(resolved)
    return tuple(resolved)


def console_prompter(prompt: Prompt) -> str | None:
    """Ask on stdin; an empty answer selects the default."""
    lines = [prompt.label]
    if prompt.hint:
        lines.append(f"  {prompt.hint}")
    if prompt.examples:
        lines.append("  e.g. " + ", ".join(prompt.examples))
    suffix = f" [{prompt.default}]" if prompt.default is not None else ""
    print("\n".join(lines))
    answer = input(f">{suffix} ").strip()
    return answer or prompt.default
