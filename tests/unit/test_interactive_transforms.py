from __future__ import annotations

import pytest

from flowmap.errors import MappingStructureError
from flowmap.transforms.engine import TransformEngine
from flowmap.transforms.interactive import INTERACTIVE, Prompt, console_prompter, resolve_interactive

"""Unit tests for resolving bare parameterized transforms at load time."""


def _answers(*values):
    it = iter(values)
    asked: list[Prompt] = []

    def prompter(prompt: Prompt):
        asked.append(prompt)
        return next(it)
    prompter.asked = asked
    return prompter


def test_defaults_are_used_without_prompter():
    assert resolve_interactive(["trim", "truncate"]) == ("trim", "truncate:255")
    assert resolve_interactive(["round"]) == ("round:2",)
    assert resolve_interactive(["parse_date"]) == ("parse_date:%d/%m/%Y",)
    assert resolve_interactive(["split"]) == ("split:,",)


def test_parameterized_keys_are_left_alone():
    chain = ("truncate:10", "round:0", 'regex_replace("/a/", "b")')
    assert resolve_interactive(chain) == chain


def test_prompter_answers_are_used():
    prompter = _answers("10")
    assert resolve_interactive(["truncate"], prompter=prompter) == ("truncate:10",)
    assert prompter.asked[0].label == "Enter max length"


def test_empty_answer_falls_back_to_default():
    assert resolve_interactive(["round"], prompter=_answers("")) == ("round:2",)


def test_transform_without_default_needs_an_answer():
    with pytest.raises(MappingStructureError, match="needs parameters"):
        resolve_interactive(["multiply"])
    assert resolve_interactive(["multiply"], prompter=_answers("100")) == ("multiply:100",)


def test_divide_rejects_zero():
    with pytest.raises(MappingStructureError):
        resolve_interactive(["divide"], prompter=_answers("0"))


def test_regex_replace_asks_pattern_and_replacement():
    engine = TransformEngine()
    resolved = resolve_interactive(["regex_replace"], engine, _answers("/\\s+/", "-"))
    assert resolved == ('regex_replace(/\\s+/, "-")',)
    assert engine.apply("a  b", resolved) == "a-b"


def test_resolved_chain_is_validated_against_engine():
    with pytest.raises(MappingStructureError, match="Unknown transform"):
        resolve_interactive(["truncate", "shout"], TransformEngine())


def test_every_interactive_transform_is_a_known_transform():
    engine = TransformEngine()
    for name in INTERACTIVE:
        assert name in engine


def test_console_prompter_returns_default_on_empty_input(monkeypatch, capsys):
    monkeypatch.setattr("builtins.input", lambda _prompt: "")
    answer = console_prompter(Prompt("Enter max length", "Maximum", ("50",), "255"))
    assert answer == "255"
    assert "Enter max length" in capsys.readouterr().out
