"""Execution context storage and ``{{variable}}`` interpolation."""

from flowkernel.service.context import (
    ExecutionContext,
    input_key,
    lookup_path,
    placeholders,
    resolve,
    stringify,
)


class TestExecutionContext:
    def test_set_and_get(self):
        context = ExecutionContext({"a": 1})
        context.set("b", 2, writer="node-1")
        assert context["a"] == 1
        assert context.get("b") == 2
        assert context.get("missing", "fallback") == "fallback"
        assert "b" in context
        assert len(context) == 2
        assert context.writer_of("b") == "node-1"

    def test_overwrite_keeps_history(self):
        context = ExecutionContext()
        context.set("x", 1, writer="a")
        context.set("x", 2, writer="b")
        assert context["x"] == 2
        assert [entry.value for entry in context.history("x")] == [1, 2]
        assert [entry.writer for entry in context.history("x")] == ["a", "b"]
        assert context.version == 2

    def test_setdefault_does_not_overwrite(self):
        context = ExecutionContext({"x": "caller"})
        assert context.setdefault("x", "node") == "caller"
        assert context.setdefault("y", "node") == "node"
        assert context.snapshot() == {"x": "caller", "y": "node"}

    def test_lookup_dotted_path(self):
        context = ExecutionContext({"doc": {"items": [{"name": "first"}]}})
        assert context.lookup("doc.items.0.name") == "first"
        assert context.lookup("doc.items.5.name", "none") == "none"

    def test_exact_key_wins_over_path(self):
        context = ExecutionContext({"a.b": "flat", "a": {"b": "nested"}})
        assert lookup_path(context, "a.b") == (True, "flat")

    def test_input_key(self):
        assert input_key("llm-1") == "llm-1_input"


class TestResolve:
    def test_substitutes_known_variables(self):
        assert resolve("Hello {{name}}!", {"name": "Ada"}) == "Hello Ada!"

    def test_whitespace_inside_braces(self):
        assert resolve("{{ name }}", {"name": "Ada"}) == "Ada"

    def test_no_placeholders_is_identity(self):
        text = "plain text with {single} braces"
        assert resolve(text, {"single": "x"}) == text

    def test_missing_variable_left_in_place(self):
        assert resolve("{{known}} and {{unknown}}", {"known": "yes"}) == "yes and {{unknown}}"

    def test_none_value_left_in_place(self):
        assert resolve("value: {{empty}}", {"empty": None}) == "value: {{empty}}"

    def test_structured_values_become_json(self):
        text = resolve("{{doc}} {{flag}} {{count}}", {"doc": {"a": [1, 2]}, "flag": True, "count": 3})
        assert text == '{"a": [1, 2]} true 3'

    def test_nested_path(self):
        context = ExecutionContext({"input": {"query": "what is bm25"}})
        assert resolve("Q: {{input.query}}", context) == "Q: what is bm25"

    def test_substituted_values_are_not_rescanned(self):
        context = {"a": "{{b}}", "b": "deep"}
        assert resolve("{{a}}", context) == "{{b}}"

    def test_resolving_twice_changes_nothing(self):
        context = {"name": "Ada"}
        once = resolve("{{name}} {{other}}", context)
        assert resolve(once, context) == once

    def test_placeholders_listed_in_order(self):
        assert placeholders("{{b}} then {{ a.c }}") == ["b", "a.c"]


def test_stringify():
    assert stringify("text") == "text"
    assert stringify({"k": "é"}) == '{"k": "é"}'
    assert stringify(None) == "null"
