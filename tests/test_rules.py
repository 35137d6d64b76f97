"""Tests for the ordered line classifier."""

from termbridge.models import MessageRole
from termbridge.parser.rules import (
    LineContext,
    LineKind,
    _compile_patterns,
    default_rules,
    load_rules,
)

OUTSIDE = LineContext()
IN_FENCE = LineContext(in_code_block=True, current_role=MessageRole.ASSISTANT)
IN_TOOL = LineContext(current_role=MessageRole.TOOL)


def kind_of(line: str, ctx: LineContext = OUTSIDE) -> LineKind:
    return default_rules().classify(line, ctx)[0]


class TestCompilePatterns:
    def test_valid_patterns(self):
        assert len(_compile_patterns([r"hello", r"\d+", r"^test$"])) == 3

    def test_invalid_pattern_skipped(self):
        assert len(_compile_patterns([r"valid", r"[invalid", r"also_valid"])) == 2

    def test_empty_list(self):
        assert _compile_patterns([]) == []


class TestEachRule:
    def test_fence_open_with_language(self):
        rules = default_rules()
        kind, m = rules.classify("```python", OUTSIDE)
        assert kind is LineKind.FENCE_OPEN
        assert m.group("lang") == "python"

    def test_fence_open_bare(self):
        assert kind_of("```") is LineKind.FENCE_OPEN

    def test_fence_close_and_content(self):
        assert kind_of("```", IN_FENCE) is LineKind.FENCE_CLOSE
        assert kind_of("print('x')", IN_FENCE) is LineKind.FENCE_CONTENT

    def test_user_prompt(self):
        kind, m = default_rules().classify("❯ hello world", OUTSIDE)
        assert kind is LineKind.USER_PROMPT
        assert m.group("text") == "hello world"
        assert kind_of("> fix the tests") is LineKind.USER_PROMPT

    def test_bare_prompt_is_not_a_message(self):
        assert kind_of("❯ ") is LineKind.TEXT

    def test_tool_call(self):
        kind, m = default_rules().classify("Read(file.ts)", OUTSIDE)
        assert kind is LineKind.TOOL_CALL
        assert m.group("name") == "Read"
        assert m.group("args") == "file.ts"

    def test_tool_call_with_bullet(self):
        kind, m = default_rules().classify("⏺ Bash(npm test -- --watch=false)", OUTSIDE)
        assert kind is LineKind.TOOL_CALL
        assert m.group("name") == "Bash"
        assert m.group("args") == "npm test -- --watch=false"

    def test_prose_is_not_a_tool_call(self):
        assert kind_of("Reading the file (file.ts) now") is LineKind.TEXT

    def test_tool_result_needs_tool_context(self):
        assert kind_of("  ⎿  Read 10 lines", IN_TOOL) is LineKind.TOOL_RESULT
        assert kind_of("Result: ok", IN_TOOL) is LineKind.TOOL_RESULT
        assert kind_of("✓ done", IN_TOOL) is LineKind.TOOL_RESULT
        assert kind_of("✓ done") is LineKind.TEXT

    def test_system(self):
        assert kind_of("⚠ Context low") is LineKind.SYSTEM
        assert kind_of("System: compacting") is LineKind.SYSTEM

    def test_plain_text(self):
        assert kind_of("Here is the plan.") is LineKind.TEXT


class TestRuleOrder:
    def test_fence_beats_everything(self):
        assert kind_of("❯ not a prompt", IN_FENCE) is LineKind.FENCE_CONTENT
        assert kind_of("Read(x)", IN_FENCE) is LineKind.FENCE_CONTENT

    def test_prompt_beats_tool_call(self):
        assert kind_of("> Read(file.ts)") is LineKind.USER_PROMPT

    def test_tool_call_beats_result(self):
        assert kind_of("Edit(Result: x)", IN_TOOL) is LineKind.TOOL_CALL

    def test_order_is_fixed(self):
        kinds = [rule.kind for rule in default_rules().rules]
        assert kinds == [
            LineKind.FENCE_CLOSE,
            LineKind.FENCE_CONTENT,
            LineKind.FENCE_OPEN,
            LineKind.USER_PROMPT,
            LineKind.TOOL_CALL,
            LineKind.TOOL_RESULT,
            LineKind.SYSTEM,
        ]


class TestErrorMarkers:
    def test_is_error(self):
        rules = default_rules()
        assert rules.is_error("✗ Error: file not found")
        assert rules.is_error("✘ Command exited with 1")
        assert not rules.is_error("✓ 3 files written")

    def test_failed_count_is_not_an_error(self):
        assert not default_rules().is_error("✓ 10 passed, 0 failed")


class TestLoadRules:
    def test_missing_file_gives_defaults(self, tmp_path):
        rules = load_rules(tmp_path / "absent.yaml")
        assert [r.kind for r in rules.rules] == [r.kind for r in default_rules().rules]

    def test_user_markers_extend_rules(self, tmp_path):
        path = tmp_path / "patterns.yaml"
        path.write_text(
            "markers:\n"
            "  user_prompt:\n"
            "    - '^you>\\s+(?P<text>.+)$'\n"
            "  system: ['^NOTE']\n"
            "  bogus: ['x']\n"
            "tool_error: ['Traceback']\n"
        )
        rules = load_rules(path)

        kind, m = rules.classify("you> hi there", OUTSIDE)
        assert kind is LineKind.USER_PROMPT
        assert m.group("text") == "hi there"
        assert rules.classify("NOTE to self", OUTSIDE)[0] is LineKind.SYSTEM
        assert rules.is_error("Traceback (most recent call last):")
        assert [r.kind for r in rules.rules] == [r.kind for r in default_rules().rules]

    def test_bare_string_pattern(self, tmp_path):
        path = tmp_path / "patterns.yaml"
        path.write_text("tool_error: 'Traceback'\n")
        assert load_rules(path).is_error("Traceback (most recent call last):")

    def test_file_that_is_not_a_mapping(self, tmp_path):
        path = tmp_path / "patterns.yaml"
        path.write_text("- '^you>'\n- '^NOTE'\n")
        rules = load_rules(path)
        assert [len(r.patterns) for r in rules.rules] == [
            len(r.patterns) for r in default_rules().rules
        ]

    def test_markers_that_are_not_a_mapping(self, tmp_path):
        path = tmp_path / "patterns.yaml"
        path.write_text("markers:\n  - '^you>'\ntool_error: ['Traceback']\n")
        rules = load_rules(path)
        assert rules.classify("you> hi", OUTSIDE)[0] is LineKind.TEXT
        assert rules.is_error("Traceback (most recent call last):")
