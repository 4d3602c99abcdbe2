import json

from stagehand.extraction import (
    AgentMessageExtractor,
    extract_implementation_summary,
    extract_json,
    extract_stage_output,
    extract_stage_summary,
    format_selected_approach,
    parse_agent_stream_line,
    truncate_to_sentences,
)
from stagehand.models import StageExecution, StageTemplate


def _template(output_format: str) -> StageTemplate:
    return StageTemplate(
        id="s1",
        name="Stage",
        sort_order=0,
        prompt_template="",
        output_format=output_format,  # type: ignore[arg-type]
    )


def _execution(parsed_output: str | None = None, raw_output: str | None = None) -> StageExecution:
    return StageExecution(
        id="e1",
        task_id="t1",
        stage_template_id="s1",
        attempt_number=1,
        status="awaiting_user",
        parsed_output=parsed_output,
        raw_output=raw_output,
    )


def test_extract_json_whole_text() -> None:
    assert extract_json('{"plan": "p"}') == '{"plan": "p"}'


def test_extract_json_from_result_event() -> None:
    lines = [
        json.dumps({"type": "system", "subtype": "init"}),
        json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "hi"}]}}),
        json.dumps({"type": "result", "structured_output": {"research": "done"}}),
    ]

    assert json.loads(extract_json("\n".join(lines))) == {"research": "done"}


def test_extract_json_from_result_string() -> None:
    text = "log line\n" + json.dumps({"type": "result", "result": '{"plan": "x"}'})

    assert extract_json(text) == '{"plan": "x"}'


def test_extract_json_takes_last_agent_message() -> None:
    lines = [
        json.dumps({"type": "thread.started"}),
        json.dumps({"type": "item.completed", "item": {"type": "agent_message", "text": "{}"}}),
        json.dumps({"type": "item.completed", "item": {"type": "reasoning", "text": "hmm"}}),
        json.dumps(
            {"type": "item.completed", "item": {"type": "agent_message", "text": '{"plan": "p"}'}}
        ),
        json.dumps({"type": "turn.completed"}),
    ]

    assert extract_json("\n".join(lines)) == '{"plan": "p"}'


def _agent_message(text: str) -> str:
    return json.dumps({"type": "item.completed", "item": {"type": "agent_message", "text": text}})


def test_agent_message_that_is_not_an_object_is_skipped() -> None:
    extractor = AgentMessageExtractor()

    assert extractor.extract(_agent_message("[1, 2]")) is None
    assert extractor.extract(_agent_message("42")) is None
    assert extractor.extract(_agent_message('{"plan": "p"}')) == '{"plan": "p"}'


def test_agent_message_prose_is_returned_as_is() -> None:
    text = "\n".join([json.dumps({"type": "thread.started"}), _agent_message("All done.")])

    assert extract_json(text) == "All done."


def test_extract_json_from_prose() -> None:
    text = 'Here is my answer:\n{"options": [{"id": "a"}]}\nThanks.'

    assert json.loads(extract_json(text)) == {"options": [{"id": "a"}]}


def test_extract_json_lazy_fallback() -> None:
    text = 'first {"a": 1} and then {broken'

    assert extract_json(text) == '{"a": 1}'


def test_extract_json_returns_none() -> None:
    assert extract_json("") is None
    assert extract_json(None) is None
    assert extract_json("no json here {at all") is None


def test_parse_stream_line_variants() -> None:
    assistant = parse_agent_stream_line(
        json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "a"}]}})
    )
    assert assistant is not None and assistant.assistant_text == "a"

    result = parse_agent_stream_line(
        json.dumps(
            {
                "type": "result",
                "result": "final",
                "usage": {"input_tokens": 10, "output_tokens": 5},
                "total_cost_usd": 0.25,
                "num_turns": 3,
            }
        )
    )
    assert result is not None
    assert result.result_text == "final"
    assert result.usage is not None
    assert result.usage["input_tokens"] == 10
    assert result.usage["total_cost_usd"] == 0.25
    assert result.usage["num_turns"] == 3

    delta_line = json.dumps({"type": "content_block_delta", "delta": {"text": "x"}})
    delta = parse_agent_stream_line(delta_line)
    assert delta is not None and delta.assistant_text == "x"

    assert parse_agent_stream_line("not json") is None
    assert parse_agent_stream_line(json.dumps({"type": "system"})) is None


def test_parse_stream_line_reads_exec_json_events() -> None:
    message = parse_agent_stream_line(
        json.dumps({"type": "item.completed", "item": {"type": "agent_message", "text": "Done."}})
    )
    assert message is not None
    assert message.result_text == "Done."
    assert message.assistant_text is None

    reasoning = json.dumps({"type": "item.completed", "item": {"type": "reasoning", "text": "x"}})
    assert parse_agent_stream_line(reasoning) is None

    turn = parse_agent_stream_line(
        json.dumps(
            {
                "type": "turn.completed",
                "usage": {"input_tokens": 9, "cached_input_tokens": 4, "output_tokens": 2},
            }
        )
    )
    assert turn is not None
    assert turn.result_text is None
    assert turn.usage == {
        "input_tokens": 9,
        "output_tokens": 2,
        "cache_read_input_tokens": 4,
    }
    assert parse_agent_stream_line(json.dumps({"type": "turn.completed"})) is None


def test_truncate_to_sentences() -> None:
    text = "# Heading\nFirst one. Second one! Third? Fourth."

    assert truncate_to_sentences(text, 2) == "First one. Second one!"
    assert truncate_to_sentences("no terminator", 2) == "no terminator"
    assert len(truncate_to_sentences("x" * 500, 1)) == 300


def test_implementation_summary_prefers_summary_section() -> None:
    raw = "Working...\n\n## Summary\nAdded the exporter. Wired the CLI. Wrote tests. Extra.\n"

    assert extract_implementation_summary(raw) == (
        "Added the exporter. Wired the CLI. Wrote tests."
    )
    assert extract_implementation_summary("   ") is None


def test_implementation_summary_uses_last_paragraph() -> None:
    raw = "Started the work on this.\n\nFinished the exporter and its tests. All green."

    assert extract_implementation_summary(raw) == "Finished the exporter and its tests. All green."


def test_format_selected_approach() -> None:
    decision = json.dumps(
        [{"title": "Stream", "description": "Stream rows.", "pros": ["fast"], "cons": ["complex"]}]
    )

    assert format_selected_approach(decision) == (
        "## Selected Approach: Stream\n\nStream rows.\n\n**Pros:**\n- fast\n\n**Cons:**\n- complex"
    )
    assert format_selected_approach("plain") == "plain"
    assert format_selected_approach("[]") == "[]"


def test_stage_output_per_format() -> None:
    research = _execution(parsed_output=json.dumps({"research": "# R", "questions": []}))
    assert extract_stage_output(_template("research"), research) == "# R"

    plan = _execution(parsed_output=json.dumps({"plan": "1. do it"}))
    assert extract_stage_output(_template("plan"), plan) == "1. do it"

    options = _execution(parsed_output=json.dumps({"options": []}))
    decision = json.dumps([{"title": "A", "description": "D"}])
    assert extract_stage_output(_template("options"), options, decision).startswith(
        "## Selected Approach: A"
    )

    findings = _execution(parsed_output=json.dumps({"summary": "2 issues", "findings": []}))
    assert extract_stage_output(_template("findings"), findings) == "2 issues"
    applied = _execution(parsed_output="Fixed both issues.")
    assert extract_stage_output(_template("findings"), applied) == "Fixed both issues."

    assert extract_stage_output(_template("merge"), _execution()) == "Branch merged successfully"
    assert extract_stage_output(_template("pr_review"), _execution()) == "PR Review completed"
    assert extract_stage_output(_template("text"), _execution(raw_output="raw")) == "raw"


def test_stage_output_auto_uses_detected_shape() -> None:
    execution = _execution(parsed_output=json.dumps({"plan": "the plan"}))

    assert extract_stage_output(_template("auto"), execution) == "the plan"


def test_stage_summary_variants() -> None:
    research = _execution(parsed_output=json.dumps({"research": "One. Two. Three. Four."}))
    assert extract_stage_summary(_template("research"), research) == "One. Two. Three."

    options = _execution(parsed_output=json.dumps({"options": []}))
    decision = json.dumps([{"title": "A", "description": "Fast. Simple. Cheap."}])
    assert extract_stage_summary(_template("options"), options, decision) == (
        "Selected: A - Fast. Simple."
    )

    split = _execution(
        parsed_output=json.dumps({"proposed_tasks": [{}, {}], "reasoning": "Too big."})
    )
    assert extract_stage_summary(_template("task_splitting"), split) == (
        "Task split into 2 subtasks. Too big."
    )

    assert extract_stage_summary(_template("text"), _execution()) is None
    assert extract_stage_summary(_template("interactive_terminal"), _execution()) == (
        "Interactive session completed"
    )
