from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from stagehand.detection import detect_interaction_type
from stagehand.models import StageExecution, StageTemplate

GREEDY_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")
LAZY_OBJECT_PATTERN = re.compile(r"\{[\s\S]*?\}")
MARKDOWN_HEADER_PATTERN = re.compile(r"^#+\s+.*$", re.MULTILINE)
SENTENCE_PATTERN = re.compile(r"[^.!?]*[.!?]+")
SUMMARY_SECTION_PATTERN = re.compile(
    r"(?:^|\n)#+\s*(?:Summary|Changes Made|What (?:was|I) (?:changed|did))[^\n]*\n"
    r"([\s\S]{10,500}?)(?:\n#|\n---|\n\*\*|$)",
    re.IGNORECASE,
)
PARAGRAPH_SPLIT_PATTERN = re.compile(r"\n\n+")


def _loads_object(text: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(text)
    except (TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _iter_json_lines(text: str):
    for raw_line in text.split("\n"):
        line = raw_line.strip()
        if not line.startswith("{"):
            continue
        try:
            event = json.loads(line)
        except ValueError:
            continue
        if isinstance(event, dict):
            yield event


# Structured payload adapters, tried in order until one returns a payload.


class JsonExtractor:
    name = "extractor"

    def extract(self, text: str) -> str | None:
        raise NotImplementedError


class WholeTextExtractor(JsonExtractor):
    name = "whole_text"

    def extract(self, text: str) -> str | None:
        try:
            json.loads(text)
        except ValueError:
            return None
        return text


class ResultEventExtractor(JsonExtractor):
    """``result`` events from stream-json output (``structured_output`` or ``result``)."""

    name = "result_event"

    def extract(self, text: str) -> str | None:
        for event in _iter_json_lines(text):
            if event.get("type") != "result":
                continue
            output = event.get("structured_output")
            if output is None:
                output = event.get("result")
            if output is None or output == "":
                continue
            serialized = output if isinstance(output, str) else json.dumps(output)
            if _loads_object(serialized) is not None:
                return serialized
        return None


class AgentMessageExtractor(JsonExtractor):
    """Last ``item.completed`` agent message from JSONL exec output."""

    name = "agent_message"

    def extract(self, text: str) -> str | None:
        last_message: str | None = None
        for event in _iter_json_lines(text):
            if event.get("type") != "item.completed":
                continue
            item = event.get("item")
            if not isinstance(item, dict) or item.get("type") != "agent_message":
                continue
            message = item.get("text")
            if isinstance(message, str) and message:
                last_message = message
        if last_message is None:
            return None
        try:
            parsed = json.loads(last_message)
        except ValueError:
            # Plain prose is the response as-is.
            return last_message
        # JSON that is not an object falls through to the brace scan.
        return last_message if isinstance(parsed, dict) else None


class BraceScanExtractor(JsonExtractor):
    """Greedy ``{...}`` scan for nested objects, then lazy for separate ones."""

    name = "brace_scan"

    def extract(self, text: str) -> str | None:
        greedy = GREEDY_OBJECT_PATTERN.search(text)
        if greedy is None:
            return None
        try:
            json.loads(greedy.group(0))
            return greedy.group(0)
        except ValueError:
            pass
        lazy = LAZY_OBJECT_PATTERN.search(text)
        if lazy is None:
            return None
        try:
            json.loads(lazy.group(0))
        except ValueError:
            return None
        return lazy.group(0)


DEFAULT_EXTRACTORS: tuple[JsonExtractor, ...] = (
    WholeTextExtractor(),
    ResultEventExtractor(),
    AgentMessageExtractor(),
    BraceScanExtractor(),
)


def extract_json(
    text: str | None, extractors: tuple[JsonExtractor, ...] = DEFAULT_EXTRACTORS
) -> str | None:
    """Find the structured payload in raw agent output, or ``None``."""
    if not text:
        return None
    for extractor in extractors:
        payload = extractor.extract(text)
        if payload is not None:
            return payload
    return None


@dataclass(slots=True)
class ParsedAgentLine:
    assistant_text: str | None = None
    result_text: str | None = None
    usage: dict[str, Any] | None = None


def parse_agent_stream_line(line: str) -> ParsedAgentLine | None:
    """Interpret a single stream-json stdout line."""
    try:
        parsed = json.loads(line)
    except (TypeError, ValueError):
        return None
    if not isinstance(parsed, dict):
        return None

    event_type = parsed.get("type")
    if event_type == "assistant":
        message = parsed.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, list):
            text = "".join(
                str(block.get("text", ""))
                for block in content
                if isinstance(block, dict) and block.get("type") == "text"
            )
            if text:
                return ParsedAgentLine(assistant_text=text)
        return None

    if event_type == "result":
        output = parsed.get("structured_output")
        if output is None:
            output = parsed.get("result")
        result_text = None
        if output is not None and output != "":
            result_text = output if isinstance(output, str) else json.dumps(output)
        usage = None
        raw_usage = parsed.get("usage")
        if isinstance(raw_usage, dict):
            usage = {
                "input_tokens": raw_usage.get("input_tokens"),
                "output_tokens": raw_usage.get("output_tokens"),
                "cache_creation_input_tokens": raw_usage.get("cache_creation_input_tokens"),
                "cache_read_input_tokens": raw_usage.get("cache_read_input_tokens"),
                "total_cost_usd": parsed.get("total_cost_usd"),
                "duration_ms": parsed.get("duration_ms"),
                "num_turns": parsed.get("num_turns"),
            }
        return ParsedAgentLine(result_text=result_text, usage=usage)

    # Codex exec --json events.
    if event_type == "item.completed":
        item = parsed.get("item")
        if isinstance(item, dict) and item.get("type") == "agent_message":
            text = item.get("text")
            if isinstance(text, str) and text:
                return ParsedAgentLine(result_text=text)
        return None

    if event_type == "turn.completed":
        raw_usage = parsed.get("usage")
        if not isinstance(raw_usage, dict):
            return None
        return ParsedAgentLine(
            usage={
                "input_tokens": raw_usage.get("input_tokens"),
                "output_tokens": raw_usage.get("output_tokens"),
                "cache_read_input_tokens": raw_usage.get("cached_input_tokens"),
            }
        )

    if event_type == "content_block_delta":
        delta = parsed.get("delta")
        if isinstance(delta, dict) and delta.get("text"):
            return ParsedAgentLine(assistant_text=str(delta["text"]))
    return None


def truncate_to_sentences(text: str, n: int) -> str:
    cleaned = MARKDOWN_HEADER_PATTERN.sub("", text).strip()
    sentences = SENTENCE_PATTERN.findall(cleaned)
    if not sentences:
        return cleaned[:300].strip()
    return "".join(sentences[:n]).strip()


def extract_implementation_summary(raw: str) -> str | None:
    if not raw.strip():
        return None
    match = SUMMARY_SECTION_PATTERN.search(raw)
    if match:
        return truncate_to_sentences(match.group(1).strip(), 3)
    paragraphs = [part for part in PARAGRAPH_SPLIT_PATTERN.split(raw) if len(part.strip()) > 20]
    if paragraphs:
        return truncate_to_sentences(paragraphs[-1].strip(), 3)
    return truncate_to_sentences(raw, 3)


def format_selected_approach(decision: str) -> str:
    try:
        selected = json.loads(decision)
    except ValueError:
        return decision
    if not isinstance(selected, list) or not selected or not isinstance(selected[0], dict):
        return decision
    approach = selected[0]
    text = (
        f"## Selected Approach: {approach.get('title', '')}\n\n"
        f"{approach.get('description', '')}"
    )
    pros = approach.get("pros") or []
    cons = approach.get("cons") or []
    if pros:
        text += "\n\n**Pros:**\n" + "\n".join(f"- {item}" for item in pros)
    if cons:
        text += "\n\n**Cons:**\n" + "\n".join(f"- {item}" for item in cons)
    return text


def _effective_format(template: StageTemplate, raw: str) -> str:
    if template.output_format == "auto":
        return detect_interaction_type(raw, "auto")
    return template.output_format


def _string_field(raw: str, key: str) -> str | None:
    data = _loads_object(raw)
    if data is None:
        return None
    value = data.get(key)
    if isinstance(value, str) and value:
        return value
    return None


def extract_stage_output(
    template: StageTemplate, execution: StageExecution, decision: str | None = None
) -> str:
    """Clean, human-readable stage result used as the stage's ``stage_result``."""
    raw = execution.output
    output_format = _effective_format(template, raw)

    if output_format in {"research", "plan"}:
        return _string_field(raw, output_format) or raw
    if output_format == "options":
        return format_selected_approach(decision) if decision else raw
    if output_format == "findings":
        # First phase carries a JSON summary, second phase is free text.
        return _string_field(raw, "summary") or raw
    if output_format == "task_splitting":
        return _string_field(raw, "reasoning") or raw
    if output_format == "pr_review":
        return raw or "PR Review completed"
    if output_format == "merge":
        return raw or "Branch merged successfully"
    if output_format == "interactive_terminal":
        return raw or "Interactive session completed"
    return raw


def extract_stage_summary(
    template: StageTemplate, execution: StageExecution, decision: str | None = None
) -> str | None:
    """Short summary fed to downstream prompts through ``{{stage_summaries}}``."""
    raw = execution.output
    if not raw.strip():
        if template.output_format == "interactive_terminal":
            return "Interactive session completed"
        return None
    output_format = _effective_format(template, raw)

    if output_format in {"research", "plan"}:
        return truncate_to_sentences(_string_field(raw, output_format) or raw, 3)
    if output_format == "options":
        if decision:
            try:
                selected = json.loads(decision)
            except ValueError:
                selected = None
            if isinstance(selected, list) and selected and isinstance(selected[0], dict):
                approach = selected[0]
                description = truncate_to_sentences(str(approach.get("description", "")), 2)
                return f"Selected: {approach.get('title', '')} - {description}"
        return truncate_to_sentences(raw, 3)
    if output_format == "findings":
        return _string_field(raw, "summary") or truncate_to_sentences(raw, 3)
    if output_format == "task_splitting":
        data = _loads_object(raw)
        if data is None:
            return truncate_to_sentences(raw, 3)
        proposed = data.get("proposed_tasks")
        count = len(proposed) if isinstance(proposed, list) else 0
        summary = f"Task split into {count} subtask{'' if count == 1 else 's'}."
        reasoning = data.get("reasoning")
        if isinstance(reasoning, str) and reasoning:
            return f"{summary} {truncate_to_sentences(reasoning, 2)}"
        return summary
    if output_format == "text":
        return extract_implementation_summary(raw)
    return truncate_to_sentences(raw, 3)
