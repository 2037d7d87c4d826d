"""Turn stream-json events from agent CLIs into readable console text.

Each provider has its own event vocabulary. A parser is a pure function
``(event: dict) -> str`` registered under the provider name; :func:`parse_line`
decodes one raw output line and dispatches to it. Unknown providers use the
default parser, which only looks for common text fields.
"""

from __future__ import annotations

import json
from typing import Any, Callable

from ralph import log

EventParser = Callable[[dict[str, Any]], str]

MAX_TOOL_OUTPUT = 500


def truncate(output: Any, limit: int = MAX_TOOL_OUTPUT) -> str:
    if isinstance(output, str):
        return output[:limit] + "... (truncated)" if len(output) > limit else output
    return json.dumps(output, indent=2)


def _pretty(value: Any) -> str:
    return json.dumps(value, indent=2)


def _header(label: str) -> str:
    return f"\n── {label} ──\n"


def _str_field(event: dict[str, Any], key: str) -> str:
    value = event.get(key)
    return value if isinstance(value, str) else ""


def _common_text(event: dict[str, Any], *, include_message: bool = False) -> str:
    text = event.get("text")
    if text:
        return str(text)
    keys = ("content", "message", "output") if include_message else ("content",)
    for key in keys:
        value = _str_field(event, key)
        if value:
            return value
    return ""


def _fallback(event: dict[str, Any], *, include_message: bool = False) -> str:
    text = _common_text(event, include_message=include_message)
    if not text:
        log.debug(f"stream-json: unhandled type {event.get('type')!r}, keys: {', '.join(event)}")
    return text


# ── Claude Code ──────────────────────────────────────────────────────


def parse_claude(event: dict[str, Any]) -> str:
    delta = event.get("delta") if isinstance(event.get("delta"), dict) else {}
    block = event.get("content_block") if isinstance(event.get("content_block"), dict) else {}

    match event.get("type"):
        case "content_block_delta":
            if delta.get("type") == "input_json_delta":
                return ""
            return delta.get("text") or ""
        case "text":
            return event.get("text") or ""
        case "content_block_start":
            if block.get("type") == "tool_use":
                return _header(f"Tool: {block.get('name') or 'unknown'}")
            if block.get("type") == "text":
                return block.get("text") or ""
            return ""
        case "content_block_stop" | "user":
            return ""
        case "tool_result":
            result = event.get("content") or event.get("output") or ""
            return f"{_header('Tool Result')}{truncate(result)}\n"
        case "assistant":
            message = event.get("message") if isinstance(event.get("message"), dict) else {}
            blocks = message.get("content") or event.get("content") or []
            out = ""
            for part in blocks if isinstance(blocks, list) else []:
                if not isinstance(part, dict):
                    continue
                if part.get("type") == "text":
                    out += part.get("text") or ""
                elif part.get("type") == "tool_use":
                    out += _header(f"Tool: {part.get('name')}")
                    if part.get("input"):
                        out += _pretty(part["input"]) + "\n"
            return out
        case "message_start" | "message_stop":
            return "\n"
        case "message_delta":
            stop = delta.get("stop_reason")
            return f"\n[{stop}]\n" if stop else ""
        case "system":
            message = event.get("message")
            return f"[System] {message}\n" if message else ""
        case "result":
            if "result" in event:
                return f"{_header('Result')}{_pretty(event['result'])}\n"
            return ""
        case "error":
            err = event.get("error")
            msg = err.get("message") if isinstance(err, dict) else None
            return f"\n[Error] {msg or json.dumps(err)}\n"
        case "file_edit" | "file_write":
            return _header(f"Writing: {event.get('path') or event.get('file') or 'unknown'}")
        case "file_read":
            return f"── Reading: {event.get('path') or event.get('file') or 'unknown'} ──\n"
        case "bash" | "command":
            return _header(f"Running: {event.get('command') or event.get('content') or ''}")
        case "bash_output" | "command_output":
            return f"{event.get('output') or event.get('content') or ''}\n"
        case _:
            return _fallback(event, include_message=True)


# ── Gemini CLI ───────────────────────────────────────────────────────


def parse_gemini(event: dict[str, Any]) -> str:
    match event.get("type"):
        case "initialization":
            return f"[Gemini: {event['model']}]\n" if event.get("model") else ""
        case "messages":
            out = ""
            for msg in event.get("messages") or []:
                if not isinstance(msg, dict) or msg.get("role") not in ("assistant", "model"):
                    continue
                content = msg.get("content")
                if isinstance(content, str):
                    out += content
                elif isinstance(content, list):
                    out += "".join(
                        p.get("text") or ""
                        for p in content
                        if isinstance(p, dict) and p.get("type") == "text"
                    )
            return out
        case "tools":
            out = ""
            for tool in event.get("tools") or []:
                if not isinstance(tool, dict):
                    continue
                if tool.get("name"):
                    out += _header(f"Tool: {tool['name']}")
                if tool.get("input"):
                    out += _pretty(tool["input"]) + "\n"
                result = tool.get("output") or tool.get("result")
                if result:
                    out += f"── Tool Result ──\n{truncate(result)}\n"
            return out
        case "turn_complete":
            return "\n"
        case "response":
            return _common_text(event)
        case _:
            return _fallback(event)


# ── OpenCode ─────────────────────────────────────────────────────────


def _opencode_message(event: dict[str, Any]) -> str:
    content = event.get("content")
    if isinstance(content, str) and content:
        return content
    if event.get("text"):
        return str(event["text"])
    if isinstance(content, list):
        out = ""
        for part in content:
            if isinstance(part, str):
                out += part
            elif isinstance(part, dict) and part.get("type") == "text":
                out += part.get("text") or ""
        return out
    return ""


def parse_opencode(event: dict[str, Any]) -> str:
    part = event.get("part") if isinstance(event.get("part"), dict) else {}

    match event.get("type"):
        case "step_start":
            step = event.get("step") or event.get("name")
            return _header(f"Step: {step}") if step else "\n"
        case "step_end" | "step_finish":
            return ""
        case "tool_use":
            if part.get("type") != "tool" or not part.get("tool"):
                return ""
            label = f"Tool: {part['tool']}"
            if part.get("title"):
                label += f" ({part['title']})"
            out = _header(label)
            state = part.get("state") if isinstance(part.get("state"), dict) else {}
            if state.get("status") == "completed" and state.get("output"):
                out += f"{truncate(state['output'])}\n"
            return out
        case "tool" | "tool_call":
            name = event.get("name") or event.get("tool")
            if not name:
                return ""
            out = _header(f"Tool: {name}")
            args = event.get("input") or event.get("args") or event.get("arguments")
            if args:
                out += (args if isinstance(args, str) else _pretty(args)) + "\n"
            return out
        case "tool_response":
            result = event.get("output") or event.get("result") or event.get("content") or ""
            return f"── Tool Result ──\n{truncate(result)}\n"
        case "assistant_message" | "model_response":
            return _opencode_message(event)
        case "text":
            return part.get("text") or event.get("text") or ""
        case "thinking" | "reasoning":
            thought = event.get("content") or event.get("text")
            return f"[Thinking] {thought}\n" if thought else ""
        case "done" | "complete":
            return "\n"
        case _:
            return _fallback(event)


# ── Codex CLI ────────────────────────────────────────────────────────


def _codex_started(item: dict[str, Any]) -> str:
    kind = item.get("type")
    if kind == "command_execution" and item.get("command"):
        return _header(f"Running: {item['command']}")
    if kind in ("file_change", "file_edit"):
        return _header(f"Writing: {item.get('path') or item.get('file') or 'unknown'}")
    if kind == "file_read":
        return f"── Reading: {item.get('path') or item.get('file') or 'unknown'} ──\n"
    if kind in ("mcp_tool_call", "tool_call"):
        return _header(f"Tool: {item.get('name') or item.get('tool') or 'unknown'}")
    if kind == "web_search":
        return _header(f"Web search: {item.get('query') or ''}")
    if kind == "plan_update":
        return _header("Plan update")
    return ""


def _codex_completed(item: dict[str, Any]) -> str:
    kind = item.get("type")
    if kind == "agent_message" and item.get("text"):
        return str(item["text"])
    if kind == "command_execution" and item.get("output"):
        return f"{truncate(item['output'])}\n"
    if kind == "reasoning" and item.get("text"):
        return f"[Thinking] {item['text']}\n"
    return str(item["text"]) if item.get("text") else ""


def parse_codex(event: dict[str, Any]) -> str:
    item = event.get("item") if isinstance(event.get("item"), dict) else None

    match event.get("type"):
        case "thread.started":
            thread = event.get("thread_id")
            return f"[Codex: thread {thread}]\n" if thread else ""
        case "turn.started":
            return "\n"
        case "turn.completed":
            usage = event.get("usage")
            if isinstance(usage, dict):
                return (
                    f"\n[Turn complete: {usage.get('input_tokens') or 0} input, "
                    f"{usage.get('output_tokens') or 0} output tokens]\n"
                )
            return "\n"
        case "turn.failed":
            reason = event.get("error") or event.get("message")
            return f"\n[Turn failed] {reason}\n" if reason else "\n[Turn failed]\n"
        case "item.started":
            return _codex_started(item) if item else ""
        case "item.completed":
            return _codex_completed(item) if item else ""
        case "item.failed":
            if not item:
                return ""
            reason = item.get("error") or item.get("message") or "Unknown error"
            return f"\n[Item failed: {item.get('type') or 'unknown'}] {reason}\n"
        case _:
            return _fallback(event)


def parse_default(event: dict[str, Any]) -> str:
    return _fallback(event, include_message=True)


# Goose emits Claude-style events.
PARSERS: dict[str, EventParser] = {
    "claude": parse_claude,
    "gemini": parse_gemini,
    "opencode": parse_opencode,
    "codex": parse_codex,
    "goose": parse_claude,
}


def get_parser(provider: str | None) -> EventParser:
    return PARSERS.get(provider or "", parse_default)


def parse_line(line: str, provider: str | None) -> str:
    """Decode one stream-json line for *provider*; undecodable lines yield ``""``."""
    try:
        event = json.loads(line)
    except json.JSONDecodeError as exc:
        log.debug(f"stream-json: parse error: {exc}")
        return ""
    if not isinstance(event, dict):
        return ""
    return get_parser(provider)(event)
