"""Usage extraction helpers for CLI reasoning engine output streams."""

from __future__ import annotations

import re
from dataclasses import dataclass

USAGE_PARSER_VERSION = "v1"

_JSON_PROMPT_TOKENS = re.compile(r'"(?:prompt|input)_tokens"\s*:\s*(\d+)', re.IGNORECASE)
_JSON_COMPLETION_TOKENS = re.compile(
    r'"(?:completion|output)_tokens"\s*:\s*(\d+)',
    re.IGNORECASE,
)
_INPUT_TOKENS = re.compile(r"(?:input|prompt)[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_OUTPUT_TOKENS = re.compile(r"(?:output|completion)[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)


@dataclass(slots=True)
class UsageExtraction:
    """Best-effort token usage extraction result."""

    prompt_tokens: int | None
    completion_tokens: int | None
    usage_source: str
    parser_version: str = USAGE_PARSER_VERSION

    @property
    def found(self) -> bool:
        return self.prompt_tokens is not None or self.completion_tokens is not None


def extract_usage(*, stdout: str, stderr: str) -> UsageExtraction:
    """Extract token usage from structured or textual engine output.

    JSON-style keys win over textual `input tokens: N` markers; stdout is
    searched before stderr for JSON and after it for text.
    """

    for source_name, text in (("stdout", stdout), ("stderr", stderr)):
        prompt = _extract_int(_JSON_PROMPT_TOKENS, text)
        completion = _extract_int(_JSON_COMPLETION_TOKENS, text)
        if prompt is not None or completion is not None:
            return UsageExtraction(
                prompt_tokens=prompt,
                completion_tokens=completion,
                usage_source=f"{source_name}_json",
            )

    for source_name, text in (("stderr", stderr), ("stdout", stdout)):
        prompt = _extract_int(_INPUT_TOKENS, text)
        completion = _extract_int(_OUTPUT_TOKENS, text)
        if prompt is not None or completion is not None:
            return UsageExtraction(
                prompt_tokens=prompt,
                completion_tokens=completion,
                usage_source=f"{source_name}_text",
            )

    return UsageExtraction(prompt_tokens=None, completion_tokens=None, usage_source="none")


def _extract_int(pattern: re.Pattern[str], text: str) -> int | None:
    match = pattern.search(text)
    if match is None:
        return None
    raw = match.group(1).replace(",", "").strip()
    return int(raw) if raw.isdigit() else None
