from __future__ import annotations

import allure

from agent_teams.orchestrator.usage import USAGE_PARSER_VERSION, extract_usage

pytestmark = [
    allure.epic("Mission Runtime"),
    allure.feature("Usage Accounting"),
]


def test_extract_usage_prefers_json_keys() -> None:
    extracted = extract_usage(
        stdout='{"decision": "approve", "usage": {"input_tokens": 120, "output_tokens": 30}}',
        stderr="input tokens: 999",
    )
    assert extracted.prompt_tokens == 120
    assert extracted.completion_tokens == 30
    assert extracted.usage_source == "stdout_json"
    assert extracted.parser_version == USAGE_PARSER_VERSION


def test_extract_usage_reads_text_markers_from_stderr_first() -> None:
    extracted = extract_usage(
        stdout="prompt tokens: 5",
        stderr="Input tokens: 1,234\nOutput tokens: 56",
    )
    assert extracted.prompt_tokens == 1234
    assert extracted.completion_tokens == 56
    assert extracted.usage_source == "stderr_text"


def test_extract_usage_reports_missing_usage() -> None:
    extracted = extract_usage(stdout='{"tasks": []}', stderr="")
    assert not extracted.found
    assert extracted.usage_source == "none"
