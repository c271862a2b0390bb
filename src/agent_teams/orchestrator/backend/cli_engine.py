"""Subprocess-based reasoning engine driven by a command template."""

from __future__ import annotations

import json
import logging
import os
import shlex
import signal
import subprocess
import tempfile
from typing import IO, Any

from agent_teams.orchestrator.backend.base import (
    AnalysisResult,
    EngineUsage,
    ReviewRequest,
    ReviewResult,
)
from agent_teams.orchestrator.errors import (
    DecompositionInvalid,
    ExecutionError,
    ReasoningTimeout,
    TransientExecutionError,
    UnrecoverableExecutionError,
)
from agent_teams.orchestrator.failure_classifier import classify_error_text
from agent_teams.orchestrator.models import ReviewDecision
from agent_teams.orchestrator.pricing import estimate_cost_usd
from agent_teams.orchestrator.usage import extract_usage

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
TRANSIENT_EXIT_CODES = (TIMEOUT_EXIT_CODE, 75)

_ANALYZE_SCHEMA = """\
{
  "tasks": [
    {
      "key": "<unique short key>",
      "title": "<non-empty>",
      "description": "<non-empty>",
      "acceptance_criteria": ["<at least one>"],
      "required_skills": ["<skill>"],
      "depends_on": ["<key of another task>"],
      "parent": "<key of parent task or null>",
      "steps": ["<ordered step>"]
    }
  ],
  "workers": [{"specialization": "<role>", "skills": ["<skill>"]}]
}"""

_REVIEW_SCHEMA = """\
{"decision": "approve" | "request_revision" | "reject", "feedback": "<text>"}"""


class CliReasoningEngine:
    """Run a CLI command per call and parse a JSON object from its stdout.

    The template must contain `{prompt}` and may contain `{model}`; values are
    shell-quoted before splitting into argv.
    """

    def __init__(
        self,
        *,
        command_template: str,
        model: str,
        timeout_seconds: float,
        pricing: str = "",
    ) -> None:
        if "{prompt}" not in command_template:
            raise ValueError("Engine command template must include {prompt}.")
        self.command_template = command_template.strip()
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.pricing = pricing

    def analyze(self, goal: str, *, feedback: list[str] | None = None) -> AnalysisResult:
        prompt = _build_analyze_prompt(goal=goal, feedback=feedback)
        payload, usage = self._call(prompt, operation="analyze")
        if not isinstance(payload.get("tasks"), list):
            raise DecompositionInvalid(
                "Engine analysis has no task list.",
                problems=["tasks: expected a list in engine output"],
            )
        return AnalysisResult(payload=payload, usage=usage)

    def review(self, request: ReviewRequest) -> ReviewResult:
        payload, usage = self._call(_build_review_prompt(request), operation="review")
        raw_decision = str(payload.get("decision", "")).strip().lower()
        try:
            decision = ReviewDecision(raw_decision)
        except ValueError as error:
            raise TransientExecutionError(
                f"Engine returned unknown review decision {raw_decision!r}.",
            ) from error
        feedback = str(payload.get("feedback") or "").strip()
        return ReviewResult(decision=decision, feedback=feedback, usage=usage)

    def _call(self, prompt: str, *, operation: str) -> tuple[dict[str, Any], EngineUsage]:
        argv = _build_run_args(
            command_template=self.command_template,
            model=self.model,
            prompt=prompt,
        )
        env = os.environ.copy()
        env["AGENT_TEAMS_ENGINE_OPERATION"] = operation
        env["AGENT_TEAMS_ENGINE_MODEL"] = self.model
        with (
            tempfile.TemporaryFile(mode="w+", encoding="utf-8") as stdout_handle,
            tempfile.TemporaryFile(mode="w+", encoding="utf-8") as stderr_handle,
        ):
            try:
                process = subprocess.Popen(  # noqa: S603
                    argv,
                    env=env,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                    text=True,
                    start_new_session=os.name == "posix",
                )
            except FileNotFoundError as error:
                raise UnrecoverableExecutionError(
                    f"Engine command not found: {argv[0]}",
                ) from error
            except OSError as error:
                raise TransientExecutionError(
                    f"Engine command failed to start: {error}",
                ) from error

            try:
                process.wait(timeout=self.timeout_seconds)
            except subprocess.TimeoutExpired as error:
                _terminate_process(process)
                raise ReasoningTimeout(
                    f"Engine {operation} call exceeded {self.timeout_seconds:g}s.",
                ) from error
            stdout = _read_back(stdout_handle)
            stderr = _read_back(stderr_handle)

        if process.returncode != 0:
            classification = classify_error_text(
                f"{stderr}\n{stdout}",
                source="engine",
                transient_exit_codes=TRANSIENT_EXIT_CODES,
                exit_code=process.returncode,
            )
            logger.warning(
                "Engine %s call exited with %s (%s)",
                operation,
                process.returncode,
                classification.reason_code,
            )
            raise ExecutionError(
                f"Engine {operation} call exited with code {process.returncode}: "
                f"{_preview(stderr or stdout)}",
                failure_class=classification.failure_class,
                diagnostics=classification.to_event_details(),
            )

        payload = _extract_json_object(stdout)
        if payload is None:
            if operation == "analyze":
                raise DecompositionInvalid(
                    "Engine analysis output is not a JSON object.",
                    problems=["output: no JSON object found"],
                )
            raise TransientExecutionError(f"Engine {operation} output is not a JSON object.")

        extracted = extract_usage(stdout=stdout, stderr=stderr)
        cost = estimate_cost_usd(
            pricing=self.pricing,
            model=self.model,
            prompt_tokens=extracted.prompt_tokens,
            completion_tokens=extracted.completion_tokens,
        )
        usage = EngineUsage(
            prompt_tokens=extracted.prompt_tokens or 0,
            completion_tokens=extracted.completion_tokens or 0,
            cost_usd=cost or 0.0,
            model=self.model,
        )
        return payload, usage


def _build_analyze_prompt(*, goal: str, feedback: list[str] | None) -> str:
    lines = [
        "Decompose the goal below into tasks for a small team of specialized workers.",
        f"Goal: {goal}",
        "",
        "Reply with a single JSON object following this schema exactly:",
        _ANALYZE_SCHEMA,
        "Request between 1 and 5 workers.",
    ]
    if feedback:
        lines.append("")
        lines.append("Your previous answer was rejected. Fix these problems:")
        lines.extend(f"- {item}" for item in feedback)
    return "\n".join(lines)


def _build_review_prompt(request: ReviewRequest) -> str:
    criteria = "\n".join(f"- {item}" for item in request.acceptance_criteria)
    return "\n".join(
        [
            "Review the task output against its acceptance criteria.",
            f"Mission goal: {request.goal}",
            f"Task: {request.title}",
            f"Description: {request.description}",
            "Acceptance criteria:",
            criteria,
            f"Revision {request.revision_count} of at most {request.max_revisions}.",
            "Output:",
            json.dumps(request.output, ensure_ascii=False, sort_keys=True),
            "",
            "Reply with a single JSON object:",
            _REVIEW_SCHEMA,
        ],
    )


def _build_run_args(*, command_template: str, model: str, prompt: str) -> list[str]:
    try:
        rendered = command_template.format(model=shlex.quote(model), prompt=shlex.quote(prompt))
    except KeyError as error:
        raise UnrecoverableExecutionError(
            f"Unsupported command template placeholder: {error}",
        ) from error
    argv = shlex.split(rendered)
    if not argv:
        raise UnrecoverableExecutionError("Engine command template rendered empty command.")
    return argv


def _extract_json_object(stdout: str) -> dict[str, Any] | None:
    """Parse stdout as JSON, falling back to the outermost `{...}` span.

    A `{"result": "<json>"}` envelope is unwrapped one level.
    """

    text = stdout.strip()
    candidates = [text]
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        candidates.append(text[start : end + 1])
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if not isinstance(parsed, dict):
            continue
        inner = parsed.get("result")
        if isinstance(inner, str):
            unwrapped = _extract_json_object(inner)
            if unwrapped is not None:
                return unwrapped
        return parsed
    return None


def _preview(text: str, *, limit: int = 400) -> str:
    compact = " ".join(text.split())
    return compact if len(compact) <= limit else compact[:limit] + "..."


def _read_back(handle: IO[str]) -> str:
    handle.seek(0)
    return handle.read()


def _terminate_process(process: subprocess.Popen[str]) -> None:
    """Stop the command and anything it spawned; never waits longer than a few seconds."""

    _signal_process(process, signal.SIGTERM)
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        _signal_process(process, getattr(signal, "SIGKILL", signal.SIGTERM))
        try:
            process.wait(timeout=2)
        except subprocess.TimeoutExpired:
            logger.warning("Engine process %s did not exit after kill", process.pid)


def _signal_process(process: subprocess.Popen[str], signum: int) -> None:
    try:
        if os.name == "posix":
            os.killpg(process.pid, signum)
        elif signum == signal.SIGTERM:
            process.terminate()
        else:
            process.kill()
    except OSError:
        return
