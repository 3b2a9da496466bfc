"""Run remediation playbooks from the command line.

Usage:
  python -m apps.worker.remediation_worker run --incident INC-1 --playbook service-health-reset \
      --input cluster=prod --input service=api
  python -m apps.worker.remediation_worker batch requests.jsonl
  python -m apps.worker.remediation_worker list

Exit codes: 0 SUCCEEDED/SKIPPED, 1 FAILED (or SKIPPED with ``--fail-on-skip``),
2 invalid request or remediation configuration error.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TextIO

from contracts.remediation import (
    RUN_STATUS_FAILED,
    RUN_STATUS_SKIPPED,
    ExecutePlaybookRequest,
    ExecutePlaybookResponse,
    PlaybookDefinition,
)
from infra.config import Settings, get_settings
from infra.logging_config import StructuredLogger, setup_logging
from services.remediation.errors import RemediationError
from services.remediation.executor import RemediationExecutor

logger = logging.getLogger(__name__)
events = StructuredLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ERROR = 2

ExecutorFactory = Callable[[Settings], RemediationExecutor]


@dataclass(frozen=True)
class WorkerRequest:
    """One (incident, playbook, inputs) request parsed from CLI args or a batch file."""

    incident_id: str
    playbook_id: str
    inputs: dict[str, Any]


def exit_code_for(status: str, *, fail_on_skip: bool) -> int:
    """Map a run status to the worker exit code."""
    if status == RUN_STATUS_FAILED:
        return EXIT_FAILED
    if status == RUN_STATUS_SKIPPED and fail_on_skip:
        return EXIT_FAILED
    return EXIT_OK


def parse_input_pairs(pairs: Sequence[str]) -> dict[str, Any]:
    """Parse ``key=value`` pairs; values are decoded as JSON when possible."""
    inputs: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ValueError(f"invalid --input {pair!r}; expected key=value")
        try:
            inputs[key] = json.loads(raw)
        except json.JSONDecodeError:
            inputs[key] = raw
    return inputs


def parse_batch_line(line: str, line_no: int) -> WorkerRequest:
    """Parse one JSON-lines batch entry: ``{"incidentId", "playbookId", "inputs"?}``."""
    try:
        doc = json.loads(line)
    except json.JSONDecodeError as exc:
        raise ValueError(f"line {line_no}: invalid JSON ({exc.msg})") from exc
    if not isinstance(doc, dict):
        raise ValueError(f"line {line_no}: expected a JSON object")
    incident_id = str(doc.get("incidentId") or "").strip()
    playbook_id = str(doc.get("playbookId") or "").strip()
    inputs = doc.get("inputs") or {}
    if not incident_id or not playbook_id:
        raise ValueError(f"line {line_no}: incidentId and playbookId are required")
    if not isinstance(inputs, dict):
        raise ValueError(f"line {line_no}: inputs must be an object")
    return WorkerRequest(incident_id=incident_id, playbook_id=playbook_id, inputs=inputs)


def load_batch(path: Path) -> list[WorkerRequest]:
    requests: list[WorkerRequest] = []
    for line_no, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        if line.strip():
            requests.append(parse_batch_line(line, line_no))
    return requests


def _playbook(executor: RemediationExecutor, playbook_id: str) -> PlaybookDefinition:
    if executor.registry is None:
        raise RemediationError("executor has no playbook registry")
    return executor.registry.require(playbook_id).definition


def _emit(out: TextIO, response: ExecutePlaybookResponse, *, json_output: bool) -> None:
    if json_output:
        out.write(json.dumps(response.to_dict(), ensure_ascii=False, sort_keys=True) + "\n")
        return
    line = f"run={response.run_id} status={response.status}"
    if response.skip_reason:
        line += f" skip_reason={response.skip_reason}"
    if response.message:
        line += f" message={response.message!r}"
    out.write(line + "\n")


def run_one(
    executor: RemediationExecutor,
    request: WorkerRequest,
    *,
    fail_on_skip: bool,
    json_output: bool,
    out: TextIO,
) -> int:
    """Execute one request and return its exit code."""
    playbook = _playbook(executor, request.playbook_id)
    response = executor.execute_playbook(
        ExecutePlaybookRequest(incident_id=request.incident_id, inputs=request.inputs),
        playbook,
    )
    _emit(out, response, json_output=json_output)
    events.info(
        "remediation_run_finished",
        run_id=response.run_id,
        status=response.status,
        skip_reason=response.skip_reason,
    )
    return exit_code_for(response.status, fail_on_skip=fail_on_skip)


def run_batch(
    executor: RemediationExecutor,
    requests: Sequence[WorkerRequest],
    *,
    max_concurrency: int,
    fail_on_skip: bool,
    json_output: bool,
    out: TextIO,
) -> int:
    """Execute independent requests concurrently; exit code is the worst of all runs."""
    pairs = [
        (ExecutePlaybookRequest(incident_id=r.incident_id, inputs=r.inputs), _playbook(executor, r.playbook_id))
        for r in requests
    ]
    responses = asyncio.run(executor.execute_many(pairs, max_concurrency=max_concurrency))
    worst = EXIT_OK
    for response in responses:
        _emit(out, response, json_output=json_output)
        worst = max(worst, exit_code_for(response.status, fail_on_skip=fail_on_skip))
    events.info("remediation_batch_finished", total=len(responses), exit_code=worst)
    return worst


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser for the remediation worker."""
    parser = argparse.ArgumentParser(description="Run remediation playbooks.")
    parser.add_argument("--fail-on-skip", action="store_true", default=None, help="Exit 1 when a run is SKIPPED.")
    parser.add_argument("--text", action="store_true", help="Print one text line per run instead of JSON.")
    sub = parser.add_subparsers(dest="command", required=True)

    run_p = sub.add_parser("run", help="Execute one playbook against one incident.")
    run_p.add_argument("--incident", required=True, help="Incident id.")
    run_p.add_argument("--playbook", required=True, help="Playbook id.")
    run_p.add_argument("--input", action="append", default=[], metavar="KEY=VALUE", help="Playbook input.")
    run_p.add_argument("--inputs-json", default=None, help="Playbook inputs as one JSON object.")

    batch_p = sub.add_parser("batch", help="Execute JSON-lines requests concurrently.")
    batch_p.add_argument("path", help="File with one {incidentId, playbookId, inputs} object per line.")
    batch_p.add_argument("--max-concurrency", type=int, default=None, help="Concurrent runs (default from config).")

    sub.add_parser("list", help="List registered playbooks.")
    return parser


def _request_from_args(args: argparse.Namespace) -> WorkerRequest:
    inputs: dict[str, Any] = {}
    if args.inputs_json:
        try:
            decoded = json.loads(args.inputs_json)
        except json.JSONDecodeError as exc:
            raise ValueError(f"--inputs-json is not valid JSON ({exc.msg})") from exc
        if not isinstance(decoded, dict):
            raise ValueError("--inputs-json must be a JSON object")
        inputs.update(decoded)
    inputs.update(parse_input_pairs(args.input))
    return WorkerRequest(incident_id=args.incident, playbook_id=args.playbook, inputs=inputs)


def _default_executor_factory(settings: Settings) -> RemediationExecutor:
    from apps.backend.remediation_engine import build_executor

    return build_executor(settings)


def main(
    argv: list[str] | None = None,
    *,
    executor_factory: ExecutorFactory | None = None,
    out: TextIO | None = None,
) -> int:
    """CLI entrypoint; returns the process exit code."""
    args = build_parser().parse_args(argv)
    out = out or sys.stdout
    settings = get_settings(reload=True)
    fail_on_skip = settings.worker.fail_on_skip if args.fail_on_skip is None else bool(args.fail_on_skip)
    json_output = settings.worker.json_output and not args.text

    executor = (executor_factory or _default_executor_factory)(settings)
    try:
        if args.command == "list":
            registry = executor.registry
            for definition in registry.definitions() if registry is not None else []:
                out.write(f"{definition.id}\t{definition.version}\t{definition.title}\n")
            return EXIT_OK
        if args.command == "batch":
            max_concurrency = args.max_concurrency or settings.remediation.max_concurrency
            return run_batch(
                executor,
                load_batch(Path(args.path)),
                max_concurrency=int(max_concurrency),
                fail_on_skip=fail_on_skip,
                json_output=json_output,
                out=out,
            )
        return run_one(
            executor,
            _request_from_args(args),
            fail_on_skip=fail_on_skip,
            json_output=json_output,
            out=out,
        )
    except (RemediationError, ValueError, OSError) as exc:
        logger.error("Remediation worker error", extra={"error": str(exc), "error_type": type(exc).__name__})
        out.write(json.dumps({"error": type(exc).__name__, "message": str(exc)}) + "\n")
        return EXIT_ERROR


if __name__ == "__main__":
    setup_logging()
    sys.exit(main())
