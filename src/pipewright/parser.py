# parser.py
from __future__ import annotations

import itertools
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .errors import ExpressionError, MalformedSpecError
from .expressions import EvalContext, compile_condition, referenced, render, template_expressions, to_str
from .model import (
    ActionKind,
    BuiltinAction,
    InputSpec,
    JobSpec,
    RemoteTransfer,
    ShellCommand,
    StepSpec,
    WorkflowSpec,
)

# `uses:` references with a local implementation. Anything else is EXTERNAL.
BUILTIN_ACTIONS = {
    "actions/checkout": ActionKind.CHECKOUT,
    "actions/upload-artifact": ActionKind.UPLOAD_ARTIFACT,
    "actions/download-artifact": ActionKind.DOWNLOAD_ARTIFACT,
    "pipewright/checkout": ActionKind.CHECKOUT,
    "pipewright/upload-artifact": ActionKind.UPLOAD_ARTIFACT,
    "pipewright/download-artifact": ActionKind.DOWNLOAD_ARTIFACT,
}
SETUP_PREFIXES = ("actions/setup-", "pipewright/setup-")

INPUT_TYPES = {"string", "boolean", "number", "choice", "environment"}


def parse_workflow(path: str | Path) -> WorkflowSpec:
    wf_path = Path(path)
    try:
        text = wf_path.read_text(encoding="utf-8")
    except OSError as e:
        raise MalformedSpecError(f"Cannot read workflow file: {e}", where=str(wf_path))
    return parse_workflow_text(text, source=str(wf_path))


def parse_workflow_text(text: str, source: str = "<string>") -> WorkflowSpec:
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise MalformedSpecError(f"Invalid YAML syntax: {e}", where=source)

    if not isinstance(raw, dict):
        raise MalformedSpecError(
            f"Invalid workflow file: expected YAML mapping, got {type(raw).__name__}",
            where=source,
        )

    # PyYAML parses bare `on:` as boolean True, put it back under "on"
    if True in raw:
        raw["on"] = raw.pop(True)

    jobs_raw = raw.get("jobs")
    if not isinstance(jobs_raw, dict) or not jobs_raw:
        raise MalformedSpecError("Invalid workflow file: no 'jobs' section found", where="jobs")

    name = raw.get("name") or Path(source).stem or "Unnamed Workflow"
    triggers, inputs = _parse_triggers(raw.get("on"))

    jobs: List[JobSpec] = []
    for job_id, job_raw in jobs_raw.items():
        jobs.extend(_parse_job(str(job_id), job_raw))

    seen = set()
    for j in jobs:
        if j.id in seen:
            raise MalformedSpecError(f"Duplicate job id '{j.id}'", where=f"jobs.{j.id}")
        seen.add(j.id)

    return WorkflowSpec(
        name=str(name),
        jobs=tuple(jobs),
        env=_str_dict(raw.get("env"), where="env"),
        triggers=triggers,
        inputs=inputs,
        fail_fast=_opt_bool(raw.get("fail-fast"), where="fail-fast"),
        max_parallel=_opt_int(raw.get("max-parallel"), where="max-parallel", minimum=1),
        source=source,
    )


# ---------------------------------------------------------------------
# Triggers / inputs
# ---------------------------------------------------------------------

def _parse_triggers(trigger_raw: Any) -> Tuple[Tuple[str, ...], Dict[str, InputSpec]]:
    if trigger_raw is None:
        return (), {}
    if isinstance(trigger_raw, str):
        return (trigger_raw,), {}
    if isinstance(trigger_raw, list):
        return tuple(str(t) for t in trigger_raw), {}
    if not isinstance(trigger_raw, dict):
        raise MalformedSpecError("'on' must be a string, list or mapping", where="on")

    inputs: Dict[str, InputSpec] = {}
    for event in ("workflow_call", "workflow_dispatch"):
        event_raw = trigger_raw.get(event)
        if not isinstance(event_raw, dict):
            continue
        declared = event_raw.get("inputs") or {}
        if not isinstance(declared, dict):
            raise MalformedSpecError("inputs must be a mapping", where=f"on.{event}.inputs")
        for input_name, input_raw in declared.items():
            inputs[str(input_name)] = _parse_input(str(input_name), input_raw or {}, f"on.{event}.inputs.{input_name}")
    return tuple(str(k) for k in trigger_raw.keys()), inputs


def _parse_input(name: str, raw: Any, where: str) -> InputSpec:
    if not isinstance(raw, dict):
        raise MalformedSpecError("input declaration must be a mapping", where=where)
    input_type = str(raw.get("type", "string"))
    if input_type not in INPUT_TYPES:
        raise MalformedSpecError(f"unknown input type '{input_type}'", where=where)
    if input_type in ("choice", "environment"):
        input_type = "string"
    return InputSpec(
        name=name,
        required=bool(_opt_bool(raw.get("required"), where=f"{where}.required")),
        type=input_type,
        default=raw.get("default"),
        description=str(raw.get("description") or ""),
    )


# ---------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------

def _parse_job(job_id: str, job_raw: Any) -> List[JobSpec]:
    where = f"jobs.{job_id}"
    if not isinstance(job_raw, dict):
        raise MalformedSpecError("job must be a mapping", where=where)

    steps_raw = job_raw.get("steps")
    if not isinstance(steps_raw, list) or not steps_raw:
        raise MalformedSpecError("job must declare a non-empty 'steps' list", where=f"{where}.steps")

    steps = [_parse_step(step_raw, f"{where}.steps[{i}]") for i, step_raw in enumerate(steps_raw)]
    step_ids = [s.id for s in steps if s.id]
    if len(step_ids) != len(set(step_ids)):
        dupes = sorted({i for i in step_ids if step_ids.count(i) > 1})
        raise MalformedSpecError(f"Duplicate step ids: {dupes}", where=f"{where}.steps")

    condition = _condition(job_raw.get("if"), where=f"{where}.if")
    env = _str_dict(job_raw.get("env"), where=f"{where}.env")
    outputs = _str_dict(job_raw.get("outputs"), where=f"{where}.outputs")
    _check_templates(outputs.values(), where=f"{where}.outputs")
    _check_templates(env.values(), where=f"{where}.env")

    runs_on = job_raw.get("runs-on", "local")
    if isinstance(runs_on, list):
        runs_on = ", ".join(str(r) for r in runs_on)

    container = job_raw.get("container")
    if isinstance(container, dict):
        container = container.get("image")
    if container is not None and not isinstance(container, str):
        raise MalformedSpecError("container must be an image name or a mapping with 'image'", where=f"{where}.container")

    retries = _opt_int(job_raw.get("retries", job_raw.get("max-retries")), where=f"{where}.retries", minimum=0) or 0

    base = dict(
        steps=tuple(steps),
        name=str(job_raw["name"]) if job_raw.get("name") is not None else None,
        needs=tuple(_str_list(job_raw.get("needs"), where=f"{where}.needs")),
        condition=condition,
        runs_on=str(runs_on),
        container=container,
        env=env,
        outputs=outputs,
        retries=retries,
        continue_on_error=bool(_opt_bool(job_raw.get("continue-on-error"), where=f"{where}.continue-on-error")),
        timeout_minutes=_opt_float(job_raw.get("timeout-minutes"), where=f"{where}.timeout-minutes"),
    )

    strategy = job_raw.get("strategy") or {}
    if not isinstance(strategy, dict):
        raise MalformedSpecError("strategy must be a mapping", where=f"{where}.strategy")
    combos = _expand_matrix(strategy.get("matrix"), where=f"{where}.strategy.matrix")
    if not combos:
        return [JobSpec(id=job_id, **base)]

    expanded = []
    for combo in combos:
        suffix = ", ".join(to_str(v) for v in combo.values())
        name = base["name"]
        if name and referenced([name], "matrix"):
            name = render(name, EvalContext({"matrix": combo}))
        elif name:
            name = f"{name} ({suffix})"
        expanded.append(
            JobSpec(
                id=f"{job_id} ({suffix})",
                group=job_id,
                matrix=dict(combo),
                **{**base, "name": name},
            )
        )
    return expanded


def _expand_matrix(matrix: Any, where: str) -> List[Dict[str, Any]]:
    if matrix is None:
        return []
    if not isinstance(matrix, dict):
        raise MalformedSpecError("matrix must be a mapping", where=where)

    include = matrix.get("include") or []
    exclude = matrix.get("exclude") or []
    if not isinstance(include, list) or not isinstance(exclude, list):
        raise MalformedSpecError("matrix include/exclude must be lists", where=where)

    axes = [(str(k), v) for k, v in matrix.items() if k not in ("include", "exclude")]
    for key, values in axes:
        if not isinstance(values, list) or not values:
            raise MalformedSpecError(f"matrix axis '{key}' must be a non-empty list", where=f"{where}.{key}")

    combos: List[Dict[str, Any]] = []
    keys = [k for k, _ in axes]
    if axes:
        for values in itertools.product(*[v for _, v in axes]):
            combo = dict(zip(keys, values))
            if any(isinstance(ex, dict) and all(combo.get(str(k)) == v for k, v in ex.items()) for ex in exclude):
                continue
            combos.append(combo)

    # an include entry extends every product combination whose axis values it
    # agrees with; one that agrees with none becomes a combination of its own
    product = list(combos)
    for extra in include:
        if not isinstance(extra, dict):
            raise MalformedSpecError("matrix include entries must be mappings", where=f"{where}.include")
        extra = {str(k): v for k, v in extra.items()}
        matched = False
        for combo in product:
            if all(combo[k] == v for k, v in extra.items() if k in keys):
                combo.update(extra)
                matched = True
        if not matched:
            combos.append(extra)

    if not combos:
        raise MalformedSpecError("matrix produced no combinations", where=where)
    return combos


# ---------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------

def _parse_step(step_raw: Any, where: str) -> StepSpec:
    if not isinstance(step_raw, dict):
        raise MalformedSpecError("step must be a mapping", where=where)

    kinds = [k for k in ("run", "uses", "transfer") if k in step_raw]
    if len(kinds) != 1:
        raise MalformedSpecError("step must have exactly one of 'run', 'uses' or 'transfer'", where=where)
    kind = kinds[0]

    step_id = step_raw.get("id")
    env = _str_dict(step_raw.get("env"), where=f"{where}.env")
    _check_templates(env.values(), where=f"{where}.env")

    if kind == "run":
        if not isinstance(step_raw["run"], (str, int, float)):
            raise MalformedSpecError("'run' must be a string", where=f"{where}.run")
        command = str(step_raw["run"]).strip()
        if not command:
            raise MalformedSpecError("'run' must not be empty", where=f"{where}.run")
        _check_templates([command], where=f"{where}.run")
        executable: Any = ShellCommand(run=command, shell=_opt_str(step_raw.get("shell")))
        default_name = f"Run {command.splitlines()[0]}"
    elif kind == "uses":
        ref = step_raw["uses"]
        if not isinstance(ref, str) or not ref.strip():
            raise MalformedSpecError("'uses' must be a non-empty string", where=f"{where}.uses")
        inputs = _str_dict(step_raw.get("with"), where=f"{where}.with")
        _check_templates(inputs.values(), where=f"{where}.with")
        executable = BuiltinAction(kind=action_kind(ref), ref=ref.strip(), inputs=inputs)
        default_name = f"Action: {ref}"
    else:
        executable = _parse_transfer(step_raw["transfer"], where=f"{where}.transfer")
        default_name = f"Transfer {executable.source}"

    working_dir = _opt_str(step_raw.get("working-directory"))
    if working_dir:
        _check_templates([working_dir], where=f"{where}.working-directory")

    return StepSpec(
        name=str(step_raw.get("name") or default_name),
        executable=executable,
        id=str(step_id) if step_id is not None else None,
        env=env,
        condition=_condition(step_raw.get("if"), where=f"{where}.if"),
        continue_on_error=bool(_opt_bool(step_raw.get("continue-on-error"), where=f"{where}.continue-on-error")),
        working_directory=working_dir,
        timeout_minutes=_opt_float(step_raw.get("timeout-minutes"), where=f"{where}.timeout-minutes"),
        outputs=tuple(_str_list(step_raw.get("outputs"), where=f"{where}.outputs")),
    )


def _parse_transfer(raw: Any, where: str) -> RemoteTransfer:
    if not isinstance(raw, dict):
        raise MalformedSpecError("transfer must be a mapping", where=where)
    missing = [k for k in ("source", "host", "destination") if not raw.get(k)]
    if missing:
        raise MalformedSpecError(f"transfer is missing {', '.join(missing)}", where=where)
    values = _str_dict({k: raw[k] for k in ("source", "host", "destination", "user", "identity-file") if k in raw}, where=where)
    _check_templates(values.values(), where=where)
    return RemoteTransfer(
        source=values["source"],
        host=values["host"],
        destination=values["destination"],
        user=values.get("user") or None,
        identity_file=values.get("identity-file") or None,
        port=_opt_int(raw.get("port"), where=f"{where}.port", minimum=1),
    )


def action_kind(ref: str) -> ActionKind:
    base = ref.strip().split("@", 1)[0].lower()
    if base in BUILTIN_ACTIONS:
        return BUILTIN_ACTIONS[base]
    if base.startswith(SETUP_PREFIXES):
        return ActionKind.SETUP_TOOL
    return ActionKind.EXTERNAL


# ---------------------------------------------------------------------
# Scalar helpers
# ---------------------------------------------------------------------

def _check_templates(values, where: str) -> None:
    for v in values:
        try:
            template_expressions(v)
        except ExpressionError as e:
            raise MalformedSpecError(e.message, where=where)


def _condition(value: Any, where: str) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        value = "true" if value else "false"
    if not isinstance(value, (str, int, float)):
        raise MalformedSpecError("'if' must be an expression string", where=where)
    text = str(value)
    try:
        compile_condition(text)
    except ExpressionError as e:
        raise MalformedSpecError(e.message, where=where)
    return text


def _str_dict(d: Any, where: str) -> Dict[str, str]:
    if d is None:
        return {}
    if not isinstance(d, dict):
        raise MalformedSpecError("expected a mapping", where=where)
    result = {}
    for k, v in d.items():
        if v is None:
            result[str(k)] = ""
        elif isinstance(v, bool):
            result[str(k)] = str(v).lower()
        elif isinstance(v, (dict, list)):
            raise MalformedSpecError(f"value of '{k}' must be a scalar", where=where)
        else:
            result[str(k)] = str(v)
    return result


def _str_list(value: Any, where: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(v, (str, int)) for v in value):
        return [str(v) for v in value]
    raise MalformedSpecError("expected a string or a list of strings", where=where)


def _opt_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _opt_bool(value: Any, where: str) -> Optional[bool]:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise MalformedSpecError("expected a boolean", where=where)


def _opt_int(value: Any, where: str, minimum: int = 0) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise MalformedSpecError("expected an integer", where=where)
    try:
        number = int(value)
    except ValueError:
        raise MalformedSpecError("expected an integer", where=where)
    if number < minimum:
        raise MalformedSpecError(f"must be >= {minimum}", where=where)
    return number


def _opt_float(value: Any, where: str) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise MalformedSpecError("expected a number", where=where)
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise MalformedSpecError("expected a number", where=where)
    if number <= 0:
        raise MalformedSpecError("must be > 0", where=where)
    return number
