"""
Job requests - turn a YAML/JSON request file into a job and its rules.

Request format:

    creator: alice
    scope:
      pipelines: [pipe-1, pipe-2]     # or: project: proj-7
                                      # or: all_projects: true
    rules:
      - source: {code: file-copy, version: "1"}
        target: {code: file-sync, version: "2"}
        remap:
          - {toParamName: path, fromParamName: srcPath}
          - {toParamName: retries, toParamValue: 3}

Rules get ordinals in file order. Remap directives are validated here and
stored as JSON text on the rule.
"""

import json
import uuid
from pathlib import Path
from typing import Any, Optional

import yaml

from compswap.errors import PermanentError
from compswap.schemas import JobScope, ReplacementJob, ReplacementRule, decode_param_remaps


class JobRequestError(PermanentError):
    """Raised when a job request is malformed."""
    pass


def _parse_scope(data: Any) -> JobScope:
    if not isinstance(data, dict):
        raise JobRequestError("scope must be a mapping")
    chosen = [k for k in ("pipelines", "project", "all_projects") if data.get(k)]
    if len(chosen) != 1:
        raise JobRequestError("scope needs exactly one of: pipelines, project, all_projects")
    if chosen[0] == "pipelines":
        ids = data["pipelines"]
        if not isinstance(ids, list):
            raise JobRequestError("scope.pipelines must be a list")
        return JobScope.pipelines(str(i) for i in ids)
    if chosen[0] == "project":
        return JobScope.project(str(data["project"]))
    return JobScope.all_projects()


def _component_ref(rule: dict, side: str, index: int) -> tuple[str, str]:
    ref = rule.get(side)
    if not isinstance(ref, dict) or not ref.get("code") or ref.get("version") is None:
        raise JobRequestError(f"rules[{index}].{side} needs code and version")
    return str(ref["code"]), str(ref["version"])


def parse_job_request(data: dict[str, Any], creator: Optional[str] = None) -> tuple[ReplacementJob, list[ReplacementRule]]:
    """
    Build a job and its rules from a decoded request.

    Args:
        data: Decoded request
        creator: Overrides the request's creator

    Returns:
        (job, rules)

    Raises:
        JobRequestError: If the request is malformed
    """
    if not isinstance(data, dict):
        raise JobRequestError("Job request must be a mapping")
    creator = creator or data.get("creator")
    if not creator:
        raise JobRequestError("Job request needs a creator")

    scope = _parse_scope(data.get("scope"))
    raw_rules = data.get("rules") or []
    if not isinstance(raw_rules, list) or not raw_rules:
        raise JobRequestError("Job request needs at least one rule")

    job = ReplacementJob(job_id=str(uuid.uuid4()), scope=scope, creator=str(creator))
    rules = []
    for index, raw in enumerate(raw_rules):
        if not isinstance(raw, dict):
            raise JobRequestError(f"rules[{index}] must be a mapping")
        source_code, source_version = _component_ref(raw, "source", index)
        target_code, target_version = _component_ref(raw, "target", index)

        remap_info = None
        if raw.get("remap"):
            try:
                remaps = decode_param_remaps(raw["remap"])
            except PermanentError as e:
                raise JobRequestError(f"rules[{index}].remap: {e}") from e
            remap_info = json.dumps([r.to_dict() for r in remaps])

        rules.append(ReplacementRule(
            rule_id=str(uuid.uuid4()),
            job_id=job.job_id,
            ordinal=index,
            source_code=source_code,
            source_version=source_version,
            target_code=target_code,
            target_version=target_version,
            param_remap_info=remap_info,
        ))
    return job, rules


def load_job_request(path: Path, creator: Optional[str] = None) -> tuple[ReplacementJob, list[ReplacementRule]]:
    """Read a .yaml/.yml/.json request file and parse it."""
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix not in (".yaml", ".yml", ".json"):
        raise JobRequestError(f"Unsupported file format: {path.suffix}")
    try:
        with open(path) as f:
            data = json.load(f) if suffix == ".json" else yaml.safe_load(f)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise JobRequestError(f"Cannot parse {path}: {e}") from e
    return parse_job_request(data, creator=creator)
