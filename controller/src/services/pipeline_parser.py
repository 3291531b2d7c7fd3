"""
Pipeline YAML parser and validator.
"""

import os

import yaml
from typing import List, Dict, Any, Optional

from pydantic import ValidationError

from controller.src.errors import PipelineMisconfigured
from controller.src.models.step import PipelineConfig

DEFAULT_STEP_TIMEOUT = 600  # Default 10 min timeout

def parse_pipeline_config(yaml_content: str) -> PipelineConfig:
    """Parse a single pipeline definition from a YAML string."""
    return validate_config(_load_yaml(yaml_content))

def parse_pipeline_dict(config: Dict[str, Any]) -> PipelineConfig:
    """Validate a single pipeline definition from a dict."""
    return validate_config(config)

def parse_pipelines_file(path: str) -> List[PipelineConfig]:
    """
    Load every pipeline defined in a YAML file.
    Accepts either a top-level 'pipelines' list or one pipeline document.
    """
    try:
        with open(path, "r") as f:
            data = _load_yaml(f.read())
    except OSError as e:
        raise PipelineMisconfigured(f"Cannot read pipelines file {path}: {e}")

    if isinstance(data, dict) and "pipelines" in data:
        entries = data["pipelines"]
        if not isinstance(entries, list) or not entries:
            raise PipelineMisconfigured("'pipelines' must be a non-empty list")
    else:
        entries = [data]

    pipelines = [validate_config(entry) for entry in entries]

    names = [p.name for p in pipelines]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise PipelineMisconfigured(f"Duplicate pipeline names: {', '.join(duplicates)}")

    return pipelines

def _load_yaml(yaml_content: str) -> Any:
    try:
        return yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise PipelineMisconfigured(f"Invalid YAML: {e}")

def validate_config(config: Optional[Dict[str, Any]]) -> PipelineConfig:
    """Validate pipeline configuration structure."""
    if not config:
        raise PipelineMisconfigured("Empty pipeline configuration")

    if not isinstance(config, dict):
        raise PipelineMisconfigured("Pipeline configuration must be a dictionary")

    name = config.get("name")
    if not isinstance(name, str) or not name:
        raise PipelineMisconfigured("Pipeline 'name' must be a non-empty string")

    if "stages" not in config:
        raise PipelineMisconfigured(f"Pipeline '{name}' must have 'stages' defined")

    stages = config["stages"]
    if not isinstance(stages, list):
        raise PipelineMisconfigured(f"Pipeline '{name}' 'stages' must be a list")

    validated_stages = [validate_stage(stage, i) for i, stage in enumerate(stages)]

    trigger = config.get("trigger", {}) or {}
    if not isinstance(trigger, dict):
        raise PipelineMisconfigured(f"Pipeline '{name}' 'trigger' must be a dictionary")

    try:
        pipeline = PipelineConfig(
            name=name,
            stages=validated_stages,
            trigger=trigger,
            env=config.get("env", {}) or {},
            deduplicate=config.get("deduplicate", False),
        )
    except ValidationError as e:
        raise PipelineMisconfigured(f"Pipeline '{name}' is invalid: {e}")

    validate_pipeline(pipeline)
    return pipeline

def validate_stage(stage: Dict[str, Any], index: int) -> Dict[str, Any]:
    """Validate a single pipeline stage."""
    if not isinstance(stage, dict):
        raise PipelineMisconfigured(f"Stage {index} must be a dictionary")

    if "name" not in stage:
        raise PipelineMisconfigured(f"Stage {index} missing 'name'")

    if not isinstance(stage["name"], str):
        raise PipelineMisconfigured(f"Stage {index} 'name' must be a string")

    if "steps" not in stage:
        raise PipelineMisconfigured(f"Stage {index} missing 'steps'")

    if not isinstance(stage["steps"], list):
        raise PipelineMisconfigured(f"Stage {index} 'steps' must be a list")

    return {
        "name": stage["name"],
        "steps": [validate_step(step, index, j) for j, step in enumerate(stage["steps"])],
        "continue_on_failure": stage.get("continue_on_failure", False),
        "env": stage.get("env", {}) or {},
        "parallel_group": stage.get("parallel_group"),
    }

def validate_step(step: Dict[str, Any], stage_index: int, index: int) -> Dict[str, Any]:
    """Validate a single pipeline step."""
    where = f"Stage {stage_index} step {index}"

    if not isinstance(step, dict):
        raise PipelineMisconfigured(f"{where} must be a dictionary")

    # Required fields
    if "name" not in step:
        raise PipelineMisconfigured(f"{where} missing 'name'")

    if "command" not in step:
        raise PipelineMisconfigured(f"{where} missing 'command'")

    # Validate types
    if not isinstance(step["name"], str):
        raise PipelineMisconfigured(f"{where} 'name' must be a string")

    command = step["command"]
    if isinstance(command, list):
        if not command:
            raise PipelineMisconfigured(f"{where} 'command' must not be empty")
        for j, part in enumerate(command):
            if not isinstance(part, str):
                raise PipelineMisconfigured(f"{where} command part {j} must be a string")
    elif not isinstance(command, str) or not command.strip():
        raise PipelineMisconfigured(f"{where} 'command' must be a string or a list of strings")

    validated = {
        "name": step["name"],
        "command": command,
        "timeout": step.get("timeout", DEFAULT_STEP_TIMEOUT),
    }
    for key in (
        "args",
        "expected_exit_code",
        "env",
        "working_dir",
        "image",
        "inputs",
        "outputs",
        "allow_failure",
    ):
        if key in step:
            validated[key] = step[key]

    return validated

def validate_pipeline(pipeline: PipelineConfig):
    """
    Check the invariants a pipeline must satisfy before any run starts.
    Raises PipelineMisconfigured.
    """
    if not pipeline.stages:
        raise PipelineMisconfigured(f"Pipeline '{pipeline.name}' must have at least one stage")

    stage_names = set()
    for stage in pipeline.stages:
        if stage.name in stage_names:
            raise PipelineMisconfigured(
                f"Pipeline '{pipeline.name}' has duplicate stage '{stage.name}'"
            )
        stage_names.add(stage.name)

        if "/" in stage.name:
            raise PipelineMisconfigured(
                f"Stage name '{stage.name}' in pipeline '{pipeline.name}' must not contain '/'"
            )

        if not stage.steps:
            raise PipelineMisconfigured(
                f"Stage '{stage.name}' in pipeline '{pipeline.name}' has no steps"
            )

        step_names = set()
        for step in stage.steps:
            if step.name in step_names:
                raise PipelineMisconfigured(
                    f"Stage '{stage.name}' has duplicate step '{step.name}'"
                )
            step_names.add(step.name)

            if "/" in step.name:
                raise PipelineMisconfigured(
                    f"Step name '{step.name}' in stage '{stage.name}' must not contain '/'"
                )

            if step.timeout <= 0:
                raise PipelineMisconfigured(
                    f"Step '{stage.name}/{step.name}' must have a positive timeout"
                )

            where = f"Step '{stage.name}/{step.name}'"
            if step.working_dir:
                check_workspace_path(step.working_dir, f"{where} working_dir")
            for path in step.inputs:
                check_workspace_path(path, f"{where} input")
            for path in step.outputs:
                check_workspace_path(path, f"{where} output")

def check_workspace_path(path: str, what: str):
    """Reject absolute paths and paths that climb out of the run workspace."""
    if not path or os.path.isabs(path):
        raise PipelineMisconfigured(f"{what} must be a relative path, got '{path}'")

    normalized = os.path.normpath(path)
    if normalized == os.pardir or normalized.startswith(os.pardir + os.sep):
        raise PipelineMisconfigured(f"{what} '{path}' escapes the workspace")
