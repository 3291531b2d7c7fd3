"""Tests for pipeline parser."""

import pytest
from controller.src.errors import PipelineMisconfigured
from controller.src.models.step import PipelineConfig, StageConfig, StepConfig
from controller.src.services.pipeline_parser import (
    parse_pipeline_config,
    parse_pipeline_dict,
    parse_pipelines_file,
    validate_pipeline,
)

def test_valid_pipeline():
    config = """
name: Test Pipeline
trigger:
  branches: [main]
stages:
  - name: build
    steps:
      - name: compile
        command: dotnet build
        timeout: 120
  - name: test
    continue_on_failure: true
    steps:
      - name: unit
        command: [dotnet, test]
        expected_exit_code: 0
"""
    result = parse_pipeline_config(config)
    assert result.name == "Test Pipeline"
    assert [s.name for s in result.stages] == ["build", "test"]
    assert result.stages[0].steps[0].timeout == 120
    assert result.stages[1].steps[0].command == ["dotnet", "test"]
    assert result.stages[1].continue_on_failure is True
    assert result.trigger.branches == ["main"]

def test_default_timeout():
    result = parse_pipeline_dict({
        "name": "p",
        "stages": [{"name": "s", "steps": [{"name": "a", "command": "true"}]}],
    })
    assert result.stages[0].steps[0].timeout == 600

def test_missing_stages():
    config = """
name: Bad Pipeline
"""
    with pytest.raises(PipelineMisconfigured, match="must have 'stages'"):
        parse_pipeline_config(config)

def test_empty_stage_list():
    with pytest.raises(PipelineMisconfigured, match="at least one stage"):
        parse_pipeline_dict({"name": "p", "stages": []})

def test_missing_step_name():
    config = """
name: Bad Pipeline
stages:
  - name: build
    steps:
      - command: dotnet build
"""
    with pytest.raises(PipelineMisconfigured, match="missing 'name'"):
        parse_pipeline_config(config)

def test_missing_step_command():
    config = """
name: Bad Pipeline
stages:
  - name: build
    steps:
      - name: compile
"""
    with pytest.raises(PipelineMisconfigured, match="missing 'command'"):
        parse_pipeline_config(config)

def test_duplicate_step_names_within_stage():
    config = {
        "name": "p",
        "stages": [
            {
                "name": "build",
                "steps": [
                    {"name": "compile", "command": "make"},
                    {"name": "compile", "command": "make install"},
                ],
            }
        ],
    }
    with pytest.raises(PipelineMisconfigured, match="duplicate step 'compile'"):
        parse_pipeline_dict(config)

def test_same_step_name_in_different_stages_is_allowed():
    result = parse_pipeline_dict({
        "name": "p",
        "stages": [
            {"name": "build", "steps": [{"name": "run", "command": "make"}]},
            {"name": "test", "steps": [{"name": "run", "command": "make test"}]},
        ],
    })
    assert len(result.stages) == 2

def test_duplicate_stage_names():
    with pytest.raises(PipelineMisconfigured, match="duplicate stage"):
        parse_pipeline_dict({
            "name": "p",
            "stages": [
                {"name": "build", "steps": [{"name": "a", "command": "true"}]},
                {"name": "build", "steps": [{"name": "b", "command": "true"}]},
            ],
        })

def test_stage_without_steps():
    with pytest.raises(PipelineMisconfigured, match="has no steps"):
        parse_pipeline_dict({"name": "p", "stages": [{"name": "build", "steps": []}]})

def test_invalid_timeout_type():
    with pytest.raises(PipelineMisconfigured, match="is invalid"):
        parse_pipeline_dict({
            "name": "p",
            "stages": [{"name": "s", "steps": [{"name": "a", "command": "true", "timeout": "soon"}]}],
        })

def test_non_positive_timeout():
    with pytest.raises(PipelineMisconfigured, match="positive timeout"):
        parse_pipeline_dict({
            "name": "p",
            "stages": [{"name": "s", "steps": [{"name": "a", "command": "true", "timeout": 0}]}],
        })

def test_empty_config():
    with pytest.raises(PipelineMisconfigured, match="Empty"):
        parse_pipeline_config("")

def test_invalid_yaml():
    with pytest.raises(PipelineMisconfigured, match="Invalid YAML"):
        parse_pipeline_config("name: [unclosed")

def test_validate_programmatic_pipeline():
    pipeline = PipelineConfig(
        name="p",
        stages=[StageConfig(name="s", steps=[
            StepConfig(name="a", command="true"),
            StepConfig(name="a", command="false"),
        ])],
    )
    with pytest.raises(PipelineMisconfigured):
        validate_pipeline(pipeline)

def test_pipelines_file(tmp_path):
    path = tmp_path / "pipelines.yml"
    path.write_text("""
pipelines:
  - name: app
    stages:
      - name: build
        steps:
          - name: compile
            command: make
  - name: docs
    trigger:
      branches: ["docs/*"]
    stages:
      - name: build
        steps:
          - name: sphinx
            command: make html
""")
    pipelines = parse_pipelines_file(str(path))
    assert [p.name for p in pipelines] == ["app", "docs"]

def test_pipelines_file_duplicate_names(tmp_path):
    path = tmp_path / "pipelines.yml"
    path.write_text("""
pipelines:
  - name: app
    stages: [{name: b, steps: [{name: c, command: make}]}]
  - name: app
    stages: [{name: b, steps: [{name: c, command: make}]}]
""")
    with pytest.raises(PipelineMisconfigured, match="Duplicate pipeline names"):
        parse_pipelines_file(str(path))

def test_pipelines_file_missing(tmp_path):
    with pytest.raises(PipelineMisconfigured, match="Cannot read"):
        parse_pipelines_file(str(tmp_path / "nope.yml"))

def one_step(**step):
    return {"name": "p", "stages": [{"name": "s", "steps": [{"name": "a", "command": "true", **step}]}]}

@pytest.mark.parametrize("step, message", [
    ({"outputs": ["../secret.txt"]}, "output '../secret.txt' escapes the workspace"),
    ({"outputs": ["bin/../../etc"]}, "escapes the workspace"),
    ({"outputs": ["/etc/passwd"]}, "output must be a relative path"),
    ({"inputs": ["../shared"]}, "input '../shared' escapes the workspace"),
    ({"working_dir": ".."}, "working_dir '..' escapes the workspace"),
    ({"working_dir": "/tmp"}, "working_dir must be a relative path"),
])
def test_paths_outside_workspace_are_rejected(step, message):
    with pytest.raises(PipelineMisconfigured, match=message):
        parse_pipeline_dict(one_step(**step))

def test_paths_inside_workspace_are_accepted():
    pipeline = parse_pipeline_dict(one_step(
        working_dir="src/App", inputs=["./bin", "obj/../bin"], outputs=["publish/app.zip"],
    ))
    assert pipeline.stages[0].steps[0].outputs == ["publish/app.zip"]

def test_slash_in_stage_name_is_rejected():
    with pytest.raises(PipelineMisconfigured, match="must not contain '/'"):
        parse_pipeline_dict({"name": "p", "stages": [
            {"name": "test/unit", "steps": [{"name": "a", "command": "true"}]},
        ]})

def test_slash_in_step_name_is_rejected():
    with pytest.raises(PipelineMisconfigured, match="must not contain '/'"):
        parse_pipeline_dict(one_step(name="logs/a"))
