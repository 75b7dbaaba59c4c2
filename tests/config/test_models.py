"""Tests for deployer.config.models: YAML schema and runtime types."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from deployer.config.models import Action, DeployablePipeline, DeployableSpec, DeployerConfigSpec


class TestDeployableSpec:
    def test_hyphenated_keys(self):
        spec = DeployableSpec.model_validate(
            {
                "tag": "web",
                "required-data": ["version"],
                "actions": [{"work-dir": "/srv", "command": ["make"], "env": {"A": "1"}}],
            }
        )
        pipeline = spec.to_pipeline()
        assert pipeline.tag == "web"
        assert pipeline.required_data == frozenset({"version"})
        assert pipeline.actions == (Action(work_dir="/srv", command=("make",), env={"A": "1"}),)

    def test_action_defaults(self):
        spec = DeployableSpec.model_validate({"tag": "t", "actions": [{}]})
        action = spec.to_pipeline().actions[0]
        assert action.work_dir == ""
        assert action.command == ()
        assert dict(action.env) == {}

    def test_numbers_become_strings(self):
        spec = DeployableSpec.model_validate(
            {"tag": 42, "actions": [{"command": ["sleep", 5], "env": {"RETRIES": 3}}]}
        )
        pipeline = spec.to_pipeline()
        assert pipeline.tag == "42"
        assert pipeline.actions[0].command == ("sleep", "5")
        assert pipeline.actions[0].env["RETRIES"] == "3"

    def test_empty_tag_rejected(self):
        with pytest.raises(ValidationError):
            DeployableSpec.model_validate({"tag": ""})

    def test_unknown_key_rejected(self):
        with pytest.raises(ValidationError):
            DeployableSpec.model_validate({"tag": "web", "requires": ["x"]})

    def test_command_must_be_list(self):
        with pytest.raises(ValidationError):
            DeployerConfigSpec.model_validate({"deployables": [{"tag": "w", "actions": [{"command": "make"}]}]})


class TestRuntimeTypes:
    def test_action_env_is_read_only(self):
        action = DeployableSpec.model_validate({"tag": "t", "actions": [{"env": {"A": "1"}}]}).to_pipeline().actions[0]
        with pytest.raises(TypeError):
            action.env["A"] = "2"

    def test_pipeline_is_frozen(self):
        pipeline = DeployablePipeline(tag="web")
        with pytest.raises(AttributeError):
            pipeline.tag = "other"

    def test_missing_data_sorted(self):
        pipeline = DeployablePipeline(tag="web", required_data=frozenset({"c", "a", "b"}))
        assert pipeline.missing_data({"b": "1"}) == ["a", "c"]
        assert pipeline.missing_data({"a": "", "b": "", "c": ""}) == []
