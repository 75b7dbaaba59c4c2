"""Pipeline definitions: YAML validation models and the immutable runtime types.

The YAML side is validated with pydantic and then frozen into plain
dataclasses, so nothing the dispatcher or executor holds can be mutated
after a snapshot is published.

Example YAML::

    deployables:
      - tag: web
        required-data: [version]
        actions:
          - work-dir: /srv/web
            command: [git, checkout, "((data:version))"]
            env:
              GIT_TERMINAL_PROMPT: "0"
          - work-dir: /srv/web
            command: [systemctl, --user, restart, web]
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Runtime types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Action:
    """One step of a pipeline. All fields are templates."""

    work_dir: str = ""
    command: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class DeployablePipeline:
    """Ordered actions run for one tag."""

    tag: str
    required_data: frozenset[str] = frozenset()
    actions: tuple[Action, ...] = ()

    def missing_data(self, data: Mapping[str, str]) -> list[str]:
        """Required keys absent from *data*, sorted."""
        return sorted(self.required_data.difference(data.keys()))


# ---------------------------------------------------------------------------
# YAML validation models
# ---------------------------------------------------------------------------


class ActionSpec(BaseModel):
    """``actions[]`` entry."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True, coerce_numbers_to_str=True)

    work_dir: str = Field(default="", alias="work-dir")
    command: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)

    def to_action(self) -> Action:
        return Action(
            work_dir=self.work_dir,
            command=tuple(self.command),
            env=MappingProxyType(dict(self.env)),
        )


class DeployableSpec(BaseModel):
    """``deployables[]`` entry."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True, coerce_numbers_to_str=True)

    tag: str = Field(..., min_length=1)
    required_data: list[str] = Field(default_factory=list, alias="required-data")
    actions: list[ActionSpec] = Field(default_factory=list)

    def to_pipeline(self) -> DeployablePipeline:
        return DeployablePipeline(
            tag=self.tag,
            required_data=frozenset(self.required_data),
            actions=tuple(action.to_action() for action in self.actions),
        )


class DeployerConfigSpec(BaseModel):
    """Top level of the pipeline definition file."""

    model_config = ConfigDict(extra="forbid")

    deployables: list[DeployableSpec] = Field(default_factory=list)
