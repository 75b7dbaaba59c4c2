"""Deploy request wire format.

The body of every queue message is a JSON object::

    {"tag": "web", "data": {"version": "1.4.2"}}

``data`` may be omitted; its values must be strings.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from pydantic import BaseModel, ConfigDict, Field, StrictStr, ValidationError

from deployer.core.errors import MessageDecodeError


class DeployRequest(BaseModel):
    """A request to run the pipeline configured for ``tag``."""

    model_config = ConfigDict(frozen=True)

    tag: StrictStr
    data: dict[StrictStr, StrictStr] = Field(default_factory=dict)

    @classmethod
    def decode(cls, body: bytes | str) -> DeployRequest:
        """Parse a message body.

        Raises:
            MessageDecodeError: the body is not JSON or does not match the schema.
        """
        try:
            return cls.model_validate_json(body)
        except ValidationError as exc:
            raise MessageDecodeError(f"unable to parse deploy message: {exc}", cause=exc) from exc

    def encode(self) -> bytes:
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def build(cls, tag: str, data: Mapping[str, str] | None = None) -> DeployRequest:
        return cls(tag=tag, data=dict(data or {}))


def parse_data_pairs(pairs: Iterable[str]) -> dict[str, str]:
    """Turn ``key=value`` strings into a dict; later keys win.

    Only the first ``=`` splits, so values may contain ``=``.

    Raises:
        ValueError: an item has no ``=`` or an empty key.
    """
    data: dict[str, str] = {}
    for item in pairs:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ValueError(f"expected key=value, got {item!r}")
        data[key] = value
    return data
