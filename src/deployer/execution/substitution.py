"""
Variable substitution for action templates.

Placeholders have the form ``((namespace:key))`` where ``namespace`` is one
or more lowercase ASCII letters and ``key`` is ASCII letters, digits, ``_``
or ``-``. The template is scanned once, left to right; at every position
the scanner tries to read a whole placeholder and otherwise copies one
character through. This gives leftmost, non-overlapping matches:
``"(((data:x))"`` resolves to ``"(" + data["x"]``.

Namespaces:

- ``data``: the request data; unknown keys resolve to ``""``.
- ``env``:  the action's own ``env`` templates first, then the process
  environment but only for names in :data:`ENV_ALLOWLIST`; anything else
  resolves to ``""``.
- anything else resolves to ``""``.

Resolution never raises. Arbitrary process environment variables are never
reachable from a template.
"""

from __future__ import annotations

import os
import string
from collections.abc import Mapping

ENV_ALLOWLIST: frozenset[str] = frozenset({
    "HOME",
    "LANG",
    "PATH",
    "SHELL",
    "USER",
    "XDG_RUNTIME_DIR",
})

_NAMESPACE_CHARS = frozenset(string.ascii_lowercase)
_KEY_CHARS = frozenset(string.ascii_letters + string.digits + "_-")

_OPEN = "(("
_CLOSE = "))"


def _match_at(template: str, start: int) -> tuple[int, str, str] | None:
    """Try to read a placeholder beginning at *start*.

    Returns ``(end, namespace, key)`` with *end* one past the closing
    ``))``, or ``None`` when no placeholder starts here.
    """
    if not template.startswith(_OPEN, start):
        return None

    length = len(template)
    pos = start + len(_OPEN)

    ns_start = pos
    while pos < length and template[pos] in _NAMESPACE_CHARS:
        pos += 1
    if pos == ns_start or pos >= length or template[pos] != ":":
        return None
    namespace = template[ns_start:pos]
    pos += 1

    key_start = pos
    while pos < length and template[pos] in _KEY_CHARS:
        pos += 1
    if pos == key_start or not template.startswith(_CLOSE, pos):
        return None
    key = template[key_start:pos]

    return pos + len(_CLOSE), namespace, key


def lookup(
    namespace: str,
    key: str,
    data: Mapping[str, str],
    action_env: Mapping[str, str],
    environ: Mapping[str, str] | None = None,
) -> str:
    """Value of one placeholder; ``""`` whenever it cannot be resolved."""
    if namespace == "data":
        return data.get(key, "")
    if namespace == "env":
        if key in action_env:
            return action_env[key]
        if key in ENV_ALLOWLIST:
            env = os.environ if environ is None else environ
            return env.get(key, "")
    return ""


def resolve(
    template: str,
    data: Mapping[str, str],
    action_env: Mapping[str, str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> str:
    """Replace every placeholder in *template*.

    Args:
        template: Text possibly containing ``((namespace:key))`` placeholders.
        data: Request data (``data`` namespace).
        action_env: The action's env templates (first source for ``env``).
        environ: Process environment; defaults to ``os.environ``.
    """
    action_env = action_env or {}
    out: list[str] = []
    literal_start = 0
    pos = 0
    length = len(template)

    while pos < length:
        match = _match_at(template, pos) if template[pos] == "(" else None
        if match is None:
            pos += 1
            continue
        end, namespace, key = match
        out.append(template[literal_start:pos])
        out.append(lookup(namespace, key, data, action_env, environ))
        pos = literal_start = end

    if literal_start == 0:
        return template
    out.append(template[literal_start:])
    return "".join(out)


def find_placeholders(template: str) -> list[tuple[str, str]]:
    """All ``(namespace, key)`` pairs in *template*, in order."""
    found: list[tuple[str, str]] = []
    pos = 0
    while pos < len(template):
        match = _match_at(template, pos)
        if match is None:
            pos += 1
            continue
        pos, namespace, key = match
        found.append((namespace, key))
    return found
