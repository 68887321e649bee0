"""Macro expansion for ``$(NAME)`` references in commands, env values and paths."""

import re

_MACRO_RE = re.compile(r"\$\(([A-Za-z_][\w.]*)\)")
_NAME_RE = re.compile(r"[^A-Za-z0-9_]")


def normalize_name(name: str) -> str:
    """``Agent.OS`` -> ``AGENT_OS``, the form agents export to processes."""
    return _NAME_RE.sub("_", name.strip()).upper()


def render(template: str, variables: dict[str, str]) -> str:
    """Replace ``$(NAME)`` with the matching variable; unknown macros stay verbatim."""

    def replacer(m: re.Match) -> str:
        value = variables.get(normalize_name(m.group(1)))
        return m.group(0) if value is None else value

    return _MACRO_RE.sub(replacer, template)
