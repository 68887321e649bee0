"""Environment facts: the read-only snapshot conditions and commands see.

Names are normalised the way CI agents export variables to processes:
``Agent.OS`` and ``agent_os`` both resolve to ``AGENT_OS``. A snapshot never
changes after capture; ``with_variable`` returns a new snapshot with one more
ledger entry.
"""

import os
import platform
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping

from .templates import normalize_name, render

# Optional feature flags with documented defaults.
DEFAULT_FACTS = {
    "DEPLOY": "",
    "DEPLOY_ALT": "",
    "IMAGE": "",
    "SCRIPT": "",
}

_OS_NAMES = {"Linux": "Linux", "Darwin": "Darwin", "Windows": "Windows_NT"}
MASK = "***"


def agent_os(system: str | None = None) -> str:
    system = system or platform.system()
    return _OS_NAMES.get(system, system)


@dataclass(frozen=True)
class LedgerEntry:
    origin: int
    name: str
    value: str


@dataclass(frozen=True)
class EnvironmentFacts:
    variables: Mapping[str, str]
    secret_names: frozenset[str] = frozenset()
    ledger: tuple[LedgerEntry, ...] = ()
    environ: Mapping[str, str] = field(default_factory=dict)
    _secrets: Mapping[str, str] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        for attr in ("variables", "environ", "_secrets"):
            value = getattr(self, attr)
            if not isinstance(value, MappingProxyType):
                object.__setattr__(self, attr, MappingProxyType(dict(value)))

    def get(self, name: str) -> str | None:
        return self.variables.get(normalize_name(name))

    def __contains__(self, name: str) -> bool:
        key = normalize_name(name)
        return bool(self.variables.get(key)) or key in self.secret_names

    def has_secret(self, name: str) -> bool:
        return normalize_name(name) in self.secret_names

    def with_variable(self, name: str, value: str, origin: int) -> "EnvironmentFacts":
        """Return a snapshot where ``name`` is set, recorded as produced by step ``origin``."""
        if self.ledger and origin < self.ledger[-1].origin:
            raise ValueError(
                f"variable {name!r} from step {origin} cannot follow step {self.ledger[-1].origin}"
            )
        key = normalize_name(name)
        return EnvironmentFacts(
            variables={**self.variables, key: value},
            secret_names=self.secret_names,
            ledger=self.ledger + (LedgerEntry(origin, key, value),),
            environ=self.environ,
            _secrets=self._secrets,
        )

    def to_environ(self, overrides: Mapping[str, str] | None = None) -> dict[str, str]:
        # Secret values reach a step only through its own env overrides.
        env = {**self.environ, **self.variables}
        if overrides:
            env.update(overrides)
        return env

    def expand(self, text: str) -> str:
        """Substitute ``$(NAME)`` macros from variables and secrets."""
        return render(text, {**self.variables, **self._secrets})

    def mask(self, text: str) -> str:
        for value in self._secrets.values():
            if value:
                text = text.replace(value, MASK)
        return text


def snapshot(
    variables: Mapping[str, str] | None = None,
    secrets: Iterable[str] = (),
    environ: Mapping[str, str] | None = None,
    system: str | None = None,
) -> EnvironmentFacts:
    """Capture the facts for one run.

    Precedence, lowest first: documented defaults, platform facts, process
    environment, pipeline variables. Secrets are looked up in the process
    environment; only their presence is visible as a fact.
    """
    environ = dict(os.environ if environ is None else environ)

    facts: dict[str, str] = dict(DEFAULT_FACTS)
    facts["AGENT_OS"] = agent_os(system)
    facts["SYSTEM_JOBNAME"] = environ.get("SYSTEM_JOBNAME", "local")
    facts["BUILD_SOURCESDIRECTORY"] = environ.get("BUILD_SOURCESDIRECTORY", os.getcwd())
    facts["BUILD_SOURCEVERSION"] = environ.get("BUILD_SOURCEVERSION", "")

    for name in DEFAULT_FACTS:
        if name in environ:
            facts[name] = environ[name]
    for name, value in (variables or {}).items():
        facts[normalize_name(name)] = str(value)

    secret_values: dict[str, str] = {}
    for name in secrets:
        key = normalize_name(name)
        value = environ.get(key) or environ.get(name)
        if value:
            secret_values[key] = value
        facts.pop(key, None)

    return EnvironmentFacts(
        variables=facts,
        secret_names=frozenset(secret_values),
        environ={k: v for k, v in environ.items() if normalize_name(k) not in secret_values},
        _secrets=secret_values,
    )
