"""Step conditions: a small typed expression tree and its interpreter.

Conditions are parsed once when the pipeline is loaded. ``evaluate`` is pure:
it reads the facts snapshot and the pipeline status and nothing else.

Supported expression syntax::

    succeeded()  failed()  always()
    eq(variables['Agent.OS'], 'Linux')   ne(variables.IMAGE, '')
    contains(variables, 'AWS_SECRET_ACCESS_KEY')
    and(a, b, ...)  or(a, b, ...)  not(a)
"""

import re
from dataclasses import dataclass

from .errors import ConditionSyntaxError
from .facts import EnvironmentFacts
from .state import PipelineStatus


class Condition:
    """Base node. Subclasses are frozen dataclasses."""

    def __str__(self) -> str:
        return to_expression(self)


@dataclass(frozen=True)
class Succeeded(Condition):
    pass


@dataclass(frozen=True)
class Failed(Condition):
    pass


@dataclass(frozen=True)
class Always(Condition):
    pass


@dataclass(frozen=True)
class Equals(Condition):
    fact: str
    value: str


@dataclass(frozen=True)
class NotEquals(Condition):
    fact: str
    value: str


@dataclass(frozen=True)
class Defined(Condition):
    fact: str


@dataclass(frozen=True)
class Not(Condition):
    operand: Condition


@dataclass(frozen=True)
class And(Condition):
    operands: tuple[Condition, ...]


@dataclass(frozen=True)
class Or(Condition):
    operands: tuple[Condition, ...]


DEFAULT_CONDITION = Succeeded()


def evaluate(condition: Condition | None, facts: EnvironmentFacts,
             status: PipelineStatus) -> bool:
    if condition is None:
        condition = DEFAULT_CONDITION

    if isinstance(condition, Succeeded):
        return status is PipelineStatus.SUCCEEDED
    if isinstance(condition, Failed):
        return status is PipelineStatus.FAILED
    if isinstance(condition, Always):
        return True
    if isinstance(condition, Equals):
        actual = facts.get(condition.fact)
        # Unknown facts make the comparison false, never an error.
        return actual is not None and actual.lower() == condition.value.lower()
    if isinstance(condition, NotEquals):
        actual = facts.get(condition.fact)
        return actual is not None and actual.lower() != condition.value.lower()
    if isinstance(condition, Defined):
        return condition.fact in facts
    if isinstance(condition, Not):
        return not evaluate(condition.operand, facts, status)
    if isinstance(condition, And):
        return all(evaluate(c, facts, status) for c in condition.operands)
    if isinstance(condition, Or):
        return any(evaluate(c, facts, status) for c in condition.operands)
    raise TypeError(f"Unknown condition node: {condition!r}")


def to_expression(condition: Condition) -> str:
    if isinstance(condition, Succeeded):
        return "succeeded()"
    if isinstance(condition, Failed):
        return "failed()"
    if isinstance(condition, Always):
        return "always()"
    if isinstance(condition, Equals):
        return f"eq(variables['{condition.fact}'], '{condition.value}')"
    if isinstance(condition, NotEquals):
        return f"ne(variables['{condition.fact}'], '{condition.value}')"
    if isinstance(condition, Defined):
        return f"contains(variables, '{condition.fact}')"
    if isinstance(condition, Not):
        return f"not({to_expression(condition.operand)})"
    if isinstance(condition, And):
        return "and(" + ", ".join(to_expression(c) for c in condition.operands) + ")"
    if isinstance(condition, Or):
        return "or(" + ", ".join(to_expression(c) for c in condition.operands) + ")"
    raise TypeError(f"Unknown condition node: {condition!r}")


# -- Parsing -----------------------------------------------------------------

_TOKEN_RE = re.compile(r"""
    \s*(?:
        (?P<string>'(?:[^']|'')*')
      | (?P<name>[A-Za-z0-9_][\w.\-]*)
      | (?P<punct>[(),\[\]])
    )""", re.VERBOSE)

_NULLARY = {"succeeded": Succeeded, "failed": Failed, "always": Always}
_COMPARE = {"eq": Equals, "ne": NotEquals}


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = self._tokenize(text)
        self.pos = 0

    def _tokenize(self, text: str) -> list[tuple[str, str]]:
        tokens = []
        pos = 0
        while pos < len(text):
            if text[pos:].strip() == "":
                break
            m = _TOKEN_RE.match(text, pos)
            if not m:
                raise ConditionSyntaxError(f"unexpected character at {pos}: {text[pos:pos + 10]!r}")
            kind = m.lastgroup
            value = m.group(kind)
            if kind == "string":
                value = value[1:-1].replace("''", "'")
            tokens.append((kind, value))
            pos = m.end()
        return tokens

    def _peek(self) -> tuple[str, str] | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _next(self) -> tuple[str, str]:
        tok = self._peek()
        if tok is None:
            raise ConditionSyntaxError(f"unexpected end of expression: {self.text!r}")
        self.pos += 1
        return tok

    def _expect(self, punct: str) -> None:
        kind, value = self._next()
        if kind != "punct" or value != punct:
            raise ConditionSyntaxError(f"expected {punct!r}, got {value!r} in {self.text!r}")

    def parse(self) -> Condition:
        node = self._expression()
        if self._peek() is not None:
            raise ConditionSyntaxError(f"trailing input after expression: {self.text!r}")
        return node

    def _expression(self) -> Condition:
        kind, name = self._next()
        if kind != "name":
            raise ConditionSyntaxError(f"expected a function, got {name!r} in {self.text!r}")
        func = name.lower()
        self._expect("(")

        if func in _NULLARY:
            self._expect(")")
            return _NULLARY[func]()

        if func in ("and", "or"):
            operands = [self._expression()]
            while self._peek() == ("punct", ","):
                self._next()
                operands.append(self._expression())
            self._expect(")")
            if len(operands) < 2:
                raise ConditionSyntaxError(f"{func}() needs at least two operands in {self.text!r}")
            return And(tuple(operands)) if func == "and" else Or(tuple(operands))

        if func == "not":
            operand = self._expression()
            self._expect(")")
            return Not(operand)

        if func in _COMPARE:
            left = self._operand()
            self._expect(",")
            right = self._operand()
            self._expect(")")
            if left[0] == "fact" and right[0] == "literal":
                return _COMPARE[func](left[1], right[1])
            if left[0] == "literal" and right[0] == "fact":
                return _COMPARE[func](right[1], left[1])
            raise ConditionSyntaxError(
                f"{func}() must compare a variable with a literal in {self.text!r}"
            )

        if func == "contains":
            kind, value = self._next()
            if (kind, value.lower()) != ("name", "variables"):
                raise ConditionSyntaxError(f"contains() expects 'variables' first in {self.text!r}")
            self._expect(",")
            kind, fact = self._next()
            if kind != "string":
                raise ConditionSyntaxError(f"contains() expects a quoted name in {self.text!r}")
            self._expect(")")
            return Defined(fact)

        raise ConditionSyntaxError(f"unknown function {name!r} in {self.text!r}")

    def _operand(self) -> tuple[str, str]:
        kind, value = self._next()
        if kind == "string":
            return "literal", value
        if kind != "name":
            raise ConditionSyntaxError(f"unexpected {value!r} in {self.text!r}")
        if value.lower().startswith("variables."):
            return "fact", value[len("variables."):]
        if value.lower() == "variables":
            self._expect("[")
            kind, fact = self._next()
            if kind != "string":
                raise ConditionSyntaxError(f"variables[...] expects a quoted name in {self.text!r}")
            self._expect("]")
            return "fact", fact
        # Bare words are literals: eq(variables.DEPLOY, 1)
        return "literal", value


def parse_condition(text: str | None) -> Condition:
    if text is None or not str(text).strip():
        return DEFAULT_CONDITION
    return _Parser(str(text)).parse()
