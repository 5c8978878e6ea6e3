"""
containeragents/control_plane/template_registry.py
──────────────────────────────────────────────────
Label → template resolution.

A cloud holds an ordered list of templates. Each template offers a set of
label atoms ("linux docker build"). A job asks for a label expression:

    build
    linux && docker
    (linux || windows) && !gpu

find_template(label) walks the templates in configured order and returns the
first whose atoms satisfy the expression. With no label at all, the first
template wins unconditionally.

Grammar (lowest to highest precedence)
──────────────────────────────────────
    expr    := and ( "||" and )*
    and     := unary ( "&&" unary )*
    unary   := "!" unary | primary
    primary := "(" expr ")" | ATOM

Parsed expressions are cached; the registry itself is immutable after
construction, so concurrent provisioning tasks can share it freely.
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Set

from containeragents.shared.models import AgentTemplate

Predicate = Callable[[Set[str]], bool]

_TOKEN = re.compile(r"\s*(\|\||&&|!|\(|\)|[^\s()!&|]+)")


class LabelExpressionError(ValueError):
    """
    Raised for a malformed label expression.

    Attributes:
        reason: Human-readable explanation, including the offending position.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


def _tokenize(expression: str) -> List[str]:
    tokens: List[str] = []
    position = 0
    expression = expression.rstrip()
    while position < len(expression):
        match = _TOKEN.match(expression, position)
        if match is None:
            raise LabelExpressionError(
                f"Unexpected character {expression[position]!r} at {position} in {expression!r}"
            )
        tokens.append(match.group(1))
        position = match.end()
    return tokens


class _Parser:
    """Recursive-descent parser producing a predicate over a label set."""

    def __init__(self, expression: str) -> None:
        self._expression = expression
        self._tokens = _tokenize(expression)
        self._pos = 0

    def parse(self) -> Predicate:
        if not self._tokens:
            return lambda labels: True
        predicate = self._or()
        if self._pos != len(self._tokens):
            raise LabelExpressionError(
                f"Unexpected {self._tokens[self._pos]!r} in {self._expression!r}"
            )
        return predicate

    def _peek(self) -> Optional[str]:
        return self._tokens[self._pos] if self._pos < len(self._tokens) else None

    def _take(self) -> str:
        token = self._peek()
        if token is None:
            raise LabelExpressionError(f"Unexpected end of {self._expression!r}")
        self._pos += 1
        return token

    def _or(self) -> Predicate:
        terms = [self._and()]
        while self._peek() == "||":
            self._take()
            terms.append(self._and())
        if len(terms) == 1:
            return terms[0]
        return lambda labels: any(t(labels) for t in terms)

    def _and(self) -> Predicate:
        terms = [self._unary()]
        while self._peek() == "&&":
            self._take()
            terms.append(self._unary())
        if len(terms) == 1:
            return terms[0]
        return lambda labels: all(t(labels) for t in terms)

    def _unary(self) -> Predicate:
        if self._peek() == "!":
            self._take()
            inner = self._unary()
            return lambda labels: not inner(labels)
        return self._primary()

    def _primary(self) -> Predicate:
        token = self._take()
        if token == "(":
            inner = self._or()
            if self._take() != ")":
                raise LabelExpressionError(f"Missing ')' in {self._expression!r}")
            return inner
        if token in ("||", "&&", ")"):
            raise LabelExpressionError(f"Unexpected {token!r} in {self._expression!r}")
        return lambda labels: token in labels


@lru_cache(maxsize=256)
def parse_label_expression(expression: str) -> Predicate:
    """
    Compile a label expression into a predicate over a set of label atoms.

    Raises:
        LabelExpressionError: if the expression is malformed.
    """
    return _Parser(expression).parse()


def label_matches(expression: Optional[str], labels: Iterable[str]) -> bool:
    if not expression or not expression.strip():
        return True
    return parse_label_expression(expression.strip())(set(labels))


class TemplateRegistry:
    """
    Ordered, read-only collection of one cloud's templates.

    Args:
        templates: Templates in configured order. Names must be unique.
    """

    def __init__(self, templates: Iterable[AgentTemplate]) -> None:
        self._templates: List[AgentTemplate] = list(templates)
        self._by_name: Dict[str, AgentTemplate] = {}
        for template in self._templates:
            if template.name in self._by_name:
                raise ValueError(f"Duplicate template name {template.name!r}")
            self._by_name[template.name] = template

    def find_template(self, label: Optional[str] = None) -> Optional[AgentTemplate]:
        """
        First template (in configured order) whose labels satisfy `label`.

        Returns None if nothing matches. A None or blank label matches the
        first template.
        """
        if not label or not label.strip():
            return self._templates[0] if self._templates else None
        predicate = parse_label_expression(label.strip())
        for template in self._templates:
            if predicate(template.label_set):
                return template
        return None

    def get(self, name: str) -> Optional[AgentTemplate]:
        return self._by_name.get(name)

    @property
    def names(self) -> FrozenSet[str]:
        return frozenset(self._by_name)

    def __iter__(self):
        return iter(self._templates)

    def __len__(self) -> int:
        return len(self._templates)
