"""
Cohort composition algebra.

Combines named boolean cohorts through a logical expression such as
``"(DATAPARTO OR LACTANTE) AND FEMININO"`` or
``"startedART NOT (transferredIn OR restartedTreatment)"``.

Grammar (keywords are case-insensitive):

    expression := term ("OR" term)*
    term       := factor (("AND" | "NOT") factor)*     # "A NOT B" == "A AND NOT B"
    factor     := "NOT" factor | NAME | "(" expression ")"

Precedence is NOT > AND > OR. Each name refers to a registration: a cohort
provider plus a mapping from the provider's declared parameters to the
composition's parameters, written as in the reporting framework
(``"value1=${onOrAfter},value2=${onOrBefore},locationList=${location}"``).
A mapping value that is not of the ``${name}`` form is passed as a literal.
"""

import abc
import logging
import re
import typing
from dataclasses import dataclass, field
from enum import Enum

from .context import CalculationContext
from .errors import ConfigurationError
from .model import PatientId, PatientSet
from .store import ObservationStore

logger = logging.getLogger(__name__)

_TOKEN = re.compile(r"\(|\)|[^\s()]+")
_NAME = re.compile(r"^[A-Za-z0-9_.\-]+$")
_PLACEHOLDER = re.compile(r"^\$\{\s*(?P<name>[^}\s]+)\s*\}$")


class LogicalOperator(str, Enum):
    """Logical operators for combining cohorts."""

    AND = "AND"
    OR = "OR"
    NOT = "NOT"


@dataclass
class ExpressionNode:
    """
    Node of a parsed composition expression: either a leaf naming a
    registered cohort, or an operator applied to its children.
    """

    name: typing.Optional[str] = None
    operator: typing.Optional[LogicalOperator] = None
    children: list["ExpressionNode"] = field(default_factory=list)

    def is_leaf(self) -> bool:
        return self.name is not None

    def names(self) -> set[str]:
        if self.is_leaf():
            return {self.name}
        found: set[str] = set()
        for child in self.children:
            found |= child.names()
        return found

    def evaluate(
            self,
            lookup: typing.Callable[[str], frozenset],
            universe: frozenset,
    ) -> frozenset:
        """
        Set evaluation of the expression: a patient of ``universe`` is in the
        result iff the expression is true for their memberships.
        """
        if self.is_leaf():
            return lookup(self.name)

        if self.operator == LogicalOperator.AND:
            result = universe
            for child in self.children:
                result = result & child.evaluate(lookup, universe)
                if not result:
                    break
            return result
        elif self.operator == LogicalOperator.OR:
            result = frozenset()
            for child in self.children:
                result = result | child.evaluate(lookup, universe)
            return result
        elif self.operator == LogicalOperator.NOT:
            return universe - self.children[0].evaluate(lookup, universe)
        raise ConfigurationError(f"Unknown operator {self.operator!r}")


class _Parser:
    def __init__(self, expression: str):
        self._expression = expression
        self._tokens = _TOKEN.findall(expression or "")
        self._pos = 0

    def parse(self) -> ExpressionNode:
        if not self._tokens:
            raise ConfigurationError("Empty composition expression")
        node = self._expression_rule()
        if self._pos != len(self._tokens):
            self._fail(f"unexpected {self._tokens[self._pos]!r}")
        return node

    def _fail(self, problem: str) -> typing.NoReturn:
        raise ConfigurationError(f"Malformed composition expression {self._expression!r}: {problem}")

    def _keyword(self) -> typing.Optional[str]:
        if self._pos < len(self._tokens):
            token = self._tokens[self._pos].upper()
            if token in LogicalOperator.__members__:
                return token
        return None

    def _next(self) -> str:
        if self._pos >= len(self._tokens):
            self._fail("ended unexpectedly")
        token = self._tokens[self._pos]
        self._pos += 1
        return token

    def _expression_rule(self) -> ExpressionNode:
        children = [self._term()]
        while self._keyword() == "OR":
            self._pos += 1
            children.append(self._term())
        return children[0] if len(children) == 1 else ExpressionNode(operator=LogicalOperator.OR, children=children)

    def _term(self) -> ExpressionNode:
        children = [self._factor()]
        while True:
            keyword = self._keyword()
            if keyword == "AND":
                self._pos += 1
                children.append(self._factor())
            elif keyword == "NOT":
                self._pos += 1
                children.append(ExpressionNode(operator=LogicalOperator.NOT, children=[self._factor()]))
            else:
                break
        return children[0] if len(children) == 1 else ExpressionNode(operator=LogicalOperator.AND, children=children)

    def _factor(self) -> ExpressionNode:
        if self._keyword() == "NOT":
            self._pos += 1
            return ExpressionNode(operator=LogicalOperator.NOT, children=[self._factor()])
        token = self._next()
        if token == "(":
            node = self._expression_rule()
            if self._next() != ")":
                self._fail("missing ')'")
            return node
        if token == ")" or token.upper() in LogicalOperator.__members__:
            self._fail(f"unexpected {token!r}")
        if not _NAME.match(token):
            self._fail(f"invalid cohort name {token!r}")
        return ExpressionNode(name=token)


def parse_expression(expression: str) -> ExpressionNode:
    return _Parser(expression).parse()


def parse_mappings(mappings: str) -> dict[str, str]:
    """
    Parse ``"value1=${onOrAfter},locationList=${location}"`` into
    ``{"value1": "${onOrAfter}", "locationList": "${location}"}``.
    """
    parsed: dict[str, str] = {}
    for part in (mappings or "").split(","):
        if not part.strip():
            continue
        key, sep, value = part.partition("=")
        if not sep or not key.strip():
            raise ConfigurationError(f"Malformed parameter mapping {part.strip()!r}")
        parsed[key.strip()] = value.strip()
    return parsed


class CohortProvider(metaclass=abc.ABCMeta):
    """A named boolean cohort usable inside a composition."""

    #: parameter names the provider expects to receive
    parameters: tuple[str, ...] = ()

    @abc.abstractmethod
    def evaluate(
            self,
            params: typing.Mapping[str, typing.Any],
            context: CalculationContext,
            universe: frozenset,
    ) -> typing.Iterable[PatientId]:
        raise NotImplementedError


@dataclass(frozen=True)
class Mapped:
    """A cohort provider together with its parameter mapping."""

    provider: CohortProvider
    mappings: typing.Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def map(cls, provider: CohortProvider, mappings: typing.Union[str, typing.Mapping[str, str], None] = None) -> "Mapped":
        if mappings is None or isinstance(mappings, str):
            return cls(provider, parse_mappings(mappings or ""))
        return cls(provider, dict(mappings))

    @classmethod
    def straight_through(cls, provider: CohortProvider) -> "Mapped":
        """Map every provider parameter to the composition parameter of the same name."""
        return cls(provider, {p: "${" + p + "}" for p in provider.parameters})

    def bind(self, params: typing.Mapping[str, typing.Any], name: str = "") -> dict[str, typing.Any]:
        """Resolve the provider's parameters against the composition's parameters."""
        bound: dict[str, typing.Any] = {}
        for parameter in self.provider.parameters:
            if parameter not in self.mappings:
                raise ConfigurationError(f"Parameter {parameter!r} of cohort {name!r} has no mapping")
            target = self.mappings[parameter]
            placeholder = _PLACEHOLDER.match(target) if isinstance(target, str) else None
            if placeholder is None:
                bound[parameter] = target
                continue
            source = placeholder.group("name")
            if source not in params:
                raise ConfigurationError(
                    f"Cohort {name!r} maps {parameter!r} to ${{{source}}}, which was not supplied")
            bound[parameter] = params[source]
        unused = set(self.mappings) - set(self.provider.parameters)
        if unused:
            logger.debug("Cohort %r ignores mappings %s", name, sorted(unused))
        return bound


def _freeze(value: typing.Any) -> typing.Hashable:
    if isinstance(value, typing.Mapping):
        return tuple(sorted((str(k), _freeze(v)) for k, v in value.items()))
    if isinstance(value, (list, tuple, set, frozenset)):
        return tuple(_freeze(v) for v in value)
    try:
        hash(value)
    except TypeError:
        return repr(value)
    return value


def compose(
        expression: str,
        registrations: typing.Mapping[str, Mapped],
        params: typing.Mapping[str, typing.Any],
        context: CalculationContext,
        universe: typing.Iterable[PatientId],
) -> PatientSet:
    """
    Evaluate ``expression`` over the registered cohorts.

    Every referenced name must be registered and every parameter of its
    provider mapped and supplied; otherwise ConfigurationError is raised
    before any cohort is evaluated. Each cohort is evaluated lazily and at
    most once per (name, bound parameters).
    """
    tree = parse_expression(expression)
    universe = frozenset(universe)

    bound: dict[str, dict[str, typing.Any]] = {}
    for name in sorted(tree.names()):
        if name not in registrations:
            raise ConfigurationError(f"Composition references unregistered cohort {name!r}")
        bound[name] = registrations[name].bind(params, name)

    cache: dict[tuple, frozenset] = {}

    def lookup(name: str) -> frozenset:
        key = (name, _freeze(bound[name]))
        if key not in cache:
            members = registrations[name].provider.evaluate(bound[name], context, universe)
            cache[key] = frozenset(members) & universe
            logger.debug("Cohort %r: %d patients", name, len(cache[key]))
        return cache[key]

    return set(tree.evaluate(lookup, universe))


class CohortComposer:
    """
    Composes cohorts over every patient known to the store.
    """

    def __init__(self, store: ObservationStore):
        self._store = store

    def compose(
            self,
            expression: str,
            registrations: typing.Mapping[str, Mapped],
            params: typing.Mapping[str, typing.Any],
            context: CalculationContext,
    ) -> PatientSet:
        return compose(expression, registrations, params, context, self._store.patient_ids())
