"""Label selectors for fleet machines.

A selector is an ordered list of requirements, each a ``(key, operator,
values)`` triple evaluated against a machine's label map. ``str(selector)``
yields the canonical query syntax stored in ``EtcdCluster.selector``, and
``parse_selector`` reads that syntax back::

    cluster.x-k8s.io/cluster-name=prod,cluster.x-k8s.io/etcd-cluster
    tier in (a,b),!legacy,zone!=us-east-1a
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional

CLUSTER_NAME_LABEL = "cluster.x-k8s.io/cluster-name"
ETCD_CLUSTER_LABEL = "cluster.x-k8s.io/etcd-cluster"

_NAME_RE = re.compile(r"^[A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?$")
_PREFIX_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")
_SET_TERM_RE = re.compile(r"^(?P<key>[^\s!=(),]+)\s+(?P<op>in|notin)\s*\((?P<values>[^()]*)\)$")


class SelectorParseError(ValueError):
    pass


class Operator(str, Enum):
    EQUALS = "="
    DOUBLE_EQUALS = "=="
    NOT_EQUALS = "!="
    IN = "in"
    NOT_IN = "notin"
    EXISTS = "exists"
    DOES_NOT_EXIST = "!"


_SINGLE_VALUE_OPS = {Operator.EQUALS, Operator.DOUBLE_EQUALS, Operator.NOT_EQUALS}
_SET_OPS = {Operator.IN, Operator.NOT_IN}
_PRESENCE_OPS = {Operator.EXISTS, Operator.DOES_NOT_EXIST}


def validate_label_key(key: str) -> str:
    prefix, sep, name = key.rpartition("/")
    if sep and (not prefix or len(prefix) > 253 or not _PREFIX_RE.match(prefix)):
        raise SelectorParseError(f"invalid label key prefix: {key!r}")
    if not name or len(name) > 63 or not _NAME_RE.match(name):
        raise SelectorParseError(f"invalid label key: {key!r}")
    return key


def validate_label_value(value: str) -> str:
    if value and (len(value) > 63 or not _NAME_RE.match(value)):
        raise SelectorParseError(f"invalid label value: {value!r}")
    return value


@dataclass(frozen=True)
class Requirement:
    key: str
    operator: Operator
    values: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        validate_label_key(self.key)
        if self.operator in _SINGLE_VALUE_OPS and len(self.values) != 1:
            raise SelectorParseError(f"operator {self.operator.value!r} takes exactly one value")
        if self.operator in _SET_OPS and not self.values:
            raise SelectorParseError(f"operator {self.operator.value!r} needs at least one value")
        if self.operator in _PRESENCE_OPS and self.values:
            raise SelectorParseError(f"operator {self.operator.value!r} takes no values")
        for value in self.values:
            validate_label_value(value)
        if self.operator in _SET_OPS:
            object.__setattr__(self, "values", tuple(sorted(set(self.values))))

    def matches(self, labels: Mapping[str, str]) -> bool:
        present = self.key in labels
        if self.operator is Operator.EXISTS:
            return present
        if self.operator is Operator.DOES_NOT_EXIST:
            return not present
        if self.operator in (Operator.NOT_EQUALS, Operator.NOT_IN):
            return not present or labels[self.key] not in self.values
        return present and labels[self.key] in self.values

    def __str__(self) -> str:
        if self.operator is Operator.EXISTS:
            return self.key
        if self.operator is Operator.DOES_NOT_EXIST:
            return f"!{self.key}"
        if self.operator in _SET_OPS:
            return f"{self.key} {self.operator.value} ({','.join(self.values)})"
        return f"{self.key}{self.operator.value}{self.values[0]}"


@dataclass(frozen=True)
class Selector:
    requirements: tuple[Requirement, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        ordered = tuple(sorted(self.requirements, key=lambda item: item.key))
        object.__setattr__(self, "requirements", ordered)

    def add(self, *requirements: Requirement) -> "Selector":
        return Selector(self.requirements + tuple(requirements))

    def matches(self, labels: Optional[Mapping[str, str]]) -> bool:
        label_map = labels if isinstance(labels, Mapping) else {}
        return all(item.matches(label_map) for item in self.requirements)

    def empty(self) -> bool:
        return not self.requirements

    def __str__(self) -> str:
        return ",".join(str(item) for item in self.requirements)


def _split_terms(raw: str) -> list[str]:
    terms: list[str] = []
    depth = 0
    current: list[str] = []
    for char in raw:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise SelectorParseError(f"unbalanced parenthesis in selector: {raw!r}")
        if char == "," and depth == 0:
            terms.append("".join(current))
            current = []
            continue
        current.append(char)
    if depth != 0:
        raise SelectorParseError(f"unbalanced parenthesis in selector: {raw!r}")
    terms.append("".join(current))
    return terms


def _parse_term(term: str) -> Requirement:
    if term.startswith("!"):
        return Requirement(term[1:].strip(), Operator.DOES_NOT_EXIST)

    set_match = _SET_TERM_RE.match(term)
    if set_match:
        values = [item.strip() for item in set_match.group("values").split(",")]
        return Requirement(set_match.group("key"), Operator(set_match.group("op")), tuple(values))

    for operator in (Operator.NOT_EQUALS, Operator.DOUBLE_EQUALS, Operator.EQUALS):
        key, sep, value = term.partition(operator.value)
        if sep:
            return Requirement(key.strip(), operator, (value.strip(),))

    return Requirement(term, Operator.EXISTS)


def parse_selector(raw: str) -> Selector:
    text = raw.strip()
    if not text:
        return Selector()
    requirements: list[Requirement] = []
    for term in _split_terms(text):
        clean = term.strip()
        if not clean:
            raise SelectorParseError(f"empty requirement in selector: {raw!r}")
        requirements.append(_parse_term(clean))
    return Selector(tuple(requirements))


def etcd_plane_selector_for_cluster(cluster_name: str) -> Selector:
    """Selector for every etcd machine of ``cluster_name``, regardless of ownership."""
    return Selector(
        (
            Requirement(CLUSTER_NAME_LABEL, Operator.EQUALS, (cluster_name,)),
            Requirement(ETCD_CLUSTER_LABEL, Operator.EXISTS),
        )
    )
