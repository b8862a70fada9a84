"""Identity normalization: canonical type spellings, renames and first-wins merges."""

from __future__ import annotations

import copy
from dataclasses import dataclass
import logging
from typing import Any, Callable, Generic, Hashable, Iterable, Iterator, Sequence, TypeVar

from pipeline_forge.models import Diagnostic

LOGGER = logging.getLogger("pipeline_forge.naming")

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")
A = TypeVar("A")

Setter = Callable[[str], None]
ConventionResolver = Callable[[Sequence[str]], str]

SCHEMA_REF_PREFIX = "#/components/schemas/"
PAGE_PREFIX = "IPage"


def singularize(word: str) -> str:
    """Rule-based singular form; applying it twice changes nothing."""
    lower = word.lower()
    if lower.endswith("sses"):
        return word[:-2]
    if lower.endswith(("xes", "ches", "shes", "zzes")):
        return word[:-2]
    if lower.endswith("ies") and len(word) > 3:
        return word[:-3] + ("Y" if word[-3:].isupper() else "y")
    if lower.endswith("s") and len(word) > 1 and not lower.endswith(("ss", "us", "is")):
        return word[:-1]
    return word


def identity_key(name: str) -> str:
    """Case-insensitive, singular projection of a type name's head segment.

    `IOrders.ICreate` and `IOrder` share a key, so dotted members follow
    whatever spelling their head type settles on.
    """
    return singularize(name.split(".")[0]).lower()


def count_capitals(name: str) -> int:
    return sum(1 for char in name if char.isupper())


def prefer_most_capitals(variants: Sequence[str]) -> str:
    """Pick the spelling with the most capital letters; ties keep the first seen."""
    best = variants[0]
    for variant in variants[1:]:
        if count_capitals(variant) > count_capitals(best):
            best = variant
    return best


class NamingConvention:
    """Collects every reference to a name, then rewrites them all at once."""

    def __init__(self, resolver: ConventionResolver = prefer_most_capitals) -> None:
        self.resolver = resolver
        # identity key -> head spelling -> (dotted tail, setter), both in first-seen order
        self._groups: dict[str, dict[str, list[tuple[str, Setter]]]] = {}

    def emplace(self, name: str, setter: Setter) -> None:
        head, dot, rest = name.partition(".")
        group = self._groups.setdefault(identity_key(name), {})
        group.setdefault(head, []).append((dot + rest, setter))

    def _canonical_heads(self) -> dict[str, str]:
        heads: dict[str, str] = {}
        for group in self._groups.values():
            canonical = self.resolver(list(group))
            for spelling in group:
                heads[spelling] = canonical
        return heads

    def resolve(self) -> dict[str, str]:
        """Map every full name that must change to its canonical spelling."""
        heads = self._canonical_heads()
        renames: dict[str, str] = {}
        for group in self._groups.values():
            for spelling, references in group.items():
                if heads[spelling] == spelling:
                    continue
                for tail, _ in references:
                    renames.setdefault(spelling + tail, heads[spelling] + tail)
        return renames

    def execute(self) -> dict[str, str]:
        renames = self.resolve()
        for group in self._groups.values():
            for spelling, references in group.items():
                for tail, setter in references:
                    if spelling + tail in renames:
                        setter(renames[spelling + tail])
        if renames:
            LOGGER.info("naming_renames count=%d", len(renames))
        return renames


def normalize(
    artifacts: Iterable[A],
    key_fn: Callable[[A], Iterable[tuple[str, Setter]]],
    convention_resolver: ConventionResolver = prefer_most_capitals,
) -> dict[str, str]:
    """Rewrite every name reference yielded by `key_fn` to its canonical spelling.

    `key_fn(artifact)` yields `(name, setter)` pairs, one per direct key or
    cross-reference. Setters run only after every group is resolved.
    """
    convention = NamingConvention(convention_resolver)
    for artifact in artifacts:
        for name, setter in key_fn(artifact):
            convention.emplace(name, setter)
    return convention.execute()


@dataclass(frozen=True)
class NormalizedDocument:
    schemas: dict[str, Any]
    operations: list[dict[str, Any]]
    renames: dict[str, str]


def _iter_refs(node: Any) -> Iterator[dict[str, Any]]:
    if isinstance(node, dict):
        ref = node.get("$ref")
        if isinstance(ref, str) and ref.startswith(SCHEMA_REF_PREFIX):
            yield node
        for value in node.values():
            yield from _iter_refs(value)
    elif isinstance(node, list):
        for value in node:
            yield from _iter_refs(value)


def normalize_schema_names(
    schemas: dict[str, Any],
    operations: Sequence[dict[str, Any]] = (),
    convention_resolver: ConventionResolver = prefer_most_capitals,
) -> NormalizedDocument:
    """Unify type-name spellings across component schemas and operations.

    Component keys, `$ref` pointers and operation request/response type
    names are all rewritten. Components that collapse onto one name keep the
    first definition. Inputs are left untouched.
    """
    names = list(schemas)
    bodies = [copy.deepcopy(body) for body in schemas.values()]
    ops = [copy.deepcopy(operation) for operation in operations]
    convention = NamingConvention(convention_resolver)

    def rename_key(index: int) -> Setter:
        def setter(value: str) -> None:
            names[index] = value

        return setter

    def rename_ref(node: dict[str, Any]) -> Setter:
        def setter(value: str) -> None:
            node["$ref"] = SCHEMA_REF_PREFIX + value

        return setter

    def rename_body(body: dict[str, Any]) -> Setter:
        def setter(value: str) -> None:
            body["typeName"] = value

        return setter

    for index, name in enumerate(names):
        convention.emplace(name, rename_key(index))
    for node in _iter_refs([bodies, ops]):
        convention.emplace(node["$ref"][len(SCHEMA_REF_PREFIX) :], rename_ref(node))
    for operation in ops:
        for field_name in ("requestBody", "responseBody"):
            body = operation.get(field_name)
            if isinstance(body, dict) and isinstance(body.get("typeName"), str):
                convention.emplace(body["typeName"], rename_body(body))

    renames = convention.execute()
    merged: dict[str, Any] = {}
    for name, body in zip(names, bodies):
        if name in merged:
            LOGGER.info("naming_merge_duplicate name=%s", name)
            continue
        merged[name] = body
    return NormalizedDocument(schemas=merged, operations=ops, renames=renames)


def unique_renames(renames: Iterable[tuple[str, str]]) -> list[tuple[str, str]]:
    """Collapse a rename list into independent, effective `(from, to)` pairs.

    Self renames are dropped, the first rename of a name wins, and chains
    such as A->B, B->C resolve to A->C. A chain that loops back to its start
    is dropped.
    """
    mapping: dict[str, str] = {}
    for source, target in renames:
        if source == target or source in mapping:
            continue
        mapping[source] = target

    resolved: list[tuple[str, str]] = []
    for source, target in mapping.items():
        seen = {source}
        while target in mapping and target not in seen:
            seen.add(target)
            target = mapping[target]
        if target != source:
            resolved.append((source, target))
    return resolved


def apply_renames(name: str, renames: dict[str, str]) -> str:
    """Rename a type reference, including dotted members and page wrappers."""
    if name in renames:
        return renames[name]
    head, dot, tail = name.partition(".")
    if dot and head in renames:
        return f"{renames[head]}.{tail}"
    if head.startswith(PAGE_PREFIX):
        inner = head[len(PAGE_PREFIX) :]
        if inner in renames:
            return f"{PAGE_PREFIX}{renames[inner]}{dot}{tail}"
    return name


def duplicated_names(names: Iterable[str]) -> list[Diagnostic]:
    """Report type names that differ only by letter case."""
    groups: dict[str, list[str]] = {}
    for name in names:
        spellings = groups.setdefault(name.lower(), [])
        if name not in spellings:
            spellings.append(name)
    return [
        Diagnostic(
            location=spellings[0],
            message=f"Type names differ only by case: {', '.join(spellings)}.",
            unit=spellings[0],
        )
        for spellings in groups.values()
        if len(spellings) > 1
    ]


@dataclass(frozen=True)
class EndpointKey:
    """Structural identity of an endpoint."""

    method: str
    path: str

    @classmethod
    def of(cls, method: str, path: str) -> EndpointKey:
        return cls(method=method.strip().lower(), path=path.strip())

    def __str__(self) -> str:
        return f"{self.method.upper()} {self.path}"


def endpoint_key(operation: dict[str, Any]) -> EndpointKey:
    return EndpointKey.of(operation["method"], operation["path"])


class IdentityMerge(Generic[K, V]):
    """Insertion-ordered map where the first artifact for a key is kept."""

    def __init__(self) -> None:
        self._items: dict[K, V] = {}

    def add(self, key: K, value: V) -> bool:
        """Insert unless the key is already taken; return whether it was inserted."""
        if key in self._items:
            return False
        self._items[key] = value
        return True

    def supersede(self, key: K, value: V) -> None:
        """Replace whatever was recorded for `key`."""
        self._items[key] = value

    def get(self, key: K) -> V | None:
        return self._items.get(key)

    def values(self) -> list[V]:
        return list(self._items.values())

    def items(self) -> list[tuple[K, V]]:
        return list(self._items.items())

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)


def merge_endpoints(
    operations: Iterable[dict[str, Any]],
    seeded: Iterable[dict[str, Any]] = (),
) -> list[dict[str, Any]]:
    """Deduplicate operations by method and path.

    `seeded` operations (authorization endpoints) are placed first and win
    over any later discovery of the same endpoint.
    """
    merge: IdentityMerge[EndpointKey, dict[str, Any]] = IdentityMerge()
    for operation in seeded:
        merge.supersede(endpoint_key(operation), operation)
    for operation in operations:
        if not merge.add(endpoint_key(operation), operation):
            LOGGER.debug("naming_duplicate_endpoint endpoint=%s", endpoint_key(operation))
    return merge.values()


def dedupe_prerequisites(
    owner: EndpointKey,
    prerequisites: Iterable[V],
    key_fn: Callable[[V], EndpointKey],
) -> list[V]:
    """Keep the first prerequisite per endpoint and drop edges pointing back at `owner`."""
    merge: IdentityMerge[EndpointKey, V] = IdentityMerge()
    for prerequisite in prerequisites:
        key = key_fn(prerequisite)
        if key == owner:
            LOGGER.warning("naming_self_prerequisite endpoint=%s", owner)
            continue
        merge.add(key, prerequisite)
    return merge.values()
