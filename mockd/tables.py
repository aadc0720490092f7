#!/usr/bin/python3
# -*- coding: utf-8 -*-

"""
Lookup tables built from validated configuration.

Tables are never changed after build(). A reload builds a new table and
the server replaces its reference to the old one in a single assignment,
so readers always see either the complete old or the complete new table.
"""

from dataclasses import dataclass
import re
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, NamedTuple, Optional, Tuple

from .configuration import ConfigurationError, RecordSpec, RouteSpec, normalize_fqdn
from .logger import log

__all__ = ["RouteMatch", "RouteTable", "ResourceRecord", "RecordTable"]


class RouteMatch(NamedTuple):
    route: RouteSpec
    params: Mapping[str, str]


class PatternRoute(NamedTuple):
    expr: "re.Pattern[str]"
    route: RouteSpec


def compile_uri(uri: str) -> Optional["re.Pattern[str]"]:
    """Compile /user/:id and /files/*path style patterns.

    :name captures one path segment, *name captures the rest of the path
    and must come last. Returns None for plain paths."""

    segments = uri.split("/")
    if not any(s[:1] in (":", "*") for s in segments):
        return None

    parts = []
    for idx, segment in enumerate(segments):
        name = segment[1:]
        if segment[:1] in (":", "*") and not name.isidentifier():
            raise ConfigurationError(f"Invalid parameter name '{segment}' in {uri}")
        if segment.startswith(":"):
            parts.append(f"(?P<{name}>[^/]+)")
        elif segment.startswith("*"):
            if idx != len(segments) - 1:
                raise ConfigurationError(f"Catch-all '{segment}' must end the path in {uri}")
            parts.append(f"(?P<{name}>.*)")
        else:
            parts.append(re.escape(segment))

    try:
        return re.compile("/".join(parts))
    except re.error as e:
        raise ConfigurationError(f"Invalid route pattern {uri}: {e}") from e


class RouteTable:
    def __init__(
        self, static: Mapping[Tuple[str, str], RouteSpec], patterns: Iterable[PatternRoute]
    ) -> None:
        self.static: Mapping[Tuple[str, str], RouteSpec] = MappingProxyType(dict(static))
        self.patterns: Tuple[PatternRoute, ...] = tuple(patterns)

    @classmethod
    def build(cls, routes: Iterable[RouteSpec]) -> "RouteTable":
        static: Dict[Tuple[str, str], RouteSpec] = dict()
        patterns: List[PatternRoute] = list()
        for route in routes:
            log(__name__).info("add mock HTTP API: %s %s", route.method, route.uri)
            expr = compile_uri(route.uri)
            if expr is None:
                static[(route.method, route.uri)] = route
            else:
                patterns.append(PatternRoute(expr, route))
        return cls(static, patterns)

    def __len__(self) -> int:
        return len(self.static) + len(self.patterns)

    def lookup(self, method: str, path: str) -> Optional[RouteMatch]:
        route = self.static.get((method, path))
        if route is not None:
            return RouteMatch(route, MappingProxyType({}))

        for expr, route in self.patterns:
            if route.method != method:
                continue
            m = expr.fullmatch(path)
            if m:
                return RouteMatch(route, MappingProxyType(m.groupdict()))
        return None

    def allowed_methods(self, path: str) -> List[str]:
        methods = {method for method, uri in self.static if uri == path}
        methods.update(route.method for expr, route in self.patterns if expr.fullmatch(path))
        return sorted(methods)


@dataclass(frozen=True)
class ResourceRecord:
    address: str
    ttl: int


class RecordTable:
    def __init__(self, records: Mapping[Tuple[str, str], Tuple[ResourceRecord, ...]]) -> None:
        self.records: Mapping[Tuple[str, str], Tuple[ResourceRecord, ...]] = MappingProxyType(
            dict(records)
        )

    @classmethod
    def build(cls, specs: Iterable[RecordSpec]) -> "RecordTable":
        records: Dict[Tuple[str, str], Tuple[ResourceRecord, ...]] = dict()
        for spec in specs:
            log(__name__).info("add mock DNS: %s %s -> %s", spec.rrtype, spec.fqdn, ",".join(spec.ips))
            records[(spec.rrtype, normalize_fqdn(spec.fqdn))] = tuple(
                ResourceRecord(ip, spec.ttl) for ip in spec.ips
            )
        return cls(records)

    def __len__(self) -> int:
        return len(self.records)

    def lookup(self, rrtype: str, fqdn: str) -> Optional[Tuple[ResourceRecord, ...]]:
        return self.records.get((rrtype.upper(), normalize_fqdn(fqdn)))
