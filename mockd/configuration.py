#!/usr/bin/python3
# -*- coding: utf-8 -*-

"""
Loading and validation of the mock configuration file.

The YAML file holds one section per protocol::

    http:
      port: 8181
      routes:
        - uri: /hello/:name
          method: GET
          response:
            code: 200
            headers:
              Content-Type: text/plain
            body: hello ${name}

    dns:
      protocol: udp4
      port: 53
      parent: 223.5.5.5:53
      routes:
        - rrtype: A
          fqdn: www.my.internal
          ip: 10.0.0.1,10.0.0.2
          ttl: 60

Every section is turned into frozen settings objects. Anything that
cannot be served raises ConfigurationError; nothing half-valid escapes
from here.
"""

from dataclasses import dataclass, field
import ipaddress
import os
from typing import Any, Dict, List, Optional, Set, Tuple
import yaml

from .logger import log
from .template import Body, ScalarBody, StructuredBody

__all__ = [
    "ConfigurationError",
    "ResponseSpec",
    "RouteSpec",
    "RecordSpec",
    "HttpSettings",
    "DnsSettings",
    "load_config",
    "parse_http",
    "parse_dns",
]

DEFAULT_HTTP_PORT = 8181
DEFAULT_HTTP_METHOD = "GET"
DEFAULT_HTTP_CODE = 200
HTTP_METHODS = ("GET", "POST", "HEAD", "DELETE", "PUT", "PATCH", "OPTIONS")

DEFAULT_DNS_PORT = 53
DEFAULT_DNS_PROTOCOL = "udp4"
DEFAULT_PARENT_DNS = "223.5.5.5:53"
DNS_PROTOCOLS = ("udp", "udp4", "udp6", "tcp", "tcp4", "tcp6")
DNS_RECORD_TYPES = ("A",)
MAX_TTL = 2**32 - 1

Address = Tuple[str, int]


class ConfigurationError(ValueError):
    pass


@dataclass(frozen=True)
class ResponseSpec:
    status_code: int = DEFAULT_HTTP_CODE
    delay_ms: int = 0
    headers: Tuple[Tuple[str, str], ...] = ()
    body: Body = field(default_factory=ScalarBody)


@dataclass(frozen=True)
class RouteSpec:
    method: str
    uri: str
    response: ResponseSpec


@dataclass(frozen=True)
class RecordSpec:
    rrtype: str
    fqdn: str
    ips: Tuple[str, ...]
    ttl: int = 0


@dataclass(frozen=True)
class HttpSettings:
    host: Optional[str] = None
    port: int = DEFAULT_HTTP_PORT
    cert: Optional[str] = None
    key: Optional[str] = None
    routes: Tuple[RouteSpec, ...] = ()

    @property
    def tls(self) -> bool:
        return bool(self.cert and self.key)

    def transport(self) -> tuple:
        """Settings that only take effect on restart"""
        return (self.host, self.port, self.cert, self.key)


@dataclass(frozen=True)
class DnsSettings:
    host: Optional[str] = None
    protocol: str = DEFAULT_DNS_PROTOCOL
    port: int = DEFAULT_DNS_PORT
    parent: Address = ("223.5.5.5", 53)
    routes: Tuple[RecordSpec, ...] = ()

    def transport(self) -> tuple:
        """Settings that only take effect on restart"""
        return (self.host, self.protocol, self.port, self.parent)


def load_config(fname: str) -> dict:
    log(__name__).info("Reading configuration file %s", fname)
    if not os.path.isfile(fname):
        raise ConfigurationError(f"Configuration file '{fname}' does not exist")
    try:
        with open(fname, encoding="utf8") as f:
            config = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"Failed to read '{fname}': {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Malformed YAML in '{fname}': {e}") from e
    if not isinstance(config, dict):
        raise ConfigurationError(f"'{fname}' must contain a mapping at top level")
    return config


def get_section(config: dict, name: str) -> dict:
    section = config.get(name)
    if not isinstance(section, dict):
        raise ConfigurationError(f"Missing or malformed '{name}' section")
    return section


def get_routes(section: dict, name: str) -> List[dict]:
    routes = section.get("routes")
    if routes is None:
        return []
    if not isinstance(routes, list):
        raise ConfigurationError(f"'{name}.routes' must be a list")
    for idx, route in enumerate(routes):
        if not isinstance(route, dict):
            raise ConfigurationError(f"'{name}.routes[{idx}]' must be a mapping")
    return routes


def as_int(value: Any, what: str, low: int, high: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"{what} must be an integer, got {value!r}")
    if not low <= value <= high:
        raise ConfigurationError(f"{what} must be within {low}..{high}, got {value}")
    return value


def as_port(section: dict, name: str, default: int) -> int:
    port = section.get("port")
    if port is None:
        log(__name__).info("%s port is not set, using default port %d", name, default)
        return default
    return as_int(port, f"'{name}.port'", 0, 65535)


def as_host(section: dict, name: str) -> Optional[str]:
    host = section.get("host")
    if host is not None and not isinstance(host, str):
        raise ConfigurationError(f"'{name}.host' must be a string")
    return host or None


def as_file(section: dict, key: str) -> Optional[str]:
    fname = section.get(key)
    if fname is None or fname == "":
        return None
    if not isinstance(fname, str):
        raise ConfigurationError(f"'http.{key}' must be a path")
    fname = os.path.expanduser(fname)
    if not os.path.isfile(fname):
        raise ConfigurationError(f"'http.{key}' file '{fname}' does not exist")
    return fname


def parse_body(value: Any, where: str) -> Body:
    if value is None:
        return ScalarBody()
    if isinstance(value, str):
        return ScalarBody(value)
    try:
        return StructuredBody.from_value(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{where}: body cannot be encoded as JSON: {e}") from e


def parse_response(response: Any, where: str) -> ResponseSpec:
    if response is None:
        return ResponseSpec()
    if not isinstance(response, dict):
        raise ConfigurationError(f"{where}: 'response' must be a mapping")

    code = response.get("code")
    code = DEFAULT_HTTP_CODE if code is None else as_int(code, f"{where}: code", 100, 599)

    delay = response.get("delay")
    delay = 0 if delay is None else as_int(delay, f"{where}: delay", 0, 2**31 - 1)

    headers = response.get("headers") or {}
    if not isinstance(headers, dict):
        raise ConfigurationError(f"{where}: 'headers' must be a mapping")

    return ResponseSpec(
        status_code=code,
        delay_ms=delay,
        headers=tuple((str(k), "" if v is None else str(v)) for k, v in headers.items()),
        body=parse_body(response.get("body"), where),
    )


def parse_route(route: dict, idx: int) -> Optional[RouteSpec]:
    where = f"http.routes[{idx}]"
    uri = route.get("uri")
    if not isinstance(uri, str) or not uri.startswith("/"):
        raise ConfigurationError(f"{where}: 'uri' must be a path starting with '/'")

    method = str(route.get("method") or DEFAULT_HTTP_METHOD).upper()
    if method not in HTTP_METHODS:
        log(__name__).warning("Unsupported method %s for %s, route skipped", method, uri)
        return None

    return RouteSpec(method=method, uri=uri, response=parse_response(route.get("response"), where))


def parse_http(config: dict) -> HttpSettings:
    section = get_section(config, "http")

    cert = as_file(section, "cert")
    key = as_file(section, "key")
    if bool(cert) != bool(key):
        log(__name__).warning("Both cert and key are needed for HTTPS, serving plain HTTP")

    routes: List[RouteSpec] = []
    seen: Set[Tuple[str, str]] = set()
    for idx, route in enumerate(get_routes(section, "http")):
        spec = parse_route(route, idx)
        if spec is None:
            continue
        if (spec.method, spec.uri) in seen:
            raise ConfigurationError(f"Duplicate route {spec.method} {spec.uri}")
        seen.add((spec.method, spec.uri))
        routes.append(spec)

    return HttpSettings(
        host=as_host(section, "http"),
        port=as_port(section, "http", DEFAULT_HTTP_PORT),
        cert=cert,
        key=key,
        routes=tuple(routes),
    )


def normalize_fqdn(name: str) -> str:
    name = name.strip().lower()
    return name if name.endswith(".") else name + "."


def parse_address(value: str, default_port: int) -> Address:
    """Split host:port, [v6]:port or a bare host"""
    value = value.strip()
    host, port = value, default_port
    if value.startswith("["):
        host, sep, rest = value[1:].partition("]")
        if not sep or (rest and not rest.startswith(":")):
            raise ConfigurationError(f"Malformed address '{value}'")
        if rest:
            port = int(rest[1:]) if rest[1:].isdigit() else -1
    elif value.count(":") == 1:
        host, _, port_str = value.partition(":")
        port = int(port_str) if port_str.isdigit() else -1
    if not host or not 0 < port <= 65535:
        raise ConfigurationError(f"Malformed address '{value}'")
    return host, port


def parse_record(route: dict, idx: int) -> RecordSpec:
    where = f"dns.routes[{idx}]"
    rrtype = str(route.get("rrtype") or "").upper()
    if rrtype == "CNAME":
        raise ConfigurationError(f"{where}: CNAME records are not supported")
    if rrtype not in DNS_RECORD_TYPES:
        raise ConfigurationError(f"{where}: unsupported DNS type '{rrtype}'")

    fqdn = route.get("fqdn")
    if not isinstance(fqdn, str) or not fqdn.strip(". "):
        raise ConfigurationError(f"{where}: 'fqdn' must be a domain name")

    ips: List[str] = []
    for ip in str(route.get("ip") or "").split(","):
        try:
            ips.append(str(ipaddress.IPv4Address(ip.strip())))
        except ValueError as e:
            raise ConfigurationError(f"{where}: invalid ip addr '{ip}'") from e

    ttl = route.get("ttl")
    ttl = 0 if ttl is None else as_int(ttl, f"{where}: ttl", 0, MAX_TTL)

    return RecordSpec(rrtype=rrtype, fqdn=normalize_fqdn(fqdn), ips=tuple(ips), ttl=ttl)


def parse_dns(config: dict) -> DnsSettings:
    section = get_section(config, "dns")

    protocol = section.get("protocol")
    if not protocol:
        log(__name__).info("protocol is not set, using default protocol %s", DEFAULT_DNS_PROTOCOL)
        protocol = DEFAULT_DNS_PROTOCOL
    protocol = str(protocol).lower()
    if protocol not in DNS_PROTOCOLS:
        raise ConfigurationError(f"Unsupported DNS protocol '{protocol}'")

    parent = section.get("parent")
    if not parent:
        log(__name__).info("parent is not set, using default parent %s", DEFAULT_PARENT_DNS)
        parent = DEFAULT_PARENT_DNS
    parent_addr = parse_address(str(parent), DEFAULT_DNS_PORT)

    records: Dict[Tuple[str, str], RecordSpec] = dict()
    for idx, route in enumerate(get_routes(section, "dns")):
        record = parse_record(route, idx)
        if (record.rrtype, record.fqdn) in records:
            log(__name__).warning("%s %s declared twice, last one wins", record.rrtype, record.fqdn)
            del records[(record.rrtype, record.fqdn)]
        records[(record.rrtype, record.fqdn)] = record

    return DnsSettings(
        host=as_host(section, "dns"),
        protocol=protocol,
        port=as_port(section, "dns", DEFAULT_DNS_PORT),
        parent=parent_addr,
        routes=tuple(records.values()),
    )
