#!/usr/bin/python3
# -*- coding: utf-8 -*-

from .configuration import ConfigurationError
from .dns_server import DNS_Server
from .http_server import HttpServer
from .logger import log
from .server import MockServer, ServerRegistry, UnknownProtocolError, default_registry
from .template import render

__all__ = [
    "ConfigurationError",
    "DNS_Server",
    "HttpServer",
    "MockServer",
    "ServerRegistry",
    "UnknownProtocolError",
    "default_registry",
    "log",
    "render",
]
