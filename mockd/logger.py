#!/usr/bin/python3
# -*- coding: utf-8 -*-

import asyncio
import functools
import logging
import logging.config
import os
from typing import Any, Callable, Dict, List, Optional

__all__ = ["log", "logconfig", "log_exception"]

DEFAULT_FMT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DEFAULT_DF = "%Y%m%d_%H%M%S"

log = logging.getLogger


def expand_filenames(config: dict) -> None:
    """Allow ~ in filenames"""
    for handler in config.get("handlers", dict()).values():
        if "filename" in handler:
            fname = os.path.expanduser(handler["filename"])
            handler["filename"] = fname
            dirname = os.path.dirname(fname)
            try:
                if dirname:
                    os.makedirs(dirname, exist_ok=True)
            except PermissionError:
                log(__name__).error("Insufficient access rights for %s", dirname)


def log_exception(function: Callable[..., Any]) -> Callable:
    module = function.__module__
    myname = module + "." + function.__name__
    exclog = log(module)

    if asyncio.iscoroutinefunction(function):

        @functools.wraps(function)
        async def wrapper(*args: List[Any], **kwargs: Dict[str, Any]) -> Any:
            try:
                return await function(*args, **kwargs)
            except asyncio.CancelledError:
                raise
            except Exception:
                exclog.error("Exception in " + myname, exc_info=True)

        return wrapper

    else:

        @functools.wraps(function)
        def wrapper(*args: List[Any], **kwargs: Dict[str, Any]) -> Any:
            try:
                return function(*args, **kwargs)
            except Exception:
                exclog.error("Exception in " + myname, exc_info=True)

        return wrapper


def logconfig(config: Optional[dict], level: int = logging.INFO) -> None:
    """Use config structure to setup loggers

    params:
    config - dict containing a logging.config.dictConfig document or None
    level - root level used when falling back to basicConfig
    """

    logging.basicConfig(level=level, format=DEFAULT_FMT, datefmt=DEFAULT_DF)
    if not config:
        return

    try:
        expand_filenames(config)
        logging.config.dictConfig(config)
    except Exception:
        log(__name__).warning("Using fallback logging configuration", exc_info=True)
