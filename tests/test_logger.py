"""Tests for the logging helpers."""

import asyncio
import logging

import pytest

from mockd.logger import expand_filenames, log_exception, logconfig


@log_exception
def failing():
    raise ValueError("sync failure")


@log_exception
async def failing_async():
    raise ValueError("async failure")


@log_exception
async def cancelled():
    raise asyncio.CancelledError()


class TestLogException:
    def test_sync(self, caplog):
        assert failing() is None
        assert "Exception in tests.test_logger.failing" in caplog.text

    async def test_async(self, caplog):
        assert await failing_async() is None
        assert "async failure" in caplog.text

    async def test_cancel_is_propagated(self):
        with pytest.raises(asyncio.CancelledError):
            await cancelled()


class TestLogconfig:
    def test_expand_filenames(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path))
        config = {"handlers": {"file": {"filename": "~/logs/mockd.log"}, "console": {}}}
        expand_filenames(config)
        assert config["handlers"]["file"]["filename"] == str(tmp_path / "logs" / "mockd.log")
        assert (tmp_path / "logs").is_dir()

    def test_broken_config_falls_back(self, caplog):
        logconfig(
            {
                "version": 1,
                "disable_existing_loggers": False,
                "handlers": {"h": {"class": "no.such.Handler"}},
            }
        )
        assert "fallback logging configuration" in caplog.text

    def test_dict_config(self):
        logconfig(
            {
                "version": 1,
                "disable_existing_loggers": False,
                "loggers": {"mockd.test": {"level": "ERROR"}},
            }
        )
        assert logging.getLogger("mockd.test").level == logging.ERROR
