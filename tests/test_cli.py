"""Tests for the command-line entry point."""

import argparse
import json
import logging
import sys
from unittest.mock import AsyncMock, patch

import pytest

from bookingsync.__main__ import JSONFormatter, cmd_status, main
from bookingsync.errors import SyncError


def status_args(**overrides) -> argparse.Namespace:
    args = {"config": None, "server": "http://sync.local:5050", "json": True}
    args.update(overrides)
    return argparse.Namespace(**args)


class TestJSONFormatter:
    """Tests for structured log output."""

    def test_format(self):
        record = logging.LogRecord(
            "bookingsync.store", logging.INFO, __file__, 1, "Added %s", ("r1",), None
        )
        data = json.loads(JSONFormatter().format(record))
        assert data["level"] == "INFO"
        assert data["component"] == "bookingsync.store"
        assert data["message"] == "Added r1"

    def test_format_exception(self):
        try:
            raise ValueError("bad")
        except ValueError:
            record = logging.LogRecord(
                "bookingsync", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )
        data = json.loads(JSONFormatter().format(record))
        assert "ValueError: bad" in data["exception"]

    def test_extra_fields_and_utc_timestamp(self):
        record = logging.makeLogRecord(
            {"name": "bookingsync.hub", "msg": "Observer connected", "connection_id": "c-1"}
        )
        data = json.loads(JSONFormatter().format(record))
        assert data["connection_id"] == "c-1"
        assert data["timestamp"].endswith("Z")
        assert "args" not in data


class TestStatusCommand:
    """Tests for the status command."""

    @pytest.mark.asyncio
    async def test_reachable(self, capsys):
        with patch("bookingsync.client.RecordsClient.health", new=AsyncMock(return_value={"status": "ok"})), \
             patch("bookingsync.client.RecordsClient.stats", new=AsyncMock(return_value={"totalRecords": 3, "connections": 1})):
            code = await cmd_status(status_args())

        assert code == 0
        data = json.loads(capsys.readouterr().out)
        assert data["reachable"] is True
        assert data["stats"]["totalRecords"] == 3

    @pytest.mark.asyncio
    async def test_unreachable(self, capsys):
        with patch("bookingsync.client.RecordsClient.health", new=AsyncMock(side_effect=SyncError("refused"))):
            code = await cmd_status(status_args(json=False))

        assert code == 1
        out = capsys.readouterr().out
        assert "Not reachable" in out
        assert "refused" in out


class TestMain:
    """Tests for argument handling."""

    def test_no_command_prints_help(self, capsys):
        with patch.object(sys, "argv", ["bookingsync"]):
            assert main() == 1
        assert "serve" in capsys.readouterr().out
