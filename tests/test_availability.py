"""Dependency check tests."""

from __future__ import annotations

import pytest

from ddt_runtime.availability import check_commands_available, missing_commands


class TestMissingCommands:
    @pytest.mark.asyncio
    async def test_installed_command(self):
        assert await missing_commands(["sh"]) == []

    @pytest.mark.asyncio
    async def test_reports_only_missing(self):
        missing = await missing_commands(["sh", "nonexistent_tool_xyz", "another_missing_abc"])
        assert missing == ["nonexistent_tool_xyz", "another_missing_abc"]

    @pytest.mark.asyncio
    async def test_empty(self):
        assert await missing_commands([]) == []

    @pytest.mark.asyncio
    async def test_accepts_generator(self):
        assert await missing_commands(name for name in ["nonexistent_tool_xyz"]) == [
            "nonexistent_tool_xyz"
        ]


class TestCheckCommandsAvailable:
    @pytest.mark.asyncio
    async def test_all_available(self):
        assert await check_commands_available(["sh"])

    @pytest.mark.asyncio
    async def test_one_missing(self):
        assert not await check_commands_available(["sh", "nonexistent_tool_xyz"])
