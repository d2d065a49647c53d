"""
Unit tests for tool resolution and the built-in tools.
"""

import pytest
import structlog.testing

from octopus.core.config import Settings
from octopus.domain.errors import UnknownTool
from octopus.domain.tool.builtin import STUB_LINKS, build_registry, summarize
from octopus.domain.tool.models import ToolContext, ToolKind, ToolResult
from octopus.domain.tool.tool_registry import PRIMARY_TOOL, ToolRegistry, import_handler


async def real_slack(context):
    return {"link": "https://slack.example/real"}


async def stub_slack(context):
    return {"link": "https://slack.example/stub"}


def _context(**memory):
    return ToolContext(run_id="r1", owner_id="u1", instruction="Ship the release notes", memory=memory)


class TestResolution:

    @pytest.mark.asyncio
    async def test_primary_tool_always_resolves_to_itself(self):
        async def primary(context):
            return {"link": "primary"}

        registry = ToolRegistry(eligibility=lambda tool, owner: False)
        registry.register_primary(PRIMARY_TOOL, primary)
        registry.register_stub(PRIMARY_TOOL, stub_slack)

        resolved = await registry.resolve(PRIMARY_TOOL)

        assert resolved.kind == ToolKind.PRIMARY
        assert resolved.handler is primary

    @pytest.mark.asyncio
    async def test_eligible_real_tool(self):
        registry = ToolRegistry(eligibility=lambda tool, owner: owner == "u1")
        registry.register_stub("slack", stub_slack)
        registry.register_real("slack", lambda: real_slack)

        resolved = await registry.resolve("slack", "u1")

        assert resolved.kind == ToolKind.REAL
        assert (await resolved.invoke(_context())).link == "https://slack.example/real"

    @pytest.mark.asyncio
    async def test_ineligible_falls_back_to_stub(self):
        registry = ToolRegistry(eligibility=lambda tool, owner: False)
        registry.register_stub("slack", stub_slack)
        registry.register_real("slack", lambda: real_slack)

        resolved = await registry.resolve("slack", "u1")

        assert resolved.kind == ToolKind.STUB

    @pytest.mark.asyncio
    async def test_async_eligibility_check(self):
        async def eligible(tool, owner):
            return True

        registry = ToolRegistry(eligibility=eligible)
        registry.register_real("slack", lambda: real_slack)

        assert (await registry.resolve("slack")).kind == ToolKind.REAL

    @pytest.mark.asyncio
    async def test_eligibility_error_falls_back_to_stub(self):
        def exploding(tool, owner):
            raise ConnectionError("integration store offline")

        registry = ToolRegistry(eligibility=exploding)
        registry.register_stub("slack", stub_slack)
        registry.register_real("slack", lambda: real_slack)

        resolved = await registry.resolve("slack")

        assert resolved.kind == ToolKind.STUB

    @pytest.mark.asyncio
    async def test_load_failure_falls_back_and_is_remembered(self):
        attempts = []

        def broken_loader():
            attempts.append(1)
            raise ImportError("no module named slack_sdk")

        registry = ToolRegistry()
        registry.register_stub("slack", stub_slack)
        registry.register_real("slack", broken_loader)

        first = await registry.resolve("slack")
        second = await registry.resolve("slack")

        assert first.kind == ToolKind.STUB
        assert second.kind == ToolKind.STUB
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_real_only_tool_gets_placeholder_stub(self):
        registry = ToolRegistry(eligibility=lambda tool, owner: False)
        registry.register_real("jira", lambda: real_slack)

        resolved = await registry.resolve("jira")
        result = await resolved.invoke(_context())

        assert resolved.kind == ToolKind.STUB
        assert result.link == "#"
        assert result.payload == {"stub": True, "tool": "jira"}

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        registry = ToolRegistry()

        with pytest.raises(UnknownTool) as exc_info:
            await registry.resolve("fax")

        assert str(exc_info.value) == "Unknown agent: fax"


class TestToolResult:

    def test_camel_and_snake_case_patches(self):
        assert ToolResult.from_raw({"memoryPatch": {"a": 1}}).memory_patch == {"a": 1}
        assert ToolResult.from_raw({"memory_patch": {"b": 2}}).memory_patch == {"b": 2}

    def test_none_is_empty_result(self):
        result = ToolResult.from_raw(None)
        assert result.link is None and result.payload is None and result.memory_patch is None

    def test_unsupported_type(self):
        with pytest.raises(TypeError):
            ToolResult.from_raw("just a string")


class TestBuiltins:

    @pytest.mark.asyncio
    async def test_summarize_with_source_file(self):
        result = ToolResult.from_raw(await summarize(_context(fileUrl="http://host/uploads/report.PDF")))

        assert result.link == "http://host/uploads/report.PDF"
        assert result.payload["fileExt"] == ".pdf"
        assert result.memory_patch["lastSummary"].startswith("Summary: Ship the release notes")

    @pytest.mark.asyncio
    async def test_summarize_without_file(self):
        result = ToolResult.from_raw(await summarize(_context()))

        assert result.link == "#"
        assert "No document attached." in result.payload["summary"]

    @pytest.mark.asyncio
    async def test_build_registry_from_settings(self):
        settings = Settings(
            _env_file=None,
            enabled_tools=["github"],
            real_tools={"github": "tests.test_tool_registry:real_slack", "summarizer": "x:y"}
        )
        registry = build_registry(settings)

        assert (await registry.resolve("summarizer")).kind == ToolKind.PRIMARY
        assert (await registry.resolve("github")).kind == ToolKind.REAL
        assert (await registry.resolve("slack")).kind == ToolKind.STUB
        assert set(STUB_LINKS) <= set(registry.known_tools())

        notion = await (await registry.resolve("notion")).invoke(_context(lastSummary="s"))
        assert notion.link == STUB_LINKS["notion"]
        assert notion.payload["summary"] == "s"

    @pytest.mark.asyncio
    async def test_build_registry_with_unimportable_real_tool(self):
        settings = Settings(
            _env_file=None,
            enabled_tools=["sheets"],
            real_tools={"sheets": "octopus.does_not_exist:handler"}
        )
        registry = build_registry(settings)

        resolved = await registry.resolve("sheets")

        assert resolved.kind == ToolKind.STUB
        assert (await resolved.invoke(_context())).link == STUB_LINKS["sheets"]


def test_import_handler_rejects_bad_path():
    with pytest.raises(ValueError):
        import_handler("no_colon_here")


def test_import_handler_returns_coroutine_function():
    assert import_handler("tests.test_tool_registry:real_slack") is real_slack


class TestResolutionLogging:

    @pytest.mark.asyncio
    async def test_stub_fallback_logs_load_failure_reason(self):
        def broken_loader():
            raise ImportError("no module named slack_sdk")

        registry = ToolRegistry()
        registry.register_stub("slack", stub_slack)
        registry.register_real("slack", broken_loader)

        with structlog.testing.capture_logs() as logs:
            await registry.resolve("slack")

        resolution = [entry for entry in logs if entry["event"] == "tool_resolution"]
        assert resolution[-1]["kind"] == "stub"
        assert "no module named slack_sdk" in resolution[-1]["reason"]

    @pytest.mark.asyncio
    async def test_stub_fallback_logs_ineligibility(self):
        registry = ToolRegistry(eligibility=lambda tool, owner: False)
        registry.register_stub("slack", stub_slack)
        registry.register_real("slack", lambda: real_slack)

        with structlog.testing.capture_logs() as logs:
            await registry.resolve("slack", "u1")

        resolution = [entry for entry in logs if entry["event"] == "tool_resolution"]
        assert resolution[-1]["reason"] == "not eligible"
