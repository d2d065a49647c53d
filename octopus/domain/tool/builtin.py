"""
Built-in tool handlers and registry wiring.

The summarizer is the primary tool and always runs its own implementation.
The remaining integrations ship as stubs returning fixed placeholder links;
real handlers are plugged in through configuration.
"""

from typing import Dict, Any, TYPE_CHECKING
from urllib.parse import urlparse
import posixpath
import structlog

from octopus.domain.tool.models import ToolContext, ToolHandler
from octopus.domain.tool.tool_registry import PRIMARY_TOOL, ToolRegistry

if TYPE_CHECKING:
    from octopus.core.config import Settings

logger = structlog.get_logger(__name__)

SUMMARY_PREVIEW_CHARS = 120

STUB_LINKS: Dict[str, str] = {
    "summarizer": "https://octopus.example/summaries/demo",
    "notion": "https://www.notion.so/your-demo-page",
    "slack": "https://app.slack.com/client/T000/C000/p000",
    "github": "https://github.com/your/repo/issues",
    "email": "mailto:someone@example.com",
    "sheets": "https://docs.google.com/spreadsheets/d/DEMO",
}


async def summarize(context: ToolContext) -> Dict[str, Any]:
    """Summarize the instruction, pointing back at the source file when one is attached"""

    file_url = context.memory.get("fileUrl")
    file_ext = None
    if file_url:
        file_ext = posixpath.splitext(urlparse(file_url).path)[1].lower() or None

    instruction = (context.instruction or "").strip() or "(none)"
    lines = [f"Summary: {instruction[:SUMMARY_PREVIEW_CHARS]}"]
    if file_url:
        lines.append(f"Source: {file_url}")
    else:
        lines.append("No document attached.")
    summary = "\n".join(lines)

    return {
        "link": file_url or "#",
        "payload": {"summary": summary, "fileExt": file_ext},
        "memoryPatch": {"lastSummary": summary},
    }


async def summarizer_stub(context: ToolContext) -> Dict[str, Any]:
    summary = f"Summary: {str(context.instruction)[:SUMMARY_PREVIEW_CHARS]}..."
    return {
        "link": STUB_LINKS["summarizer"],
        "payload": {"summary": summary},
        "memoryPatch": {"lastSummary": summary},
    }


def link_stub(name: str) -> ToolHandler:
    link = STUB_LINKS[name]

    async def handle(context: ToolContext) -> Dict[str, Any]:
        return {"link": link, "payload": {"stub": True, "summary": context.memory.get("lastSummary")}}

    handle.__name__ = f"{name}_stub"
    return handle


def build_registry(settings: "Settings") -> ToolRegistry:
    """Populate a registry from settings at startup"""

    enabled = set(settings.enabled_tools)

    def is_enabled(tool: str, owner_id=None) -> bool:
        return tool in enabled

    registry = ToolRegistry(eligibility=is_enabled)
    registry.register_primary(PRIMARY_TOOL, summarize)
    registry.register_stub(PRIMARY_TOOL, summarizer_stub)
    for name in STUB_LINKS:
        if name != PRIMARY_TOOL:
            registry.register_stub(name, link_stub(name))

    for name, path in settings.real_tools.items():
        if name == PRIMARY_TOOL:
            logger.warning("Ignoring real handler for primary tool", tool=name, path=path)
            continue
        registry.register_real_path(name, path)

    logger.info("Tool registry built", tools=registry.known_tools(), enabled=sorted(enabled))
    return registry
