from typing import Dict, Any, Optional, Callable, Union, Awaitable
import importlib
import inspect
import structlog

from octopus.domain.errors import ResolutionError, UnknownTool
from octopus.domain.tool.models import ToolContext, ToolHandler, ToolKind, ToolResult
from octopus.infrastructure.observability.logging import run_logger

logger = structlog.get_logger(__name__)

PRIMARY_TOOL = "summarizer"

EligibilityCheck = Callable[[str, Optional[str]], Union[bool, Awaitable[bool]]]
HandlerLoader = Callable[[], ToolHandler]


class ResolvedTool:
    """A tool name bound to the implementation that will run it"""

    def __init__(self, name: str, kind: ToolKind, handler: ToolHandler):
        self.name = name
        self.kind = kind
        self.handler = handler

    async def invoke(self, context: ToolContext) -> ToolResult:
        return ToolResult.from_raw(await self.handler(context))

    def __repr__(self):
        return f"ResolvedTool(name={self.name!r}, kind={self.kind.value})"


def import_handler(path: str) -> ToolHandler:
    """Load 'package.module:attribute'; factories are called with no arguments"""

    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"expected 'module:attribute', got {path!r}")
    target = getattr(importlib.import_module(module_name), attribute)
    if inspect.isclass(target):
        target = target()
    elif inspect.isfunction(target) and not inspect.iscoroutinefunction(target):
        target = target()
    if not callable(target):
        raise TypeError(f"{path} did not produce a callable handler")
    return target


class ToolRegistry:
    """Maps tool names to primary, real or stub handlers"""

    def __init__(self, eligibility: Optional[EligibilityCheck] = None):
        self.primary: Dict[str, ToolHandler] = {}
        self.stubs: Dict[str, ToolHandler] = {}
        self.real_loaders: Dict[str, HandlerLoader] = {}
        self._loaded: Dict[str, ToolHandler] = {}
        self._load_failures: Dict[str, str] = {}
        self.eligibility = eligibility

    def register_primary(self, name: str, handler: ToolHandler):
        """Tools that always dispatch to their dedicated implementation"""
        self.primary[name] = handler

    def register_stub(self, name: str, handler: ToolHandler):
        self.stubs[name] = handler

    def register_real(self, name: str, loader: HandlerLoader):
        """Register a real integration; it is loaded on first eligible resolution"""

        self.real_loaders[name] = loader
        self._loaded.pop(name, None)
        self._load_failures.pop(name, None)
        if name not in self.stubs:
            self.stubs[name] = placeholder_stub(name)

    def register_real_path(self, name: str, path: str):
        self.register_real(name, lambda: import_handler(path))

    def known_tools(self) -> Dict[str, str]:
        names = set(self.primary) | set(self.stubs) | set(self.real_loaders)
        return {name: self._declared_kind(name).value for name in sorted(names)}

    def _declared_kind(self, name: str) -> ToolKind:
        if name in self.primary:
            return ToolKind.PRIMARY
        if name in self.real_loaders:
            return ToolKind.REAL
        return ToolKind.STUB

    async def resolve(self, name: str, owner_id: Optional[str] = None) -> ResolvedTool:
        """Resolve a tool name; raises UnknownTool when nothing is registered for it"""

        if name in self.primary:
            return ResolvedTool(name, ToolKind.PRIMARY, self.primary[name])

        fallback_reason = None
        if name in self.real_loaders:
            try:
                handler = await self._resolve_real(name, owner_id)
                if handler is not None:
                    run_logger.log_tool_resolution(name, ToolKind.REAL.value)
                    return ResolvedTool(name, ToolKind.REAL, handler)
                fallback_reason = "not eligible"
            except ResolutionError as e:
                logger.warning("Falling back to stub", tool=name, reason=e.reason)
                fallback_reason = e.reason

        if name in self.stubs:
            run_logger.log_tool_resolution(name, ToolKind.STUB.value, reason=fallback_reason)
            return ResolvedTool(name, ToolKind.STUB, self.stubs[name])

        raise UnknownTool(name)

    async def _resolve_real(self, name: str, owner_id: Optional[str]) -> Optional[ToolHandler]:
        """Real handler when eligible and loadable, None when simply not eligible"""

        try:
            eligible = await self._is_eligible(name, owner_id)
        except Exception as e:
            raise ResolutionError(name, f"eligibility check failed: {e}") from e
        if not eligible:
            return None

        if name in self._loaded:
            return self._loaded[name]
        if name in self._load_failures:
            raise ResolutionError(name, self._load_failures[name])

        try:
            handler = self.real_loaders[name]()
        except Exception as e:
            self._load_failures[name] = f"load failed: {e}"
            raise ResolutionError(name, self._load_failures[name]) from e

        self._loaded[name] = handler
        return handler

    async def _is_eligible(self, name: str, owner_id: Optional[str]) -> bool:
        if self.eligibility is None:
            return True
        result = self.eligibility(name, owner_id)
        if inspect.isawaitable(result):
            result = await result
        return bool(result)


def placeholder_stub(name: str) -> ToolHandler:
    """Deterministic stand-in for a tool with no dedicated stub"""

    async def handle(context: ToolContext) -> Dict[str, Any]:
        return {"link": "#", "payload": {"stub": True, "tool": name}}

    handle.__name__ = f"{name}_placeholder"
    return handle
