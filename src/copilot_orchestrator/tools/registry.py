"""Tool definitions and the per-tenant registry."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel

from copilot_orchestrator.domain.models import COLLECT_INPUTS_TOOL_NAME
from copilot_orchestrator.tools.schemas import CollectInputsInput


class ToolKind(str, Enum):
    SERVER = "server"
    CLIENT_CONFIRM = "client_confirm"
    CLIENT_AUTO = "client_auto"


@dataclass(frozen=True)
class ToolInvocation:
    tenant_id: str
    user_id: str
    input: BaseModel
    tool_call_id: str
    run_id: str


ToolFn = Callable[[ToolInvocation], Awaitable[Any]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    input_model: type[BaseModel]
    kind: ToolKind = ToolKind.SERVER
    execute: ToolFn | None = None

    def input_schema(self) -> dict[str, Any]:
        return self.input_model.model_json_schema(by_alias=True)

    @property
    def runs_on_server(self) -> bool:
        return self.kind is ToolKind.SERVER and self.execute is not None


COLLECT_INPUTS_TOOL = ToolSpec(
    name=COLLECT_INPUTS_TOOL_NAME,
    description=(
        "Ask the user to fill in a short form when required values are missing. "
        "The client renders the form and sends the answers back as the tool result."
    ),
    input_model=CollectInputsInput,
    kind=ToolKind.CLIENT_CONFIRM,
)


class ToolRegistry(Protocol):
    def list_for_tenant(self, tenant_id: str) -> list[ToolSpec]: ...


class StaticToolRegistry:
    """Registry of globally available tools plus tenant-scoped extras."""

    def __init__(self, tools: Iterable[ToolSpec] = ()) -> None:
        self._global: dict[str, ToolSpec] = {}
        self._by_tenant: dict[str, dict[str, ToolSpec]] = {}
        for spec in tools:
            self.register(spec)

    def register(self, spec: ToolSpec, *, tenant_id: str | None = None) -> None:
        if spec.kind is ToolKind.SERVER and spec.execute is None:
            raise ValueError(f"Server tool '{spec.name}' needs an execute function")
        if tenant_id is None:
            self._global[spec.name] = spec
        else:
            self._by_tenant.setdefault(tenant_id, {})[spec.name] = spec

    def list_for_tenant(self, tenant_id: str) -> list[ToolSpec]:
        merged = dict(self._global)
        merged.update(self._by_tenant.get(tenant_id, {}))
        return [merged[name] for name in sorted(merged)]


def build_registry(extra_tools: Iterable[ToolSpec] = ()) -> StaticToolRegistry:
    return StaticToolRegistry([COLLECT_INPUTS_TOOL, *extra_tools])


def list_tools(registry: ToolRegistry, tenant_id: str) -> list[dict[str, Any]]:
    return [
        {
            "name": spec.name,
            "description": spec.description,
            "kind": spec.kind.value,
            "inputSchema": spec.input_schema(),
        }
        for spec in registry.list_for_tenant(tenant_id)
    ]
