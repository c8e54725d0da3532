from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from coreflow.permissions import PermissionState
from coreflow.risk import RiskLevel
from coreflow.tools.base import BaseTool


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    domain: str
    risk_level: str
    required_permissions: Tuple[str, ...]
    capabilities: Tuple[str, ...]
    input_schema: dict


class RegistryFrozenError(RuntimeError):
    pass


class ToolRegistry:
    """Catalog of capabilities, indexed by name and domain.

    Populated at startup, then frozen; lookups never mutate it.
    """

    def __init__(self) -> None:
        self._tools: Dict[str, BaseTool] = {}
        self._by_domain: Dict[str, List[str]] = {}
        self._by_capability: Dict[str, List[str]] = {}
        self._frozen = False

    @classmethod
    def from_tools(cls, tools: Iterable[BaseTool]) -> "ToolRegistry":
        registry = cls()
        for tool in tools:
            registry.register(tool)
        registry.freeze()
        return registry

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(self, tool: BaseTool) -> None:
        if self._frozen:
            raise RegistryFrozenError("Tool registry is frozen")
        if not tool.name:
            raise ValueError("Tool name is required")
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' already registered")
        self._tools[tool.name] = tool
        self._by_domain.setdefault(tool.domain, []).append(tool.name)
        for tag in tool.capabilities:
            self._by_capability.setdefault(tag, []).append(tool.name)

    def freeze(self) -> None:
        self._frozen = True

    def get(self, name: str) -> Optional[BaseTool]:
        return self._tools.get(name)

    def require(self, name: str) -> BaseTool:
        tool = self.get(name)
        if tool is None:
            raise KeyError(f"Unknown tool '{name}'")
        return tool

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def all(self) -> List[BaseTool]:
        return [self._tools[n] for n in sorted(self._tools)]

    def by_domain(self, domain: str) -> List[BaseTool]:
        return [self._tools[n] for n in self._by_domain.get(domain, [])]

    def domains(self) -> List[str]:
        return sorted(self._by_domain)

    def providers(self, capability: str) -> List[BaseTool]:
        return [self._tools[n] for n in self._by_capability.get(capability, [])]

    def by_risk_level(self, level: RiskLevel) -> List[BaseTool]:
        return [t for t in self.all() if t.risk_level == level]

    def alternatives(
        self,
        capability: str,
        *,
        exclude: Iterable[str] = (),
        permissions: Optional[PermissionState] = None,
    ) -> List[BaseTool]:
        skip = set(exclude)
        out: List[BaseTool] = []
        for tool in self.providers(capability):
            if tool.name in skip:
                continue
            if permissions is not None and not all(
                permissions.is_granted(p) for p in tool.required_permissions
            ):
                continue
            out.append(tool)
        out.sort(key=lambda t: (t.risk_level, t.name))
        return out

    def score(self, request: str) -> Dict[str, float]:
        return {t.name: t.relevance_score(request) for t in self.all()}

    def list_specs(self) -> List[ToolSpec]:
        specs: List[ToolSpec] = []
        for tool in self._tools.values():
            specs.append(
                ToolSpec(
                    name=tool.name,
                    description=tool.description,
                    domain=tool.domain,
                    risk_level=tool.risk_level.name,
                    required_permissions=tuple(tool.required_permissions),
                    capabilities=tuple(tool.capabilities),
                    input_schema=tool.parameter_schema(),
                )
            )
        specs.sort(key=lambda x: x.name)
        return specs

    def stats(self) -> Dict[str, Any]:
        by_risk = {level.name: len(self.by_risk_level(level)) for level in RiskLevel}
        return {
            "total": len(self._tools),
            "by_risk": by_risk,
            "by_domain": {d: len(self.by_domain(d)) for d in self.domains()},
            "permissions": sorted({p for t in self._tools.values() for p in t.required_permissions}),
        }
