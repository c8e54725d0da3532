from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request

from coreflow.tools.registry import ToolRegistry

router = APIRouter(prefix="/tools", tags=["tools"])


def _get_registry(request: Request) -> ToolRegistry:
    reg = getattr(request.app.state, "tool_registry", None)
    if reg is None:
        raise HTTPException(status_code=503, detail="Tool registry not initialized")
    return reg


@router.get("")
def list_tools(registry: ToolRegistry = Depends(_get_registry)) -> Dict[str, Any]:
    specs = registry.list_specs()
    return {
        "ok": True,
        "count": len(specs),
        "tools": [
            {
                "name": s.name,
                "description": s.description,
                "domain": s.domain,
                "risk_level": s.risk_level,
                "required_permissions": list(s.required_permissions),
                "capabilities": list(s.capabilities),
                "input_schema": s.input_schema,
            }
            for s in specs
        ],
    }


@router.get("/stats")
def tool_stats(registry: ToolRegistry = Depends(_get_registry)) -> Dict[str, Any]:
    return {"ok": True, **registry.stats()}
