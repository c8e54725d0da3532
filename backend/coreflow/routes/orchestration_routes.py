from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from coreflow.errors import InputError, OrchestrationError, PlanningError, ValidationError
from coreflow.events import phase_update_adapter
from coreflow.orchestrator import Orchestrator, PreparedTurn, TurnResult
from coreflow.pending import PendingPlanCache
from coreflow.progress import CancellationToken, ProgressStream
from coreflow.safety import ConfirmationDecision, ConfirmationResponse
from coreflow.store import OrchestrationStore

router = APIRouter(prefix="/orchestrate", tags=["orchestrate"])


class OrchestrateRequest(BaseModel):
    message: str
    conversation_id: str = Field(default="default", min_length=1, max_length=128)
    device_context: Dict[str, Any] = Field(default_factory=dict)


class DecisionRequest(BaseModel):
    decision: ConfirmationDecision
    keep_step_ids: Optional[List[str]] = None
    granted_permissions: List[str] = Field(default_factory=list)


def get_orchestrator(request: Request) -> Orchestrator:
    orch = getattr(request.app.state, "orchestrator", None)
    if orch is None:
        raise HTTPException(status_code=503, detail="Orchestrator not initialized")
    return orch


def get_pending(request: Request) -> PendingPlanCache:
    cache = getattr(request.app.state, "pending_plans", None)
    if cache is None:
        raise HTTPException(status_code=503, detail="Pending plan cache not initialized")
    return cache


def get_store(request: Request) -> OrchestrationStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Store not initialized")
    return store


def _raise_http(exc: OrchestrationError) -> NoReturn:
    if isinstance(exc, InputError):
        raise HTTPException(status_code=400, detail={"error": "input", "message": str(exc)})
    if isinstance(exc, ValidationError):
        raise HTTPException(
            status_code=422,
            detail={"error": "validation", "errors": exc.errors, "warnings": exc.warnings},
        )
    if isinstance(exc, PlanningError):
        raise HTTPException(status_code=422, detail={"error": "planning", "message": str(exc)})
    raise HTTPException(status_code=409, detail={"error": type(exc).__name__, "message": str(exc)})


def _prepare(orch: Orchestrator, req: OrchestrateRequest) -> PreparedTurn:
    try:
        return orch.prepare(
            req.message,
            conversation_id=req.conversation_id,
            device_context=req.device_context,
        )
    except OrchestrationError as exc:
        _raise_http(exc)


def _confirmation_payload(prepared: PreparedTurn) -> Dict[str, Any]:
    return {
        "ok": True,
        "status": "confirmation_required" if prepared.requires_confirmation else "ready",
        "turn_id": prepared.turn_id,
        "plan_id": prepared.plan.id,
        "requires_confirmation": prepared.requires_confirmation,
        "preview": prepared.preview.model_dump(mode="json"),
        "report": prepared.report.model_dump(mode="json"),
        "warnings": list(prepared.validation.warnings),
    }


def _turn_payload(result: TurnResult) -> Dict[str, Any]:
    return {"ok": True, **result.model_dump(mode="json")}


@router.post("/plan")
def preview_plan(
    req: OrchestrateRequest,
    orch: Orchestrator = Depends(get_orchestrator),
    pending: PendingPlanCache = Depends(get_pending),
) -> Dict[str, Any]:
    prepared = _prepare(orch, req)
    pending.put(prepared)
    return _confirmation_payload(prepared)


@router.post("/{plan_id}/decision")
async def decide_plan(
    plan_id: str,
    req: DecisionRequest,
    orch: Orchestrator = Depends(get_orchestrator),
    pending: PendingPlanCache = Depends(get_pending),
) -> Dict[str, Any]:
    prepared = pending.take(plan_id)
    if prepared is None:
        raise HTTPException(status_code=404, detail="Unknown or expired plan")

    try:
        if req.decision == ConfirmationDecision.MODIFY:
            if not orch.can_modify(prepared):
                cancel = ConfirmationResponse(decision=ConfirmationDecision.CANCEL)
                return _turn_payload(await orch.execute_prepared(prepared, cancel))
            modified = orch.apply_modification(prepared, req.keep_step_ids or [])
            if modified.plan.is_direct_response:
                cancel = ConfirmationResponse(decision=ConfirmationDecision.CANCEL)
                return _turn_payload(await orch.execute_prepared(modified, cancel))
            if modified.requires_confirmation:
                pending.put(modified)
                return _confirmation_payload(modified)
            return _turn_payload(await orch.execute_prepared(modified))

        decision = ConfirmationResponse(
            decision=req.decision, granted_permissions=req.granted_permissions
        )
        return _turn_payload(await orch.execute_prepared(prepared, decision))
    except OrchestrationError as exc:
        _raise_http(exc)


@router.post("/run")
async def run_turn(
    req: OrchestrateRequest,
    orch: Orchestrator = Depends(get_orchestrator),
    pending: PendingPlanCache = Depends(get_pending),
) -> Dict[str, Any]:
    prepared = _prepare(orch, req)
    if prepared.requires_confirmation:
        pending.put(prepared)
        raise HTTPException(status_code=409, detail=_confirmation_payload(prepared))
    try:
        return _turn_payload(await orch.execute_prepared(prepared))
    except OrchestrationError as exc:
        _raise_http(exc)


@router.post("/stream")
async def stream_turn(
    req: OrchestrateRequest,
    orch: Orchestrator = Depends(get_orchestrator),
    pending: PendingPlanCache = Depends(get_pending),
):
    prepared = _prepare(orch, req)
    if prepared.requires_confirmation:
        pending.put(prepared)
        raise HTTPException(status_code=409, detail=_confirmation_payload(prepared))

    stream = ProgressStream(orch.progress_buffer)
    token = CancellationToken()

    async def event_generator():
        task = asyncio.create_task(
            orch.execute_prepared(prepared, progress=stream, cancel_token=token)
        )
        task.add_done_callback(lambda _: stream.close())
        try:
            async for event in stream:
                yield f"data: {json.dumps({'progress': event.model_dump(mode='json')})}\n\n"
            result = await task
            yield f"data: {json.dumps({'final': result.response, 'status': result.status.value})}\n\n"
            yield "data: {\"done\": true}\n\n"
        except OrchestrationError as e:
            yield f"data: {json.dumps({'error': str(e)})}\n\n"
        finally:
            if not task.done():
                token.cancel("client disconnected")

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.get("/turns/{turn_id}/events")
def turn_events(
    turn_id: str,
    phase: Optional[str] = None,
    store: OrchestrationStore = Depends(get_store),
) -> Dict[str, Any]:
    events = store.list_events(turn_id, phase)
    return {
        "ok": True,
        "turn_id": turn_id,
        "count": len(events),
        "events": [phase_update_adapter.dump_python(e, mode="json") for e in events],
    }
