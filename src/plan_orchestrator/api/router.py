from __future__ import annotations

from typing import Any, Callable, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from ..domain.models import Plan
from ..errors import PlanNotFoundError, TaskStoreError
from ..plan_manager import PlanManager


class CreatePlanRequest(BaseModel):
    title: str
    description: str = ""
    max_parallel_agents: Optional[int] = Field(default=None, ge=1)
    branch_strategy: str = "feature_branch"


class ClonePlanRequest(BaseModel):
    include_discussion: bool = False


class DeletePlansRequest(BaseModel):
    plan_ids: list[str] = Field(default_factory=list)


class ReferenceAgentRequest(BaseModel):
    reference_agent_id: Optional[str] = None


class AddRepositoryRequest(BaseModel):
    path: str
    name: Optional[str] = None


def create_router(resolve_manager: Callable[[], PlanManager]) -> APIRouter:
    router = APIRouter(prefix="/api", tags=["api"])

    def _plan_payload(plan: Plan) -> dict[str, Any]:
        return {"plan": plan.to_dict()}

    def _call(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except PlanNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except TaskStoreError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    @router.get("/plans")
    async def list_plans(status: Optional[str] = Query(None)) -> dict[str, Any]:
        plans = resolve_manager().list_plans()
        if status:
            plans = [plan for plan in plans if plan.status == status]
        return {"plans": [plan.to_dict() for plan in plans]}

    @router.post("/plans")
    async def create_plan(body: CreatePlanRequest) -> dict[str, Any]:
        plan = _call(
            resolve_manager().create_plan,
            body.title,
            body.description,
            max_parallel_agents=body.max_parallel_agents,
            branch_strategy=body.branch_strategy,
        )
        return _plan_payload(plan)

    @router.post("/plans/delete")
    async def delete_plans(body: DeletePlansRequest) -> dict[str, Any]:
        if not body.plan_ids:
            raise HTTPException(status_code=400, detail="plan_ids must not be empty")
        return resolve_manager().delete_plans(body.plan_ids)

    @router.get("/plans/{plan_id}")
    async def get_plan(plan_id: str) -> dict[str, Any]:
        return _plan_payload(_call(resolve_manager().get_plan, plan_id))

    @router.delete("/plans/{plan_id}")
    async def delete_plan(plan_id: str) -> dict[str, Any]:
        if not resolve_manager().delete_plan(plan_id):
            raise HTTPException(status_code=404, detail=f"Plan not found: {plan_id}")
        return {"deleted": True, "plan_id": plan_id}

    @router.post("/plans/{plan_id}/clone")
    async def clone_plan(plan_id: str, body: Optional[ClonePlanRequest] = None) -> dict[str, Any]:
        include = body.include_discussion if body is not None else False
        return _plan_payload(_call(resolve_manager().clone_plan, plan_id, include_discussion=include))

    # ------------------------------------------------------------------
    # Discussion
    # ------------------------------------------------------------------

    @router.post("/plans/{plan_id}/discussion/start")
    async def start_discussion(plan_id: str, body: Optional[ReferenceAgentRequest] = None) -> dict[str, Any]:
        reference = body.reference_agent_id if body is not None else None
        return _plan_payload(_call(resolve_manager().start_discussion, plan_id, reference))

    @router.post("/plans/{plan_id}/discussion/complete")
    async def complete_discussion(plan_id: str) -> dict[str, Any]:
        return _plan_payload(_call(resolve_manager().complete_discussion, plan_id))

    @router.post("/plans/{plan_id}/discussion/cancel")
    async def cancel_discussion(plan_id: str) -> dict[str, Any]:
        return _plan_payload(_call(resolve_manager().cancel_discussion, plan_id))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @router.post("/plans/{plan_id}/execute")
    async def execute_plan(plan_id: str, body: Optional[ReferenceAgentRequest] = None) -> dict[str, Any]:
        reference = body.reference_agent_id if body is not None else None
        return _plan_payload(_call(resolve_manager().execute_plan, plan_id, reference))

    @router.post("/plans/{plan_id}/cancel")
    async def cancel_plan(plan_id: str) -> dict[str, Any]:
        return _plan_payload(_call(resolve_manager().cancel_plan, plan_id))

    @router.post("/plans/{plan_id}/restart")
    async def restart_plan(plan_id: str) -> dict[str, Any]:
        return _plan_payload(_call(resolve_manager().restart_plan, plan_id))

    @router.post("/plans/{plan_id}/complete")
    async def complete_plan(plan_id: str) -> dict[str, Any]:
        return _plan_payload(_call(resolve_manager().complete_plan, plan_id))

    @router.post("/plans/{plan_id}/follow-ups")
    async def request_follow_ups(plan_id: str) -> dict[str, Any]:
        return _plan_payload(_call(resolve_manager().request_follow_ups, plan_id))

    # ------------------------------------------------------------------
    # Plan detail views
    # ------------------------------------------------------------------

    @router.get("/plans/{plan_id}/activities")
    async def list_activities(plan_id: str, limit: int = Query(0, ge=0)) -> dict[str, Any]:
        activities = _call(resolve_manager().get_activities, plan_id)
        if limit:
            activities = activities[-limit:]
        return {"activities": [item.to_dict() for item in activities]}

    @router.get("/plans/{plan_id}/assignments")
    async def list_assignments(plan_id: str) -> dict[str, Any]:
        assignments = _call(resolve_manager().get_assignments, plan_id)
        return {"assignments": [item.to_dict() for item in assignments]}

    @router.get("/plans/{plan_id}/graph")
    async def get_graph(plan_id: str) -> dict[str, Any]:
        graph, stats = _call(resolve_manager().get_graph, plan_id)
        return {"graph": graph.to_dict(), "stats": stats.to_dict()}

    @router.get("/events")
    async def list_events(
        limit: int = Query(100, ge=1, le=2000),
        plan_id: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        events = resolve_manager().ctx.container.events.list_recent(limit)
        if plan_id:
            events = [
                event
                for event in events
                if event.get("entity_id") == plan_id
                or (isinstance(event.get("payload"), dict) and event["payload"].get("plan_id") == plan_id)
            ]
        return {"events": events}

    # ------------------------------------------------------------------
    # Repositories
    # ------------------------------------------------------------------

    @router.get("/repositories")
    async def list_repositories() -> dict[str, Any]:
        return {"repositories": [repo.to_dict() for repo in resolve_manager().list_repositories()]}

    @router.post("/repositories")
    async def add_repository(body: AddRepositoryRequest) -> dict[str, Any]:
        repo = _call(resolve_manager().add_repository, body.path, body.name)
        return {"repository": repo.to_dict()}

    return router
