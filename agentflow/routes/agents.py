# /agentflow/routes/agents.py
from fastapi import APIRouter, Depends, HTTPException, Request
import logging

from agentflow.config.settings import settings
from agentflow.models.api import APIResponse
from agentflow.utils.dependencies import get_container, verify_api_key

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/agents",
    tags=["Agents"],
    dependencies=[Depends(verify_api_key)]
)


@router.get("/status", response_model=APIResponse)
async def get_system_agent_status(request: Request):
    status = await get_container(request).resolver.get_system_agent_status()
    return APIResponse(success=True, message="Agent status retrieved", data=status, version=settings.api_version)


@router.get("/{agent_id}/flow", response_model=APIResponse)
async def get_agent_flow(agent_id: str, request: Request):
    try:
        definition = await get_container(request).conversations.get_agent_flow_definition(agent_id)
    except ValueError:
        raise HTTPException(status_code=404, detail="Agent not found")
    return APIResponse(
        success=True, message="Flow definition retrieved", data=definition.model_dump(mode="json"), version=settings.api_version
    )


@router.get("/{agent_id}/flow/validate", response_model=APIResponse)
async def validate_agent_flow(agent_id: str, request: Request):
    """Static checks over the agent's step graph."""
    try:
        report = await get_container(request).conversations.validate_agent_flow(agent_id)
    except ValueError:
        raise HTTPException(status_code=404, detail="Agent not found")
    return APIResponse(
        success=True,
        message="Flow is valid" if report["is_valid"] else "Flow has issues",
        data=dict(report),
        version=settings.api_version,
    )


@router.get("/broadcasts/{broadcast_id}", response_model=APIResponse)
async def get_valid_agents_for_broadcast(broadcast_id: str, request: Request):
    result = await get_container(request).resolver.get_valid_agents_for_broadcast(broadcast_id)
    if not result["success"]:
        raise HTTPException(status_code=404, detail=result["error"])
    return APIResponse(success=True, message="Agents retrieved", data=result, version=settings.api_version)
