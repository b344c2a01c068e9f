from fastapi import APIRouter, Depends, HTTPException, Request  # type: ignore[import-not-found]

from ..models import OAuthRequest, OAuthResponse, OAuthStatusResponse
from ..services.oauth_orchestrator import OAuthOrchestrator

router = APIRouter(prefix="/oauth", tags=["oauth"])


def get_orchestrator(request: Request) -> OAuthOrchestrator:
    orchestrator = getattr(request.app.state, "oauth_orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="OAuth service is not ready")
    return orchestrator


@router.post("/sessions", response_model=OAuthResponse)
async def start_oauth_session(
    body: OAuthRequest,
    orchestrator: OAuthOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.trigger_oauth(body)


@router.get("/sessions/{server_id}", response_model=OAuthStatusResponse)
async def get_oauth_session(
    server_id: str,
    orchestrator: OAuthOrchestrator = Depends(get_orchestrator),
):
    status = orchestrator.get_status(server_id)
    if status is None:
        raise HTTPException(status_code=404, detail="OAuth session not found")
    return status


@router.post("/sessions/{server_id}/cancel", response_model=OAuthResponse)
async def cancel_oauth_session(
    server_id: str,
    orchestrator: OAuthOrchestrator = Depends(get_orchestrator),
):
    response = await orchestrator.cancel(server_id)
    if response is None:
        raise HTTPException(status_code=404, detail="OAuth session not found")
    return response
