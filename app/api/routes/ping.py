from fastapi import APIRouter, HTTPException

from app.dependencies.auth import CurrentIdentity
from app.dependencies.tickets import RepositoryDep
from app.tickets.errors import StoreUnavailable

router = APIRouter(prefix="/ping", tags=["health"])


@router.get("", summary="Public health check")
async def ping() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/store", summary="Durable store health check")
async def ping_store(repository: RepositoryDep) -> dict[str, str]:
    try:
        await repository.ping()
    except StoreUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"status": "ok"}


@router.get("/session", summary="Echo the identity behind the session token")
async def ping_session(identity: CurrentIdentity) -> dict[str, str]:
    return {"status": "ok", "id": identity.id, "display_name": identity.display_name}
