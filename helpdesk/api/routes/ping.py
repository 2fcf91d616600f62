from fastapi import APIRouter

from helpdesk.dependencies.auth import CurrentActor

router = APIRouter(prefix="/ping", tags=["health"])


@router.get("", summary="Public health check")
async def ping() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/whoami", summary="Echo the resolved caller")
async def whoami(actor: CurrentActor) -> dict[str, str | None]:
    return {"id": actor.id, "role": None if actor.role is None else actor.role.value}
