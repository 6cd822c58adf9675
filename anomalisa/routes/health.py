from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from ..errors import StoreUnavailable

router = APIRouter()


@router.get("/")
def health():
    return {"status": "ok"}


@router.get("/store")
async def health_store(request: Request):
    store = getattr(request.app.state, "store", None)
    if store is None:
        return JSONResponse(status_code=503, content={"ok": False, "error": "no_store_on_app_state"})

    try:
        pong = await store.ping()
        return {"ok": True, "ping": bool(pong)}
    except StoreUnavailable as e:
        return JSONResponse(status_code=503, content={"ok": False, "error": "store_ping_failed", "detail": str(e)})
