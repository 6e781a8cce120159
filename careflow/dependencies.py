from fastapi import HTTPException, Request

from careflow.realtime import RealtimeHub
from careflow.scheduling import TaskMaterializer


def get_hub(request: Request) -> RealtimeHub:
    hub = getattr(request.app.state, "hub", None)
    if hub is None:
        raise HTTPException(status_code=503, detail="Realtime service is not running")
    return hub


def get_materializer(request: Request) -> TaskMaterializer:
    materializer = getattr(request.app.state, "materializer", None)
    return materializer or TaskMaterializer()
