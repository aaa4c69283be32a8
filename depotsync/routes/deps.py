from fastapi import HTTPException, Request

from ..services.container import DepotServices


def get_services(request: Request) -> DepotServices:
    services = getattr(request.app.state, "depot_services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Depot sync is not initialised")
    return services
