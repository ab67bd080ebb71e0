# control-plane/main.py
import logging

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.v1.credentials import router as credentials_router
from api.v1.gateways import router as gateways_router
from config import settings
from core.event_handlers import register_event_handlers
from core.exceptions import FleetError
from database.session import init_db

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="VPN Gateway Fleet Control Plane",
    description="Deploys VPN gateways, manages device credentials and samples traffic metrics",
)

app.include_router(gateways_router, prefix="/api/v1")
app.include_router(credentials_router, prefix="/api/v1")


@app.on_event("startup")
def _startup():
    init_db()
    register_event_handlers()
    logger.info("Control plane started")


@app.exception_handler(FleetError)
async def fleet_error_handler(request: Request, exc: FleetError):
    if exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


@app.get("/health")
def health_check():
    return {"status": "ok", "service": "control-plane"}


if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8001, reload=True)
