import structlog
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from payhooks.database import Base, engine
from payhooks.errors import ReconcileError
from payhooks.logging_config import setup_logging
from payhooks.routes import router
from payhooks.webhooks import router as webhook_router

setup_logging()
logger = structlog.get_logger(__name__)

app = FastAPI(title="Checkout Payment Reconciliation")

app.include_router(router)
app.include_router(webhook_router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(ReconcileError)
async def reconcile_error_handler(request: Request, exc: ReconcileError):
    request_id = getattr(request.state, "request_id", None)
    logger.warning(
        "request_rejected",
        path=request.url.path,
        status_code=exc.status_code,
        error=exc.message,
        error_type=type(exc).__name__,
    )
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict(request_id)))


@app.get("/health")
def health():
    return {"ok": True}
