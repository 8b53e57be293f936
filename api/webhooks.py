"""
Webhook receiver - accepts push notifications from the transcoding service.
Runs on port 9000 (the only port exposed to the transcoding service).

Authentic deliveries always get a 2xx, whatever happens to the payload;
only a bad signature (401) or a missing secret (503) is refused.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded

from api.common import (
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
    check_health,
    get_real_ip,
    get_request_id,
    rate_limit_exceeded_handler,
)
from api.database import configure_database, database
from api.metrics import METRICS_CONTENT_TYPE, WEBHOOKS_RECEIVED_TOTAL, get_metrics, init_app_info
from api.schemas import WebhookAck
from api.webhook_ingest import webhook_ingestor
from config import (
    LOG_LEVEL,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_STORAGE_URL,
    RATE_LIMIT_WEBHOOK,
    WEBHOOK_PORT,
    WEBHOOK_SIGNATURE_HEADER,
)

logger = logging.getLogger(__name__)

limiter = Limiter(
    key_func=get_real_ip,
    storage_uri=RATE_LIMIT_STORAGE_URL if RATE_LIMIT_ENABLED else None,
    enabled=RATE_LIMIT_ENABLED,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown."""
    if not webhook_ingestor.is_configured:
        logger.warning(
            "REELWATCH_TRANSCODER_WEBHOOK_SECRET is not set; webhook deliveries will be refused with 503"
        )
    init_app_info(component="webhooks")
    await database.connect()
    await configure_database()

    yield

    await database.disconnect()


app = FastAPI(title="ReelWatch Webhooks", description="Transcoding status webhooks", lifespan=lifespan)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestIDMiddleware)


@app.post("/webhooks/transcoder", response_model=WebhookAck)
@limiter.limit(RATE_LIMIT_WEBHOOK)
async def receive_transcoder_webhook(request: Request):
    """
    Receive one status push from the transcoding service.

    The signature header carries an HMAC-SHA256 of the raw body. Everything
    after verification is best-effort: malformed payloads, unknown external ids
    and redundant updates are logged and acknowledged.
    """
    if not webhook_ingestor.is_configured:
        WEBHOOKS_RECEIVED_TOTAL.labels(result="rejected").inc()
        return JSONResponse(
            status_code=503,
            content={"detail": "Webhook receiver is not configured"},
        )

    body = await request.body()
    signature = request.headers.get(WEBHOOK_SIGNATURE_HEADER)
    if not webhook_ingestor.verify(body, signature):
        WEBHOOKS_RECEIVED_TOTAL.labels(result="rejected").inc()
        logger.warning(
            f"Rejected webhook with invalid signature from {get_real_ip(request)} "
            f"(request {get_request_id(request)})"
        )
        return JSONResponse(status_code=401, content={"detail": "Invalid signature"})

    outcome = await webhook_ingestor.ingest(body)
    return WebhookAck(received=True, outcome=outcome.value)


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring and load balancers."""
    result = await check_health()
    return JSONResponse(
        status_code=result["status_code"],
        content={
            "status": "healthy" if result["healthy"] else "unhealthy",
            "checks": result["checks"],
            "webhook_secret_configured": webhook_ingestor.is_configured,
        },
    )


@app.get("/metrics")
async def metrics():
    """Prometheus metrics."""
    return Response(content=get_metrics(), media_type=METRICS_CONTENT_TYPE)


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(app, host="0.0.0.0", port=WEBHOOK_PORT)
