import json
import logging

from fastapi import FastAPI, Request, Response
from starlette.concurrency import run_in_threadpool

from settlement import config
from settlement.audit import RequestContext
from settlement.database import Base, engine
from settlement.errors import ErrorKind, UnknownProvider
from settlement.providers.registry import get_adapter
from settlement.routes import router
from settlement.webhooks import handle_webhook

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Payment Settlement Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)

# 200 tells the provider to stop redelivering; anything else asks for a retry.
# Other rejections are audited and acknowledged.
WEBHOOK_STATUS = {
    ErrorKind.MALFORMED_WEBHOOK: 400,
    ErrorKind.UNKNOWN_PROVIDER: 404,
    ErrorKind.PAYMENT_NOT_FOUND: 400,
    ErrorKind.INVALID_SIGNATURE: 400,
    ErrorKind.AMOUNT_MISMATCH: 200,
}


def webhook_status(result) -> int:
    if result.ok:
        return 200
    if result.error.transient:
        return 503
    return WEBHOOK_STATUS.get(result.error.kind, 200)


def acknowledgement(provider: str, ok: bool):
    try:
        return get_adapter(provider).acknowledge(ok)
    except UnknownProvider:
        return json.dumps({"ok": ok}), "application/json"


def client_ip(request: Request):
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


@app.post("/webhooks/{provider}")
async def payment_webhook(provider: str, request: Request):
    # the signature covers the exact bytes, so the body is passed on undecoded
    payload = await request.body()
    context = RequestContext(source_ip=client_ip(request), user_agent=request.headers.get("user-agent"))

    result = await run_in_threadpool(handle_webhook, provider, payload, dict(request.headers), context)

    status_code = webhook_status(result)
    body, media_type = acknowledgement(provider, status_code == 200)
    return Response(content=body, status_code=status_code, media_type=media_type)
