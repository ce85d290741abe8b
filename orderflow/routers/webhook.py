import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from orderflow.container import Container
from orderflow.core.database import get_db
from orderflow.core.errors import AuthError
from orderflow.deps import get_container

router = APIRouter(tags=["webhook"])
logger = logging.getLogger(__name__)


@router.get("/webhooks/whatsapp")
def verify_whatsapp_webhook(
    request: Request,
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
):
    qp = request.query_params
    try:
        challenge = container.inbound.verify(
            db,
            mode=qp.get("hub.mode"),
            token=qp.get("hub.verify_token"),
            challenge=qp.get("hub.challenge"),
        )
    except AuthError as exc:
        logger.warning("webhook verification rejected")
        raise HTTPException(status_code=403, detail="Invalid verify token") from exc
    return PlainTextResponse(challenge)


@router.post("/webhooks/whatsapp")
async def receive_whatsapp_webhook(
    request: Request,
    db: Session = Depends(get_db),
    container: Container = Depends(get_container),
):
    # Always 200: the provider redelivers anything that is not acknowledged.
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("webhook body is not JSON")
        return {"status": "ok"}
    if not isinstance(payload, dict):
        return {"status": "ok"}

    try:
        summary = await run_in_threadpool(container.inbound.ingest, db, payload)
    except Exception:
        logger.exception("webhook ingestion failed")
        return {"status": "ok"}
    return {"status": "ok", **summary}
