import json
import logging

from fastapi import APIRouter
from fastapi import Depends
from fastapi import HTTPException
from fastapi import Request

from flowbot.dependencies import get_webhook_dispatcher
from flowbot.schemas.schemas import WebhookReport
from flowbot.services.webhook_dispatcher import WebhookDelivery
from flowbot.services.webhook_dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def _read_payload(request: Request):
    if request.method in ("GET", "HEAD", "DELETE"):
        return dict(request.query_params)

    body = await request.body()
    if not body:
        return {}
    content_type = request.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}
    try:
        return json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be valid JSON")


@router.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"], response_model=WebhookReport)
async def receive_webhook(
    path: str,
    request: Request,
    dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher),
):
    """Run every active webhook agent whose endpoint matches *path*."""
    payload = await _read_payload(request)
    delivery = WebhookDelivery(
        path=path,
        method=request.method,
        headers=dict(request.headers),
        payload=payload,
    )
    return await dispatcher.dispatch(delivery)
