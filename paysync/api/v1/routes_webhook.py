from fastapi import APIRouter, Depends, Request, Response
from paysync.api.deps import get_webhook_service
from paysync.services.webhook import WebhookService

router = APIRouter()


@router.post("/dodo")
async def dodo_webhook(request: Request, service: WebhookService = Depends(get_webhook_service)):
    """
    Dodo Payments webhook endpoint.

    Only the status code matters to the provider: 200 once the event was
    accepted (applied, already seen or unresolvable), 401/400 only in test mode.
    """
    raw_body = await request.body()
    status_code = await service.handle(raw_body, request.headers)
    return Response(status_code=status_code)
