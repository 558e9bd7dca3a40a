"""
Twilio SMS Webhook Endpoint
Receives incoming SMS messages and routes them through the message dispatcher
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Request, HTTPException, Response
from twilio.request_validator import RequestValidator
import logging

from api.routes.assistant import get_dispatcher
from config import settings
from core.conversation.orchestration.dispatcher import MessageDispatcher
from models.schemas import InboundMessage, ProcessOptions

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sms", tags=["SMS"])

EMPTY_TWIML = """<?xml version="1.0" encoding="UTF-8"?>
<Response></Response>"""


def validate_twilio_request(request: Request, form_data) -> bool:
    """
    Validate that request actually came from Twilio

    Validation is skipped when no auth token is configured (local development).

    Args:
        request: FastAPI Request object
        form_data: Already-parsed form data (FormData object from request.form())
    """
    auth_token = settings.TWILIO_AUTH_TOKEN
    if not auth_token:
        logger.warning("TWILIO_AUTH_TOKEN not set - skipping signature validation")
        return True

    validator = RequestValidator(auth_token)

    signature = request.headers.get('X-Twilio-Signature', '')
    if not signature:
        logger.error("No X-Twilio-Signature header present")
        return False

    # Twilio signs the public HTTPS URL even when a proxy terminates TLS
    proto = request.headers.get('X-Forwarded-Proto', request.url.scheme)
    host = request.headers.get('Host', str(request.url.netloc))
    url = f"{proto}://{host}{request.url.path}"

    params = {key: value for key, value in form_data.items()}

    try:
        is_valid = validator.validate(url, params, signature)
    except Exception as e:
        logger.error(f"Exception during signature validation: {e}", exc_info=True)
        return False

    if not is_valid:
        logger.error(f"Invalid Twilio signature | URL: {url} | From: {params.get('From')}")
    return is_valid


async def process_sms(dispatcher: MessageDispatcher, event: InboundMessage):
    """Run the dispatcher for an inbound SMS and send any reply"""
    try:
        result = await dispatcher.handle_inbound(event, ProcessOptions(handoff_on_error=True))
        if result is not None:
            logger.info(f"SMS from {event.chat_id} handled as {result.type}", extra={"chat_id": event.chat_id})
    except Exception as e:
        logger.error(f"Error processing SMS from {event.chat_id}: {e}", exc_info=True)


@router.post("/incoming")
async def sms_incoming(request: Request, background_tasks: BackgroundTasks,
                       dispatcher: MessageDispatcher = Depends(get_dispatcher)):
    """
    Receive incoming SMS via Twilio

    The reply is produced in the background and sent through the transport,
    so the webhook itself answers with empty TwiML.

    Twilio Form Data:
    - From: +14045551234 (sender phone, used as chat id)
    - Body: message text
    - MessageSid: SM... (Twilio message ID)
    """
    # Request body can only be read once
    form = await request.form()

    if not validate_twilio_request(request, form):
        raise HTTPException(status_code=403, detail="Invalid Twilio signature")

    sender = form.get('From')
    body = form.get('Body')

    if not sender or body is None:
        logger.error("Missing required fields in webhook request")
        raise HTTPException(status_code=400, detail="Missing required fields")

    logger.info(f"Received SMS from {sender} | SID: {form.get('MessageSid')}")

    event = InboundMessage(chat_id=sender, text=body)
    background_tasks.add_task(process_sms, dispatcher, event)

    return Response(content=EMPTY_TWIML, media_type="application/xml")
