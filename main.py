import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import PlainTextResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.exc import SQLAlchemyError
from twilio.twiml.messaging_response import MessagingResponse

import db
from app.services.errors import RateLimited, SignatureInvalid, ValidationError
from app.services.webhook import WebhookHandler, reply_for
from app.utils.clock import SystemClock
from app.utils.rate_limit import SlidingWindowLimiter
from app.utils.sms import TwilioGateway
from config import settings

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
_LOGGER = logging.getLogger(__name__)

_handler: WebhookHandler | None = None
_redis: aioredis.Redis | None = None


def get_webhook_handler() -> WebhookHandler:
    """Process-wide handler; tests swap it via ``app.dependency_overrides``."""
    global _handler, _redis
    if _handler is None:
        _redis = aioredis.from_url(settings.REDIS_URL)
        session_maker = db.get_session_maker()
        _handler = WebhookHandler(
            users=db.UserStore(session_maker),
            ledger=db.Ledger(session_maker),
            gateway=TwilioGateway.from_settings(settings),
            limiter=SlidingWindowLimiter(_redis, settings.WEBHOOK_RATE_LIMIT_PER_MINUTE),
            clock=SystemClock(),
        )
    return _handler


@asynccontextmanager
async def lifespan(_app: FastAPI):
    # DB engine and Redis client are created lazily on first request.
    yield
    global _handler, _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None
    _handler = None
    await db.dispose_engine()


app = FastAPI(lifespan=lifespan)


@app.get("/healthz", response_class=PlainTextResponse)
async def healthz():
    return PlainTextResponse("OK")


@app.get("/metrics")
async def prometheus_metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# --------------------------------------------
# Twilio webhook (inbound messages + status callbacks)
# --------------------------------------------
@app.post("/v1/sms/twilio")
async def twilio_webhook(request: Request, handler: WebhookHandler = Depends(get_webhook_handler)):
    raw_body = await request.body()
    sig = request.headers.get("x-twilio-signature")
    # Behind a proxy request.url is the internal address; Twilio signs the public one.
    url = settings.WEBHOOK_PUBLIC_URL or str(request.url)
    source = request.client.host if request.client else "unknown"

    try:
        ack = await handler.handle(raw_body, sig, url, source)
    except RateLimited as exc:
        _LOGGER.warning("[Webhook] %s", exc)
        raise HTTPException(status.HTTP_429_TOO_MANY_REQUESTS, "Too many requests")
    except SignatureInvalid:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Bad signature")
    except ValidationError as exc:
        _LOGGER.warning("[Webhook] rejected payload: %s", exc)
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Malformed payload")
    except SQLAlchemyError:
        _LOGGER.exception("[Webhook] database error")
        raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, "DB error")

    # Always TwiML: a text/plain body would be sent back to the user as a reply.
    twiml = MessagingResponse()
    reply = reply_for(ack)
    if reply:
        twiml.message(reply)
    return Response(
        content=str(twiml),
        media_type="application/xml",
        headers={"X-Webhook-Ack": ack},
    )
