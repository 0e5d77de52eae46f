# web_api.py

import datetime
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, Gauge, generate_latest
from pydantic import BaseModel

from config import CORS_ORIGINS, DATABASE_PATH, DISPATCH_INTERVAL_SECONDS, LOG_LEVEL, PORT
from scheduler_logic import (
    Dispatcher, cancel_scheduled_message, create_scheduled_message,
    health_check, ingest_credential, list_pending_messages, send_now
)
from shared.database import CredentialStore, MessageStore, SqliteCredentialStore, SqliteMessageStore
from shared.errors import SchedulerError
from shared.slack_client import SlackClient, get_slack_client

# === Logging setup ===
logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

PENDING_MESSAGES = Gauge('slack_scheduler_pending_messages', 'Number of scheduled messages not yet sent')


# === Request models ===
class SendMessageRequest(BaseModel):
    channel: Optional[str] = None
    text: Optional[str] = None


class ScheduleMessageRequest(BaseModel):
    channel: Optional[str] = None
    text: Optional[str] = None
    sendAt: Optional[str] = None


def create_app(
    messages: Optional[MessageStore] = None,
    credentials: Optional[CredentialStore] = None,
    client: Optional[SlackClient] = None,
    start_dispatcher: bool = True,
    dispatch_interval: float = DISPATCH_INTERVAL_SECONDS
) -> FastAPI:
    """Builds the API around the given stores and Slack client (SQLite and config defaults)."""
    messages = messages if messages is not None else SqliteMessageStore(DATABASE_PATH)
    credentials = credentials if credentials is not None else SqliteCredentialStore(DATABASE_PATH)
    client = client or get_slack_client()
    dispatcher = Dispatcher(messages, credentials, client, interval=dispatch_interval)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_dispatcher:
            dispatcher.start()
        try:
            yield
        finally:
            dispatcher.shutdown()

    app = FastAPI(title="Slack Message Scheduler API", lifespan=lifespan)
    app.state.messages = messages
    app.state.credentials = credentials
    app.state.client = client
    app.state.dispatcher = dispatcher

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(SchedulerError)
    async def scheduler_error_handler(request: Request, exc: SchedulerError):
        return JSONResponse({"error": str(exc)}, status_code=exc.status_code)

    # === Service endpoints ===

    @app.get("/", response_class=PlainTextResponse)
    async def root():
        return "Backend is working!"

    @app.get("/health", summary="Health check")
    async def health():
        report = health_check(messages, credentials)
        report["dispatcher_running"] = dispatcher.running
        report["last_tick_at"] = dispatcher.last_tick_at.isoformat() if dispatcher.last_tick_at else None
        report["timestamp"] = datetime.datetime.now(datetime.timezone.utc).isoformat()
        if report["status"] != "ok":
            return JSONResponse(report, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
        return report

    @app.get("/metrics", summary="Prometheus metrics")
    async def metrics():
        PENDING_MESSAGES.set(len(list_pending_messages(messages)))
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # === Slack OAuth ===

    @app.get("/auth/slack", summary="Start Slack OAuth flow")
    async def auth_slack():
        return RedirectResponse(client.authorize_url())

    @app.get("/slack/oauth_redirect", summary="Slack OAuth callback")
    async def oauth_redirect(code: Optional[str] = None):
        if not code:
            return PlainTextResponse("No code provided", status_code=status.HTTP_400_BAD_REQUEST)
        credential = await client.exchange_code(code)
        ingest_credential(credentials, credential)
        return {
            "message": "Slack authentication successful and token stored!",
            "team": credential.team,
            "authed_user": credential.authed_user,
        }

    # === Messages ===

    @app.post("/slack/send-message", summary="Send a message immediately")
    async def send_message(request: SendMessageRequest):
        delivered = await send_now(client, credentials, request.channel, request.text)
        return {"message": "Message sent!", "ts": delivered.timestamp}

    @app.post("/slack/schedule-message", summary="Schedule a message")
    async def schedule_message(request: ScheduleMessageRequest):
        message = create_scheduled_message(messages, request.channel, request.text, request.sendAt)
        return {"message": "Message scheduled!", "id": message.id}

    @app.get("/slack/scheduled-messages", summary="List pending scheduled messages")
    async def scheduled_messages():
        return [m.to_dict() for m in list_pending_messages(messages)]

    @app.delete("/slack/scheduled-message/{msg_id}", summary="Cancel a scheduled message")
    async def cancel_message(msg_id: str):
        cancel_scheduled_message(messages, msg_id)
        return {"message": "Scheduled message canceled.", "id": msg_id}

    return app


# === Server startup ===
if __name__ == "__main__":
    import uvicorn
    logger.info(f"🚀 Starting Slack scheduler API on port {PORT}...")
    uvicorn.run(create_app(), host="0.0.0.0", port=PORT)
