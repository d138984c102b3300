"""FastAPI application exposing the push webhook and account watch routes."""

import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse

from mailwatch.exceptions import (
    AccountNotFoundError,
    ExhaustedError,
    NeedsReauthError,
    ProviderRejectedError,
    TransientError,
)

from .models import IngestStatus

logger = logging.getLogger(__name__)


def create_app(service, manage_lifecycle: bool = True) -> FastAPI:
    """Build the HTTP app around a MailWatchService.

    Args:
        service: The MailWatchService handling pushes and watch changes.
        manage_lifecycle: Start the service on startup and stop it on shutdown.

    Returns:
        Configured FastAPI application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await run_in_threadpool(service.start)
        try:
            yield
        finally:
            if manage_lifecycle:
                await run_in_threadpool(service.stop)

    app = FastAPI(
        title="Mail Watch",
        description="Gmail OAuth token lifecycle and push-notification watch manager",
        lifespan=lifespan,
    )
    app.state.service = service

    @app.post("/webhooks/gmail", status_code=204, tags=["webhook"])
    async def gmail_push(
        request: Request,
        token: Optional[str] = Query(None),
        authorization: Optional[str] = Header(None),
    ):
        raw = await request.body()
        try:
            envelope = json.loads(raw) if raw else None
        except ValueError:
            envelope = None

        result = await run_in_threadpool(
            service.handle_push, envelope, authorization, token
        )
        if result.status is IngestStatus.REJECTED:
            if result.reason == "invalid_signature":
                raise HTTPException(status_code=401, detail="invalid signature")
            raise HTTPException(status_code=400, detail=result.reason or "malformed")
        return Response(status_code=204)

    @app.get("/webhooks/gmail", tags=["webhook"])
    async def gmail_push_challenge(
        challenge: Optional[str] = Query(None),
        hub_challenge: Optional[str] = Query(None, alias="hub.challenge"),
        token: Optional[str] = Query(None),
        hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    ):
        value = challenge or hub_challenge
        if not value:
            raise HTTPException(status_code=400, detail="missing challenge")
        if not service.verify_challenge_token(token or hub_verify_token):
            raise HTTPException(status_code=401, detail="invalid verification token")
        return PlainTextResponse(value)

    @app.get("/health", tags=["health"])
    async def health():
        return await run_in_threadpool(service.health)

    @app.post("/accounts/{account_id}/watch", tags=["accounts"])
    def ensure_watch(account_id: str):
        try:
            subscription = service.ensure_watch(account_id)
        except AccountNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        except NeedsReauthError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        except ProviderRejectedError as e:
            raise HTTPException(status_code=502, detail=str(e)) from e
        except (ExhaustedError, TransientError) as e:
            raise HTTPException(status_code=503, detail=str(e)) from e
        return {
            "account_id": account_id,
            "history_id": subscription.cursor,
            "expiration": subscription.expires_at.isoformat(),
        }

    @app.delete("/accounts/{account_id}/watch", status_code=204, tags=["accounts"])
    def disconnect(account_id: str):
        service.disconnect_account(account_id)
        return Response(status_code=204)

    return app
