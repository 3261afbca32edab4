"""FastAPI surface: index search and browsing, ad-hoc categorization, live record feed."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI, Query, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool

from inbox_triage.classify.batcher import ClassificationBatcher, summarize
from inbox_triage.classify.rules import RuleClassifier
from inbox_triage.config.settings import InboxTriageSettings
from inbox_triage.core.exceptions import InboxTriageError
from inbox_triage.core.models import Category, ClassifiedRecord, MailRecord, SearchFilter
from inbox_triage.pipeline.feed import RecordFeed
from inbox_triage.pipeline.orchestrator import TriagePipeline
from inbox_triage.storage.index import MessageIndex

logger = logging.getLogger(__name__)

FEED_BUFFER_SIZE = 100


class EmailPayload(BaseModel):
    """Ad-hoc message submitted for categorization."""

    model_config = ConfigDict(populate_by_name=True)

    uid: int | None = Field(default=None, gt=0)
    subject: str = ""
    body: str = ""
    sender: str = Field(default="", alias="from")
    to: str = ""
    folder: str = ""
    account: str = ""

    def to_record(self, fallback_uid: int) -> MailRecord:
        return MailRecord(
            uid=self.uid or fallback_uid,
            sender=self.sender,
            to=self.to,
            subject=self.subject,
            date=datetime.now(UTC),
            folder=self.folder,
            account=self.account,
            body=self.body,
        )


class CategorizeRequest(BaseModel):
    email: EmailPayload | None = None


class BatchCategorizeRequest(BaseModel):
    emails: list[EmailPayload] | None = None


def _categorization(item: ClassifiedRecord) -> dict[str, Any]:
    return {
        "uid": item.uid,
        "subject": item.record.subject,
        "category": item.category.value,
        "confidence": item.confidence,
        "method": item.method.value,
        "reasoning": item.reasoning,
    }


def create_app(
    settings: InboxTriageSettings,
    index: MessageIndex,
    *,
    pipeline: TriagePipeline | None = None,
    feed: RecordFeed | None = None,
    batcher: ClassificationBatcher | None = None,
    rules: RuleClassifier | None = None,
) -> FastAPI:
    """Build the HTTP application around an open index.

    Ad-hoc categorization goes through ``batcher`` when given (oracle with
    rule fallback) and through the rule engine alone otherwise.
    """
    app = FastAPI(title="inbox-triage API")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    record_feed = feed or (pipeline.feed if pipeline else RecordFeed())
    rule_engine = rules or (batcher.rules if batcher else RuleClassifier())

    @app.exception_handler(InboxTriageError)
    async def triage_error_handler(_request: Request, exc: InboxTriageError) -> JSONResponse:
        logger.error("Request failed: %s", exc)
        return JSONResponse(status_code=500, content={"error": str(exc)})

    @app.get("/search")
    def search(
        q: str | None = None,
        query: str | None = None,
        folder: str | None = None,
        account: str | None = None,
        sender: str | None = Query(default=None, alias="from"),
        to: str | None = None,
        date_from: datetime | None = Query(default=None, alias="dateFrom"),
        date_to: datetime | None = Query(default=None, alias="dateTo"),
        is_read: bool | None = Query(default=None, alias="isRead"),
        is_important: bool | None = Query(default=None, alias="isImportant"),
        has_attachments: bool | None = Query(default=None, alias="hasAttachments"),
        labels: str | None = None,
        ai_category: str | None = Query(default=None, alias="aiCategory"),
        size: int = Query(default=20, ge=0, le=500),
        page: int = Query(default=0, ge=0),
    ) -> dict[str, Any]:
        label_set = tuple(x.strip() for x in (labels or "").split(",") if x.strip())
        result = index.search(
            SearchFilter(
                query=q or query,
                folder=folder,
                account=account,
                sender=sender,
                to=to,
                date_from=date_from,
                date_to=date_to,
                is_read=is_read,
                is_important=is_important,
                has_attachments=has_attachments,
                labels=label_set,
                category=Category.parse(ai_category) if ai_category else None,
                size=size,
                offset=page * size,
            )
        )
        return {
            "emails": result.hits,
            "total": result.total,
            "took": result.took_ms,
            "page": page,
            "size": size,
        }

    @app.get("/folders")
    def folders() -> dict[str, Any]:
        return {"folders": index.folders()}

    @app.get("/accounts")
    def accounts() -> dict[str, Any]:
        return {"accounts": index.accounts()}

    @app.get("/stats")
    def stats() -> dict[str, Any]:
        return index.stats()

    @app.get("/ai-stats")
    def ai_stats() -> dict[str, Any]:
        return index.category_stats()

    @app.get("/ai-categories")
    def ai_categories() -> dict[str, Any]:
        return {"categories": [c.value for c in Category]}

    @app.get("/status")
    def status() -> dict[str, Any]:
        if pipeline is None:
            return {"state": "not running"}
        return pipeline.status()

    @app.post("/categorize")
    async def categorize(payload: CategorizeRequest) -> Any:
        if payload.email is None:
            return JSONResponse(status_code=400, content={"error": "Email data is required"})
        record = payload.email.to_record(fallback_uid=1)
        if batcher is not None:
            classified = (await run_in_threadpool(batcher.classify_all, [record]))[0]
        else:
            classified = rule_engine.classify(record)
        return _categorization(classified)

    @app.post("/categorize/batch")
    async def categorize_batch(payload: BatchCategorizeRequest) -> Any:
        if payload.emails is None:
            return JSONResponse(status_code=400, content={"error": "Emails array is required"})
        records = [e.to_record(fallback_uid=i) for i, e in enumerate(payload.emails, start=1)]
        if batcher is not None:
            classified = await run_in_threadpool(batcher.classify_all, records)
        else:
            classified = [rule_engine.classify(r) for r in records]
        return {
            "categorizations": [_categorization(c) for c in classified],
            "stats": summarize(classified),
            "total": len(records),
        }

    @app.websocket("/ws")
    async def live_feed(websocket: WebSocket) -> None:
        await websocket.accept()
        loop = asyncio.get_running_loop()
        outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=FEED_BUFFER_SIZE)

        def offer(document: dict[str, Any]) -> None:
            # Slow clients lose the oldest pending documents.
            if outbox.full():
                outbox.get_nowait()
                logger.warning("Live feed client is lagging; dropped oldest document")
            outbox.put_nowait(document)

        unsubscribe = record_feed.subscribe(
            lambda document: loop.call_soon_threadsafe(offer, document)
        )

        async def pump() -> None:
            while True:
                document = await outbox.get()
                await websocket.send_json({"type": "email", "data": document})

        await websocket.send_json({"type": "connected"})
        sender = asyncio.create_task(pump())
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
        finally:
            unsubscribe()
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Live feed send failed: %s", e)
            logger.debug("Live feed client disconnected")

    return app
