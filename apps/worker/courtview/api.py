"""
HTTP surface for the worker.

ENDPOINTS:
- POST  /monitor                          run one poll now
- GET   /schedule/latest                  latest stored snapshot
- GET   /notifications                    newest first (?unreadOnly&limit)
- PATCH /notifications                    set read flag
- POST  /documents/{document_id}          automated retrieval, or a manual code
                                          with the sessionId that issued it
- POST  /captcha/sessions                 manual path: open a session
- GET   /captcha/sessions/{id}/image      manual path: fresh challenge image
- POST  /captcha/sessions/{id}/submit     manual path: submit the code

ERROR MAPPING:
InvalidInput 400, SessionExpired 410, CaptchaRejected 422, RateLimited 429,
UpstreamFetch 502. Exhausted retrieval: 422 if the last cause was a
rejection, else 502.
"""

from __future__ import annotations

import logging

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from courtview.documents import DocumentRetriever, get_retriever
from courtview.errors import (
    CaptchaRejectedError,
    CourtViewError,
    DocumentRetrievalError,
    InvalidInputError,
    RateLimitedError,
    SessionExpiredError,
    UpstreamFetchError,
)
from courtview.models import NotificationRecord, RetrievedDocument
from courtview.polling import PollingWorker, get_worker
from courtview.store import SnapshotStore

logger = logging.getLogger(__name__)

app = FastAPI(title="CourtView Worker")


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class _CamelModel(BaseModel):
    model_config = {"populate_by_name": True}


class MarkNotificationsRequest(_CamelModel):
    notification_ids: list[str] = Field(alias="notificationIds", min_length=1)
    read: bool = True


class DocumentRequest(_CamelModel):
    security_code: str | None = Field(default=None, alias="securityCode")
    session_id: str | None = Field(default=None, alias="sessionId")
    date: str | None = None


class OpenSessionRequest(_CamelModel):
    document_id: str = Field(alias="documentId")


class SubmitCodeRequest(_CamelModel):
    security_code: str = Field(alias="securityCode")
    date: str | None = None


# ---------------------------------------------------------------------------
# Dependencies and error mapping
# ---------------------------------------------------------------------------

def get_store() -> SnapshotStore:
    return SnapshotStore()


def _status_for(exc: CourtViewError) -> int:
    if isinstance(exc, InvalidInputError):
        return 400
    if isinstance(exc, SessionExpiredError):
        return 410
    if isinstance(exc, CaptchaRejectedError):
        return 422
    if isinstance(exc, RateLimitedError):
        return 429
    if isinstance(exc, UpstreamFetchError):
        return 502
    if isinstance(exc, DocumentRetrievalError):
        return 422 if isinstance(exc.last_error, CaptchaRejectedError) else 502
    return 500


@app.exception_handler(CourtViewError)
async def courtview_error_handler(request, exc: CourtViewError) -> JSONResponse:
    status = _status_for(exc)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    headers = {}
    if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
        headers["Retry-After"] = str(int(exc.retry_after))
    return JSONResponse(
        status_code=status,
        content={"success": False, "error": str(exc)},
        headers=headers,
    )


def _notification_json(n: NotificationRecord) -> dict:
    return {"id": n.id, **n.to_dict()}


def _document_response(doc: RetrievedDocument) -> Response:
    return Response(
        content=doc.content,
        media_type=doc.content_type,
        headers={
            "Content-Disposition": f'attachment; filename="{doc.filename}"',
            "Cache-Control": "no-store",
            "X-Retrieval-Attempts": str(doc.attempts),
        },
    )


# ---------------------------------------------------------------------------
# Schedule pipeline
# ---------------------------------------------------------------------------

@app.post("/monitor")
async def monitor(worker: PollingWorker = Depends(get_worker)):
    summary = await worker.poll_once()
    body = {"success": summary.error is None, **summary.to_dict()}
    return JSONResponse(status_code=500 if summary.error else 200, content=body)


@app.get("/schedule/latest")
async def latest_schedule(store: SnapshotStore = Depends(get_store)):
    snapshot = store.latest_snapshot()
    if snapshot is None:
        raise HTTPException(status_code=404, detail="No schedule snapshot stored yet")
    return {"id": snapshot.id, **snapshot.to_dict()}


@app.get("/notifications")
async def list_notifications(
    unread_only: bool = Query(False, alias="unreadOnly"),
    limit: int = Query(50, ge=1, le=500),
    store: SnapshotStore = Depends(get_store),
):
    notifications = store.list_notifications(unread_only=unread_only, limit=limit)
    return {"notifications": [_notification_json(n) for n in notifications]}


@app.patch("/notifications")
async def mark_notifications(
    body: MarkNotificationsRequest, store: SnapshotStore = Depends(get_store)
):
    updated = store.mark_notifications(body.notification_ids, body.read)
    return {"success": True, "updated": updated}


# ---------------------------------------------------------------------------
# Document retrieval
# ---------------------------------------------------------------------------

@app.post("/documents/{document_id}")
async def retrieve_document(
    document_id: str,
    body: DocumentRequest | None = None,
    retriever: DocumentRetriever = Depends(get_retriever),
):
    body = body or DocumentRequest()
    doc = await retriever.retrieve(
        document_id,
        security_code=body.security_code,
        date=body.date,
        session_id=body.session_id,
    )
    return _document_response(doc)


@app.post("/captcha/sessions")
async def open_captcha_session(
    body: OpenSessionRequest, retriever: DocumentRetriever = Depends(get_retriever)
):
    session_id = await retriever.open_challenge(body.document_id)
    return {
        "success": True,
        "sessionId": session_id,
        "captchaImageUrl": f"/captcha/sessions/{session_id}/image",
    }


@app.get("/captcha/sessions/{session_id}/image")
async def captcha_image(
    session_id: str, retriever: DocumentRetriever = Depends(get_retriever)
):
    image = await retriever.challenge_image(session_id)
    return Response(
        content=image, media_type="image/png", headers={"Cache-Control": "no-store"}
    )


@app.post("/captcha/sessions/{session_id}/submit")
async def submit_captcha(
    session_id: str,
    body: SubmitCodeRequest,
    retriever: DocumentRetriever = Depends(get_retriever),
):
    doc = await retriever.submit_code(session_id, body.security_code, date=body.date)
    return _document_response(doc)
