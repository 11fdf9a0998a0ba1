import json
from typing import Any, AsyncIterator, Callable, Dict, NoReturn, Optional

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask
from starlette.concurrency import run_in_threadpool

from app.services.change_feed import ChangeEvent, Subscription
from app.services.errors import (
    InvalidTransitionError,
    StoreConflictError,
    StoreError,
    StoreNotFoundError,
    StorePermissionError,
    TransientStoreError,
)

HEARTBEAT_SECONDS = 15.0
POLL_SECONDS = 1.0


def raise_store_http_error(exc: StoreError) -> NoReturn:
    if isinstance(exc, StoreNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, StorePermissionError):
        raise HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, InvalidTransitionError):
        raise HTTPException(status_code=409, detail={"code": "invalid_transition", "message": str(exc)})
    if isinstance(exc, StoreConflictError):
        raise HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, TransientStoreError):
        raise HTTPException(status_code=503, detail=str(exc))
    raise HTTPException(status_code=400, detail=str(exc))


def _frame(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(jsonable_encoder(payload))}\n\n"


def event_stream(
    request: Request,
    subscription: Subscription,
    snapshot: Callable[[], Any],
    limit: Optional[int] = None,
) -> StreamingResponse:
    """Server-sent events: one snapshot frame, then a frame per change.

    Each change re-reads the snapshot so clients never merge partial state.
    ``limit`` ends the stream after that many change frames. The subscription
    is cancelled as soon as the client disconnects or the stream ends.
    """

    async def event_generator() -> AsyncIterator[str]:
        sent = 0
        idle = 0.0
        try:
            yield _frame({"type": "snapshot", "data": await run_in_threadpool(snapshot)})
            while limit is None or sent < limit:
                if await request.is_disconnected():
                    break
                event: Optional[ChangeEvent] = await run_in_threadpool(subscription.poll, POLL_SECONDS)
                if event is None:
                    if subscription.cancelled:
                        break
                    idle += POLL_SECONDS
                    if idle >= HEARTBEAT_SECONDS:
                        idle = 0.0
                        yield ": keepalive\n\n"
                    continue
                idle = 0.0
                sent += 1
                data = await run_in_threadpool(snapshot)
                yield _frame({"type": event.kind, "doc_id": event.doc_id, "seq": event.seq, "data": data})
        except StoreError as exc:
            yield _frame({"type": "error", "message": str(exc)})
        finally:
            subscription.cancel()
        yield "data: [DONE]\n\n"

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        background=BackgroundTask(subscription.cancel),
    )
