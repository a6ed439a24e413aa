from __future__ import annotations

import asyncio
import contextlib

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from newsdash.api.deps import get_orchestrator
from newsdash.modules.query.schemas import ChunkOut, QueryIn, QueryOutcomeOut
from newsdash.modules.query.service import QueryOrchestrator

router = APIRouter(tags=["query"])


def _sse(event: str, data: str) -> str:
    return f"event: {event}\ndata: {data}\n\n"


@router.post("/query")
async def stream_query(
    payload: QueryIn,
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    queue: asyncio.Queue[str | None] = asyncio.Queue()

    async def on_chunk(text: str, complete: bool) -> None:
        await queue.put(_sse("chunk", ChunkOut(text=text, complete=complete).model_dump_json()))

    async def run() -> None:
        try:
            outcome = await orchestrator.handle(
                payload.query,
                on_chunk=on_chunk,
                force_refresh=payload.force_refresh,
            )
            out = QueryOutcomeOut(
                status=outcome.status,
                from_cache=outcome.from_cache,
                timestamp=outcome.timestamp,
                response=outcome.response,
            )
            await queue.put(_sse("response", out.model_dump_json()))
        finally:
            await queue.put(None)

    async def events():
        task = asyncio.create_task(run())
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                yield item
            await task
        finally:
            # client went away mid-stream
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
