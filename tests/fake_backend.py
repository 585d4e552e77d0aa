# tests/fake_backend.py
#
# In-memory stand-in for the MMA service, served to the client through
# httpx.ASGITransport.

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse

SIGNED_OUTPUT = (
    "https://replicate.delivery/pbxt/abc/out.png"
    "?X-Amz-Algorithm=AWS4-HMAC-SHA256&X-Amz-Credential=KEY%2F20250101&X-Amz-Signature=deadbeef"
)


@dataclass
class FakeMma:
    output_url: str = SIGNED_OUTPUT
    balance: Optional[float] = 42
    create_delay: float = 0.0
    # events sent on the progress channel, in order
    sse_script: List[Tuple[str, str]] = field(
        default_factory=lambda: [
            ("status", "scanning"),
            ("message", json.dumps({"status": "prompting"})),
            ("done", ""),
        ]
    )
    sse_status: int = 200
    # polls answered "queued" (or with poll_error_status) before the record is final
    polls_before_done: int = 0
    poll_error_status: Optional[int] = None
    final_status: str = "done"
    final_error: Optional[Dict[str, Any]] = None

    create_calls: List[Dict[str, Any]] = field(default_factory=list)
    store_calls: List[Dict[str, Any]] = field(default_factory=list)
    events: List[Dict[str, Any]] = field(default_factory=list)
    poll_calls: int = 0
    sse_calls: int = 0
    jobs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def transport(self) -> httpx.ASGITransport:
        return httpx.ASGITransport(app=build_app(self))


def _sse(script: List[Tuple[str, str]]) -> str:
    chunks = []
    for event, data in script:
        lines = [] if event == "message" else [f"event: {event}"]
        lines.append(f"data: {data}")
        chunks.append("\n".join(lines) + "\n\n")
    return "".join(chunks)


def build_app(state: FakeMma) -> FastAPI:
    app = FastAPI(title="Fake MMA")

    async def _create(request: Request, mode: str) -> Dict[str, Any]:
        body = await request.json()
        state.create_calls.append(body)
        if state.create_delay:
            await asyncio.sleep(state.create_delay)

        gid = f"gen-{len(state.create_calls)}"
        inputs = body.get("inputs") or {}
        record: Dict[str, Any] = {
            "generation_id": gid,
            "status": state.final_status,
            "mode": mode,
            "prompt": inputs.get("brief") or inputs.get("motionDescription") or inputs.get("feedback"),
            "credits": {"balance": state.balance, "cost": 1},
        }
        if state.final_error is not None:
            record["error"] = state.final_error
        elif inputs.get("suggest_only"):
            record["status"] = "suggested"
            record["suggestion"] = "slow orbit around the bottle, soft rim light"
            record["prompt"] = None
        else:
            key = "video_url" if mode == "video" else "image_url"
            record["outputs"] = {key: state.output_url}
        state.jobs[gid] = record
        return {
            "generation_id": gid,
            "status": "queued",
            "sse_url": f"/mma/generations/{gid}/stream",
            "credits_cost": 1,
        }

    @app.post("/mma/still/create")
    async def create_still(request: Request):
        return await _create(request, "still")

    @app.post("/mma/video/animate")
    async def animate(request: Request):
        return await _create(request, "video")

    @app.post("/mma/{kind}/{gid}/tweak")
    async def tweak(kind: str, gid: str, request: Request):
        if gid not in state.jobs:
            raise HTTPException(status_code=404, detail="generation not found")
        return await _create(request, "video" if kind == "video" else "still")

    @app.get("/mma/generations/{gid}/stream")
    async def stream(gid: str):
        state.sse_calls += 1
        if state.sse_status >= 400:
            return JSONResponse({"ok": False}, status_code=state.sse_status)

        async def gen():
            yield _sse(state.sse_script).encode()

        return StreamingResponse(gen(), media_type="text/event-stream")

    @app.get("/mma/generations/{gid}")
    async def generation(gid: str):
        state.poll_calls += 1
        if gid not in state.jobs:
            raise HTTPException(status_code=404, detail="generation not found")
        if state.poll_calls <= state.polls_before_done:
            if state.poll_error_status:
                return JSONResponse({"ok": False}, status_code=state.poll_error_status)
            return {"generation_id": gid, "status": "generating"}
        return state.jobs[gid]

    @app.post("/api/r2/store-remote-signed")
    async def store_remote(request: Request):
        body = await request.json()
        state.store_calls.append(body)
        name = body["url"].split("?")[0].rstrip("/").split("/")[-1]
        return {"ok": True, "url": f"https://assets.faltastudio.com/{body['folder']}/{name}"}

    @app.get("/credits/balance")
    async def credits_balance(passId: str):
        return {"balance": state.balance, "meta": {"imageCost": 1, "motionCost": 5}}

    @app.post("/mma/events")
    async def events(request: Request):
        state.events.append(await request.json())
        return {"ok": True}

    return app
