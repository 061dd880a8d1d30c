"""buildlens FastAPI server — styled build output and source links."""

from __future__ import annotations

import asyncio
import os
import socket
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, model_validator

from path_resolver import discover_package_roots
from pipeline import (
    BuildOutputPipeline,
    DocumentStyling,
    InvalidPipelineState,
    PipelineConfig,
    render_build_output,
)

app = FastAPI(title="buildlens", version="1.0.0")
_security = HTTPBearer()

TOKEN = os.environ.get("BL_TOKEN", "changeme")
WORKSPACE_ROOT = os.environ.get("BL_WORKSPACE_ROOT", "").strip() or None
MAX_STREAMS = int(os.environ.get("BL_MAX_STREAMS", "16"))

if TOKEN == "changeme":
    import sys

    print(
        "\n\033[1;31mFATAL: BL_TOKEN is set to 'changeme'.\033[0m\n"
        "Generate a secure token:  python3 -c \"import secrets; print(secrets.token_urlsafe(32))\"\n"
        "Then set it:  export BL_TOKEN=<your-token>\n",
        file=sys.stderr,
    )
    sys.exit(1)


def _verify(creds: HTTPAuthorizationCredentials = Depends(_security)) -> str:
    if creds.credentials != TOKEN:
        raise HTTPException(status_code=401, detail="Invalid token")
    return creds.credentials


def _document_payload(doc: DocumentStyling, final: bool) -> dict:
    payload = doc.to_dict()
    payload["final"] = final
    payload["parsed_lines"] = [
        {"runs": list(line.runs), "links": list(line.links)} for line in doc.to_lines()
    ]
    payload["ts"] = datetime.now(timezone.utc).isoformat()
    return payload


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "hostname": socket.gethostname(),
        "streams": len(_streams),
    }


@app.post("/render")
async def render(
    request: Request,
    _: str = Depends(_verify),
    workspace_root: str | None = Query(default=None),
):
    if workspace_root is not None and not os.path.isabs(workspace_root):
        raise HTTPException(status_code=400, detail=f"workspace_root must be an absolute path: {workspace_root!r}")
    root = workspace_root or WORKSPACE_ROOT
    config = PipelineConfig(
        workspace_root=Path(root) if root else None,
        package_roots=discover_package_roots,
    )
    body = await request.body()
    # Package discovery walks the filesystem.
    doc = await asyncio.to_thread(render_build_output, body, config)
    return _document_payload(doc, final=True)


class CreateStreamRequest(BaseModel):
    workspace_root: Optional[str] = None
    package_roots: list[str] = []
    discover: bool = False

    @model_validator(mode="after")
    def absolute_roots(self):
        for root in [self.workspace_root, *self.package_roots]:
            if root is not None and not os.path.isabs(root):
                raise ValueError(f"Roots must be absolute paths: {root!r}")
        if self.discover and self.workspace_root is None:
            raise ValueError("discover requires workspace_root")
        return self

    def to_config(self) -> PipelineConfig:
        root = self.workspace_root or WORKSPACE_ROOT
        if self.discover:
            return PipelineConfig(workspace_root=Path(root), package_roots=discover_package_roots)
        return PipelineConfig(
            workspace_root=Path(root) if root else None,
            package_roots=tuple(Path(p) for p in self.package_roots),
        )


_streams: dict[str, BuildOutputPipeline] = {}


def _get_stream(stream_id: str) -> BuildOutputPipeline:
    pipeline = _streams.get(stream_id)
    if pipeline is None:
        raise HTTPException(status_code=404, detail="Unknown stream")
    return pipeline


@app.post("/streams")
async def create_stream(
    body: CreateStreamRequest,
    _: str = Depends(_verify),
):
    if len(_streams) >= MAX_STREAMS:
        raise HTTPException(status_code=429, detail="Too many open streams")
    pipeline = BuildOutputPipeline(body.to_config())
    stream_id = uuid.uuid4().hex
    # Counts toward MAX_STREAMS while it starts.
    _streams[stream_id] = pipeline
    try:
        await asyncio.to_thread(pipeline.start)
    except BaseException:
        _streams.pop(stream_id, None)
        raise
    return {"id": stream_id, "state": pipeline.state.value}


@app.post("/streams/{stream_id}/chunks")
async def feed_stream(
    stream_id: str,
    request: Request,
    _: str = Depends(_verify),
):
    pipeline = _get_stream(stream_id)
    chunk = await request.body()
    try:
        pipeline.feed(chunk)
    except InvalidPipelineState as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    snap = pipeline.snapshot()
    return {
        "ok": True,
        "state": pipeline.state.value,
        "runs": len(snap.runs),
        "diagnostics": len(snap.diagnostics),
    }


@app.get("/streams/{stream_id}")
async def get_stream(
    stream_id: str,
    _: str = Depends(_verify),
):
    pipeline = _get_stream(stream_id)
    return _document_payload(pipeline.snapshot(), final=pipeline.result is not None)


@app.post("/streams/{stream_id}/finish")
async def finish_stream(
    stream_id: str,
    _: str = Depends(_verify),
):
    pipeline = _get_stream(stream_id)
    try:
        doc = pipeline.finish()
    except InvalidPipelineState as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return _document_payload(doc, final=True)


@app.delete("/streams/{stream_id}")
async def delete_stream(
    stream_id: str,
    _: str = Depends(_verify),
):
    pipeline = _streams.pop(stream_id, None)
    if pipeline is None:
        raise HTTPException(status_code=404, detail="Unknown stream")
    pipeline.close()
    return {"ok": True}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=8788)
