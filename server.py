#!/usr/bin/env python3
"""
Web Server - FastAPI routes for the memory hub.

Provides:
- Long-term memory document, daily logs
- Cluster listing, cluster search, member edit/delete
- Hybrid search over indexed messages
- Message indexing and context flush for chat frontends
- Manual maintenance trigger (the heartbeat also runs on its own)
"""

import logging
import os
import re
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from hub import MemoryHub, build_hub
from memory_config import load_config

logging.basicConfig(
    level=os.environ.get("MEMHUB_LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

CONFIG_PATH = os.environ.get("MEMHUB_CONFIG")
DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
MESSAGE_ROLES = ("user", "assistant", "system")
MAX_SEARCH_LIMIT = 50

_hub: Optional[MemoryHub] = None


def get_hub() -> MemoryHub:
    if _hub is None:
        raise HTTPException(status_code=503, detail="Memory hub not ready")
    return _hub


# --- Pydantic Models ---

class SearchRequest(BaseModel):
    query: str
    limit: int = 5
    conversation_id: Optional[str] = None


class ClusterSearchRequest(BaseModel):
    query: str
    limit: int = 3


class AddFactRequest(BaseModel):
    fact: str


class FactUpdate(BaseModel):
    content: str


class MessageRequest(BaseModel):
    conversation_id: str
    role: str
    content: str
    message_id: Optional[str] = None
    model: str = ""


class ChatMessage(BaseModel):
    role: str
    content: str


class FlushRequest(BaseModel):
    messages: list[ChatMessage]
    model: Optional[str] = None


# --- Lifespan ---

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    global _hub
    logger.info("[Server] Starting up...")
    owned = _hub is None
    if owned:
        _hub = build_hub(load_config(Path(CONFIG_PATH) if CONFIG_PATH else None))
    _hub.heartbeat.start()

    yield

    logger.info("[Server] Shutting down...")
    await _hub.heartbeat.stop()
    if owned:
        await _hub.close()
        _hub = None


# --- App ---

app = FastAPI(
    title="Memory Hub",
    description="Associative memory: clusters, hybrid retrieval, fact ingestion and maintenance",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Memory Documents ---

@app.get("/api/memory")
async def get_memory(hub: MemoryHub = Depends(get_hub)):
    """Long-term memory document, user profile and heartbeat status."""
    memory = hub.ingestor.memory_file
    user = hub.config.user_file
    return {
        "memory": memory.read_text(encoding="utf-8") if memory.exists() else "",
        "user": user.read_text(encoding="utf-8") if user.exists() else "",
        "heartbeat": hub.heartbeat.status(),
        "queue": hub.queue.status(),
    }


@app.get("/api/memory/daily/{date}")
async def get_daily_log(date: str, hub: MemoryHub = Depends(get_hub)):
    if not DATE_RE.match(date):
        raise HTTPException(status_code=400, detail="Date must be YYYY-MM-DD")
    path = hub.config.daily_dir / f"{date}.md"
    if not path.exists():
        path = hub.config.archive_dir / f"{date}.md"
    if not path.exists():
        raise HTTPException(status_code=404, detail="No log for that date")
    return {"date": date, "content": path.read_text(encoding="utf-8")}


# --- Clusters ---

@app.get("/api/memory/clusters")
async def list_clusters(hub: MemoryHub = Depends(get_hub)):
    return {"clusters": hub.clusters.get_clusters()}


@app.get("/api/memory/clusters/{cluster_id}")
async def get_cluster(cluster_id: str, hub: MemoryHub = Depends(get_hub)):
    cluster = hub.clusters.get_cluster(cluster_id)
    if cluster is None:
        raise HTTPException(status_code=404, detail="Cluster not found")
    return cluster


@app.post("/api/memory/clusters/search")
async def search_clusters(request: ClusterSearchRequest, hub: MemoryHub = Depends(get_hub)):
    if not request.query.strip():
        raise HTTPException(status_code=400, detail="Query is required")
    limit = max(1, min(request.limit, MAX_SEARCH_LIMIT))
    return {"clusters": await hub.clusters.search_clusters(request.query, limit)}


# --- Search ---

@app.post("/api/memory/search")
async def search_memory(request: SearchRequest, hub: MemoryHub = Depends(get_hub)):
    limit = max(1, min(request.limit, MAX_SEARCH_LIMIT))
    hits = await hub.retrieval.hybrid_search(
        request.query, exclude_group_id=request.conversation_id, limit=limit
    )
    return {"results": [h.to_dict() for h in hits]}


# --- Facts ---

@app.post("/api/memory/add")
async def add_fact(request: AddFactRequest, hub: MemoryHub = Depends(get_hub)):
    fact = request.fact.strip()
    if not fact:
        raise HTTPException(status_code=400, detail="Fact is required")
    result, added = await hub.add_fact(fact, source="manual")
    return {"cluster": result.to_dict(), "added_to_document": added}


@app.put("/api/memory/facts/{member_id}")
async def update_fact(member_id: str, request: FactUpdate, hub: MemoryHub = Depends(get_hub)):
    if not request.content.strip():
        raise HTTPException(status_code=400, detail="Content is required")
    if not await hub.clusters.edit_member(member_id, request.content):
        raise HTTPException(status_code=404, detail="Fact not found")
    return hub.store.get_member(member_id)


@app.delete("/api/memory/facts/{member_id}")
async def delete_fact(member_id: str, hub: MemoryHub = Depends(get_hub)):
    if not hub.clusters.delete_member(member_id):
        raise HTTPException(status_code=404, detail="Fact not found")
    return {"message": "Fact deleted"}


# --- Maintenance ---

@app.post("/api/memory/maintain")
async def run_maintenance(hub: MemoryHub = Depends(get_hub)):
    """Run one heartbeat cycle now."""
    return await hub.heartbeat.run_maintenance()


# --- Chat integration ---

@app.post("/api/memory/messages")
async def index_message(request: MessageRequest, hub: MemoryHub = Depends(get_hub)):
    if request.role not in MESSAGE_ROLES:
        raise HTTPException(status_code=400, detail=f"Role must be one of {', '.join(MESSAGE_ROLES)}")
    if not request.content.strip():
        raise HTTPException(status_code=400, detail="Content is required")
    message_id = await hub.index_message(
        request.conversation_id, request.role, request.content,
        message_id=request.message_id, model=request.model,
    )
    return {"id": message_id}


@app.post("/api/memory/flush")
async def flush_context(request: FlushRequest, hub: MemoryHub = Depends(get_hub)):
    """Flush and compact a conversation if it is over its context budget."""
    messages = [m.model_dump() for m in request.messages]
    check = hub.budget.should_flush(messages, request.model)
    result, flushed = await hub.check_and_flush(messages, request.model)
    return {
        "messages": result,
        "flushed": flushed,
        "token_count": check.token_count,
        "context_limit": check.context_limit,
    }


# --- Run ---

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("MEMHUB_PORT", "8000")))
