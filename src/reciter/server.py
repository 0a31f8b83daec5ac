import logging
import time
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel

from reciter.consts import VERSION
from reciter.domain.serialization import (
    document_from_dict,
    format_timestamp,
    record_to_dict,
    review_state_from_dict,
    stats_from_dict,
)
from reciter.infrastructure.adapters.memory_mirror import InMemoryRemoteMirror

# Setup logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("reciter.server")

_mirror = InMemoryRemoteMirror()


def get_mirror() -> InMemoryRemoteMirror:
    return _mirror


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info(f"Reciter mirror v{VERSION} starting up...")
    yield
    # Shutdown
    logger.info("Reciter mirror shutting down...")


app = FastAPI(
    title="Reciter Mirror",
    description="Remote mirror for reciter devices: per-user records, groups and profiles.",
    version=VERSION,
    lifespan=lifespan,
)


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float


class WriteResponse(BaseModel):
    updated_at: str


class RecordsResponse(BaseModel):
    records: list[dict[str, Any]]


class ChangesResponse(BaseModel):
    records: list[dict[str, Any]]
    cursor: int


class SharedProgressRequest(BaseModel):
    user_id: str
    document_title: str
    unit_id: str
    mastered: bool


class MemberRequest(BaseModel):
    user_id: str


start_time = time.time()


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Simple health check to verify the mirror is reachable.
    """
    return HealthResponse(status="ok", version=VERSION, uptime_seconds=time.time() - start_time)


@app.get("/version")
async def get_version():
    return {"version": VERSION}


def _bad_request(what: str, e: Exception) -> HTTPException:
    logger.warning(f"Rejected {what}: {e}")
    return HTTPException(status_code=422, detail=f"Invalid {what}: {e}")


# ---------- Records ----------


@app.put("/users/{user_id}/documents/{document_id}/units/{unit_id}", response_model=WriteResponse)
async def put_review_state(
    user_id: str,
    document_id: str,
    unit_id: str,
    body: dict[str, Any],
    mirror: InMemoryRemoteMirror = Depends(get_mirror),
):
    try:
        state = review_state_from_dict({**body, "id": unit_id})
    except (KeyError, TypeError, ValueError) as e:
        raise _bad_request("review state", e) from e
    updated_at = await mirror.upsert_review_state(user_id, document_id, unit_id, state)
    return WriteResponse(updated_at=format_timestamp(updated_at))


@app.put("/users/{user_id}/documents/{document_id}", response_model=WriteResponse)
async def put_document(
    user_id: str,
    document_id: str,
    body: dict[str, Any],
    mirror: InMemoryRemoteMirror = Depends(get_mirror),
):
    try:
        document = document_from_dict({**body, "id": document_id})
    except (KeyError, TypeError, ValueError) as e:
        raise _bad_request("document", e) from e
    updated_at = await mirror.upsert_document(user_id, document)
    return WriteResponse(updated_at=format_timestamp(updated_at))


@app.put("/users/{user_id}/documents/{document_id}/stats", response_model=WriteResponse)
async def put_stats(
    user_id: str,
    document_id: str,
    body: dict[str, Any],
    mirror: InMemoryRemoteMirror = Depends(get_mirror),
):
    try:
        stats = stats_from_dict(body)
    except (KeyError, TypeError, ValueError) as e:
        raise _bad_request("stats", e) from e
    updated_at = await mirror.upsert_stats(user_id, document_id, stats)
    return WriteResponse(updated_at=format_timestamp(updated_at))


@app.get("/users/{user_id}/records", response_model=RecordsResponse)
async def get_records(user_id: str, mirror: InMemoryRemoteMirror = Depends(get_mirror)):
    records = await mirror.fetch_all(user_id)
    return RecordsResponse(records=[record_to_dict(r) for r in records])


@app.get("/users/{user_id}/changes", response_model=ChangesResponse)
async def get_changes(
    user_id: str,
    since: int | None = None,
    mirror: InMemoryRemoteMirror = Depends(get_mirror),
):
    """
    Changed records after cursor ``since``. Without ``since`` only the current
    cursor is returned, which is where a new live feed starts.
    """
    records, cursor = mirror.changes_since(user_id, since)
    return ChangesResponse(records=[record_to_dict(r) for r in records], cursor=cursor)


@app.delete("/users/{user_id}/documents/{document_id}")
async def delete_document(
    user_id: str, document_id: str, mirror: InMemoryRemoteMirror = Depends(get_mirror)
):
    await mirror.delete_document(user_id, document_id)
    return {"ok": True}


# ---------- Groups / profile ----------


@app.get("/users/{user_id}/groups")
async def get_groups(user_id: str, mirror: InMemoryRemoteMirror = Depends(get_mirror)):
    return {"group_ids": await mirror.fetch_group_ids(user_id)}


@app.post("/groups/{group_id}/members")
async def add_member(
    group_id: str, req: MemberRequest, mirror: InMemoryRemoteMirror = Depends(get_mirror)
):
    mirror.add_member(group_id, req.user_id)
    logger.info(f"Added {req.user_id} to group {group_id}")
    return {"ok": True}


@app.get("/groups/{group_id}/progress")
async def get_group_progress(group_id: str, mirror: InMemoryRemoteMirror = Depends(get_mirror)):
    return {"progress": mirror.group_progress(group_id)}


@app.put("/groups/{group_id}/progress")
async def put_group_progress(
    group_id: str,
    req: SharedProgressRequest,
    mirror: InMemoryRemoteMirror = Depends(get_mirror),
):
    await mirror.upsert_shared_progress(
        group_id, req.user_id, req.document_title, req.unit_id, req.mastered
    )
    return {"ok": True}


@app.delete("/groups/{group_id}/progress")
async def delete_group_progress(
    group_id: str,
    user_id: str,
    document_title: str,
    mirror: InMemoryRemoteMirror = Depends(get_mirror),
):
    await mirror.delete_shared_progress(group_id, user_id, document_title)
    return {"ok": True}


@app.patch("/users/{user_id}/profile")
async def patch_profile(
    user_id: str, body: dict[str, Any], mirror: InMemoryRemoteMirror = Depends(get_mirror)
):
    await mirror.update_profile(user_id, body)
    return {"ok": True}


@app.get("/users/{user_id}/profile")
async def get_profile(user_id: str, mirror: InMemoryRemoteMirror = Depends(get_mirror)):
    profile = mirror.profiles.get(user_id)
    if profile is None:
        raise HTTPException(status_code=404, detail=f"No profile for {user_id}")
    return profile

