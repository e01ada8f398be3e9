"""REST endpoints over stored collections and their interpretations.

Paths (all under /api):
    POST   /collections                           upload a collection
    GET    /collections                           list stored collections
    GET    /collections/{id}                      interpretation summary
    DELETE /collections/{id}                      evict
    GET    /collections/{id}/intervals            filtered interval timeline
    GET    /collections/{id}/diagnostics          JSON, or plain text with format=plain
    GET    /collections/{id}/statistics           aggregate statistics
    GET    /collections/{id}/utilization          load-imbalance metrics
    GET    /collections/{id}/threads              thread identities
    GET    /collections/{id}/threads/{pid}/events        raw event series
    GET    /collections/{id}/threads/{pid}/antagonists   antagonist analysis

Interpretation happens lazily on first access and is memoized by the store.
Structural errors surface as 422, unknown ids as 404.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import PlainTextResponse

from schedviz.core.aggregator import StatisticsFilter
from schedviz.core.engine import InterpretationResult
from schedviz.core.normalizer import StructuralError
from schedviz.domain.collection import Collection
from schedviz.domain.enums import EntityKind, Severity
from schedviz.explain.formatter import DiagnosticFormatter
from schedviz.store.collection_store import CollectionNotFoundError, CollectionStore

logger = logging.getLogger(__name__)


def build_filter(
    cpus: Optional[list[int]] = None,
    pids: Optional[list[int]] = None,
    start_ns: Optional[int] = None,
    end_ns: Optional[int] = None,
) -> StatisticsFilter:
    return StatisticsFilter(
        cpus=frozenset(cpus) if cpus else None,
        pids=frozenset(pids) if pids else None,
        start_ns=start_ns,
        end_ns=end_ns,
    )


def create_collections_router(store: CollectionStore) -> APIRouter:
    """Factory that wires the collection endpoints to the store."""

    router = APIRouter(prefix="/api", tags=["collections"])
    engine = store.engine

    async def _result(collection_id: str) -> InterpretationResult:
        try:
            return await store.result(collection_id)
        except CollectionNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except StructuralError as exc:
            logger.warning("Collection %s is malformed: %s", collection_id, exc)
            raise HTTPException(
                status_code=422,
                detail={"error": "structural_error", "reason": exc.reason, "cpu": exc.cpu, "record": exc.seq},
            ) from exc

    @router.post("/collections", status_code=201)
    async def upload_collection(collection: Collection) -> dict[str, Any]:
        """Store a collection.  It is interpreted on first access."""
        await store.put(collection)
        return collection.summary()

    @router.get("/collections")
    async def list_collections() -> dict[str, Any]:
        collections = await store.summaries()
        return {"collections": collections, "count": len(collections)}

    @router.get("/collections/{collection_id}")
    async def get_collection(collection_id: str) -> dict[str, Any]:
        result = await _result(collection_id)
        return result.summary()

    @router.delete("/collections/{collection_id}")
    async def delete_collection(collection_id: str) -> dict[str, Any]:
        if not await store.evict(collection_id):
            raise HTTPException(status_code=404, detail=f"Collection '{collection_id}' not found")
        return {"collection_id": collection_id, "evicted": True}

    @router.get("/collections/{collection_id}/intervals")
    async def get_intervals(
        collection_id: str,
        kind: Optional[EntityKind] = None,
        cpus: Optional[list[int]] = Query(default=None),
        pids: Optional[list[int]] = Query(default=None),
        start_ns: Optional[int] = None,
        end_ns: Optional[int] = None,
    ) -> dict[str, Any]:
        """Intervals overlapping ``[start_ns, end_ns)``, unclipped."""
        result = await _result(collection_id)
        window = build_filter(start_ns=start_ns, end_ns=end_ns).window(result.window)
        selected = []
        for iv in result.intervals:
            if kind is not None and iv.entity_kind != kind:
                continue
            if cpus and iv.cpu not in cpus:
                continue
            if pids and (iv.thread is None or iv.thread.pid not in pids):
                continue
            if iv.overlap_ns(window.start_ns, window.end_ns) == 0:
                continue
            selected.append(iv.to_dict())
        return {
            "collection_id": collection_id,
            "window": {"start_ns": window.start_ns, "end_ns": window.end_ns},
            "partial": result.partial,
            "intervals": selected,
            "count": len(selected),
        }

    @router.get("/collections/{collection_id}/diagnostics", response_model=None)
    async def get_diagnostics(
        collection_id: str,
        severity: Optional[Severity] = None,
        format: str = "json",
    ) -> dict[str, Any] | PlainTextResponse:
        result = await _result(collection_id)
        if format == "plain":
            return PlainTextResponse(DiagnosticFormatter.format_plain(result))
        diagnostics = [
            d.model_dump(mode="json") for d in result.diagnostics
            if severity is None or d.severity == severity
        ]
        return {
            "collection_id": collection_id,
            "partial": result.partial,
            "halted_cpus": sorted(result.halted_cpus),
            "diagnostics": diagnostics,
            "count": len(diagnostics),
        }

    @router.get("/collections/{collection_id}/statistics")
    async def get_statistics(
        collection_id: str,
        cpus: Optional[list[int]] = Query(default=None),
        pids: Optional[list[int]] = Query(default=None),
        start_ns: Optional[int] = None,
        end_ns: Optional[int] = None,
    ) -> dict[str, Any]:
        result = await _result(collection_id)
        stats = engine.aggregate(result, build_filter(cpus, pids, start_ns, end_ns))
        return {"collection_id": collection_id, "partial": result.partial, **stats.summary()}

    @router.get("/collections/{collection_id}/utilization")
    async def get_utilization(
        collection_id: str,
        cpus: Optional[list[int]] = Query(default=None),
        start_ns: Optional[int] = None,
        end_ns: Optional[int] = None,
    ) -> dict[str, Any]:
        result = await _result(collection_id)
        util = engine.utilization(result, build_filter(cpus, None, start_ns, end_ns))
        return {"collection_id": collection_id, **util.summary()}

    @router.get("/collections/{collection_id}/threads")
    async def get_threads(collection_id: str) -> dict[str, Any]:
        result = await _result(collection_id)
        threads = [
            {"thread": str(t.identity), **t.model_dump(mode="json")}
            for t in result.threads
        ]
        return {"collection_id": collection_id, "threads": threads, "count": len(threads)}

    @router.get("/collections/{collection_id}/threads/{pid}/events")
    async def get_thread_events(
        collection_id: str,
        pid: int,
        start_ns: Optional[int] = None,
        end_ns: Optional[int] = None,
    ) -> dict[str, Any]:
        result = await _result(collection_id)
        events = engine.thread_events(result, pid, start_ns, end_ns)
        return {
            "collection_id": collection_id,
            "pid": pid,
            "events": [ev.model_dump(mode="json") for ev in events],
            "count": len(events),
        }

    @router.get("/collections/{collection_id}/threads/{pid}/antagonists")
    async def get_antagonists(
        collection_id: str,
        pid: int,
        epoch: Optional[int] = None,
        start_ns: Optional[int] = None,
        end_ns: Optional[int] = None,
    ) -> dict[str, Any]:
        result = await _result(collection_id)
        if not result.identities(pid):
            raise HTTPException(status_code=404, detail=f"PID {pid} not seen in collection")
        found = engine.antagonists(result, pid, epoch, build_filter(start_ns=start_ns, end_ns=end_ns))
        return {
            "collection_id": collection_id,
            "victims": [str(v) for v in found.victims],
            "window": {"start_ns": found.window.start_ns, "end_ns": found.window.end_ns},
            "antagonisms": [
                {
                    "victim": str(a.victim),
                    "antagonist": str(a.antagonist),
                    "command": a.antagonist.command,
                    "cpu": a.cpu,
                    "start_ns": a.start_ns,
                    "end_ns": a.end_ns,
                }
                for a in found.antagonisms
            ],
        }

    return router
