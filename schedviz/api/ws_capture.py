"""WebSocket endpoint for streaming a capture into the collection store.

Path: /ws/capture

A capture client drains per-CPU trace buffers and pushes records one at a
time instead of uploading one large archive:

    {"action": "begin", "metadata": {...}}            start a new collection
    {"action": "record", "cpu": 1, "record": {...}}   one raw tracepoint record
    {"action": "commit"}                              store what was sent

Each record is pre-checked through the AdapterRegistry so malformed ones
are rejected immediately.  Records no adapter handles are kept; the
normalizer decides whether they are skipped or structural errors.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from schedviz.adapters.registry import (
    AdaptationError,
    AdapterRegistry,
    AdapterStats,
    NoAdapterFoundError,
)
from schedviz.domain.collection import Collection, CollectionMetadata
from schedviz.store.collection_store import CollectionStore

logger = logging.getLogger(__name__)


def create_capture_router(store: CollectionStore, registry: AdapterRegistry) -> APIRouter:
    """Factory that wires the capture endpoint to store + registry."""

    router = APIRouter()

    @router.websocket("/ws/capture")
    async def stream_capture(websocket: WebSocket) -> None:
        await websocket.accept()
        logger.info("Capture source connected")

        metadata: CollectionMetadata | None = None
        records: dict[int, list[dict[str, Any]]] = {}
        # Pre-check counters stay local; the normalizer does the real accounting.
        scratch: dict[str, AdapterStats] = {}

        try:
            while True:
                message = await websocket.receive_json()
                if not isinstance(message, dict):
                    await websocket.send_json({
                        "status": "error",
                        "reason": "malformed_message",
                        "detail": "every message must be a JSON object",
                    })
                    continue
                action = message.get("action")

                if action == "begin":
                    try:
                        metadata = CollectionMetadata.model_validate(message.get("metadata") or {})
                    except ValidationError as exc:
                        await websocket.send_json({
                            "status": "error",
                            "reason": "invalid_metadata",
                            "detail": exc.errors(include_url=False),
                        })
                        continue
                    records = {}
                    await websocket.send_json({"status": "ready"})
                    continue

                if metadata is None:
                    await websocket.send_json({
                        "status": "error",
                        "reason": "not_started",
                        "detail": "send a 'begin' message first",
                    })
                    continue

                if action == "record":
                    cpu = message.get("cpu")
                    raw = message.get("record")
                    if not isinstance(cpu, int) or isinstance(cpu, bool) or cpu < 0 or not isinstance(raw, dict):
                        await websocket.send_json({
                            "status": "error",
                            "reason": "malformed_message",
                            "detail": "a record message needs an integer 'cpu' and a 'record' object",
                        })
                        continue
                    group = records.setdefault(cpu, [])

                    # ── Pre-check through adapter registry ───────────────
                    try:
                        registry.adapt(raw, cpu, len(group), scratch)
                    except NoAdapterFoundError:
                        group.append(raw)
                        await websocket.send_json({"status": "kept", "reason": "no_adapter", "cpu": cpu})
                        continue
                    except AdaptationError as exc:
                        await websocket.send_json({
                            "status": "error",
                            "reason": "adaptation_failed",
                            "adapter": exc.adapter_name,
                            "detail": exc.reason,
                        })
                        continue

                    group.append(raw)
                    await websocket.send_json({"status": "accepted", "cpu": cpu, "seq": len(group) - 1})
                    continue

                if action == "commit":
                    collection = Collection(metadata=metadata, records=records)
                    await store.put(collection)
                    await websocket.send_json({"status": "stored", **collection.summary()})
                    metadata, records = None, {}
                    continue

                await websocket.send_json({
                    "status": "error",
                    "reason": "unknown_action",
                    "detail": f"unknown action {action!r}",
                })

        except WebSocketDisconnect:
            logger.info("Capture source disconnected")

    return router
