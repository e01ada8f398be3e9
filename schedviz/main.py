"""schedviz — scheduling trace interpretation service.

This is the application entry point.  It wires the AdapterRegistry,
TraceInterpretationEngine, CollectionStore, and HTTP/WebSocket endpoints
together.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI

from schedviz.adapters.registry import default_registry
from schedviz.api.collections import create_collections_router
from schedviz.api.ws_capture import create_capture_router
from schedviz.config import settings
from schedviz.core.engine import InterpretationConfig, TraceInterpretationEngine
from schedviz.core.inference import InferenceConfig
from schedviz.core.normalizer import NormalizerConfig
from schedviz.core.orderer import OrdererConfig
from schedviz.core.resolver import SplitPolicyConfig
from schedviz.store.collection_store import CollectionStore

# ── Logging ──────────────────────────────────────────────────────────────────

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)

# ── Adapter Registry ────────────────────────────────────────────────────────

registry = default_registry()

# ── Interpretation Engine ────────────────────────────────────────────────────

engine = TraceInterpretationEngine(
    config=InterpretationConfig(
        normalizer=NormalizerConfig(
            max_cpus=settings.max_cpus,
            max_pid=settings.max_pid,
            normalize_timestamps=settings.normalize_timestamps,
            workers=settings.normalizer_workers,
        ),
        orderer=OrdererConfig(skew_tolerance_ns=settings.skew_tolerance_ns),
        inference=InferenceConfig(
            idle_pid=settings.idle_pid,
            drop_redundant_wakeups=settings.drop_redundant_wakeups,
            runtime_tolerance_ns=settings.runtime_tolerance_ns,
        ),
        split_policy=SplitPolicyConfig(
            split_on_command_change=settings.split_on_command_change,
            split_on_wakeup_new=settings.split_on_wakeup_new,
            split_on_priority_change=settings.split_on_priority_change,
        ),
        aggregator_workers=settings.aggregator_workers,
    ),
    registry=registry,
)

# ── State ────────────────────────────────────────────────────────────────────

store = CollectionStore(engine, capacity=settings.collection_cache_capacity)

# ── App ──────────────────────────────────────────────────────────────────────

app = FastAPI(
    title=settings.app_name,
    description="Scheduling trace interpretation: intervals, diagnostics and statistics",
    version="0.1.0",
)

# ── Routes ───────────────────────────────────────────────────────────────────

app.include_router(create_collections_router(store))
app.include_router(create_capture_router(store, registry))


# ── Health ───────────────────────────────────────────────────────────────────

@app.get("/health")
async def health() -> dict:
    cache = await store.cache_summary()
    return {
        "status": "ok",
        "cache": cache.to_dict(),
        "adapters": registry.stats,
        "total_adapted": registry.total_accepted,
        "total_rejected": registry.total_rejected,
    }
