from __future__ import annotations

import asyncio
import json
import logging

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from hazard_engine.clustering import ClusteringConfigError, cluster_points
from hazard_engine.config import settings
from hazard_engine.consolidation import consolidate_reports
from hazard_engine.data_loader import build_region_memory, region_payload
from hazard_engine.memory_cache import MemoryCache
from hazard_engine.models import ClusterRequest, ClusterResult, ConsolidateRequest, ObserverState, QueryResult
from hazard_engine.retrieval import RetrievalEngine
from hazard_engine.worker import EngineWorker

logger = logging.getLogger(__name__)

app = FastAPI(title="Spatial Hazard Intelligence Engine", version="0.1.0")

# CORS Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.engine = RetrievalEngine(MemoryCache(settings), settings)


@app.on_event("startup")
def configure_logging():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Hazard engine ready (memory base: %s)", settings.memory_base)


@app.on_event("shutdown")
async def close_cache():
    await app.state.engine.cache.aclose()


@app.get("/health")
def health():
    return {
        "status": "ok",
        "regions_cached": app.state.engine.cache.regions,
    }


@app.post("/hazards/query", response_model=QueryResult)
async def query_hazards(observer: ObserverState) -> QueryResult:
    """
    Rank the hazards ahead of a moving observer.

    - **lat, lng, heading_deg, speed_kmh**: observer position and motion
    - **is_rain**: precipitation flag
    - **region**: region name (aliases accepted)
    - **k**: number of results (clamped to 1..5)
    """
    return await app.state.engine.query(observer)


@app.post("/hazards/cluster", response_model=ClusterResult)
def cluster(req: ClusterRequest) -> ClusterResult:
    try:
        return cluster_points(req.points, eps=req.eps, min_pts=req.min_pts)
    except ClusteringConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/hazards/consolidate")
def consolidate(req: ConsolidateRequest) -> dict:
    try:
        records = consolidate_reports(req.reports, eps_m=req.eps_m, min_pts=req.min_pts)
    except ClusteringConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))
    resolution = app.state.engine.settings.retrieval.h3_resolution
    return region_payload(build_region_memory(records, resolution))


async def _forward_responses(ws: WebSocket, worker: EngineWorker) -> None:
    while True:
        resp = await worker.responses.get()
        await ws.send_text(
            json.dumps(
                {
                    "type": "hazards",
                    "request_id": resp.request_id,
                    "generation": resp.generation,
                    "data": resp.result.model_dump(mode="json", by_alias=True),
                }
            )
        )


@app.websocket("/ws/observer")
async def observer_stream(ws: WebSocket):
    await ws.accept()
    worker = EngineWorker(app.state.engine)
    worker.start()
    sender = asyncio.create_task(_forward_responses(ws, worker))
    try:
        while True:
            message = await ws.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            text = message.get("text")
            if text is None:
                await ws.send_text(json.dumps({"type": "error", "detail": "expected a JSON text frame"}))
                continue
            try:
                worker.submit(json.loads(text))
            except (ValueError, ValidationError) as e:
                await ws.send_text(json.dumps({"type": "error", "detail": str(e).splitlines()[0]}))
    except WebSocketDisconnect:
        logger.info("Observer stream disconnected")
    finally:
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)
        await worker.stop()
