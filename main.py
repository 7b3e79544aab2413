from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel
from typing import List, Optional
from config import settings
from agents.ingestor import Ingestor
from connectors import load_connector_configs, build_connectors
from processors.context_processor import ContextProcessor
from processors.heuristic_extractor import HeuristicExtractor
from processors.llm_extractor import LLMExtractor
from schedulers.ingestion_scheduler import IngestionScheduler
from services.database import DatabaseService
from services.job_service import JobService
from services.knowledge_graph import KnowledgeGraphStore
from services.embeddings import EmbeddingsService
from services.context_query import ContextQueryFilter
import logging

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="DevContext Ingestion",
    version="0.1.0",
    description="Ingests GitHub, Slack and Discord activity into a knowledge graph of decisions, discussions, features and files"
)

# Initialize services
db = DatabaseService()
job_service = JobService(db)
store = KnowledgeGraphStore(db, embeddings=EmbeddingsService.from_settings())
connector_configs = load_connector_configs()
connectors = build_connectors(connector_configs.values())
extractor = LLMExtractor() if settings.USE_LLM_EXTRACTION else HeuristicExtractor()
ingestor = Ingestor(
    connectors,
    db=db,
    jobs=job_service,
    store=store,
    processor=ContextProcessor(store, extractor=extractor),
)
scheduler = IngestionScheduler(ingestor)
context_filter = ContextQueryFilter(db=db, store=store)


class SimilarityRequest(BaseModel):
    embedding: List[float]
    k: int = 10
    entity_types: Optional[List[str]] = None


class ContextRequest(BaseModel):
    targets: List[str]


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "environment": settings.ENVIRONMENT,
        "service": "DevContext Ingestion",
        "scheduler_running": scheduler.running,
        "connectors": sorted(connectors),
    }


@app.get("/jobs/{job_id}")
async def get_job_status(job_id: str):
    """Poll an ingestion job

    Returns:
        {id, connector_id, status, started_at, finished_at, error_message}
    """
    status = job_service.get_job_status(job_id)
    if status is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return status


@app.get("/connectors")
async def list_connectors():
    """Configured connectors with their platform and enabled flag"""
    return [
        {
            "id": config.id,
            "platform": config.platform,
            "enabled": config.enabled,
            "active": config.id in connectors,
        }
        for config in connector_configs.values()
    ]


@app.post("/connectors/{connector_id}/sync")
async def trigger_sync(connector_id: str):
    """Queue a sync for one connector; workers pick it up

    Returns:
        Status view of the (new or already active) job
    """
    if connector_id not in connectors:
        raise HTTPException(status_code=404, detail=f"Connector {connector_id} is not configured or disabled")

    try:
        logger.info(f"Manual sync requested via API for {connector_id}")
        job = job_service.create_job(connector_id)
        return job.status_view()
    except Exception as e:
        logger.error(f"Error queueing sync for {connector_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/connectors/{connector_id}/health")
async def connector_health(connector_id: str):
    """healthy / degraded / failed based on recent runs"""
    if connector_id not in connector_configs:
        raise HTTPException(status_code=404, detail=f"Connector {connector_id} not found")
    return job_service.connector_health(connector_id)


@app.get("/connectors/{connector_id}/jobs")
async def connector_jobs(connector_id: str, limit: int = Query(20, ge=1, le=100)):
    return [job.status_view() for job in job_service.list_jobs(connector_id, limit=limit)]


@app.get("/context/file")
async def file_context(path: str):
    """History, decisions and related entities for a file path"""
    try:
        return store.get_file_context(path)
    except Exception as e:
        logger.error(f"Error loading file context for {path}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/context/decisions")
async def decision_history(target: str, limit: int = Query(50, ge=1, le=200)):
    """Decisions linked to or mentioning a file or feature, newest first"""
    try:
        return store.get_decision_history(target, limit=limit)
    except Exception as e:
        logger.error(f"Error loading decision history for {target}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/context/query")
async def bounded_context(request: ContextRequest):
    """Capped context payload (PRs, issues, commits, decisions, discussions) for targets"""
    try:
        return context_filter.build_context(request.targets)
    except Exception as e:
        logger.error(f"Error building context for {request.targets}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/search/similar")
async def similar_entities(request: SimilarityRequest):
    """Nearest entities by cosine distance to the given embedding

    Only entities stored while EMBEDDING_FUNCTION was configured carry
    embeddings; without it the result is always empty.
    """
    try:
        results = store.similarity_search_with_scores(request.embedding, request.k, request.entity_types)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return [
        {"entity": entity.model_dump(exclude={"embedding"}), "distance": distance}
        for entity, distance in results
    ]


@app.on_event("startup")
async def startup_event():
    """Start the ingestion scheduler on server startup"""
    logger.info(f"Starting DevContext Ingestion ({len(connectors)} connectors)")

    if settings.ENABLE_SCHEDULER:
        scheduler.start()
    else:
        logger.info("Scheduler disabled (ENABLE_SCHEDULER=false). Use POST /connectors/{id}/sync and run workers manually.")


@app.on_event("shutdown")
async def shutdown_event():
    """Cancel in-flight jobs and stop the scheduler"""
    logger.info("Shutting down DevContext Ingestion")
    scheduler.stop(wait=False)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000, log_level="info")
