import logging

from fastapi import FastAPI
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from riskgate.config import Config
from riskgate.config.logging_config import configure_logging
from riskgate.config.redis_config import get_redis_client
from riskgate.config.security_config import EngineConfig
from riskgate.middleware.security_middleware import SecurityMiddleware
from riskgate.middleware.threat_detection_middleware import ThreatDetectionMiddleware
from riskgate.routes import health, security_admin
from riskgate.services import prometheus_metrics  # noqa: F401
from riskgate.services.redis_threat_store import RedisThreatStore
from riskgate.services.risk_pipeline import RiskPipeline
from riskgate.services.threat_store import InMemoryThreatStore, ThreatStore

configure_logging()
logger = logging.getLogger(__name__)


def build_threat_store(config: EngineConfig) -> ThreatStore:
    """Redis when it is reachable, otherwise a process-local store."""
    settings = {
        "suspicion_threshold": config.suspicion.threshold,
        "half_life_seconds": config.suspicion.half_life_seconds,
        "decision_log_size": Config.SECURITY_DECISION_LOG_SIZE,
    }
    redis_client = get_redis_client()
    if redis_client is not None:
        logger.info("  🛡️  Threat store: Redis")
        return RedisThreatStore(redis_client, **settings)

    logger.warning("  🛡️  Threat store: LOCAL in-memory fallback (Redis not available)")
    return InMemoryThreatStore(**settings)


def create_app(pipeline: RiskPipeline | None = None, store: ThreatStore | None = None) -> FastAPI:
    app = FastAPI(
        title="riskgate",
        description="Request risk-scoring admission engine",
        version="1.0.0",
    )

    if pipeline is None:
        config = EngineConfig.from_env()
        pipeline = RiskPipeline(store or build_threat_store(config), config)
    app.state.risk_pipeline = pipeline

    # Middleware order matters! Last added = first executed
    app.add_middleware(SecurityMiddleware, pipeline=pipeline, protected_paths=Config.SECURITY_PROTECTED_PATHS)
    app.add_middleware(ThreatDetectionMiddleware, store=pipeline.store)

    app.include_router(health.router)
    app.include_router(security_admin.router)

    @app.get("/metrics", tags=["monitoring"], include_in_schema=False)
    async def metrics():
        """Prometheus metrics endpoint"""
        return Response(generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)

    rules = ", ".join(name for name, enabled in pipeline.config.rules.items() if enabled)
    logger.info(f"  [OK] Risk pipeline ready (fail_open={pipeline.config.fail_open}, rules: {rules})")
    return app


# Export a default app instance for environments that import `app`
app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("riskgate.main:app", host="0.0.0.0", port=8000)  # noqa: S104
