"""
Health monitoring endpoints

- /health - Full system health check
- /health/ready - Readiness probe (Kubernetes)
- /health/live - Liveness probe (Kubernetes)
"""

import logging
from datetime import datetime
from typing import Dict, List, Tuple

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from config.settings import settings
from src.api.schemas import HealthResponse, HealthStatusEnum
from src.services.runtime import OptimizationRuntime, get_runtime

logger = logging.getLogger(__name__)

router = APIRouter()


class HealthChecker:
    """Health checks for the engine and its background work"""

    def __init__(self):
        self.start_time = datetime.utcnow()

    def check_engine(self, runtime: OptimizationRuntime) -> Dict[str, str]:
        if runtime.engine.is_disposed:
            return {"status": "error", "message": "Engine disposed"}
        if not runtime.initialized:
            return {"status": "warning", "message": "Runtime not initialized"}
        return {"status": "ok", "message": f"Learning {'on' if runtime.engine.learning_enabled else 'off'}"}

    def check_scheduler(self, runtime: OptimizationRuntime) -> Dict[str, str]:
        tasks = runtime.scheduler.get_status()
        failing = [t["name"] for t in tasks if t["last_error"]]
        if failing:
            return {"status": "warning", "message": f"Failing tasks: {', '.join(failing)}"}
        return {"status": "ok", "message": f"{len(tasks)} tasks scheduled"}

    def check_validation(self, runtime: OptimizationRuntime) -> Dict[str, str]:
        score, _ = runtime.validation_metrics.get_health_score()
        if score < 50:
            return {"status": "warning", "message": f"Validation health {score:.0f}/100"}
        return {"status": "ok", "message": f"Validation health {score:.0f}/100"}

    def evaluate(self, runtime: OptimizationRuntime) -> Tuple[HealthStatusEnum, Dict[str, str], List[str]]:
        results = {
            "engine": self.check_engine(runtime),
            "scheduler": self.check_scheduler(runtime),
            "validation": self.check_validation(runtime)
        }
        errors = [f"{name}: {r['message']}" for name, r in results.items() if r["status"] == "error"]
        if errors:
            overall = HealthStatusEnum.UNHEALTHY
        elif any(r["status"] == "warning" for r in results.values()):
            overall = HealthStatusEnum.DEGRADED
        else:
            overall = HealthStatusEnum.HEALTHY
        return overall, {name: r["status"] for name, r in results.items()}, errors

    def uptime_seconds(self) -> int:
        return int((datetime.utcnow() - self.start_time).total_seconds())


health_checker = HealthChecker()


@router.get("/health", response_model=HealthResponse)
async def health_check(runtime: OptimizationRuntime = Depends(get_runtime)):
    overall, checks, errors = health_checker.evaluate(runtime)
    response = HealthResponse(
        status=overall,
        timestamp=datetime.utcnow(),
        version=settings.app_version,
        uptime_seconds=health_checker.uptime_seconds(),
        checks=checks,
        errors=errors or None
    )
    if overall == HealthStatusEnum.UNHEALTHY:
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                            content=response.model_dump(mode="json"))
    return response


@router.get("/health/ready")
async def readiness_check(runtime: OptimizationRuntime = Depends(get_runtime)):
    if runtime.engine.is_disposed:
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                            content={"status": "not_ready", "reason": "engine disposed"})
    return {"status": "ready", "timestamp": datetime.utcnow().isoformat()}


@router.get("/health/live")
async def liveness_check():
    return {"status": "alive", "timestamp": datetime.utcnow().isoformat()}
