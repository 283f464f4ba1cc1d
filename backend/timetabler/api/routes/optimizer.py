import logging
from time import perf_counter

from fastapi import APIRouter

from timetabler.schemas.optimizer import OptimizationRequest, OptimizationResult
from timetabler.services.hybrid_optimizer import HybridOptimizer

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/optimize", response_model=OptimizationResult)
def optimize_timetable(payload: OptimizationRequest) -> OptimizationResult:
    started = perf_counter()
    logger.info(
        "OPTIMIZATION START | strategy=%s | courses=%s | teachers=%s | rooms=%s | slots=%s",
        payload.strategy,
        len(payload.courses),
        len(payload.teachers),
        len(payload.rooms),
        len(payload.time_slots),
    )
    optimizer = HybridOptimizer(
        payload.courses,
        payload.subjects,
        payload.teachers,
        payload.rooms,
        payload.time_slots,
        payload.constraints,
    )
    result = optimizer.optimize(payload.params, strategy=payload.strategy)
    logger.info(
        "OPTIMIZATION END | strategy=%s | fitness=%.2f | conflicts=%s | duration_ms=%.1f",
        result.strategy,
        result.fitness,
        result.metrics.total_conflicts,
        (perf_counter() - started) * 1000,
    )
    return result
