"""FastAPI application exposing control-loop status and policy simulation."""

import logging
from datetime import datetime, timezone
from threading import Lock

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field, field_validator

from servicescaler.scaling.config import DEFAULT_SERVICE_CONFIG, ServiceConfig
from servicescaler.scaling.simulator import PolicySimulator
from servicescaler.service import ControlLoop

logger = logging.getLogger(__name__)

# Constants
MAX_METRIC_VALUE = 1e9
MAX_VALUES_LENGTH = 100_000


app = FastAPI(
    title="Service Scaler API",
    description="Step-scaling and discovery registration status for a replicated service",
    version="1.0.0",
)


class SimulationRequest(BaseModel):
    """Request body for simulation endpoint."""

    values: list[float] = Field(
        ...,
        description="Aggregated metric values, one per alarm period",
        min_length=1,
        max_length=MAX_VALUES_LENGTH,
    )
    initial_capacity: int | None = Field(
        default=None,
        description="Starting desired count (defaults to the configured desired count)",
        ge=0,
    )
    config: dict | None = Field(
        default=None,
        description="Service configuration to simulate (defaults to the active one)",
    )

    @field_validator("values")
    @classmethod
    def validate_values(cls, v: list[float]) -> list[float]:
        """Validate that values are non-negative and within bounds."""
        for val in v:
            if val < 0:
                raise ValueError("Metric values must be non-negative")
            if val > MAX_METRIC_VALUE:
                raise ValueError(f"Metric values must not exceed {MAX_METRIC_VALUE}")
        return v


class SimulationResponse(BaseModel):
    """Response body for simulation endpoint."""

    avg_capacity: float
    max_capacity: int
    min_capacity: int
    scaling_events: int
    scale_out_events: int
    scale_in_events: int
    clamped_events: int
    suppressed_by_cooldown: int
    alarm_transitions: int
    autoscaling_enabled: bool
    capacity_over_time: list[int]


# Thread-safe application state
_state_lock = Lock()

_state: dict = {
    "control_loop": None,
}


def attach_control_loop(loop: ControlLoop | None) -> None:
    """Make ``loop`` the control loop reported by /status."""
    with _state_lock:
        _state["control_loop"] = loop


def _active_config() -> ServiceConfig:
    with _state_lock:
        loop = _state["control_loop"]
    return loop.config if loop is not None else DEFAULT_SERVICE_CONFIG


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "Service Scaler API",
        "version": "1.0.0",
        "endpoints": {
            "status": "GET /status",
            "config": "GET /config",
            "simulate": "POST /simulate",
        },
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.get("/status")
async def get_status():
    """Get capacity, alarm, policy and replica state of the attached control loop."""
    with _state_lock:
        loop = _state["control_loop"]
    if loop is None:
        raise HTTPException(status_code=503, detail="No control loop attached")
    return loop.status()


@app.get("/config")
async def get_config_endpoint():
    """Get the active service configuration."""
    return _active_config().to_dict()


@app.post("/simulate", response_model=SimulationResponse)
async def simulate(request: SimulationRequest):
    """Replay metric values through the step-scaling pipeline.

    Nothing is sent to the orchestrator; the result shows how desired
    capacity would have evolved under the configuration.
    """
    if request.config is not None:
        try:
            config = ServiceConfig.from_dict(request.config)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=f"Invalid configuration: {exc}") from exc
    else:
        config = _active_config()

    if request.initial_capacity is not None and not (
        config.min_capacity <= request.initial_capacity <= config.max_capacity
    ):
        raise HTTPException(
            status_code=400,
            detail=f"initial_capacity must be between {config.min_capacity} and {config.max_capacity}",
        )

    metrics = PolicySimulator(config).simulate(request.values, initial_capacity=request.initial_capacity)

    logger.info(
        "Simulated %d periods for %s: %d scaling events",
        len(request.values), config.service_id, metrics.scaling_events,
    )

    return SimulationResponse(
        **metrics.to_dict(),
        capacity_over_time=metrics.capacity_over_time,
    )


def run_server():
    """Run the FastAPI server with uvicorn."""
    import uvicorn

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8000,
        log_level="info",
        timeout_graceful_shutdown=5,
    )


if __name__ == "__main__":
    run_server()
