"""FastAPI server: trigger, poll and cancel executions; manage recipes."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import uvicorn
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from genflow import __version__, config
from genflow.errors import GenflowError, NotFoundError, StateTransitionError, ValidationError
from genflow.orchestrator import Orchestrator
from genflow.seed import load_seed_file, seed_store
from genflow.store import create_store

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(name)s] %(levelname)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="genflow", version=__version__, description="Generation pipeline orchestration engine")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

orchestrator = Orchestrator(create_store(config.STORE_BACKEND, config.DATA_DIR))


def configure(new_orchestrator: Orchestrator):
    """Swap the orchestrator the endpoints use (tests, embedding)."""
    global orchestrator
    orchestrator = new_orchestrator


# ---------------------------------------------------------------------------
# Request Models
# ---------------------------------------------------------------------------


class ExecuteRequest(BaseModel):
    recipeId: str
    input: dict[str, Any] = Field(default_factory=dict)
    projectId: str | None = None
    triggeredBy: str = "api"


class RetryRequest(BaseModel):
    triggeredBy: str | None = None


class NodeTestRequest(BaseModel):
    input: dict[str, Any] = Field(default_factory=dict)
    projectId: str | None = None
    mockOutputs: dict[str, Any] = Field(default_factory=dict)
    executeDependencies: bool = True


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

_STATUS_CODES = {
    ValidationError: 422,
    NotFoundError: 404,
    StateTransitionError: 409,
}


@app.exception_handler(GenflowError)
async def genflow_error_handler(request: Request, exc: GenflowError) -> JSONResponse:
    status = next((code for cls, code in _STATUS_CODES.items() if isinstance(exc, cls)), 400)
    return JSONResponse(status_code=status, content={"detail": exc.to_dict()})


# ---------------------------------------------------------------------------
# Executions
# ---------------------------------------------------------------------------


@app.post("/executions", status_code=202)
async def execute(req: ExecuteRequest) -> dict:
    """Validate the recipe and start an execution in the background."""
    execution_id = await orchestrator.start_execution(req.recipeId, req.input, req.projectId, req.triggeredBy)
    logger.info(f"Execution {execution_id} started for recipe {req.recipeId}")
    return {"executionId": execution_id, "status": "pending"}


@app.get("/executions")
async def list_executions(recipeId: str | None = None, projectId: str | None = None) -> list[dict]:
    executions = orchestrator.tracker.list_executions(recipe_id=recipeId, project_id=projectId)
    return [
        {
            "id": e.id,
            "recipeId": e.recipe_id,
            "projectId": e.project_id,
            "status": e.status.value,
            "createdAt": e.created_at,
            "completedAt": e.completed_at,
            "summary": e.summary(),
        }
        for e in executions
    ]


@app.get("/executions/{execution_id}")
async def get_execution(execution_id: str) -> dict:
    """Poll an execution: status, per-node results and a summary."""
    execution = orchestrator.tracker.get_execution(execution_id)
    return {**execution.to_dict(), "summary": execution.summary()}


@app.post("/executions/{execution_id}/cancel")
async def cancel_execution(execution_id: str) -> dict:
    flagged = orchestrator.cancel(execution_id)
    return {"executionId": execution_id, "cancelRequested": flagged}


@app.post("/executions/{execution_id}/retry", status_code=202)
async def retry_execution(execution_id: str, req: RetryRequest | None = None) -> dict:
    new_id = await orchestrator.retry_execution(execution_id, req.triggeredBy if req else None)
    return {"executionId": new_id, "retryOf": execution_id, "status": "pending"}


# ---------------------------------------------------------------------------
# Events (WebSocket + Polling)
# ---------------------------------------------------------------------------


@app.websocket("/executions/{execution_id}/events")
async def event_stream(websocket: WebSocket, execution_id: str):
    """WebSocket stream of one execution's events."""
    await websocket.accept()
    try:
        orchestrator.tracker.get_execution(execution_id)
    except NotFoundError:
        await websocket.close(code=4004, reason="Execution not found")
        return

    queue = orchestrator.events.subscribe(execution_id)
    try:
        while True:
            event = await queue.get()
            await websocket.send_json(event.to_dict())
    except WebSocketDisconnect:
        pass
    finally:
        orchestrator.events.unsubscribe(queue)


@app.get("/executions/{execution_id}/events")
async def get_events(execution_id: str, limit: int = 50, offset: int = 0) -> list[dict]:
    """Recent events for one execution (polling fallback)."""
    orchestrator.tracker.get_execution(execution_id)
    events = orchestrator.events.recent(limit=limit, offset=offset, execution_id=execution_id)
    return [e.to_dict() for e in events]


# ---------------------------------------------------------------------------
# Recipes
# ---------------------------------------------------------------------------


@app.get("/recipes")
async def list_recipes(stageType: str | None = None, includeInactive: bool = False) -> list[dict]:
    recipes = orchestrator.recipes.list_recipes(stage_type=stageType, include_inactive=includeInactive)
    return [r.to_dict() for r in recipes]


@app.post("/recipes", status_code=201)
async def create_recipe(body: dict[str, Any]) -> dict:
    recipe = orchestrator.recipes.create(body, created_by=body.get("createdBy", "api"))
    return recipe.to_dict()


@app.get("/recipes/{recipe_id}")
async def get_recipe(recipe_id: str) -> dict:
    return orchestrator.recipes.get(recipe_id).to_dict()


@app.put("/recipes/{recipe_id}")
async def update_recipe(recipe_id: str, body: dict[str, Any]) -> dict:
    return orchestrator.recipes.update(recipe_id, body).to_dict()


@app.delete("/recipes/{recipe_id}")
async def delete_recipe(recipe_id: str) -> dict:
    orchestrator.recipes.delete(recipe_id)
    return {"status": "deleted", "id": recipe_id}


@app.post("/recipes/{recipe_id}/validate")
async def validate_recipe(recipe_id: str) -> dict:
    """Validate a stored recipe and return its execution order and parallel ranks."""
    recipe = orchestrator.recipes.get(recipe_id)
    order = orchestrator.validator.validate(recipe)
    return {
        "valid": True,
        "order": order,
        "ranks": orchestrator.validator.execution_ranks(recipe, order),
    }


@app.post("/recipes/{recipe_id}/nodes/{node_id}/test")
async def run_node_test(recipe_id: str, node_id: str, req: NodeTestRequest) -> dict:
    """Run one node in isolation, with mocked or freshly executed upstream outputs."""
    result = await orchestrator.test_node(
        recipe_id,
        node_id,
        external_input=req.input,
        project_id=req.projectId,
        mock_outputs=req.mockOutputs,
        execute_dependencies=req.executeDependencies,
    )
    return result.to_dict()


# ---------------------------------------------------------------------------
# Adaptors
# ---------------------------------------------------------------------------


@app.get("/adaptors")
async def list_adaptors() -> list[dict]:
    return await orchestrator.adaptors.list_available_adaptors()


@app.get("/health")
async def health() -> dict:
    return {"status": "ok", "version": __version__}


# ---------------------------------------------------------------------------
# Entry Point
# ---------------------------------------------------------------------------


def main(host: str | None = None, port: int | None = None, seed_file: str | None = None):
    """Start the genflow server."""
    seed_file = seed_file or config.SEED_FILE
    if seed_file:
        seed_store(orchestrator.store, load_seed_file(Path(seed_file)))
    host = host or config.SERVER_HOST
    port = port or config.SERVER_PORT
    logger.info(f"Starting genflow server on {host}:{port} (store: {config.STORE_BACKEND})")
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
