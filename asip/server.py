"""
FastAPI Backend Server - ASIP Pipeline Engine

Control API for projects, resources, runs, hypotheses and prompt versions.
The UI polls run state and issues execute / pause / resume / stop commands.
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from asip.contracts.schemas import (
    Hypothesis,
    PipelineConfig,
    Project,
    ProjectCreate,
    PromptCreate,
    PromptVersion,
    Resource,
    ResourceCreate,
    ResourceUpdate,
    Run,
    RunCreate,
)
from asip.errors import (
    AsipError,
    ConcurrentRunUpdateError,
    ConfigurationError,
    InvalidRunStateError,
    ResourceNotFoundError,
)
from asip.pipeline.lifecycle import build_manager
from asip.prompts.defaults import DEFAULT_PROMPTS

logger = logging.getLogger(__name__)

config = PipelineConfig.from_env()
manager = build_manager(config)


@asynccontextmanager
async def lifespan(app: FastAPI):
    manager.recover_interrupted_runs()
    yield
    await manager.shutdown()


app = FastAPI(
    title="ASIP Pipeline API",
    description="Resumable orchestration of the G-Method hypothesis pipeline",
    version="1.0.0",
    lifespan=lifespan,
)

cors_allow_origins = [
    origin.strip() for origin in os.getenv("CORS_ALLOW_ORIGINS", "").split(",") if origin.strip()
] or ["http://127.0.0.1:5173", "http://localhost:5173"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_allow_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AsipError)
async def asip_error_handler(request: Request, exc: AsipError) -> JSONResponse:
    if isinstance(exc, ResourceNotFoundError):
        status_code = 404
    elif isinstance(exc, (InvalidRunStateError, ConcurrentRunUpdateError)):
        status_code = 409
    elif isinstance(exc, ConfigurationError):
        status_code = 400
    else:
        status_code = 500
        logger.error("Unhandled pipeline error on %s: %s", request.url.path, exc.message)
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "code": exc.code})


def _require_project(project_id: str) -> Project:
    project = manager.storage.get_project(project_id)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


def _require_step(step: int) -> None:
    if step not in DEFAULT_PROMPTS:
        raise HTTPException(status_code=404, detail=f"Unknown pipeline step: {step}")


# ═══════════════════════════════════════════════════════════════
# Health
# ═══════════════════════════════════════════════════════════════


@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "active_runs": len(manager.running_tasks),
        "credentials_configured": manager.config.has_credentials,
    }


# ═══════════════════════════════════════════════════════════════
# Projects and resources
# ═══════════════════════════════════════════════════════════════


@app.post("/api/projects", response_model=Project)
async def create_project(request: ProjectCreate):
    return manager.storage.create_project(
        Project(name=request.name, description=request.description)
    )


@app.get("/api/projects", response_model=list[Project])
async def list_projects():
    return manager.storage.list_projects()


@app.get("/api/projects/{project_id}", response_model=Project)
async def get_project(project_id: str):
    return _require_project(project_id)


@app.delete("/api/projects/{project_id}")
async def delete_project(project_id: str):
    _require_project(project_id)
    manager.storage.soft_delete_project(project_id)
    return {"status": "deleted", "project_id": project_id}


@app.post("/api/projects/{project_id}/resources", response_model=Resource)
async def create_resource(project_id: str, request: ResourceCreate):
    _require_project(project_id)
    return manager.storage.create_resource(
        Resource(
            project_id=project_id,
            type=request.type,
            name=request.name,
            content=request.content,
        )
    )


@app.get("/api/projects/{project_id}/resources", response_model=list[Resource])
async def list_resources(project_id: str):
    _require_project(project_id)
    return manager.storage.list_resources(project_id)


@app.patch("/api/resources/{resource_id}", response_model=Resource)
async def update_resource(resource_id: str, request: ResourceUpdate):
    return manager.storage.update_resource(resource_id, request.model_dump(exclude_none=True))


@app.delete("/api/resources/{resource_id}")
async def delete_resource(resource_id: str):
    manager.storage.delete_resource(resource_id)
    return {"status": "deleted", "resource_id": resource_id}


# ═══════════════════════════════════════════════════════════════
# Runs
# ═══════════════════════════════════════════════════════════════


@app.post("/api/projects/{project_id}/runs", response_model=Run)
async def create_run(project_id: str, request: RunCreate):
    _require_project(project_id)
    return await manager.start_run(project_id, request)


@app.get("/api/projects/{project_id}/runs", response_model=list[Run])
async def list_runs(project_id: str):
    _require_project(project_id)
    return manager.storage.list_runs(project_id)


@app.post("/api/runs/process-stale")
async def process_stale_runs(
    older_than: float | None = Query(default=None, ge=0),
    budget_seconds: float = Query(default=60.0, gt=0),
):
    """Watchdog: nudge pending/running runs that stopped making progress."""
    results = await manager.process_stale_runs(older_than, budget_seconds)
    return {"checked": len(results), "results": results}


@app.get("/api/runs/{run_id}", response_model=Run)
async def get_run(run_id: str):
    return manager.get_run(run_id)


@app.post("/api/runs/{run_id}/pause", response_model=Run)
async def pause_run(run_id: str):
    return manager.pause_run(run_id)


@app.post("/api/runs/{run_id}/resume", response_model=Run)
async def resume_run(run_id: str):
    return manager.resume_run(run_id)


@app.post("/api/runs/{run_id}/stop", response_model=Run)
async def stop_run(run_id: str):
    return manager.stop_run(run_id)


@app.post("/api/runs/{run_id}/process", response_model=Run)
async def process_run(run_id: str, budget_seconds: float = Query(default=60.0, gt=0)):
    return await manager.process_run(run_id, budget_seconds)


@app.get("/api/runs/{run_id}/download")
async def download_run(run_id: str):
    run = manager.get_run(run_id)
    if not run.step5_output:
        raise HTTPException(status_code=404, detail="Run has no integrated output yet")
    filename = f"asip-run-{run.id}.tsv"
    return PlainTextResponse(
        run.step5_output,
        media_type="text/tab-separated-values",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ═══════════════════════════════════════════════════════════════
# Hypotheses
# ═══════════════════════════════════════════════════════════════


@app.get("/api/projects/{project_id}/hypotheses", response_model=list[Hypothesis])
async def list_hypotheses(project_id: str, run_id: str | None = None):
    _require_project(project_id)
    return manager.storage.list_hypotheses(project_id, run_id=run_id)


@app.delete("/api/hypotheses/{hypothesis_id}")
async def delete_hypothesis(hypothesis_id: str):
    manager.delete_hypothesis(hypothesis_id)
    return {"status": "deleted", "hypothesis_id": hypothesis_id}


# ═══════════════════════════════════════════════════════════════
# Prompt versions
# ═══════════════════════════════════════════════════════════════


@app.get("/api/prompts/{step}")
async def get_prompts(step: int):
    _require_step(step)
    versions = manager.storage.list_prompt_versions(step)
    active = next((v for v in versions if v.is_active), None)
    return {
        "step": step,
        "default": DEFAULT_PROMPTS[step],
        "active_version_id": active.id if active else None,
        "versions": [v.model_dump(mode="json") for v in versions],
    }


@app.post("/api/prompts/{step}", response_model=PromptVersion)
async def create_prompt(step: int, request: PromptCreate):
    _require_step(step)
    return manager.storage.create_prompt_version(step, request.content, activate=request.activate)


@app.post("/api/prompts/{step}/{version_id}/activate", response_model=PromptVersion)
async def activate_prompt(step: int, version_id: str):
    _require_step(step)
    if not any(v.id == version_id for v in manager.storage.list_prompt_versions(step)):
        raise HTTPException(status_code=404, detail="Prompt version not found for this step")
    return manager.storage.activate_prompt_version(version_id)


@app.post("/api/prompts/{step}/reset")
async def reset_prompt(step: int):
    _require_step(step)
    manager.storage.deactivate_prompts(step)
    return {"status": "reset", "step": step}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
