"""FastAPI application exposing the task graph over HTTP."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..config import get_default_priority, get_events_enabled, load_config, state_dir_for
from ..task_engine.engine import TaskEngine
from .task_api import create_task_router


def create_app(
    project_dir: Optional[Path] = None,
    enable_cors: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        project_dir: Default project directory.
        enable_cors: Whether to enable CORS.

    Returns:
        Configured FastAPI app.
    """
    app = FastAPI(
        title="taskgraph",
        description="Tasks with dependencies and computed priority, deadline and progress",
        version="1.0.0",
    )

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.default_project_dir = project_dir

    def _get_project_dir(project_dir_param: Optional[str] = None) -> Path:
        if project_dir_param:
            return Path(project_dir_param)
        if app.state.default_project_dir:
            return app.state.default_project_dir
        return Path.cwd()

    def _get_engine(project_dir_param: Optional[str] = None) -> TaskEngine:
        project = _get_project_dir(project_dir_param)
        config, _ = load_config(project)
        return TaskEngine(
            state_dir_for(project),
            default_priority=get_default_priority(config),
            events_enabled=get_events_enabled(config),
        )

    @app.get("/")
    async def root():
        return {
            "name": "taskgraph",
            "version": "1.0.0",
            "status": "running",
        }

    app.include_router(create_task_router(_get_engine))
    return app
