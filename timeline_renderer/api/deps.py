from typing import Annotated

from fastapi import Depends, Request

from timeline_renderer.services.orchestrator import JobOrchestrator


def get_orchestrator(request: Request) -> JobOrchestrator:
    return request.app.state.orchestrator


Orchestrator = Annotated[JobOrchestrator, Depends(get_orchestrator)]
