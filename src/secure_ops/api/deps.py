"""FastAPI dependency injection providers.

The object graph is built once in the application lifespan and stored on
``app.state``; route handlers receive the pieces they need through Depends().
"""

from __future__ import annotations

from fastapi import Depends, Request

from secure_ops.container import WorkflowContainer
from secure_ops.services.workflow_manager import WorkflowManager


def get_container(request: Request) -> WorkflowContainer:
    """Provide the process-wide WorkflowContainer."""
    return request.app.state.container


def get_manager(container: WorkflowContainer = Depends(get_container)) -> WorkflowManager:
    """Provide the WorkflowManager facade."""
    return container.manager
