"""
Request-scoped accessors for the services held by the application's
ServiceContainer. Tests pre-populate `app.state.container` with fakes.
"""
from fastapi import Depends, Request

from atspect.services.container import ServiceContainer
from atspect.services.upload_orchestrator import UploadSessionRegistry


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_session_registry(container: ServiceContainer = Depends(get_container)) -> UploadSessionRegistry:
    return container.sessions
