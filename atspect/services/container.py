import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import requests
from sqlalchemy.orm import sessionmaker

from atspect.core.config import Config, settings
from atspect.schemas.auth import CurrentUser
from atspect.services.analysis_client import ResumeAnalysisClient
from atspect.services.auth import AuthService
from atspect.services.connection_monitor import ConnectionMonitor
from atspect.services.health import HealthCheckService
from atspect.services.resume_service import ResumeService
from atspect.services.storage_service import StorageService
from atspect.services.upload_orchestrator import UploadSession, UploadSessionRegistry

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Process-wide services, shared by reference with every request and upload session."""
    storage: StorageService
    resumes: ResumeService
    health: HealthCheckService
    monitor: ConnectionMonitor
    analysis: ResumeAnalysisClient
    auth: AuthService
    sessions: UploadSessionRegistry

    async def shutdown(self) -> None:
        await self.sessions.close_all()
        await self.monitor.stop()
        await self.resumes.wait_for_cleanups()
        logger.info("Service container shut down")


def build_container(
    config: Config = settings,
    session_factory: Optional[sessionmaker] = None,
    http: Optional[requests.Session] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> ServiceContainer:
    if session_factory is None:
        from atspect.database import SessionLocal
        session_factory = SessionLocal
    http = http or requests.Session()

    storage = StorageService(config.backend.url, config.backend.key, http=http,
                             client_info=config.backend.client_info, sleep=sleep)
    resumes = ResumeService(session_factory, storage, sleep=sleep)
    health = HealthCheckService(session_factory, storage, config=config.health)
    storage.health_probe = health.test_storage_connection
    monitor = ConnectionMonitor(config=config.health, http=http)
    analysis = ResumeAnalysisClient(config=config.ai, http=http, sleep=sleep)
    auth = AuthService(config.backend.url, config.backend.key, http=http)

    def _new_session(user: CurrentUser) -> UploadSession:
        return UploadSession(
            user,
            storage=storage,
            resumes=resumes,
            health=health,
            analysis=analysis,
            monitor=monitor,
            config=config.upload,
        )

    return ServiceContainer(
        storage=storage,
        resumes=resumes,
        health=health,
        monitor=monitor,
        analysis=analysis,
        auth=auth,
        sessions=UploadSessionRegistry(_new_session),
    )
