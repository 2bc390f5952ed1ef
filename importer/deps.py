# importer/deps.py
# FastAPI dependency providers. Tests swap get_factory via app.dependency_overrides.
from fastapi import Depends

from importer.factory import ServiceFactory
from importer.sync.orchestrator import SyncOrchestrator


def get_factory() -> ServiceFactory:
    return ServiceFactory()


def get_orchestrator(factory: ServiceFactory = Depends(get_factory)) -> SyncOrchestrator:
    return SyncOrchestrator(factory)
