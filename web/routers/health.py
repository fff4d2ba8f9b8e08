"""Health check endpoints.

- GET /health - Liveness and running build count
- GET /health/tools - Host commands the build pipeline depends on
- GET / - API name and version
"""

import shutil
from typing import Any

from fastapi import APIRouter, Depends

from ubuntu_autoinstaller import __version__
from ubuntu_autoinstaller.builds.orchestrator import BuildOrchestrator
from web.deps import get_orchestrator

router = APIRouter()

# Every command a build may call, in pipeline order
PIPELINE_TOOLS = ("xorriso", "7z", "gpg", "apt-cache", "apt-get", "dpkg-scanpackages")


@router.get("/health")
def health(
    orchestrator: BuildOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Health check endpoint.

    Returns:
        Health status, version and number of running builds.
    """
    return {
        "status": "ok",
        "version": __version__,
        "active_builds": len(orchestrator.active_builds()),
        "max_concurrent_builds": orchestrator.max_concurrent_builds,
    }


@router.get("/health/tools")
def tools() -> dict[str, Any]:
    """Report which pipeline commands are installed on the host.

    A missing command only fails the builds that need it.
    """
    found = {tool: shutil.which(tool) for tool in PIPELINE_TOOLS}
    return {
        "tools": found,
        "missing": [tool for tool, path in found.items() if path is None],
    }


@router.get("/")
def root() -> dict[str, str]:
    return {"name": "Ubuntu Autoinstall ISO Builder API", "version": __version__}
