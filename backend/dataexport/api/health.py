from pathlib import Path

import yaml
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from sqlalchemy import text
from dataexport.core.database import get_db
from dataexport.core.config import settings
from dataexport.core.exceptions import ExportConfigurationError
from dataexport.services.export_service import get_registry

router = APIRouter()


@router.get("/health")
async def health_check(db: Session = Depends(get_db)):
    """Health check endpoint - verifies database connectivity, the schema registry and the artifact root."""
    health_status = {
        "status": "healthy",
        "database": "disconnected",
        "registry": "not loaded",
        "artifact_root": settings.ARTIFACT_ROOT,
        "artifact_root_exists": Path(settings.ARTIFACT_ROOT).is_dir(),
    }

    # Check database
    try:
        db.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except Exception as e:
        health_status["status"] = "unhealthy"
        health_status["database"] = f"error: {str(e)}"

    # Check schema registry
    try:
        health_status["registry"] = f"{len(get_registry().schemas)} schema(s)"
    except (OSError, yaml.YAMLError, ExportConfigurationError) as e:
        health_status["status"] = "unhealthy"
        health_status["registry"] = f"error: {str(e)}"

    return health_status
