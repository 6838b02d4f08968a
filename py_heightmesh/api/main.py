"""FastAPI main application."""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import structlog
from fastapi import BackgroundTasks, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel, Field, field_validator

from .. import __version__
from ..config import settings
from ..core.content_cache import ContentCache
from ..core.errors import DecodeError
from ..core.exporters import SUPPORTED_FORMATS, export_geometry
from ..core.geometry import MORPH_TARGET_COUNT, Geometry
from ..core.geometry_builder import GeometryConfig, GeometryStyle
from ..core.heightmap_loader import HeightmapLoader
from ..core.image3d import acquire_geometry
from ..core.image_decoder import AsyncioImageDecoder
from ..core.morph_animator import one_hot
from ..utils.log_config import configure_logging

configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger()

MEDIA_TYPES = {
    "glb": "model/gltf-binary",
    "obj": "text/plain",
    "ply": "application/octet-stream",
    "stl": "model/stl",
}

# Initialize FastAPI app
app = FastAPI(
    title="Heightmap Mesh API",
    description="Builds morphable 3D meshes from heightmap images",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@dataclass
class JobRecord:
    """State of one build job."""

    id: str
    status: str = "pending"
    progress_percent: int = 0
    mesh_id: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None


@dataclass
class MeshRecord:
    """A built mesh holding one reference on its cached geometry."""

    id: str
    cache_key: str
    geometry: Geometry
    heightmaps: List[str]
    max_height: float
    geometry_style: GeometryStyle
    width: int
    height: int
    cached: bool
    created_at: datetime = field(default_factory=datetime.utcnow)


# Shared engine state, owned by the event loop thread
cache = ContentCache()
jobs: Dict[str, JobRecord] = {}
meshes: Dict[str, MeshRecord] = {}
decoder: Optional[AsyncioImageDecoder] = None


def get_decoder():
    """Decoder used by build jobs, created on first use."""
    global decoder
    if decoder is None:
        decoder = AsyncioImageDecoder(
            max_workers=settings.decode_workers,
            max_size=settings.max_heightmap_size,
        )
    return decoder


# Request/Response models
class MeshBuildRequest(BaseModel):
    """Request to build a mesh from up to four heightmaps."""

    heightmaps: List[str] = Field(
        ..., min_length=1, max_length=MORPH_TARGET_COUNT,
        description="Heightmap paths; the first is primary, the rest are morph targets",
    )
    max_height: float = Field(
        default=settings.default_max_height, ge=0, allow_inf_nan=False,
        description="Depth of a white texel",
    )
    geometry_style: GeometryStyle = Field(
        default=settings.default_geometry_style, validate_default=True,
        description="smooth, block or float",
    )
    texture_size: Optional[Tuple[int, int]] = Field(
        None, description="Texture (width, height) for block and float UVs"
    )

    @field_validator("heightmaps")
    @classmethod
    def _primary_required(cls, value):
        if not value[0]:
            raise ValueError("the primary heightmap must not be empty")
        return value

    @field_validator("geometry_style", mode="before")
    @classmethod
    def _parse_style(cls, value):
        return GeometryStyle.parse(value)

    @field_validator("texture_size")
    @classmethod
    def _positive_texture_size(cls, value):
        if value is not None and (value[0] <= 0 or value[1] <= 0):
            raise ValueError("texture_size must be positive")
        return value


class JobResponse(BaseModel):
    """Response with job information."""

    job_id: str
    status: str
    progress_percent: int
    message: str
    mesh_id: Optional[str] = None
    error_message: Optional[str] = None


class MeshSummary(BaseModel):
    """Statistics of a built mesh."""

    id: str
    cache_key: str
    heightmaps: List[str]
    max_height: float
    geometry_style: str
    width: int
    height: int
    vertex_count: int
    face_count: int
    morph_target_count: int
    cached: bool
    created_at: datetime


def _job_response(job: JobRecord, message: str) -> JobResponse:
    return JobResponse(
        job_id=job.id,
        status=job.status,
        progress_percent=job.progress_percent,
        message=message,
        mesh_id=job.mesh_id,
        error_message=job.error_message,
    )


def _get_mesh(mesh_id: str) -> MeshRecord:
    mesh = meshes.get(mesh_id)
    if mesh is None:
        raise HTTPException(status_code=404, detail="Mesh not found")
    return mesh


# Event handlers
@app.on_event("startup")
async def startup_event():
    logger.info("Starting Heightmap Mesh API")
    get_decoder()
    logger.info("API startup complete")


@app.on_event("shutdown")
async def shutdown_event():
    """Release every mesh and stop the decode pool."""
    global decoder
    logger.info("Shutting down Heightmap Mesh API")
    for mesh_id in list(meshes):
        cache.release(meshes.pop(mesh_id).cache_key)
    if decoder is not None:
        decoder.close()
        decoder = None


# API endpoints
@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Heightmap Mesh API",
        "version": __version__,
        "status": "running",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "cache_entries": len(cache),
        "meshes": len(meshes),
        "jobs": len(jobs),
    }


@app.post("/meshes/build", response_model=JobResponse)
async def build_mesh(request: MeshBuildRequest, background_tasks: BackgroundTasks):
    """
    Start a mesh build job.

    Returns immediately with job ID. Use /jobs/{job_id} to check status.
    """
    logger.info("Mesh build requested", request=request.model_dump(mode="json"))

    job = JobRecord(id=str(uuid.uuid4()))
    jobs[job.id] = job
    background_tasks.add_task(run_mesh_build, job.id, request)

    return _job_response(job, "Mesh build job started")


@app.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job_status(job_id: str):
    """Get status of a mesh build job."""
    job = jobs.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return _job_response(job, f"Job {job.status}")


@app.get("/meshes", response_model=List[MeshSummary])
async def list_meshes():
    """List all built meshes."""
    return [_mesh_summary(mesh) for mesh in meshes.values()]


@app.get("/meshes/{mesh_id}", response_model=MeshSummary)
async def get_mesh(mesh_id: str):
    """Get mesh statistics."""
    return _mesh_summary(_get_mesh(mesh_id))


@app.get("/meshes/{mesh_id}/export")
async def export_mesh(
    mesh_id: str,
    target: Optional[int] = Query(None, description="Morph target index 0-3 to bake in"),
    file_type: str = Query("glb", description="glb, obj, ply or stl"),
):
    """Download the mesh, optionally posed at one morph target."""
    mesh = _get_mesh(mesh_id)
    if target is not None and not 0 <= target < MORPH_TARGET_COUNT:
        raise HTTPException(status_code=400, detail="Invalid morph target index")
    if file_type not in SUPPORTED_FORMATS:
        raise HTTPException(status_code=400, detail="Unsupported file type")

    weights = one_hot(target) if target is not None else None
    data = export_geometry(mesh.geometry, file_type=file_type, weights=weights)
    return Response(
        content=data,
        media_type=MEDIA_TYPES[file_type],
        headers={"Content-Disposition": f'attachment; filename="{mesh_id}.{file_type}"'},
    )


@app.delete("/meshes/{mesh_id}")
async def delete_mesh(mesh_id: str):
    """Forget a mesh and release its cached geometry."""
    mesh = _get_mesh(mesh_id)
    del meshes[mesh_id]
    cache.release(mesh.cache_key)
    logger.info("Mesh deleted", mesh_id=mesh_id, cache_entries=len(cache))
    return {"mesh_id": mesh_id, "deleted": True}


def _mesh_summary(mesh: MeshRecord) -> MeshSummary:
    return MeshSummary(
        id=mesh.id,
        cache_key=mesh.cache_key,
        heightmaps=mesh.heightmaps,
        max_height=mesh.max_height,
        geometry_style=mesh.geometry_style.value,
        width=mesh.width,
        height=mesh.height,
        vertex_count=mesh.geometry.vertex_count,
        face_count=mesh.geometry.face_count,
        morph_target_count=len(mesh.geometry.morph_targets),
        cached=mesh.cached,
        created_at=mesh.created_at,
    )


async def load_heightmaps(loader: HeightmapLoader, sources: List[str]) -> None:
    """
    Load every heightmap into ``loader`` and wait for the batch.

    Raises:
        DecodeError: If any heightmap could not be decoded
        DimensionMismatchError: If the heightmaps differ in size
    """
    finished = asyncio.get_running_loop().create_future()
    failures: List[DecodeError] = []

    def on_complete():
        if not finished.done():
            finished.set_result(None)

    def on_error(error):
        if isinstance(error, DecodeError):
            failures.append(error)
        elif not finished.done():
            finished.set_exception(error)

    loader.load_all(sources, on_complete, on_error)
    await finished
    if failures:
        raise failures[0]


# Background task functions
async def run_mesh_build(job_id: str, request: MeshBuildRequest):
    """
    Background task to build a mesh.
    """
    job = jobs[job_id]
    logger.info("Starting mesh build", job_id=job_id)
    loader = HeightmapLoader(cache, get_decoder())

    try:
        job.status = "running"
        job.progress_percent = 10

        logger.info("Loading heightmaps", job_id=job_id, count=len(request.heightmaps))
        await load_heightmaps(loader, request.heightmaps)
        job.progress_percent = 50

        logger.info("Building geometry", job_id=job_id, style=request.geometry_style.value)
        config = GeometryConfig(
            max_height=request.max_height,
            geometry_style=request.geometry_style,
            texture_size=request.texture_size,
        )
        key, geometry = acquire_geometry(cache, loader, config)
        cached = cache.refcount(key) > 1

        width, height = loader.size
        mesh = MeshRecord(
            id=str(uuid.uuid4()),
            cache_key=key,
            geometry=geometry,
            heightmaps=[slot.source for slot in loader.slots if slot.source],
            max_height=request.max_height,
            geometry_style=request.geometry_style,
            width=width,
            height=height,
            cached=cached,
        )
        meshes[mesh.id] = mesh

        job.mesh_id = mesh.id
        job.status = "completed"
        job.progress_percent = 100
        job.completed_at = datetime.utcnow()
        logger.info("Mesh build completed", job_id=job_id, mesh_id=mesh.id, cached=cached)

    except Exception as e:
        logger.error("Mesh build failed", job_id=job_id, error=str(e))
        job.status = "failed"
        job.error_message = str(e)
        job.completed_at = datetime.utcnow()

    finally:
        # The mesh keeps its geometry reference; the pixels are no longer needed
        loader.free_all()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
