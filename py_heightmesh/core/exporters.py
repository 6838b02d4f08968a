"""Export built geometry through trimesh."""

from pathlib import Path
from typing import Optional, Sequence, Union

import numpy as np
import structlog
import trimesh

from .errors import PreconditionError
from .geometry import Geometry

logger = structlog.get_logger()

SUPPORTED_FORMATS = ("glb", "obj", "ply", "stl")


def to_trimesh(geometry: Geometry, weights: Optional[Sequence[float]] = None,
               include_uvs: bool = False) -> trimesh.Trimesh:
    """
    Convert a Geometry into a trimesh.Trimesh.

    Args:
        geometry: Built geometry
        weights: Optional morph weights; vertices are blended when given
        include_uvs: Attach the per-face UVs. Trimesh stores UVs per vertex,
            so every triangle gets its own three vertices.

    Returns:
        Unprocessed Trimesh with the geometry's vertex order
    """
    if geometry.disposed:
        raise PreconditionError("Cannot export a disposed geometry")

    vertices = geometry.vertices if weights is None else geometry.blend(weights)
    faces = np.asarray(geometry.faces, dtype=np.int64)

    if not include_uvs:
        return trimesh.Trimesh(vertices=vertices, faces=faces, process=False)

    corners = vertices[faces].reshape(-1, 3)
    mesh = trimesh.Trimesh(
        vertices=corners,
        faces=np.arange(corners.shape[0], dtype=np.int64).reshape(-1, 3),
        process=False,
    )
    mesh.visual = trimesh.visual.TextureVisuals(uv=geometry.uvs.reshape(-1, 2))
    return mesh


def export_geometry(
    geometry: Geometry,
    path: Optional[Union[str, Path]] = None,
    file_type: Optional[str] = None,
    weights: Optional[Sequence[float]] = None,
    include_uvs: bool = False,
) -> bytes:
    """
    Write a geometry as GLB, OBJ, PLY or STL.

    Args:
        geometry: Built geometry
        path: Output file; when None the encoded data is only returned
        file_type: Format name, taken from the path suffix when omitted,
            GLB when there is neither
        weights: Optional morph weights to bake into the vertices
        include_uvs: Export texture coordinates

    Returns:
        Encoded file contents
    """
    if file_type is None:
        file_type = Path(path).suffix.lstrip(".") if path is not None else "glb"
    file_type = file_type.lower()
    if file_type not in SUPPORTED_FORMATS:
        raise PreconditionError(
            f"file_type must be one of {list(SUPPORTED_FORMATS)}, got {file_type!r}"
        )

    mesh = to_trimesh(geometry, weights=weights, include_uvs=include_uvs)
    data = mesh.export(file_type=file_type)
    if isinstance(data, str):
        data = data.encode("utf-8")

    if path is not None:
        Path(path).write_bytes(data)
        logger.info("Geometry exported", path=str(path), file_type=file_type,
                    vertices=geometry.vertex_count, faces=geometry.face_count)
    return data
