"""
Geometry generation from heightmaps.

Three styles turn a heightmap into triangles:

- smooth: one vertex per texel on a regular grid, two triangles per cell
- block: one raised column per texel with side walls where a neighbour is
  lower, no shared vertices
- float: one disconnected quad per texel, no side walls

Smooth and float keep the same topology whatever the depths are, so the
alternate heightmaps of an entity become morph targets. Block topology
depends on the depths, so block geometry accepts a single heightmap.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Sequence, Tuple, Union

import numpy as np
import structlog

from .errors import DimensionMismatchError, PreconditionError, TopologyConflictError
from .geometry import MORPH_TARGET_COUNT, Geometry
from .pixel_sampler import PixelBuffer, depth_grid

logger = structlog.get_logger()


class GeometryStyle(str, Enum):
    """Ways of building geometry from a heightmap."""

    SMOOTH = "smooth"
    BLOCK = "block"
    FLOAT = "float"

    @classmethod
    def parse(cls, value: Union["GeometryStyle", str]) -> "GeometryStyle":
        """Accept an enum member or its string value."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise PreconditionError(
                f"geometry_style must be one of {[s.value for s in cls]}, got {value!r}"
            ) from None

    @property
    def supports_morph_targets(self) -> bool:
        return self is not GeometryStyle.BLOCK

    @property
    def uses_texture_size(self) -> bool:
        return self is not GeometryStyle.SMOOTH


@dataclass
class StyleBuffers:
    """Output of one style algorithm. Faces and UVs are None for vertex-only builds."""

    vertices: np.ndarray
    faces: Optional[np.ndarray] = None
    uvs: Optional[np.ndarray] = None


# Quad corners as (x, y) picks between the low (0) and high (1) texel edge
_QUAD_CORNERS = ((0, 0), (1, 0), (1, 1), (0, 1))
_QUAD_TRIANGLES = ((0, 1, 2), (0, 2, 3))

# Side walls of a block column: left, right, top, bottom.
# Each wall adds two vertices at the neighbour's depth. Triangle corners
# are ("j", n) for front vertex n or ("v", n) for wall vertex n.
_BLOCK_SIDES = (
    (
        ((0, 0), (0, 1)),
        ((("j", 0), ("j", 3), ("v", 1)), (("j", 0), ("v", 1), ("v", 0))),
        (((0, 0), (0, 1), (0, 1)), ((0, 0), (0, 1), (0, 0))),
    ),
    (
        ((1, 0), (1, 1)),
        ((("j", 2), ("j", 1), ("v", 0)), (("j", 2), ("v", 0), ("v", 1))),
        (((1, 1), (1, 0), (1, 0)), ((1, 1), (1, 0), (1, 1))),
    ),
    (
        ((0, 0), (1, 0)),
        ((("j", 1), ("j", 0), ("v", 0)), (("j", 1), ("v", 0), ("v", 1))),
        (((1, 0), (0, 0), (0, 0)), ((1, 0), (0, 0), (1, 0))),
    ),
    (
        ((0, 1), (1, 1)),
        ((("j", 3), ("j", 2), ("v", 1)), (("j", 3), ("v", 1), ("v", 0))),
        (((0, 1), (1, 1), (1, 1)), ((0, 1), (1, 1), (0, 1))),
    ),
)


def _texel_edges(width: int, height: int):
    """Per-texel low/high edges in the unit square, row-major, shape (W*H,)."""
    x = np.tile(np.arange(width, dtype=np.float64), height)
    y = np.repeat(np.arange(height, dtype=np.float64), width)
    xs = (x / width, (x + 1.0) / width)
    ys = (y / height, (y + 1.0) / height)
    return x, y, xs, ys


def _inset_uvs(x: np.ndarray, y: np.ndarray, width: int, height: int,
               texture_size: Optional[Tuple[int, int]]):
    """
    UV edges inset by half a texture texel.

    With a texture as large as the heightmap both edges land on the texel
    centre, so every quad samples exactly one texture texel.
    """
    texture_width, texture_height = texture_size or (width, height)
    width_ratio = texture_width / width
    height_ratio = texture_height / height
    xr = x * width_ratio
    yr = y * height_ratio
    us = ((xr + 0.5) / texture_width, (xr + width_ratio - 0.5) / texture_width)
    vs = ((yr + 0.5) / texture_height, (yr + height_ratio - 0.5) / texture_height)
    return us, vs


def _uv_triangles(us, vs, corners, mask=None) -> np.ndarray:
    """Stack UV corners into an (n, 3, 2) array."""
    columns = []
    for cu, cv in corners:
        u = us[cu] if mask is None else us[cu][mask]
        v = vs[cv] if mask is None else vs[cv][mask]
        columns.append(np.column_stack([u, v]))
    return np.stack(columns, axis=1)


def build_smooth(buffer: PixelBuffer, max_height: float, create_faces: bool = True,
                 texture_size: Optional[Tuple[int, int]] = None) -> StyleBuffers:
    """
    Regular grid with shared vertices.

    Produces ``W*H`` vertices spanning [0, 1] x [0, 1] and
    ``2*(W-1)*(H-1)`` triangles. UVs equal the normalised grid position.
    """
    width, height = buffer.width, buffer.height
    if width < 2 or height < 2:
        raise PreconditionError(
            f"Smooth geometry needs at least 2x2 texels, got {width}x{height}"
        )

    depths = depth_grid(buffer, max_height)
    gx = np.arange(width, dtype=np.float64) / (width - 1)
    gy = np.arange(height, dtype=np.float64) / (height - 1)
    yy, xx = np.meshgrid(gy, gx, indexing="ij")

    vertices = np.empty((width * height, 3), dtype=np.float32)
    vertices[:, 0] = xx.ravel()
    vertices[:, 1] = yy.ravel()
    vertices[:, 2] = depths.ravel()

    if not create_faces:
        return StyleBuffers(vertices=vertices)

    cy, cx = np.meshgrid(np.arange(height - 1), np.arange(width - 1), indexing="ij")
    cx = cx.ravel()
    cy = cy.ravel()
    a = cy * width + cx
    b = a + 1
    c = a + width + 1
    d = a + width

    faces = np.empty((a.size, 2, 3), dtype=np.uint32)
    faces[:, 0] = np.column_stack([a, b, c])
    faces[:, 1] = np.column_stack([a, c, d])

    us = (gx[cx], gx[cx + 1])
    vs = (gy[cy], gy[cy + 1])
    uvs = np.empty((a.size, 2, 3, 2), dtype=np.float32)
    for t, triangle in enumerate(_QUAD_TRIANGLES):
        uvs[:, t] = _uv_triangles(us, vs, [_QUAD_CORNERS[k] for k in triangle])

    return StyleBuffers(
        vertices=vertices,
        faces=faces.reshape(-1, 3),
        uvs=uvs.reshape(-1, 3, 2),
    )


def build_float(buffer: PixelBuffer, max_height: float, create_faces: bool = True,
                texture_size: Optional[Tuple[int, int]] = None) -> StyleBuffers:
    """
    One disconnected quad per texel at the texel's depth.

    Produces ``4*W*H`` vertices and ``2*W*H`` triangles regardless of the
    depth values.
    """
    width, height = buffer.width, buffer.height
    depths = depth_grid(buffer, max_height).ravel()
    x, y, xs, ys = _texel_edges(width, height)
    count = width * height

    vertices = np.empty((count, 4, 3), dtype=np.float32)
    for k, (cx, cy) in enumerate(_QUAD_CORNERS):
        vertices[:, k, 0] = xs[cx]
        vertices[:, k, 1] = ys[cy]
        vertices[:, k, 2] = depths
    vertices = vertices.reshape(-1, 3)

    if not create_faces:
        return StyleBuffers(vertices=vertices)

    base = np.arange(count, dtype=np.int64) * 4
    faces = np.empty((count, 2, 3), dtype=np.uint32)
    uvs = np.empty((count, 2, 3, 2), dtype=np.float32)
    us, vs = _inset_uvs(x, y, width, height, texture_size)
    for t, triangle in enumerate(_QUAD_TRIANGLES):
        faces[:, t] = np.column_stack([base + k for k in triangle])
        uvs[:, t] = _uv_triangles(us, vs, [_QUAD_CORNERS[k] for k in triangle])

    return StyleBuffers(
        vertices=vertices,
        faces=faces.reshape(-1, 3),
        uvs=uvs.reshape(-1, 3, 2),
    )


def build_block(buffer: PixelBuffer, max_height: float, create_faces: bool = True,
                texture_size: Optional[Tuple[int, int]] = None) -> StyleBuffers:
    """
    One raised column per texel.

    Each texel gets a front quad at its depth. A side quad is added towards
    a neighbour only when the neighbour is strictly lower; the outer
    border of the heightmap gets no walls. Vertices are not shared between
    columns, which keeps the edges sharp.
    """
    width, height = buffer.width, buffer.height
    grid = depth_grid(buffer, max_height)
    padded = np.pad(grid, 1, mode="constant", constant_values=np.inf)
    neighbours = np.stack(
        [
            padded[1:-1, :-2],  # left
            padded[1:-1, 2:],   # right
            padded[:-2, 1:-1],  # top
            padded[2:, 1:-1],   # bottom
        ],
        axis=-1,
    ).reshape(-1, 4)
    depths = grid.ravel()
    present = depths[:, None] > neighbours
    rank = np.cumsum(present, axis=1) - 1
    sides = present.sum(axis=1)

    vertex_counts = 4 + 2 * sides
    vertex_offsets = np.concatenate([[0], np.cumsum(vertex_counts)[:-1]]).astype(np.int64)
    face_counts = 2 + 2 * sides
    face_offsets = np.concatenate([[0], np.cumsum(face_counts)[:-1]]).astype(np.int64)

    x, y, xs, ys = _texel_edges(width, height)
    vertices = np.empty((int(vertex_counts.sum()), 3), dtype=np.float32)
    for k, (cx, cy) in enumerate(_QUAD_CORNERS):
        vertices[vertex_offsets + k] = np.column_stack([xs[cx], ys[cy], depths])

    faces = uvs = None
    if create_faces:
        faces = np.empty((int(face_counts.sum()), 3), dtype=np.uint32)
        uvs = np.empty((faces.shape[0], 3, 2), dtype=np.float32)
        us, vs = _inset_uvs(x, y, width, height, texture_size)
        for t, triangle in enumerate(_QUAD_TRIANGLES):
            faces[face_offsets + t] = np.column_stack([vertex_offsets + k for k in triangle])
            uvs[face_offsets + t] = _uv_triangles(us, vs, [_QUAD_CORNERS[k] for k in triangle])

    for side, (corners, triangles, uv_corners) in enumerate(_BLOCK_SIDES):
        mask = present[:, side]
        if not mask.any():
            continue
        j = vertex_offsets[mask]
        v = j + 4 + 2 * rank[mask, side]
        wall_depth = neighbours[mask, side]
        for k, (cx, cy) in enumerate(corners):
            vertices[v + k] = np.column_stack([xs[cx][mask], ys[cy][mask], wall_depth])

        if not create_faces:
            continue
        f = face_offsets[mask] + 2 + 2 * rank[mask, side]
        bases = {"j": j, "v": v}
        for t, triangle in enumerate(triangles):
            faces[f + t] = np.column_stack([bases[b] + n for b, n in triangle])
            uvs[f + t] = _uv_triangles(us, vs, uv_corners[t], mask)

    return StyleBuffers(vertices=vertices, faces=faces, uvs=uvs)


StyleBuilder = Callable[..., StyleBuffers]

STYLE_BUILDERS: Dict[GeometryStyle, StyleBuilder] = {
    GeometryStyle.SMOOTH: build_smooth,
    GeometryStyle.BLOCK: build_block,
    GeometryStyle.FLOAT: build_float,
}


@dataclass
class GeometryConfig:
    """Settings that shape a build."""

    max_height: float = 200.0
    geometry_style: GeometryStyle = GeometryStyle.SMOOTH
    texture_size: Optional[Tuple[int, int]] = None

    def __post_init__(self):
        if isinstance(self.max_height, bool) or not isinstance(self.max_height, (int, float)):
            raise PreconditionError(f"max_height must be a number, got {self.max_height!r}")
        if not math.isfinite(self.max_height) or self.max_height < 0:
            raise PreconditionError(f"max_height must be >= 0, got {self.max_height}")
        self.geometry_style = GeometryStyle.parse(self.geometry_style)
        if self.texture_size is not None:
            tw, th = self.texture_size
            if tw <= 0 or th <= 0:
                raise PreconditionError(f"texture_size must be positive, got {self.texture_size}")
            self.texture_size = (int(tw), int(th))


class GeometryBuilder:
    """
    Builds a Geometry from up to four heightmaps.

    Slot 0 supplies the primary mesh. Slots 1-3 become morph targets for
    styles with fixed topology; empty slots reuse the primary vertices.
    """

    def __init__(self, config: Optional[GeometryConfig] = None):
        self.config = config or GeometryConfig()

    @property
    def style(self) -> GeometryStyle:
        return self.config.geometry_style

    def _run(self, buffer: PixelBuffer, create_faces: bool) -> StyleBuffers:
        if buffer is None:
            raise PreconditionError("heightmap buffer must be valid")
        builder = STYLE_BUILDERS[self.style]
        return builder(
            buffer,
            self.config.max_height,
            create_faces=create_faces,
            texture_size=self.config.texture_size,
        )

    def build_vertices(self, buffer: PixelBuffer) -> np.ndarray:
        """Vertex positions only, for use as a morph target."""
        return self._run(buffer, create_faces=False).vertices

    def build(self, buffers: Sequence[Optional[PixelBuffer]]) -> Geometry:
        """
        Build the geometry for a set of heightmap slots.

        Args:
            buffers: Up to four pixel buffers, None for empty slots

        Returns:
            Immutable Geometry with normals and four morph targets
        """
        if len(buffers) > MORPH_TARGET_COUNT:
            raise PreconditionError(
                f"At most {MORPH_TARGET_COUNT} heightmaps are supported, got {len(buffers)}"
            )
        slots = list(buffers) + [None] * (MORPH_TARGET_COUNT - len(buffers))
        primary = slots[0]
        if primary is None:
            raise PreconditionError("Primary heightmap must be loaded before building geometry")

        populated = [i for i, buffer in enumerate(slots) if buffer is not None]
        for index in populated[1:]:
            if slots[index].size != primary.size:
                raise DimensionMismatchError(index, primary.size, slots[index].size)

        if not self.style.supports_morph_targets and len(populated) > 1:
            raise TopologyConflictError(self.style.value, len(populated))

        result = self._run(primary, create_faces=True)

        morph_targets = []
        for index, buffer in enumerate(slots):
            if buffer is None or index == 0:
                morph_targets.append(result.vertices)
            else:
                morph_targets.append(self.build_vertices(buffer))

        geometry = Geometry(
            vertices=result.vertices,
            faces=result.faces,
            uvs=result.uvs,
            morph_targets=morph_targets,
        )
        geometry.compute_normals()
        geometry.freeze()

        logger.info(
            "Geometry built",
            style=self.style.value,
            width=primary.width,
            height=primary.height,
            vertices=geometry.vertex_count,
            faces=geometry.face_count,
            heightmaps=len(populated),
        )
        return geometry
