"""Geometry record shared through the content cache."""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from .errors import PreconditionError

MORPH_TARGET_COUNT = 4


def compute_face_normals(vertices: np.ndarray, faces: np.ndarray) -> np.ndarray:
    """Unit normal per triangle; degenerate triangles get a zero normal."""
    v0 = vertices[faces[:, 0]]
    v1 = vertices[faces[:, 1]]
    v2 = vertices[faces[:, 2]]
    normals = np.cross(v1 - v0, v2 - v0)
    lengths = np.linalg.norm(normals, axis=1, keepdims=True)
    np.divide(normals, lengths, out=normals, where=lengths > 1e-12)
    normals[lengths[:, 0] <= 1e-12] = 0.0
    return normals.astype(np.float32)


def compute_vertex_normals(vertices: np.ndarray, faces: np.ndarray) -> np.ndarray:
    """Area-weighted average of the normals of the faces around each vertex."""
    v0 = vertices[faces[:, 0]]
    v1 = vertices[faces[:, 1]]
    v2 = vertices[faces[:, 2]]
    # Unnormalised cross product carries the face area as its length
    weighted = np.cross(v1 - v0, v2 - v0)

    normals = np.zeros(vertices.shape, dtype=np.float64)
    for corner in range(3):
        np.add.at(normals, faces[:, corner], weighted)

    lengths = np.linalg.norm(normals, axis=1, keepdims=True)
    np.divide(normals, lengths, out=normals, where=lengths > 1e-12)
    return normals.astype(np.float32)


@dataclass
class Geometry:
    """
    Triangle mesh with up to four morph targets.

    ``morph_targets[i]`` always has the same length as ``vertices`` and
    matches it index by index, so targets can be blended linearly. Unused
    slots hold the primary vertex array itself.
    """

    vertices: np.ndarray
    faces: np.ndarray
    uvs: np.ndarray
    morph_targets: List[np.ndarray] = field(default_factory=list)

    face_normals: Optional[np.ndarray] = field(default=None, repr=False)
    vertex_normals: Optional[np.ndarray] = field(default=None, repr=False)
    morph_face_normals: List[np.ndarray] = field(default_factory=list, repr=False)
    morph_vertex_normals: List[np.ndarray] = field(default_factory=list, repr=False)

    _disposed: bool = field(default=False, repr=False)

    @property
    def vertex_count(self) -> int:
        return int(self.vertices.shape[0])

    @property
    def face_count(self) -> int:
        return int(self.faces.shape[0])

    @property
    def disposed(self) -> bool:
        return self._disposed

    def compute_normals(self) -> None:
        """Compute face, vertex and per-morph-target normals."""
        self.face_normals = compute_face_normals(self.vertices, self.faces)
        self.vertex_normals = compute_vertex_normals(self.vertices, self.faces)

        self.morph_face_normals = []
        self.morph_vertex_normals = []
        for target in self.morph_targets:
            if target is self.vertices:
                self.morph_face_normals.append(self.face_normals)
                self.morph_vertex_normals.append(self.vertex_normals)
            else:
                self.morph_face_normals.append(compute_face_normals(target, self.faces))
                self.morph_vertex_normals.append(compute_vertex_normals(target, self.faces))

    def freeze(self) -> None:
        """Mark every buffer read-only; geometry is immutable once built."""
        arrays = [self.vertices, self.faces, self.uvs, self.face_normals, self.vertex_normals]
        arrays += self.morph_targets + self.morph_face_normals + self.morph_vertex_normals
        for array in arrays:
            if array is not None:
                array.flags.writeable = False

    def blend(self, weights: Sequence[float]) -> np.ndarray:
        """
        Blend the morph targets on the CPU.

        Weights are applied as given, without normalisation.

        Args:
            weights: One weight per morph target

        Returns:
            (N, 3) array of blended vertex positions
        """
        if self._disposed:
            raise PreconditionError("Cannot blend a disposed geometry")
        weights = np.asarray(weights, dtype=np.float64)
        if weights.shape != (len(self.morph_targets),):
            raise PreconditionError(
                f"Expected {len(self.morph_targets)} morph weights, got {weights.shape}"
            )
        blended = np.zeros(self.vertices.shape, dtype=np.float64)
        for weight, target in zip(weights, self.morph_targets):
            if weight != 0.0:
                blended += weight * target
        return blended.astype(np.float32)

    def dispose(self) -> None:
        """Drop all buffers. Called by the cache when the last reference goes."""
        self.vertices = np.zeros((0, 3), dtype=np.float32)
        self.faces = np.zeros((0, 3), dtype=np.uint32)
        self.uvs = np.zeros((0, 3, 2), dtype=np.float32)
        self.morph_targets = []
        self.face_normals = None
        self.vertex_normals = None
        self.morph_face_normals = []
        self.morph_vertex_normals = []
        self._disposed = True
