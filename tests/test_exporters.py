"""Tests for trimesh export."""

import numpy as np
import pytest

from py_heightmesh.core.errors import PreconditionError
from py_heightmesh.core.exporters import export_geometry, to_trimesh
from py_heightmesh.core.geometry_builder import GeometryBuilder, GeometryConfig

from conftest import flat_buffer


@pytest.fixture
def geometry():
    builder = GeometryBuilder(GeometryConfig(max_height=10.0, geometry_style="smooth"))
    return builder.build([flat_buffer(3, 3, 0), flat_buffer(3, 3, 255)])


class TestToTrimesh:
    """Test conversion to trimesh."""

    def test_keeps_vertex_order(self, geometry):
        mesh = to_trimesh(geometry)

        assert len(mesh.vertices) == geometry.vertex_count
        assert len(mesh.faces) == geometry.face_count
        np.testing.assert_allclose(mesh.vertices, geometry.vertices)

    def test_blended_vertices(self, geometry):
        mesh = to_trimesh(geometry, weights=[0, 1, 0, 0])
        np.testing.assert_allclose(mesh.vertices[:, 2], 10.0)

    def test_uvs_unweld_faces(self, geometry):
        mesh = to_trimesh(geometry, include_uvs=True)

        assert len(mesh.vertices) == 3 * geometry.face_count
        assert mesh.visual.uv.shape == (3 * geometry.face_count, 2)

    def test_disposed(self, geometry):
        geometry.dispose()
        with pytest.raises(PreconditionError):
            to_trimesh(geometry)


class TestExportGeometry:
    """Test file export."""

    def test_glb_bytes(self, geometry):
        data = export_geometry(geometry)
        assert data[:4] == b"glTF"

    def test_type_from_suffix(self, geometry, tmp_path):
        path = tmp_path / "mesh.stl"
        data = export_geometry(geometry, path)

        assert path.read_bytes() == data
        assert len(data) > 0

    def test_obj_text(self, geometry):
        data = export_geometry(geometry, file_type="OBJ")
        assert b"v " in data
        assert b"f " in data

    def test_unsupported_type(self, geometry):
        with pytest.raises(PreconditionError):
            export_geometry(geometry, file_type="fbx")
