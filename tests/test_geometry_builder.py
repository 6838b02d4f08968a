"""Tests for smooth, block and float geometry generation."""

import numpy as np
import pytest

from py_heightmesh.core.content_cache import geometry_key
from py_heightmesh.core.errors import (
    DimensionMismatchError,
    PreconditionError,
    TopologyConflictError,
)
from py_heightmesh.core.geometry_builder import (
    GeometryBuilder,
    GeometryConfig,
    GeometryStyle,
    build_block,
    build_float,
    build_smooth,
)

from conftest import flat_buffer, make_buffer


def builder(style, max_height=100.0, texture_size=None):
    return GeometryBuilder(GeometryConfig(
        max_height=max_height, geometry_style=style, texture_size=texture_size,
    ))


class TestGeometryConfig:
    """Test build settings validation."""

    def test_defaults(self):
        config = GeometryConfig()
        assert config.max_height == 200.0
        assert config.geometry_style is GeometryStyle.SMOOTH

    def test_style_from_string(self):
        assert GeometryConfig(geometry_style="Block").geometry_style is GeometryStyle.BLOCK

    @pytest.mark.parametrize("max_height", [-1.0, float("nan"), float("inf"), True, "10"])
    def test_invalid_max_height(self, max_height):
        with pytest.raises(PreconditionError):
            GeometryConfig(max_height=max_height)

    def test_unknown_style(self):
        with pytest.raises(PreconditionError):
            GeometryConfig(geometry_style="cube")

    def test_invalid_texture_size(self):
        with pytest.raises(PreconditionError):
            GeometryConfig(texture_size=(0, 4))


class TestSmoothGeometry:
    """Test the shared-vertex grid."""

    def test_counts(self):
        geometry = builder("smooth").build([flat_buffer(3, 2)])

        assert geometry.vertex_count == 3 * 2
        assert geometry.face_count == 2 * (3 - 1) * (2 - 1)
        assert geometry.uvs.shape == (geometry.face_count, 3, 2)

    @pytest.mark.parametrize("width,height", [(5, 4), (2, 2), (7, 3)])
    def test_counts_for_sizes(self, width, height):
        geometry = builder("smooth").build([flat_buffer(width, height)])
        assert geometry.vertex_count == width * height
        assert geometry.face_count == 2 * (width - 1) * (height - 1)

    def test_grid_spans_unit_square(self):
        buffer = make_buffer([[0, 255, 0], [0, 0, 255]])
        vertices = build_smooth(buffer, 10.0).vertices

        np.testing.assert_allclose(vertices[0], [0.0, 0.0, 0.0])
        np.testing.assert_allclose(vertices[1], [0.5, 0.0, 10.0])
        np.testing.assert_allclose(vertices[5], [1.0, 1.0, 10.0])

    def test_uvs_follow_grid_position(self):
        result = build_smooth(flat_buffer(3, 3), 1.0)
        for face, uv in zip(result.faces, result.uvs):
            np.testing.assert_allclose(uv, result.vertices[face][:, :2])

    def test_morph_targets_keep_vertex_count(self):
        primary = flat_buffer(4, 3, level=0)
        alternate = flat_buffer(4, 3, level=255)
        geometry = builder("smooth").build([primary, alternate])

        assert len(geometry.morph_targets) == 4
        for target in geometry.morph_targets:
            assert target.shape == geometry.vertices.shape
        np.testing.assert_allclose(geometry.morph_targets[1][:, :2], geometry.vertices[:, :2])
        assert np.all(geometry.morph_targets[1][:, 2] == pytest.approx(100.0))

    def test_empty_slots_reuse_primary_vertices(self):
        geometry = builder("smooth").build([flat_buffer(2, 2), None, flat_buffer(2, 2, 0)])

        assert geometry.morph_targets[0] is geometry.vertices
        assert geometry.morph_targets[1] is geometry.vertices
        assert geometry.morph_targets[2] is not geometry.vertices
        assert geometry.morph_targets[3] is geometry.vertices

    def test_flat_normals_point_up(self):
        geometry = builder("smooth").build([flat_buffer(3, 3)])

        np.testing.assert_allclose(geometry.vertex_normals, np.tile([0.0, 0.0, 1.0], (9, 1)), atol=1e-6)
        np.testing.assert_allclose(geometry.face_normals[:, 2], 1.0, atol=1e-6)
        assert len(geometry.morph_vertex_normals) == 4

    def test_needs_two_texels_per_side(self):
        with pytest.raises(PreconditionError):
            builder("smooth").build([flat_buffer(1, 3)])


class TestBlockGeometry:
    """Test raised columns and wall culling."""

    def test_flat_heightmap_has_only_front_faces(self):
        geometry = builder("block").build([flat_buffer(4, 3)])

        assert geometry.face_count == 2 * 4 * 3
        assert geometry.vertex_count == 4 * 4 * 3

    def test_raised_texel_gets_four_walls(self):
        buffer = make_buffer([[0, 0, 0], [0, 255, 0], [0, 0, 0]])
        result = build_block(buffer, 10.0)

        assert result.faces.shape[0] == 2 * 9 + 4 * 2
        assert result.vertices.shape[0] == 4 * 9 + 4 * 2

        # Centre column comes fifth: 4 front quads of 4 vertices before it
        centre = result.vertices[16:28]
        np.testing.assert_allclose(centre[:4, 2], 10.0)
        np.testing.assert_allclose(centre[4:, 2], 0.0)

    def test_wall_only_towards_lower_neighbour(self):
        buffer = make_buffer([[255, 0]])
        result = build_block(buffer, 1.0)

        # Left texel walls to the right, right texel has nothing lower
        assert result.faces.shape[0] == 2 * 2 + 2
        assert result.vertices.shape[0] == 4 * 2 + 2

    def test_vertices_not_shared(self):
        result = build_block(flat_buffer(3, 3), 1.0)

        # Two faces per texel, each using only that texel's four vertices
        owners = result.faces.reshape(9, 6) // 4
        np.testing.assert_array_equal(owners, np.repeat(np.arange(9), 6).reshape(9, 6))

    def test_single_heightmap_only(self):
        with pytest.raises(TopologyConflictError) as info:
            builder("block").build([flat_buffer(2, 2), flat_buffer(2, 2)])
        assert info.value.populated == 2

    def test_morph_targets_are_primary(self):
        geometry = builder("block").build([flat_buffer(2, 2)])
        assert all(target is geometry.vertices for target in geometry.morph_targets)


class TestFloatGeometry:
    """Test disconnected quads."""

    @pytest.mark.parametrize("width,height", [(1, 1), (3, 2), (4, 4)])
    def test_counts(self, width, height):
        geometry = builder("float").build([flat_buffer(width, height)])

        assert geometry.vertex_count == 4 * width * height
        assert geometry.face_count == 2 * width * height

    def test_counts_do_not_depend_on_depths(self):
        bumpy = make_buffer([[0, 255], [128, 7]])
        assert build_float(bumpy, 1.0).faces.shape == build_float(flat_buffer(2, 2), 1.0).faces.shape

    def test_morph_targets(self):
        geometry = builder("float").build([flat_buffer(2, 2, 0), None, None, flat_buffer(2, 2, 255)])

        assert geometry.morph_targets[3].shape == geometry.vertices.shape
        assert np.all(geometry.morph_targets[3][:, 2] == pytest.approx(100.0))
        assert np.all(geometry.vertices[:, 2] == 0.0)

    def test_uvs_sample_texel_centre(self):
        result = build_float(flat_buffer(2, 2), 1.0)
        np.testing.assert_allclose(result.uvs[0], [[0.25, 0.25]] * 3)

    def test_uvs_inset_by_half_texture_texel(self):
        result = build_float(flat_buffer(2, 2), 1.0, texture_size=(4, 4))
        np.testing.assert_allclose(
            result.uvs[0], [[0.125, 0.125], [0.375, 0.125], [0.375, 0.375]]
        )


class TestGeometryBuilder:
    """Test checks shared by all styles."""

    def test_primary_required(self):
        with pytest.raises(PreconditionError):
            builder("smooth").build([None, flat_buffer(2, 2)])

    def test_at_most_four_buffers(self):
        with pytest.raises(PreconditionError):
            builder("float").build([flat_buffer(2, 2)] * 5)

    def test_dimension_mismatch(self):
        with pytest.raises(DimensionMismatchError) as info:
            builder("float").build([flat_buffer(2, 2), flat_buffer(3, 2)])
        assert info.value.index == 1

    def test_geometry_is_immutable(self):
        geometry = builder("smooth").build([flat_buffer(2, 2)])
        with pytest.raises(ValueError):
            geometry.vertices[0, 0] = 5.0

    def test_same_inputs_same_key_and_counts(self):
        buffers = [make_buffer([[1, 2, 3], [4, 5, 6]])]
        first = builder("block").build(buffers)
        second = builder("block").build(buffers)

        assert geometry_key(["/a"], 100.0, "block") == geometry_key(["/a"], 100.0, GeometryStyle.BLOCK)
        assert first.vertex_count == second.vertex_count
        assert first.face_count == second.face_count
        np.testing.assert_array_equal(first.faces, second.faces)


class TestGeometryRecord:
    """Test blending and disposal."""

    @pytest.fixture
    def geometry(self):
        return builder("smooth").build([flat_buffer(2, 2, 0), flat_buffer(2, 2, 255)])

    def test_blend_one_hot(self, geometry):
        np.testing.assert_allclose(geometry.blend([0, 1, 0, 0]), geometry.morph_targets[1])

    def test_blend_mix(self, geometry):
        blended = geometry.blend([0.5, 0.5, 0, 0])
        np.testing.assert_allclose(blended[:, 2], 50.0)

    def test_blend_wrong_length(self, geometry):
        with pytest.raises(PreconditionError):
            geometry.blend([1, 0])

    def test_dispose(self, geometry):
        geometry.dispose()

        assert geometry.disposed
        assert geometry.vertex_count == 0
        with pytest.raises(PreconditionError):
            geometry.blend([1, 0, 0, 0])
