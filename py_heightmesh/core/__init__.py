"""
Core heightmap-to-mesh functionality.
"""

from .errors import (
    HeightmeshError, PreconditionError, ConfigurationError, DimensionMismatchError,
    TopologyConflictError, CacheProtocolError, CacheKeyNotFoundError,
    CacheKeyCollisionError, DoubleReleaseError, DecodeError,
)
from .pixel_sampler import PixelBuffer, get_depth, depth_grid
from .content_cache import ContentCache, CacheEntry, heightmap_key, geometry_key
from .geometry import Geometry, MORPH_TARGET_COUNT
from .geometry_builder import GeometryBuilder, GeometryConfig, GeometryStyle
from .image_decoder import decode_image, SynchronousImageDecoder, AsyncioImageDecoder
from .heightmap_loader import HeightmapLoader, HeightmapSlot, normalize_source
from .morph_animator import MorphAnimator, MorphState, MorphPhase
from .image3d import Image3D, Image3DOptions, GeometryView, MeshView, acquire_geometry, create_image
from .exporters import to_trimesh, export_geometry

__all__ = ['HeightmeshError', 'PreconditionError', 'ConfigurationError', 'DimensionMismatchError',
           'TopologyConflictError', 'CacheProtocolError', 'CacheKeyNotFoundError',
           'CacheKeyCollisionError', 'DoubleReleaseError', 'DecodeError',
           'PixelBuffer', 'get_depth', 'depth_grid',
           'ContentCache', 'CacheEntry', 'heightmap_key', 'geometry_key',
           'Geometry', 'MORPH_TARGET_COUNT',
           'GeometryBuilder', 'GeometryConfig', 'GeometryStyle',
           'decode_image', 'SynchronousImageDecoder', 'AsyncioImageDecoder',
           'HeightmapLoader', 'HeightmapSlot', 'normalize_source',
           'MorphAnimator', 'MorphState', 'MorphPhase',
           'Image3D', 'Image3DOptions', 'GeometryView', 'MeshView', 'acquire_geometry', 'create_image',
           'to_trimesh', 'export_geometry']
