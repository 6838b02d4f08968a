"""
py-heightmesh: heightmap images to morphable 3D meshes.
"""

__version__ = "0.1.0"
