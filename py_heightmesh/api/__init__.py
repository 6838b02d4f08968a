"""
HTTP API for building and exporting heightmap meshes.
"""
