"""
Heightmap image entity.

An Image3D owns four heightmap slots, a morph animator and a reference
on the cached geometry built from them. Views attached to it display that
geometry; they share the cached Geometry instance and each hold their
own cache reference while they have a mesh.
"""

import math
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple, Union

import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator

from .content_cache import ContentCache, geometry_key
from .errors import (
    DimensionMismatchError,
    HeightmeshError,
    PreconditionError,
    TopologyConflictError,
)
from .geometry import MORPH_TARGET_COUNT, Geometry
from .geometry_builder import GeometryBuilder, GeometryConfig, GeometryStyle
from .heightmap_loader import HeightmapLoader, normalize_source
from .morph_animator import MorphAnimator, Weights

logger = structlog.get_logger()

HEIGHTMAP_EVENTS = ("change_heightmap", "change_heightmap2", "change_heightmap3", "change_heightmap4")

EVENTS = HEIGHTMAP_EVENTS + (
    "change_image_src",
    "change_max_height",
    "change_geometry_style",
    "change_transparent",
    "morph_begin",
    "morph_end",
)


class Image3DOptions(BaseModel):
    """Construction options of an Image3D."""

    heightmap: str = Field(..., min_length=1, description="Primary heightmap source")
    heightmap2: str = Field(default="", description="Morph target 1 heightmap source")
    heightmap3: str = Field(default="", description="Morph target 2 heightmap source")
    heightmap4: str = Field(default="", description="Morph target 3 heightmap source")
    image_src: str = Field(default="", description="Texture image source")
    max_height: float = Field(default=200.0, ge=0, allow_inf_nan=False, description="Depth of a white texel")
    geometry_style: GeometryStyle = Field(default=GeometryStyle.SMOOTH, description="Geometry style")
    transparent: bool = Field(default=True, description="Whether the texture may be transparent")
    texture_size: Optional[Tuple[int, int]] = Field(
        default=None, description="Texture (width, height) for inset UVs"
    )

    @field_validator("geometry_style", mode="before")
    @classmethod
    def _parse_style(cls, value):
        return GeometryStyle.parse(value)

    @field_validator("texture_size")
    @classmethod
    def _positive_texture_size(cls, value):
        if value is not None and (value[0] <= 0 or value[1] <= 0):
            raise ValueError(f"texture_size must be positive, got {value}")
        return value

    @property
    def heightmaps(self) -> List[str]:
        return [self.heightmap, self.heightmap2, self.heightmap3, self.heightmap4]

    @classmethod
    def parse(cls, value: Union["Image3DOptions", dict]) -> "Image3DOptions":
        """Validate a dict of options, raising PreconditionError on bad input."""
        if isinstance(value, cls):
            return value
        try:
            return cls.model_validate(value)
        except ValidationError as e:
            raise PreconditionError(f"Invalid Image3D options: {e}") from e


class MeshView(Protocol):
    """What an Image3D expects from a view that displays its geometry."""

    def rebuild_mesh(self, key: str, geometry: Geometry) -> None: ...

    def destroy_mesh(self) -> None: ...

    def set_morph_weights(self, weights: Weights) -> None: ...

    def set_transparent(self, transparent: bool) -> None: ...


class GeometryView:
    """
    Minimal view that holds a mesh as a reference on the cached geometry.

    Rebuilding takes a new cache reference before the entity's own one can
    go away, and destroying gives it back.
    """

    def __init__(self, cache: ContentCache):
        self.cache = cache
        self.geometry_key = ""
        self.geometry: Optional[Geometry] = None
        self.morph_weights: Weights = (1.0, 0.0, 0.0, 0.0)
        self.transparent = True
        self.rebuilds = 0

    @property
    def has_mesh(self) -> bool:
        return self.geometry is not None

    def rebuild_mesh(self, key: str, geometry: Geometry) -> None:
        self.destroy_mesh()
        self.geometry = self.cache.add_ref(key)
        self.geometry_key = key
        self.rebuilds += 1

    def destroy_mesh(self) -> None:
        if self.geometry_key:
            self.cache.release(self.geometry_key)
        self.geometry_key = ""
        self.geometry = None

    def set_morph_weights(self, weights: Weights) -> None:
        self.morph_weights = tuple(weights)

    def set_transparent(self, transparent: bool) -> None:
        self.transparent = transparent

    def vertices(self):
        """Mesh vertices blended with the current morph weights."""
        if self.geometry is None:
            raise PreconditionError("View has no mesh")
        return self.geometry.blend(self.morph_weights)


def acquire_geometry(cache: ContentCache, loader: HeightmapLoader,
                     config: GeometryConfig) -> Tuple[str, Geometry]:
    """
    Take a reference on the geometry for the loader's heightmaps.

    Reuses the cached geometry when one exists for the same key, otherwise
    builds it and inserts it. The caller owns one reference on the returned
    key and must release it.

    Args:
        cache: Shared content cache
        loader: Loader whose slots hold the heightmaps; slot 0 must be loaded
        config: Build settings

    Returns:
        (cache key, geometry)
    """
    # Slots whose load failed carry no buffer and must not key the geometry
    sources = [slot.source if slot.populated else "" for slot in loader.slots]
    texture_size = config.texture_size if config.geometry_style.uses_texture_size else None
    key = geometry_key(sources, config.max_height, config.geometry_style, texture_size)

    if cache.has(key):
        logger.info("Using cached geometry", key=key)
        return key, cache.add_ref(key)

    geometry = GeometryBuilder(config).build(loader.buffers)
    cache.set(key, geometry)
    return key, geometry


def _check_topology(style: GeometryStyle, sources: Sequence[str]) -> None:
    """Reject morph target sources for styles that cannot morph."""
    configured = sum(1 for source in sources if source)
    if not style.supports_morph_targets and configured > 1:
        raise TopologyConflictError(style.value, configured)


class Image3D:
    """
    A displayed heightmap image.

    Configuration changes reload heightmaps, rebuild the geometry and ask
    every attached view to rebuild its mesh. Setting a value equal to the
    current one does nothing.

    Args:
        options: Image3DOptions or a dict of its fields
        cache: Content cache shared by all entities
        decoder: Image decoding collaborator with ``decode(source, on_done, on_error)``
    """

    def __init__(self, options: Union[Image3DOptions, dict], cache: ContentCache, decoder):
        options = Image3DOptions.parse(options)

        self.cache = cache
        self.loader = HeightmapLoader(cache, decoder)
        self.animator = MorphAnimator()

        self._sources = [normalize_source(source) if source else "" for source in options.heightmaps]
        self._image_src = normalize_source(options.image_src) if options.image_src else ""
        self._max_height = float(options.max_height)
        self._geometry_style = options.geometry_style
        self._transparent = options.transparent
        self._texture_size = options.texture_size
        _check_topology(self._geometry_style, self._sources)

        self.geometry_key = ""
        self.geometry: Optional[Geometry] = None
        self._views: List[MeshView] = []
        self._listeners: Dict[str, List[Callable[["Image3D"], None]]] = defaultdict(list)
        self._is_set_up = False

        self.animator.subscribe(self._push_weights)
        self.animator.on_begin(lambda: self._emit("morph_begin"))
        self.animator.on_end(lambda: self._emit("morph_end"))

    # Properties

    @property
    def heightmap(self) -> str:
        return self._sources[0]

    @property
    def heightmap2(self) -> str:
        return self._sources[1]

    @property
    def heightmap3(self) -> str:
        return self._sources[2]

    @property
    def heightmap4(self) -> str:
        return self._sources[3]

    @property
    def heightmaps(self) -> Tuple[str, ...]:
        return tuple(self._sources)

    @property
    def image_src(self) -> str:
        return self._image_src

    @property
    def texture_size(self) -> Optional[Tuple[int, int]]:
        return self._texture_size

    @property
    def max_height(self) -> float:
        return self._max_height

    @property
    def geometry_style(self) -> GeometryStyle:
        return self._geometry_style

    @property
    def transparent(self) -> bool:
        return self._transparent

    @property
    def morphing(self) -> bool:
        return self.animator.is_morphing

    @property
    def morph_weights(self) -> Weights:
        return self.animator.current_weights

    @property
    def views(self) -> Tuple[MeshView, ...]:
        return tuple(self._views)

    @property
    def is_set_up(self) -> bool:
        return self._is_set_up

    # Events

    def on(self, event: str, callback: Callable[["Image3D"], None]) -> Callable[["Image3D"], None]:
        """Subscribe to one of EVENTS. The callback receives this entity."""
        if event not in EVENTS:
            raise PreconditionError(f"Unknown event {event!r}, expected one of {EVENTS}")
        self._listeners[event].append(callback)
        return callback

    def off(self, event: str, callback: Callable[["Image3D"], None]) -> None:
        if callback in self._listeners.get(event, []):
            self._listeners[event].remove(callback)

    def _emit(self, event: str) -> None:
        for callback in list(self._listeners.get(event, [])):
            callback(self)

    # Views

    def attach_view(self, view: MeshView) -> MeshView:
        """Attach a view; it gets a mesh right away if geometry exists."""
        self._views.append(view)
        view.set_transparent(self._transparent)
        if self.geometry is not None:
            view.rebuild_mesh(self.geometry_key, self.geometry)
            view.set_morph_weights(self.animator.current_weights)
        return view

    def detach_view(self, view: MeshView) -> None:
        if view in self._views:
            self._views.remove(view)
            view.destroy_mesh()

    def _rebuild_views(self) -> None:
        weights = self.animator.current_weights
        for view in self._views:
            view.rebuild_mesh(self.geometry_key, self.geometry)
            view.set_morph_weights(weights)

    def _push_weights(self, weights: Weights) -> None:
        for view in self._views:
            view.set_morph_weights(weights)

    # Lifecycle

    def set_up(self) -> "Image3D":
        """Load every heightmap, then build the geometry."""
        if self._is_set_up:
            return self
        self._is_set_up = True
        logger.info("Setting up image", heightmaps=[s for s in self._sources if s])
        self.loader.load_all(self._sources, self._rebuild_geometry)
        return self

    def tear_down(self) -> "Image3D":
        """Destroy all meshes and give back every cache reference held."""
        for view in self._views:
            view.destroy_mesh()
        self._destroy_geometry()
        self.loader.free_all()
        self._is_set_up = False
        return self

    # Setters

    def set_heightmap(self, source: str, index: int = 0) -> "Image3D":
        """
        Replace one heightmap.

        Args:
            source: New heightmap source, must not be empty
            index: Slot 0-3; 0 is the primary heightmap

        Returns:
            self
        """
        if not source or not isinstance(source, str):
            raise PreconditionError("heightmap must be valid")
        if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < MORPH_TARGET_COUNT:
            raise PreconditionError(
                f"index must be between 0 and {MORPH_TARGET_COUNT - 1}, got {index!r}"
            )

        source = normalize_source(source)
        if self._sources[index] == source:
            return self

        sources = list(self._sources)
        sources[index] = source
        _check_topology(self._geometry_style, sources)

        self._sources[index] = source
        self._emit(HEIGHTMAP_EVENTS[index])

        if self._is_set_up:
            self.loader.load_slot(source, index, self._on_heightmap_loaded)
        return self

    def _on_heightmap_loaded(self, index: int, error) -> None:
        if error is not None:
            logger.error("Heightmap failed to load", index=index, error=str(error))
        else:
            try:
                self.loader.check_dimensions(index)
            except DimensionMismatchError as e:
                logger.error("Heightmap size mismatch", index=index, error=str(e))
                raise
        self._rebuild_geometry()

    def set_image_src(self, image_src: str,
                      texture_size: Optional[Tuple[int, int]] = None) -> "Image3D":
        """
        Replace the texture image.

        Block and float UVs depend on the texture size, so for those styles
        a new size rebuilds the geometry. Views always rebuild their mesh.
        """
        if not image_src or not isinstance(image_src, str):
            raise PreconditionError("image_src must be valid")
        if texture_size is not None:
            texture_size = (int(texture_size[0]), int(texture_size[1]))
            if texture_size[0] <= 0 or texture_size[1] <= 0:
                raise PreconditionError(f"texture_size must be positive, got {texture_size}")

        image_src = normalize_source(image_src)
        if image_src == self._image_src and texture_size == self._texture_size:
            return self

        size_changed = texture_size != self._texture_size
        self._image_src = image_src
        self._texture_size = texture_size
        self._emit("change_image_src")

        if not self._is_set_up:
            return self
        if size_changed and self._geometry_style.uses_texture_size:
            self._rebuild_geometry()
        elif self.geometry is not None:
            self._rebuild_views()
        return self

    def set_max_height(self, max_height: float) -> "Image3D":
        if isinstance(max_height, bool) or not isinstance(max_height, (int, float)):
            raise PreconditionError(f"max_height must be a number, got {max_height!r}")
        if not math.isfinite(max_height) or max_height < 0:
            raise PreconditionError(f"max_height must be >= 0, got {max_height}")

        if self._max_height == max_height:
            return self
        self._max_height = float(max_height)
        self._emit("change_max_height")
        self._rebuild_geometry()
        return self

    def set_geometry_style(self, geometry_style: Union[GeometryStyle, str]) -> "Image3D":
        geometry_style = GeometryStyle.parse(geometry_style)
        if self._geometry_style is geometry_style:
            return self
        _check_topology(geometry_style, self._sources)
        self._geometry_style = geometry_style
        self._emit("change_geometry_style")
        self._rebuild_geometry()
        return self

    def set_transparent(self, transparent: bool) -> "Image3D":
        if not isinstance(transparent, bool):
            raise PreconditionError(f"transparent must be a boolean, got {transparent!r}")
        if self._transparent == transparent:
            return self
        self._transparent = transparent
        self._emit("change_transparent")
        for view in self._views:
            view.set_transparent(transparent)
        return self

    # Morphing

    def morph(self, index: int, seconds: float = 0.0) -> "Image3D":
        """Blend towards morph target ``index`` (0-3) over ``seconds``."""
        self.animator.morph_to(index, seconds)
        return self

    def set_morphing(self, morphing: bool) -> "Image3D":
        """Pause or resume a running morph."""
        self.animator.set_morphing(morphing)
        return self

    def update(self, dt: float) -> None:
        self.animator.update(dt)

    # Geometry

    def _destroy_geometry(self) -> None:
        if self.geometry_key:
            self.cache.release(self.geometry_key)
        self.geometry_key = ""
        self.geometry = None

    def _rebuild_geometry(self) -> None:
        if not self._is_set_up:
            return

        self._destroy_geometry()

        if not self.loader.slot(0).populated:
            logger.warning("Primary heightmap not loaded, skipping geometry build",
                           heightmap=self._sources[0])
            for view in self._views:
                view.destroy_mesh()
            return

        config = GeometryConfig(
            max_height=self._max_height,
            geometry_style=self._geometry_style,
            texture_size=self._texture_size,
        )
        try:
            self.geometry_key, self.geometry = acquire_geometry(self.cache, self.loader, config)
        except HeightmeshError:
            # Views must not keep showing the released geometry
            for view in self._views:
                view.destroy_mesh()
            raise
        self._rebuild_views()


def create_image(options: Union[Image3DOptions, dict], cache: ContentCache, decoder,
                 views: Sequence[MeshView] = ()) -> Image3D:
    """Create an Image3D, attach ``views`` and set it up."""
    image = Image3D(options, cache, decoder)
    for view in views:
        image.attach_view(view)
    return image.set_up()
