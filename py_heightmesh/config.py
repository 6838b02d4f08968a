"""Configuration management."""

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Geometry defaults
    default_max_height: float = Field(default=200.0, ge=0, description="Default depth of a white texel")
    default_geometry_style: str = Field(default="smooth", description="Default geometry style")

    # Decoding
    max_heightmap_size: int = Field(default=4096, description="Maximum heightmap width or height")
    decode_workers: int = Field(default=4, description="Decode thread pool size")

    # API
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(default="json", description="Logging format (plain or json)")

    class Config:
        env_file = ".env"
        env_prefix = "HEIGHTMESH_"
        extra = "ignore"


settings = Settings()
