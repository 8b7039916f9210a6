"""
Runtime configuration: where the store lives and which registry to talk to.
"""
from pathlib import Path
from typing import Optional
from pydantic import BaseModel, Field

class RuntimeConfig(BaseModel):
    """
    Settings shared by every component. Each field can be overridden with a
    MINIBOX_<FIELD> environment variable (see EnvironmentManager).
    """
    store_root: Path = Field(default_factory=lambda: Path.home() / ".minibox")

    # Registry
    registry_url: str = "https://registry-1.docker.io"
    auth_url: str = "https://auth.docker.io/token"
    auth_service: str = "registry.docker.io"
    namespace: str = "library"
    request_timeout: Optional[float] = 60.0

    # Target platform selected from multi-platform indexes
    platform_os: str = "linux"
    platform_architecture: str = "amd64"
