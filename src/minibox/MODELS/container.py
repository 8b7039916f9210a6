"""
Models for containers and lifecycle reports.
"""
from datetime import datetime
from pathlib import Path
from typing import List
from pydantic import BaseModel
from ..REGISTRY.image_reference import ImageReference

class Container(BaseModel):
    """
    A container built from a stored image.

    The container owns its root filesystem and workspace directories;
    nothing else references them.
    """
    id: str
    image: ImageReference
    root_path: Path
    workspace_path: Path
    created_at: datetime

class PruneReport(BaseModel):
    """
    Counts of what a prune removed, plus the targets it could not remove.
    """
    containers_removed: int = 0
    images_removed: int = 0
    failures: List[str] = []
