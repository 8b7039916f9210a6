"""
Models describing images kept in the local image store.
"""
from datetime import datetime
from pathlib import Path
from typing import List
from pydantic import BaseModel
from ..REGISTRY.image_reference import ImageReference

class Layer(BaseModel):
    """
    One downloaded layer archive. The digest has its 'sha256:' prefix removed.
    """
    digest: str
    path: Path
    size: int = 0

class StoredImage(BaseModel):
    """
    An image reference together with its layers in manifest order.
    """
    reference: ImageReference
    layers: List[Layer] = []
    created: datetime
    complete: bool = True

    @property
    def size(self) -> int:
        return sum(layer.size for layer in self.layers)
