"""
Managers for resolving runtime configuration from .env files and the environment.
"""
import os
from typing import Any, Dict, Mapping, Optional
from dotenv import dotenv_values
from ..MODELS.runtime_config import RuntimeConfig

class EnvironmentManager:
    """
    Merges MINIBOX_* settings from a .env file and the process environment
    into a RuntimeConfig.
    """
    PREFIX = "MINIBOX_"

    def __init__(self, base_dir: str = ".", env_file: str = ".env"):
        """
        Initializes the environment manager.

        :param base_dir: The base directory for resolving a relative .env path.
        :param env_file: Name or path of the .env file, if one exists.
        """
        self.base_dir = base_dir
        self.env_file = env_file

    def get_merged_environment(self, environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """
        Merges the .env file with the process environment.

        :param environ: Environment to merge over the file, defaults to os.environ.
        :return: The merged variables; the process environment wins.
        """
        merged: Dict[str, str] = {}
        file_path = os.path.join(self.base_dir, self.env_file)
        if os.path.isfile(file_path):
            merged.update({k: v for k, v in dotenv_values(file_path).items() if v is not None})

        merged.update(os.environ if environ is None else environ)
        return merged

    def load_config(self, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> RuntimeConfig:
        """
        Builds the runtime configuration.

        :param environ: Environment to read, defaults to os.environ.
        :param overrides: Explicit values (e.g. from CLI options); None values are ignored.
        :return: The validated configuration.
        """
        merged = self.get_merged_environment(environ)
        values: Dict[str, Any] = {}
        for field in RuntimeConfig.model_fields:
            key = f"{self.PREFIX}{field.upper()}"
            if merged.get(key):
                values[field] = merged[key]

        values.update({k: v for k, v in overrides.items() if v is not None})
        return RuntimeConfig(**values)
