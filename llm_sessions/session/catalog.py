"""Model catalog: resolves model names to launch descriptors.

The catalog is a JSON manifest loaded once at startup:

    {
      "default_threads": 8,
      "models": [
        {
          "name": "LLaMA-v2",
          "executable": "~/llama.cpp/main",
          "model": "~/models/llama-2-7b.Q4_K_M.gguf",
          "args": ["--reverse-prompt", "User:"],
          "prompt_marker": "\\n> "
        }
      ]
    }
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from .errors import CatalogError, ModelNotFound
from .protocol import ModelDescriptor

logger = logging.getLogger(__name__)


class CatalogEntry(BaseModel):
    """One model entry in the manifest."""

    name: str = Field(..., min_length=1, description="Unique model name")
    executable: str = Field(..., min_length=1, description="Path to the inference binary")
    model: str = Field(..., min_length=1, description="Path to the model file")
    args: List[str] = Field(default_factory=list, description="Extra arguments, in order")
    threads: Optional[int] = Field(None, ge=1, description="Thread count override")
    prompt_marker: Optional[str] = Field(None, min_length=1, description="End-of-response marker")
    submit_sentinel: str = Field("\n", min_length=1, description="Written after every query")
    idle_timeout_ms: Optional[int] = Field(None, ge=1, description="Idle framing override")
    multiline: bool = Field(False, description="Run the binary in multiline input mode")


class CatalogManifest(BaseModel):
    """Top-level manifest document."""

    default_threads: Optional[int] = Field(None, ge=1)
    models: List[CatalogEntry] = Field(default_factory=list)


def _expand(path: str) -> str:
    return os.path.expandvars(os.path.expanduser(path))


class ModelCatalog:
    """Immutable name -> ModelDescriptor lookup."""

    def __init__(
        self,
        descriptors: List[ModelDescriptor],
        default_threads: Optional[int] = None,
    ) -> None:
        entries: Dict[str, ModelDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.name in entries:
                raise CatalogError(f"Duplicate model name in catalog: '{descriptor.name}'")
            entries[descriptor.name] = descriptor
        self._entries = entries
        self.default_threads = default_threads

    @classmethod
    def from_manifest(cls, data: dict) -> "ModelCatalog":
        try:
            manifest = CatalogManifest.model_validate(data)
        except ValidationError as e:
            raise CatalogError(f"Invalid model catalog: {e}") from e

        descriptors = [
            ModelDescriptor(
                name=entry.name,
                executable_path=_expand(entry.executable),
                model_file_path=_expand(entry.model),
                extra_args=tuple(entry.args),
                threads=entry.threads,
                prompt_marker=entry.prompt_marker,
                submit_sentinel=entry.submit_sentinel,
                idle_timeout_ms=entry.idle_timeout_ms,
                multiline=entry.multiline,
            )
            for entry in manifest.models
        ]
        return cls(descriptors, default_threads=manifest.default_threads)

    @classmethod
    def load(cls, path: Path) -> "ModelCatalog":
        """
        Load a catalog from a JSON manifest file.

        Args:
            path: Manifest location

        Returns:
            Loaded catalog

        Raises:
            CatalogError: If the file is missing, unreadable or invalid
        """
        if not path.exists():
            raise CatalogError(f"Model catalog not found at {path}")
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise CatalogError(f"Failed to read model catalog {path}: {e}") from e

        catalog = cls.from_manifest(data)
        logger.info(f"Loaded {len(catalog)} models from catalog {path}")
        return catalog

    def resolve(self, name: str) -> ModelDescriptor:
        descriptor = self._entries.get(name)
        if descriptor is None:
            raise ModelNotFound(name, self.names())
        return descriptor

    def names(self) -> List[str]:
        return sorted(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)
