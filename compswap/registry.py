"""
FileComponentRegistry - component descriptors and install grants from disk.

The catalog is a directory tree, one subdirectory per component code:

    catalog/
        file-copy/
            1.yaml          # descriptor for file-copy@1
            2.json          # descriptor for file-copy@2
            install.yaml    # which projects may use file-copy
        shell-exec/
            3.yaml

Descriptor files hold the registry payload accepted by
ComponentDescriptor.from_dict (code and version default to the path).
install.yaml is either `all: true` or `projects: [p1, p2]`; a component
without install.yaml cannot be installed anywhere.

Descriptors are read from disk on every lookup and never cached.
"""

import json
import logging
from pathlib import Path
from typing import Any, Optional, Sequence

import yaml

from compswap.errors import ComponentNotFoundError, PermanentError
from compswap.schemas import ComponentDescriptor

logger = logging.getLogger(__name__)

INSTALL_FILE = "install.yaml"


class FileComponentRegistry:
    """RegistryClient backed by a catalog directory."""

    def __init__(self, catalog_root: Path | str):
        self._root = Path(catalog_root)

    @property
    def catalog_root(self) -> Path:
        return self._root

    def _load_file(self, path: Path) -> Any:
        with open(path) as f:
            if path.suffix.lower() in (".yaml", ".yml"):
                return yaml.safe_load(f)
            return json.load(f)

    def _find_descriptor(self, code: str, version: str) -> Optional[Path]:
        component_dir = self._root / code
        for ext in (".yaml", ".yml", ".json"):
            candidate = component_dir / f"{version}{ext}"
            if candidate.is_file():
                return candidate
        return None

    def get_component_descriptor(self, code: str, version: str) -> ComponentDescriptor:
        path = self._find_descriptor(code, version)
        if path is None:
            raise ComponentNotFoundError(code, version)
        try:
            data = self._load_file(path) or {}
            data.setdefault("code", code)
            data.setdefault("version", version)
            descriptor = ComponentDescriptor.from_dict(data)
        except (OSError, ValueError, KeyError, AttributeError, yaml.YAMLError) as e:
            raise PermanentError(f"Invalid descriptor {path}: {e}") from e

        if descriptor.code != code or descriptor.version != str(version):
            raise PermanentError(
                f"Descriptor {path} declares {descriptor.code}@{descriptor.version}, expected {code}@{version}"
            )
        return descriptor

    def install_component(self, actor: str, projects: Sequence[str], code: str) -> bool:
        path = self._root / code / INSTALL_FILE
        if not path.is_file():
            logger.info(f"{actor}: {code} has no install grants")
            return False
        grants = self._load_file(path) or {}
        if grants.get("all"):
            return True
        if not projects:
            logger.info(f"{actor}: {code} is only granted per project and no project was given")
            return False
        allowed = {str(p) for p in grants.get("projects") or ()}
        missing = [p for p in projects if p not in allowed]
        if missing:
            logger.info(f"{actor}: {code} is not granted to {', '.join(missing)}")
            return False
        return True
