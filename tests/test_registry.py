"""Tests for compswap.registry.

Tests descriptor lookup by code/version, file formats, and install grants.
"""

import json
from pathlib import Path

import pytest
import yaml

from compswap.errors import ComponentNotFoundError, PermanentError
from compswap.registry import FileComponentRegistry
from compswap.schemas import ExecutionKind


@pytest.fixture
def catalog(tmp_path):
    """Create a temporary catalog directory."""
    return tmp_path / "catalog"


def _write_yaml(path: Path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.dump(data, f, sort_keys=False)


class TestDescriptorLookup:
    """Tests for get_component_descriptor."""

    def test_yaml_descriptor(self, catalog):
        _write_yaml(catalog / "file-copy" / "2.yaml", {
            "name": "File copy",
            "input": {"path": {"type": "string"}, "mode": {"type": "string"}},
            "output": {"copied": {"type": "int"}},
            "execution_kind": "agentless",
        })
        registry = FileComponentRegistry(catalog)

        descriptor = registry.get_component_descriptor("file-copy", "2")

        assert descriptor.code == "file-copy"
        assert descriptor.version == "2"
        assert descriptor.name == "File copy"
        assert descriptor.input_param_names == ("path", "mode")
        assert descriptor.output_schema == {"copied": {"type": "int"}}
        assert descriptor.execution_kind == ExecutionKind.AGENTLESS

    def test_json_descriptor(self, catalog):
        path = catalog / "shell" / "3.json"
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"input": ["script"]}))

        descriptor = FileComponentRegistry(catalog).get_component_descriptor("shell", "3")

        assert descriptor.input_param_names == ("script",)
        assert descriptor.name == "shell"
        assert descriptor.execution_kind == ExecutionKind.AGENT

    def test_missing_version(self, catalog):
        _write_yaml(catalog / "shell" / "3.yaml", {"input": []})

        with pytest.raises(ComponentNotFoundError):
            FileComponentRegistry(catalog).get_component_descriptor("shell", "4")

    def test_missing_component(self, catalog):
        with pytest.raises(ComponentNotFoundError):
            FileComponentRegistry(catalog).get_component_descriptor("nope", "1")

    def test_mismatched_descriptor(self, catalog):
        _write_yaml(catalog / "shell" / "3.yaml", {"code": "other", "version": "3"})

        with pytest.raises(PermanentError, match="declares other@3"):
            FileComponentRegistry(catalog).get_component_descriptor("shell", "3")

    def test_invalid_descriptor(self, catalog):
        _write_yaml(catalog / "shell" / "3.yaml", ["not", "a", "mapping"])

        with pytest.raises(PermanentError, match="Invalid descriptor"):
            FileComponentRegistry(catalog).get_component_descriptor("shell", "3")

    def test_unknown_execution_kind(self, catalog):
        _write_yaml(catalog / "shell" / "3.yaml", {"execution_kind": "cloud"})

        with pytest.raises(PermanentError):
            FileComponentRegistry(catalog).get_component_descriptor("shell", "3")

    def test_not_cached(self, catalog):
        path = catalog / "shell" / "3.yaml"
        _write_yaml(path, {"input": ["a"]})
        registry = FileComponentRegistry(catalog)
        registry.get_component_descriptor("shell", "3")

        _write_yaml(path, {"input": ["a", "b"]})

        assert registry.get_component_descriptor("shell", "3").input_param_names == ("a", "b")


class TestInstallGrants:
    """Tests for install_component."""

    def test_no_install_file(self, catalog):
        _write_yaml(catalog / "shell" / "3.yaml", {})
        assert FileComponentRegistry(catalog).install_component("alice", ["p1"], "shell") is False

    def test_granted_to_all(self, catalog):
        _write_yaml(catalog / "shell" / "install.yaml", {"all": True})
        assert FileComponentRegistry(catalog).install_component("alice", ["p1", "p2"], "shell") is True

    def test_granted_to_listed_projects(self, catalog):
        _write_yaml(catalog / "shell" / "install.yaml", {"projects": ["p1", "p2"]})
        registry = FileComponentRegistry(catalog)

        assert registry.install_component("alice", ["p1"], "shell") is True
        assert registry.install_component("alice", ["p1", "p3"], "shell") is False

    def test_no_projects_requested_with_project_grants(self, catalog):
        _write_yaml(catalog / "shell" / "install.yaml", {"projects": ["p1"]})
        assert FileComponentRegistry(catalog).install_component("alice", [], "shell") is False

    def test_no_projects_requested_with_global_grant(self, catalog):
        _write_yaml(catalog / "shell" / "install.yaml", {"all": True})
        assert FileComponentRegistry(catalog).install_component("alice", [], "shell") is True
