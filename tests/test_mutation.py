"""Tests for the mutation engine.

Tests cover:
- Parameter resolution precedence
- Successful substitution keeps execution metadata and sibling order
- All-or-nothing behavior on parameter mapping errors
- Install check and unsupported element kinds
- The input definition is never modified
"""

import json
from unittest.mock import MagicMock

import pytest

from compswap.errors import RemapDecodeError
from compswap.mutation import (
    Failed,
    Mutated,
    Skipped,
    build_replacement_element,
    resolve_parameters,
    substitute,
)
from compswap.schemas import (
    AgentlessComponentElement,
    BuiltinElement,
    ComponentDescriptor,
    ComponentElement,
    ExecutionKind,
    ExecutionMetadata,
    OpaqueElement,
    ParamRemap,
    ReplacementRule,
)
from compswap.stores.memory import InMemoryComponentRegistry


def _rule(remap=None, source="A", target="B"):
    return ReplacementRule(
        rule_id="r1",
        job_id="j1",
        source_code=source,
        source_version="1",
        target_code=target,
        target_version="2",
        param_remap_info=json.dumps(remap) if remap is not None else None,
    )


def _allow_all(actor, projects, code):
    return True


class TestResolveParameters:
    """Tests for resolve_parameters precedence."""

    def test_same_named_inputs_carried_over(self):
        resolved = resolve_parameters(["path", "mode"], {"path": "/x", "mode": "fast", "other": 1})
        assert resolved == {"path": "/x", "mode": "fast"}

    def test_rename_directive(self):
        remaps = [ParamRemap(target_param="path", source_param="srcPath")]
        resolved = resolve_parameters(["path"], {"srcPath": "/x", "path": "/ignored"}, remaps)
        assert resolved == {"path": "/x"}

    def test_literal_override_wins_over_source(self):
        remaps = [ParamRemap(target_param="mode", source_param="speed", value="slow")]
        resolved = resolve_parameters(["mode"], {"speed": "fast", "mode": "fast"}, remaps)
        assert resolved == {"mode": "slow"}

    def test_directive_to_missing_source_falls_back_to_same_name(self):
        remaps = [ParamRemap(target_param="path", source_param="missing")]
        resolved = resolve_parameters(["path"], {"path": "/same"}, remaps)
        assert resolved == {"path": "/same"}

    def test_none_values_are_unresolved(self):
        resolved = resolve_parameters(["path", "mode"], {"path": None, "mode": "fast"})
        assert resolved == {"mode": "fast"}

    def test_first_directive_for_a_parameter_wins(self):
        remaps = [
            ParamRemap(target_param="path", value="/first"),
            ParamRemap(target_param="path", value="/second"),
        ]
        assert resolve_parameters(["path"], {}, remaps) == {"path": "/first"}

    def test_falsy_literal_is_a_value(self):
        remaps = [ParamRemap(target_param="retries", value=0)]
        assert resolve_parameters(["retries"], {}, remaps) == {"retries": 0}


class TestSubstitute:
    """Tests for substitute()."""

    def test_rename_example(self, make_element, make_definition, descriptor_b):
        """A@1 {srcPath, mode} -> B@2 {path, mode} with a rename directive."""
        meta = dict(status="SUCCEED", can_retry=True, elapsed=1200, start_epoch=1700000000,
                    template_modify=False, additional_options={"timeout": 30},
                    error_type="NONE", error_code=0, error_msg="", execute_count=3)
        source = make_element("A", {"srcPath": "/x", "mode": "fast"}, element_id="e-1", namespace="ns", **meta)
        definition = make_definition(source)
        rule = _rule([{"toParamName": "path", "fromParamName": "srcPath"}])

        result = substitute(definition, rule, descriptor_b, project_id="p1", actor="alice", installer=_allow_all)

        assert isinstance(result, Mutated)
        assert result.replaced_count == 1
        new = result.definition.stages[0].containers[0].elements[0]
        assert isinstance(new, ComponentElement)
        assert new.component_code == "B"
        assert new.version == "2"
        assert new.name == "B step"
        assert new.get_inputs() == {"path": "/x", "mode": "fast"}
        assert new.get_namespace() == "ns"
        assert new.data["output"] == {"result": {"type": "string"}}
        assert new.meta == source.meta
        assert new.element_id == "e-1"

    def test_missing_target_parameter_aborts(self, make_element, make_definition):
        """B@2 declaring an unresolvable 'extra' fails the whole definition."""
        descriptor = ComponentDescriptor(code="B", name="B", version="2", input_param_names=("path", "mode", "extra"))
        definition = make_definition(make_element("A", {"srcPath": "/x", "mode": "fast"}))
        rule = _rule([{"toParamName": "path", "fromParamName": "srcPath"}])

        result = substitute(definition, rule, descriptor, project_id="p1", actor="alice", installer=_allow_all)

        assert isinstance(result, Failed)
        assert "parameter mapping error" in result.reason
        assert "extra" in result.reason

    def test_partial_failure_changes_nothing(self, make_element, make_definition):
        """Second matching element fails, so the first is not replaced either."""
        descriptor = ComponentDescriptor(code="B", name="B", version="2", input_param_names=("path",))
        definition = make_definition(
            make_element("A", {"path": "/ok"}, element_id="e-1"),
            make_element("A", {}, element_id="e-2"),
        )
        before = definition.to_dict()

        result = substitute(definition, _rule(), descriptor, project_id="p1", actor="alice", installer=_allow_all)

        assert isinstance(result, Failed)
        assert definition.to_dict() == before

    def test_input_definition_is_not_modified(self, make_element, make_definition, descriptor_b):
        definition = make_definition(make_element("A", {"path": "/x", "mode": "m"}))
        before = definition.to_dict()

        result = substitute(definition, _rule(), descriptor_b, project_id="p1", actor="alice", installer=_allow_all)

        assert isinstance(result, Mutated)
        assert definition.to_dict() == before
        assert result.definition is not definition

    def test_no_match_is_skipped(self, make_element, make_definition, descriptor_b):
        installer = MagicMock(return_value=True)
        definition = make_definition(make_element("C", {"path": "/x"}))

        result = substitute(definition, _rule(), descriptor_b, project_id="p1", actor="alice", installer=installer)

        assert result == Skipped()
        installer.assert_not_called()

    def test_sibling_order_and_count(self, make_element, make_definition, descriptor_b):
        installer = MagicMock(return_value=True)
        definition = make_definition(
            make_element("A", {"path": "/1", "mode": "a"}, element_id="e-1"),
            make_element("C", {}, element_id="e-2"),
            make_element("A", {"path": "/3", "mode": "b"}, element_id="e-3"),
        )

        result = substitute(definition, _rule(), descriptor_b, project_id="p1", actor="alice", installer=installer)

        assert isinstance(result, Mutated)
        assert result.replaced_count == 2
        elements = result.definition.stages[0].containers[0].elements
        assert [e.element_id for e in elements] == ["e-1", "e-2", "e-3"]
        assert [e.component_code for e in elements] == ["B", "C", "B"]
        installer.assert_called_once_with("alice", ["p1"], "B")

    def test_component_unavailable(self, make_element, make_definition, descriptor_b):
        definition = make_definition(make_element("A", {"path": "/x", "mode": "m"}))

        result = substitute(
            definition, _rule(), descriptor_b,
            project_id="p1", actor="alice", installer=lambda actor, projects, code: False,
        )

        assert isinstance(result, Failed)
        assert "not available" in result.reason

    def test_ownerless_definition_needs_global_grant(self, make_element, make_definition, descriptor_b):
        registry = InMemoryComponentRegistry()
        registry.grant("B", ["p1"])
        definition = make_definition(make_element("A", {"path": "/x", "mode": "m"}))

        result = substitute(
            definition, _rule(), descriptor_b,
            project_id=None, actor="alice", installer=registry.install_component,
        )

        assert isinstance(result, Failed)
        assert "not available" in result.reason
        assert registry.install_calls == [("alice", (), "B")]

    def test_ownerless_definition_with_global_grant(self, make_element, make_definition, descriptor_b):
        registry = InMemoryComponentRegistry()
        registry.grant("B")
        definition = make_definition(make_element("A", {"path": "/x", "mode": "m"}))

        result = substitute(
            definition, _rule(), descriptor_b,
            project_id=None, actor="alice", installer=registry.install_component,
        )

        assert isinstance(result, Mutated)

    def test_opaque_element_fails_with_its_kind(self, make_definition, descriptor_b):
        opaque = OpaqueElement(
            name="legacy",
            component_code="A",
            meta=ExecutionMetadata(element_id="e-9"),
            raw={"@type": "linuxScript", "componentCode": "A", "id": "e-9"},
        )
        result = substitute(
            make_definition(opaque), _rule(), descriptor_b,
            project_id="p1", actor="alice", installer=_allow_all,
        )

        assert isinstance(result, Failed)
        assert "linuxScript" in result.reason

    def test_builtin_source_element(self, make_definition, descriptor_b):
        builtin = BuiltinElement(
            name="copy",
            component_code="A",
            meta=ExecutionMetadata(element_id="e-5"),
            params={"path": "/b", "mode": "quick"},
            namespace="build",
        )
        result = substitute(
            make_definition(builtin), _rule(), descriptor_b,
            project_id="p1", actor="alice", installer=_allow_all,
        )

        assert isinstance(result, Mutated)
        new = result.definition.stages[0].containers[0].elements[0]
        assert new.get_inputs() == {"path": "/b", "mode": "quick"}
        assert new.get_namespace() == "build"
        assert new.element_id == "e-5"

    def test_bad_remaps_decoded_from_rule(self, make_element, make_definition, descriptor_b):
        rule = _rule()
        rule.param_remap_info = "not json"

        with pytest.raises(RemapDecodeError):
            substitute(
                make_definition(make_element("A", {})), rule, descriptor_b,
                project_id="p1", actor="alice", installer=_allow_all,
            )


class TestBuildReplacementElement:
    """Tests for build_replacement_element."""

    def test_agentless_descriptor(self, make_element):
        descriptor = ComponentDescriptor(
            code="B", name="B", version="2", input_param_names=("path",),
            execution_kind=ExecutionKind.AGENTLESS,
        )
        source = make_element("A", {"path": "/x"})
        new = build_replacement_element(descriptor, source, {"path": "/x"}, None)

        assert isinstance(new, AgentlessComponentElement)
        assert "namespace" not in new.data
        assert "output" not in new.data
        assert new.meta is source.meta
