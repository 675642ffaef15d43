"""Tests for compswap.schemas module.

Tests the ReplacementJob -> ReplacementRule -> MigrationRecord lifecycle,
remap directive decoding, and the definition model.
"""

import json

import pytest

from compswap.errors import DefinitionFormatError, RemapDecodeError
from compswap.schemas import (
    BuiltinElement,
    ComponentDescriptor,
    ComponentElement,
    Definition,
    EntityKind,
    ExecutionKind,
    HasParameterPayload,
    JobScope,
    MigrationRecord,
    OpaqueElement,
    ParamRemap,
    ReplacementJob,
    ReplacementRule,
    ScopeKind,
    TaskStatus,
    can_transition,
    decode_param_remaps,
    element_from_dict,
    truncate_error,
)


class TestTaskStatus:
    """Status only ever moves forward."""

    @pytest.mark.parametrize("old, new", [
        (TaskStatus.INIT, TaskStatus.HANDING),
        (TaskStatus.INIT, TaskStatus.FAIL),
        (TaskStatus.HANDING, TaskStatus.SUCCESS),
        (TaskStatus.HANDING, TaskStatus.HANDING),
    ])
    def test_allowed(self, old, new):
        assert can_transition(old, new)

    @pytest.mark.parametrize("old, new", [
        (TaskStatus.HANDING, TaskStatus.INIT),
        (TaskStatus.SUCCESS, TaskStatus.HANDING),
        (TaskStatus.SUCCESS, TaskStatus.FAIL),
        (TaskStatus.FAIL, TaskStatus.SUCCESS),
    ])
    def test_refused(self, old, new):
        assert not can_transition(old, new)

    def test_pending_and_terminal(self):
        assert TaskStatus.INIT.is_pending and TaskStatus.HANDING.is_pending
        assert TaskStatus.SUCCESS.is_terminal and TaskStatus.FAIL.is_terminal
        assert not TaskStatus.FAIL.is_pending


class TestJobScope:
    """Scope derivation from a job's two nullable columns."""

    def test_pipeline_ids_win(self):
        scope = JobScope.from_fields('["p2", "p1"]', "proj-1")
        assert scope.kind == ScopeKind.PIPELINES
        assert scope.pipeline_ids == frozenset({"p1", "p2"})

    def test_project(self):
        assert JobScope.from_fields("  ", "proj-1") == JobScope.project("proj-1")

    def test_blank_means_all_projects(self):
        assert JobScope.from_fields(None, "") == JobScope.all_projects()

    def test_to_fields(self):
        assert JobScope.pipelines(["p2", "p1"]).to_fields() == ('["p1", "p2"]', None)
        assert JobScope.project("proj-1").to_fields() == (None, "proj-1")
        assert JobScope.all_projects().to_fields() == (None, None)

    def test_pipeline_info_must_be_array(self):
        with pytest.raises(ValueError):
            JobScope.from_fields('{"id": "p1"}', None)

    def test_empty_pipeline_scope_rejected(self):
        with pytest.raises(ValueError):
            JobScope.pipelines([])

    def test_job_round_trip(self):
        job = ReplacementJob(job_id="job-1", scope=JobScope.project("proj-1"), creator="alice")
        restored = ReplacementJob.from_dict(job.to_dict())
        assert restored == job


class TestParamRemap:
    """Decoding remap directives."""

    def test_decode_json(self):
        remaps = decode_param_remaps(json.dumps([
            {"toParamName": "path", "fromParamName": "srcPath"},
            {"toParamName": "retries", "toParamValue": 3},
        ]))
        assert remaps == (
            ParamRemap(target_param="path", source_param="srcPath"),
            ParamRemap(target_param="retries", value=3),
        )
        assert remaps[1].is_override
        assert not remaps[0].is_override

    @pytest.mark.parametrize("raw", [None, "", "  ", "null", []])
    def test_absent(self, raw):
        assert decode_param_remaps(raw) == ()

    @pytest.mark.parametrize("raw", [
        "not json",
        '{"toParamName": "x"}',
        '[{"fromParamName": "x"}]',
        '[{"toParamName": "x"}]',
        '["x"]',
    ])
    def test_malformed(self, raw):
        with pytest.raises(RemapDecodeError):
            decode_param_remaps(raw)

    def test_to_dict_uses_directive_keys(self):
        remap = ParamRemap(target_param="mode", source_param="speed", value="slow")
        assert remap.to_dict() == {"toParamName": "mode", "fromParamName": "speed", "toParamValue": "slow"}

    def test_rule_remaps(self):
        rule = ReplacementRule(
            rule_id="r1", job_id="j1", source_code="A", source_version="1",
            target_code="B", target_version="2",
            param_remap_info='[{"toParamName": "path", "fromParamName": "srcPath"}]',
        )
        assert rule.remaps()[0].source_param == "srcPath"
        assert rule.describe() == "A@1 -> B@2"


class TestMigrationRecord:
    """Audit record invariants."""

    def _record(self, **overrides):
        fields = dict(
            record_id="rec-1", job_id="job-1", rule_id="r1", entity_id="pipe-1",
            entity_kind=EntityKind.PIPELINE, source_version=1, status=TaskStatus.FAIL, actor="alice",
        )
        fields.update(overrides)
        return MigrationRecord(**fields)

    def test_error_truncated(self):
        record = self._record(error="e" * 200)
        assert len(record.error) == 127

    def test_truncate_error(self):
        assert truncate_error(None) is None
        assert truncate_error("short") == "short"
        assert truncate_error("x" * 128) == "x" * 127

    def test_success_needs_target_version(self):
        with pytest.raises(ValueError):
            self._record(status=TaskStatus.SUCCESS)

    def test_status_must_be_terminal(self):
        with pytest.raises(ValueError):
            self._record(status=TaskStatus.HANDING)

    def test_round_trip(self):
        record = self._record(status=TaskStatus.SUCCESS, target_version=2, project_id="proj-1")
        assert MigrationRecord.from_dict(record.to_dict()) == record


class TestDefinitionModel:
    """Element parsing and serialization."""

    def test_component_element(self):
        element = element_from_dict({
            "@type": "component",
            "name": "copy",
            "componentCode": "A",
            "version": 1,
            "data": {"input": {"path": "/x"}, "namespace": "ns"},
            "id": "e-1",
            "executeCount": 2,
            "canRetry": True,
        })
        assert isinstance(element, ComponentElement)
        assert isinstance(element, HasParameterPayload)
        assert element.version == "1"
        assert element.get_inputs() == {"path": "/x"}
        assert element.get_namespace() == "ns"
        assert element.element_id == "e-1"
        assert element.meta.execute_count == 2
        assert element.meta.can_retry is True

    def test_builtin_element(self):
        element = element_from_dict({"@type": "builtin", "componentCode": "A", "params": {"a": 1}})
        assert isinstance(element, BuiltinElement)
        assert element.get_inputs() == {"a": 1}
        assert element.get_namespace() is None

    def test_unknown_type_is_opaque(self):
        raw = {"@type": "linuxScript", "componentCode": "A", "script": "echo hi", "id": "e-3"}
        element = element_from_dict(raw)
        assert isinstance(element, OpaqueElement)
        assert not isinstance(element, HasParameterPayload)
        assert element.kind == "linuxScript"
        assert element.to_dict() == raw

    def test_missing_type(self):
        with pytest.raises(DefinitionFormatError):
            element_from_dict({"componentCode": "A"})

    def test_definition_round_trip(self, make_definition, make_element):
        definition = make_definition(make_element("A", {"path": "/x"}, namespace="ns", status="SUCCEED"))
        body = definition.to_dict()
        assert Definition.from_dict(body).to_dict() == body

    def test_iter_elements_order(self, make_definition, make_element):
        definition = make_definition(make_element("A", element_id="e-1"), make_element("B", element_id="e-2"))
        assert [e.element_id for e in definition.iter_elements()] == ["e-1", "e-2"]

    def test_definition_must_be_object(self):
        with pytest.raises(DefinitionFormatError):
            Definition.from_dict(["not", "a", "definition"])


class TestComponentDescriptor:
    def test_from_mapping_inputs(self):
        descriptor = ComponentDescriptor.from_dict({
            "code": "B", "version": 2, "input": {"path": {}, "mode": {}}, "job_type": "agentless",
        })
        assert descriptor.version == "2"
        assert descriptor.name == "B"
        assert descriptor.input_param_names == ("path", "mode")
        assert descriptor.execution_kind == ExecutionKind.AGENTLESS

    def test_round_trip(self, descriptor_b):
        assert ComponentDescriptor.from_dict(descriptor_b.to_dict()) == descriptor_b
