"""
Replacement pass - apply a job's pending rules to one page of definitions.

For every rule still in INIT or HANDING (paged by ordinal):
1. Mark the rule HANDING
2. Resolve the target descriptor and decode remap directives; failure here
   marks the rule FAIL and moves on (no automatic retry)
3. Run the mutation engine over each pipeline on the page, then over the
   project's custom templates when the page includes them
4. Write one audit record per attempted definition; persist Mutated results
   as the next version before recording Success
5. Mark the rule SUCCESS when the page is final

One bad definition never aborts the rule or the pass. Anything raised
outside of those per-definition boundaries (job store errors, audit write
failures) propagates to the orchestrator.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from compswap.errors import PermanentError, TransientError
from compswap.mutation import Failed, Mutated, MutationResult, Skipped, substitute
from compswap.schemas import (
    ComponentDescriptor,
    Definition,
    EntityKind,
    MigrationRecord,
    ParamRemap,
    PENDING_STATUSES,
    ReplacementJob,
    ReplacementRule,
    TaskStatus,
)
from compswap.scope import ScopePage
from compswap.stores.base import (
    AuditMirror,
    DefinitionStore,
    JobStore,
    RegistryClient,
    TemplateStore,
)

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100

# Descriptor lookup and remap decoding failures are rule-fatal; anything else escapes the pass
_RULE_FATAL_ERRORS = (PermanentError, TransientError)


@dataclass
class PassStats:
    """Counters for one replacement pass (or several, when merged)."""
    rules_processed: int = 0
    rules_failed: int = 0
    rules_completed: int = 0
    mutated: int = 0
    failed: int = 0
    skipped: int = 0

    def merge(self, other: "PassStats") -> None:
        self.rules_processed += other.rules_processed
        self.rules_failed += other.rules_failed
        self.rules_completed += other.rules_completed
        self.mutated += other.mutated
        self.failed += other.failed
        self.skipped += other.skipped

    def to_dict(self) -> dict[str, int]:
        return {
            "rules_processed": self.rules_processed,
            "rules_failed": self.rules_failed,
            "rules_completed": self.rules_completed,
            "mutated": self.mutated,
            "failed": self.failed,
            "skipped": self.skipped,
        }


class AuditTrail:
    """
    Writes migration records to the job store and forwards them to mirrors.

    The job store write is the durable record and its errors propagate. A
    mirror that fails is logged and otherwise ignored.
    """

    def __init__(self, job_store: JobStore, mirrors: Sequence[AuditMirror] = ()):
        self._job_store = job_store
        self._mirrors = list(mirrors)

    def write(self, record: MigrationRecord) -> None:
        self._job_store.add_migration_record(record)
        for mirror in self._mirrors:
            try:
                mirror.publish(record)
            except Exception as e:
                logger.warning(
                    f"Audit mirror {type(mirror).__name__} failed for record {record.record_id}: {e}",
                    exc_info=True,
                )

    def success(
        self,
        rule: ReplacementRule,
        *,
        entity_id: str,
        entity_kind: EntityKind,
        project_id: Optional[str],
        source_version: int,
        target_version: int,
        actor: str,
    ) -> MigrationRecord:
        record = MigrationRecord(
            record_id=str(uuid.uuid4()),
            job_id=rule.job_id,
            rule_id=rule.rule_id,
            project_id=project_id,
            entity_id=entity_id,
            entity_kind=entity_kind,
            source_version=source_version,
            target_version=target_version,
            status=TaskStatus.SUCCESS,
            actor=actor,
        )
        self.write(record)
        return record

    def fail(
        self,
        rule: ReplacementRule,
        *,
        entity_id: str,
        entity_kind: EntityKind,
        project_id: Optional[str],
        source_version: int,
        error: str,
        actor: str,
    ) -> MigrationRecord:
        record = MigrationRecord(
            record_id=str(uuid.uuid4()),
            job_id=rule.job_id,
            rule_id=rule.rule_id,
            project_id=project_id,
            entity_id=entity_id,
            entity_kind=entity_kind,
            source_version=source_version,
            status=TaskStatus.FAIL,
            error=error,
            actor=actor,
        )
        self.write(record)
        return record


class ReplacementPass:
    """Runs every pending rule of a job against one scope page."""

    def __init__(
        self,
        job_store: JobStore,
        definitions: DefinitionStore,
        templates: TemplateStore,
        registry: RegistryClient,
        audit: Optional[AuditTrail] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        modifier: str = "compswap",
    ):
        self._job_store = job_store
        self._definitions = definitions
        self._templates = templates
        self._registry = registry
        self._audit = audit or AuditTrail(job_store)
        self._page_size = page_size
        self._modifier = modifier

    def run(self, job: ReplacementJob, page: ScopePage) -> PassStats:
        """
        Apply all pending rules of job to the definitions on page.

        Args:
            job: Job being processed (its creator is the actor for changes)
            page: Definitions to process and whether this page is final

        Returns:
            PassStats for this page
        """
        stats = PassStats()
        after_ordinal: Optional[int] = None
        while True:
            rules = self._job_store.list_rules(
                job.job_id,
                statuses=PENDING_STATUSES,
                after_ordinal=after_ordinal,
                limit=self._page_size,
            )
            for rule in rules:
                self._run_rule(job, rule, page, stats)
            if len(rules) < self._page_size:
                break
            after_ordinal = rules[-1].ordinal

        logger.info(
            f"Job {job.job_id} page project={page.project_id} final={page.final}: "
            f"{stats.rules_processed} rule(s), {stats.mutated} mutated, "
            f"{stats.failed} failed, {stats.skipped} skipped"
        )
        return stats

    def _run_rule(self, job: ReplacementJob, rule: ReplacementRule, page: ScopePage, stats: PassStats) -> None:
        stats.rules_processed += 1
        self._job_store.update_rule_status(rule.rule_id, TaskStatus.HANDING, self._modifier)

        try:
            descriptor = self._registry.get_component_descriptor(rule.target_code, rule.target_version)
            remaps = rule.remaps()
        except _RULE_FATAL_ERRORS as e:
            logger.error(
                f"Rule {rule.rule_id} ({rule.describe()}) failed: {e}",
                extra={"job_id": rule.job_id, "rule_id": rule.rule_id},
            )
            self._job_store.update_rule_status(rule.rule_id, TaskStatus.FAIL, self._modifier)
            stats.rules_failed += 1
            return

        logger.debug(f"Applying rule {rule.rule_id}: {rule.describe()}")
        self._run_pipelines(job, rule, descriptor, remaps, page, stats)
        if page.include_templates and page.project_id is not None:
            self._run_templates(job, rule, descriptor, remaps, page.project_id, stats)

        if page.final:
            self._job_store.update_rule_status(rule.rule_id, TaskStatus.SUCCESS, self._modifier)
            stats.rules_completed += 1

    def _run_pipelines(
        self,
        job: ReplacementJob,
        rule: ReplacementRule,
        descriptor: ComponentDescriptor,
        remaps: Sequence[ParamRemap],
        page: ScopePage,
        stats: PassStats,
    ) -> None:
        pipeline_ids = sorted(page.pipeline_ids)
        for start in range(0, len(pipeline_ids), self._page_size):
            chunk = pipeline_ids[start:start + self._page_size]
            for stored in self._definitions.load_latest(chunk):
                self._apply(
                    job,
                    rule,
                    descriptor,
                    remaps,
                    entity_id=stored.pipeline_id,
                    entity_kind=EntityKind.PIPELINE,
                    project_id=stored.project_id or page.project_id,
                    source_version=stored.version,
                    load=stored.decode,
                    persist=lambda d, pid=stored.pipeline_id: self._definitions.persist_new_version(
                        pid, d, job.creator
                    ),
                    stats=stats,
                )

    def _run_templates(
        self,
        job: ReplacementJob,
        rule: ReplacementRule,
        descriptor: ComponentDescriptor,
        remaps: Sequence[ParamRemap],
        project_id: str,
        stats: PassStats,
    ) -> None:
        offset = 0
        while True:
            templates = self._templates.list_templates(project_id, offset=offset, limit=self._page_size)
            for stored in templates:
                self._apply(
                    job,
                    rule,
                    descriptor,
                    remaps,
                    entity_id=stored.template_id,
                    entity_kind=EntityKind.TEMPLATE,
                    project_id=project_id,
                    source_version=stored.version,
                    load=stored.decode,
                    persist=lambda d, tid=stored.template_id: self._templates.update_template(
                        project_id, tid, d, job.creator
                    ),
                    stats=stats,
                )
            if len(templates) < self._page_size:
                break
            offset += self._page_size

    def _apply(
        self,
        job: ReplacementJob,
        rule: ReplacementRule,
        descriptor: ComponentDescriptor,
        remaps: Sequence[ParamRemap],
        *,
        entity_id: str,
        entity_kind: EntityKind,
        project_id: Optional[str],
        source_version: int,
        load: Callable[[], Definition],
        persist: Callable[[Definition], int],
        stats: PassStats,
    ) -> None:
        actor = job.creator
        result: MutationResult
        try:
            definition = load()
        except Exception as e:
            logger.error(f"Cannot decode {entity_kind.value} {entity_id} v{source_version}: {e}")
            result = Failed(reason=f"unreadable definition: {e}", error=e)
        else:
            try:
                result = substitute(
                    definition,
                    rule,
                    descriptor,
                    project_id=project_id,
                    actor=actor,
                    installer=self._registry.install_component,
                    remaps=remaps,
                    entity_id=entity_id,
                )
            except Exception as e:
                logger.exception(f"Unexpected error substituting {entity_kind.value} {entity_id}")
                result = Failed(reason=f"{type(e).__name__}: {e}", error=e)

        if isinstance(result, Skipped):
            stats.skipped += 1
            return

        audit_fields = dict(
            entity_id=entity_id,
            entity_kind=entity_kind,
            project_id=project_id,
            source_version=source_version,
            actor=actor,
        )

        if isinstance(result, Failed):
            stats.failed += 1
            self._audit.fail(rule, error=result.reason, **audit_fields)
            return

        assert isinstance(result, Mutated)
        try:
            new_version = persist(result.definition)
        except Exception as e:
            logger.error(f"Failed to persist {entity_kind.value} {entity_id}: {e}", exc_info=True)
            stats.failed += 1
            self._audit.fail(rule, error=f"persist failed: {e}", **audit_fields)
            return

        stats.mutated += 1
        logger.info(
            f"{entity_kind.value} {entity_id}: replaced {result.replaced_count} element(s) "
            f"{rule.source_code} -> {rule.target_code}, v{source_version} -> v{new_version}"
        )
        self._audit.success(rule, target_version=new_version, **audit_fields)
