"""
Scope iterator - resolve which definitions a job touches, page by page.

Bounded scopes (explicit pipeline set, single project) resolve to one final
page per tick. The all-projects scope walks project primary keys in fixed
windows, one window per tick:

    cursor = checkpoint or (lowest project key - 1)
    window = (cursor, cursor + page_size]
    final  = window upper bound >= highest project key seen at sweep start

Each project in the window becomes its own sub-page. Only the last sub-page
of a final window is flagged final, so rules finish after every project in
that window has been processed. The iterator reads the checkpoint but never
writes it; the orchestrator persists sweep.outcome once the window has been
fully consumed.
"""

import logging
from dataclasses import dataclass
from typing import Iterator, Optional

from compswap.schemas import ReplacementJob, ScopeKind
from compswap.stores.base import CheckpointStore, ProjectDirectory

logger = logging.getLogger(__name__)

CURSOR_KEY_PREFIX = "compswap:replace:cursor"

DEFAULT_PAGE_SIZE = 100


def cursor_key(job_id: str) -> str:
    """Checkpoint key holding a job's all-projects cursor."""
    return f"{CURSOR_KEY_PREFIX}:{job_id}"


@dataclass(frozen=True)
class ScopePage:
    """
    One page of target definitions.

    Attributes:
        pipeline_ids: Pipelines to process on this page
        final: True when this page completes the job's scope
        project_id: Owning project when the page is project-bound
        include_templates: Also process the project's custom templates
    """
    pipeline_ids: frozenset[str]
    final: bool
    project_id: Optional[str] = None
    include_templates: bool = False


@dataclass(frozen=True)
class ScopeOutcome:
    """What the orchestrator should do with the checkpoint after a sweep."""
    complete: bool
    next_cursor: Optional[int] = None


class ScopeSweep:
    """
    Iterable over one tick's pages for a job.

    outcome is available once iteration has finished.
    """

    def __init__(self, pages: Iterator[ScopePage], holder: dict):
        self._pages = pages
        self._holder = holder

    def __iter__(self) -> Iterator[ScopePage]:
        return self._pages

    @property
    def outcome(self) -> ScopeOutcome:
        if "outcome" not in self._holder:
            raise RuntimeError("Sweep outcome requested before all pages were consumed")
        return self._holder["outcome"]


class ScopeIterator:
    """Produces pages of target definitions for a job's scope."""

    def __init__(
        self,
        directory: ProjectDirectory,
        checkpoints: CheckpointStore,
        page_size: int = DEFAULT_PAGE_SIZE,
    ):
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        self._directory = directory
        self._checkpoints = checkpoints
        self._page_size = page_size

    def sweep(self, job: ReplacementJob) -> ScopeSweep:
        holder: dict = {}
        scope = job.scope
        if scope.kind == ScopeKind.PIPELINES:
            pages = self._explicit_pages(job, holder)
        elif scope.kind == ScopeKind.PROJECT:
            pages = self._project_pages(job, holder)
        else:
            pages = self._all_project_pages(job, holder)
        return ScopeSweep(pages, holder)

    def _explicit_pages(self, job: ReplacementJob, holder: dict) -> Iterator[ScopePage]:
        yield ScopePage(pipeline_ids=frozenset(job.scope.pipeline_ids), final=True)
        holder["outcome"] = ScopeOutcome(complete=True)

    def _project_pages(self, job: ReplacementJob, holder: dict) -> Iterator[ScopePage]:
        project_id = job.scope.project_id
        pipeline_ids = self._directory.list_pipeline_ids(project_id)
        if not pipeline_ids:
            logger.info(f"Project {project_id} has no pipelines")
        yield ScopePage(
            pipeline_ids=frozenset(pipeline_ids),
            final=True,
            project_id=project_id,
            include_templates=True,
        )
        holder["outcome"] = ScopeOutcome(complete=True)

    def _all_project_pages(self, job: ReplacementJob, holder: dict) -> Iterator[ScopePage]:
        stored = self._checkpoints.get(cursor_key(job.job_id))
        if stored is not None:
            cursor = int(stored)
        else:
            lowest = self._directory.min_key()
            if lowest is None:
                logger.info(f"Job {job.job_id}: no projects to sweep")
                yield ScopePage(pipeline_ids=frozenset(), final=True)
                holder["outcome"] = ScopeOutcome(complete=True)
                return
            cursor = lowest - 1

        snapshot_max = self._directory.max_key()
        upper = cursor + self._page_size
        window_final = snapshot_max is None or upper >= snapshot_max
        projects = self._directory.list_projects_by_key_range(cursor + 1, upper)
        logger.info(
            f"Job {job.job_id}: project window ({cursor}, {upper}] of max {snapshot_max}, "
            f"{len(projects)} project(s), final={window_final}"
        )

        for index, project in enumerate(projects):
            pipeline_ids = self._directory.list_pipeline_ids(project.project_id)
            if not pipeline_ids:
                logger.debug(f"Project {project.project_id} has no pipelines")
            yield ScopePage(
                pipeline_ids=frozenset(pipeline_ids),
                final=window_final and index == len(projects) - 1,
                project_id=project.project_id,
                include_templates=True,
            )

        if window_final and not projects:
            yield ScopePage(pipeline_ids=frozenset(), final=True)

        if window_final:
            holder["outcome"] = ScopeOutcome(complete=True)
        else:
            holder["outcome"] = ScopeOutcome(complete=False, next_cursor=upper)
