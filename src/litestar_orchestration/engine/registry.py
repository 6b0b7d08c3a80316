"""Workflow registry for publishing and versioning definitions.

Publishing validates a definition, compiles it into a :class:`WorkflowGraph` and
stores it under ``(workflow_id, version)``. Published graphs never change.
"""

from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING

from litestar_orchestration.activities.registry import ExecutorRegistry
from litestar_orchestration.core.models import Page
from litestar_orchestration.engine.graph import WorkflowGraph
from litestar_orchestration.engine.validator import DefinitionValidator, ValidationFinding
from litestar_orchestration.exceptions import WorkflowNotFoundError, WorkflowValidationError

if TYPE_CHECKING:
    from litestar_orchestration.core.definition import WorkflowDefinition
    from litestar_orchestration.dto import DefinitionQuery

__all__ = ["WorkflowRegistry"]

logger = logging.getLogger(__name__)


class WorkflowRegistry:
    """Registry of published workflow graphs.

    The registry maintains a mapping of workflow ids to versions and their compiled
    graphs.

    Attributes:
        executors: Resolves node executors while compiling.
        validator: Validates definitions before they are compiled.
    """

    def __init__(
        self,
        executors: ExecutorRegistry | None = None,
        validator: DefinitionValidator | None = None,
    ) -> None:
        self.executors = executors or ExecutorRegistry()
        self.validator = validator or DefinitionValidator()
        self._graphs: dict[str, dict[int, WorkflowGraph]] = {}

    def publish(self, definition: WorkflowDefinition) -> WorkflowGraph:
        """Validate, compile and store a definition.

        The definition is copied, so later changes to the caller's object have no
        effect. When ``definition.version`` is omitted the next version number is
        assigned.

        Args:
            definition: The definition to publish.

        Returns:
            The compiled graph.

        Raises:
            WorkflowValidationError: If validation reports errors, the version is
                already published, or a task handler is not registered.

        Example:
            >>> graph = registry.publish(definition)
            >>> graph.version
            1
        """
        findings = self.validator.validate(definition)
        if not self.validator.is_active(findings):
            raise WorkflowValidationError(findings)
        for warning in findings:
            logger.warning("Workflow %s: %s (%s)", definition.workflow_id, warning.message, warning.code)

        definition = copy.deepcopy(definition)
        versions = self._graphs.get(definition.workflow_id, {})
        if definition.version is None:
            definition.version = max(versions, default=0) + 1
        elif definition.version <= 0:
            raise WorkflowValidationError([ValidationFinding("InvalidVersion", "Version must be greater than 0")])
        elif definition.version in versions:
            raise WorkflowValidationError(
                [
                    ValidationFinding(
                        "VersionAlreadyPublished",
                        f"Version {definition.version} of '{definition.workflow_id}' is already published",
                    )
                ]
            )

        try:
            graph = WorkflowGraph(definition, self.executors)
        except KeyError as exc:
            raise WorkflowValidationError([ValidationFinding("UnknownTaskHandler", str(exc.args[0]))]) from exc

        self._graphs.setdefault(definition.workflow_id, {})[definition.version] = graph
        logger.info("Published workflow %s version %d", definition.workflow_id, definition.version)
        return graph

    def get(self, workflow_id: str, version: int | None = None) -> WorkflowGraph:
        """Retrieve a compiled graph.

        Args:
            workflow_id: The workflow id.
            version: The version. If None, returns the latest version.

        Raises:
            WorkflowNotFoundError: If the workflow or version is not published.
        """
        versions = self._graphs.get(workflow_id)
        if not versions:
            raise WorkflowNotFoundError(workflow_id, version)
        if version is None:
            version = max(versions)
        if version not in versions:
            raise WorkflowNotFoundError(workflow_id, version)
        return versions[version]

    def get_definition(self, workflow_id: str, version: int | None = None) -> WorkflowDefinition:
        return self.get(workflow_id, version).definition

    def list_definitions(self, query: DefinitionQuery | None = None) -> Page[WorkflowDefinition]:
        """List published definitions.

        Args:
            query: Pagination and filter options.

        Returns:
            One page of definitions ordered by workflow id and version.
        """
        from litestar_orchestration.dto import DefinitionQuery

        query = query or DefinitionQuery()
        query.validate()

        definitions: list[WorkflowDefinition] = []
        for workflow_id in sorted(self._graphs):
            versions = self._graphs[workflow_id]
            selected = [max(versions)] if query.latest_only else sorted(versions)
            definitions.extend(versions[v].definition for v in selected)
        if query.search:
            needle = query.search.lower()
            definitions = [d for d in definitions if needle in d.workflow_id.lower() or needle in d.name.lower()]

        items = definitions[query.offset : query.offset + query.page_size]
        return Page(items=items, total=len(definitions), page_number=query.page_number, page_size=query.page_size)

    def find_event_subscribers(self, event_name: str) -> list[WorkflowGraph]:
        """Latest versions of every workflow with an event trigger for ``event_name``."""
        latest = (versions[max(versions)] for versions in self._graphs.values() if versions)
        return [graph for graph in latest if graph.definition.has_event_trigger(event_name)]

    def unpublish(self, workflow_id: str, version: int | None = None) -> None:
        """Remove a workflow, or one of its versions, from the registry.

        Running instances keep the graph they already loaded in memory, but cannot
        be reloaded once their version is gone.
        """
        if workflow_id not in self._graphs:
            return
        if version is None:
            del self._graphs[workflow_id]
            return
        self._graphs[workflow_id].pop(version, None)
        if not self._graphs[workflow_id]:
            del self._graphs[workflow_id]

    def has_workflow(self, workflow_id: str, version: int | None = None) -> bool:
        if workflow_id not in self._graphs:
            return False
        return version is None or version in self._graphs[workflow_id]

    def get_versions(self, workflow_id: str) -> list[int]:
        """All published versions of a workflow, ascending.

        Raises:
            WorkflowNotFoundError: If the workflow is not published.
        """
        if workflow_id not in self._graphs:
            raise WorkflowNotFoundError(workflow_id)
        return sorted(self._graphs[workflow_id])
