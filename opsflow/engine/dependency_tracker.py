"""Dependency tracking for pipeline stage graphs."""

import structlog

from opsflow.enums import StageStatus
from opsflow.exceptions import PipelineCycleError
from opsflow.models.domain import PipelineDefinition

log = structlog.get_logger(__name__)


class DependencyTracker:
    """Track and resolve stage dependencies for one pipeline execution.

    Stages are addressed by their index in the pipeline definition. The
    tracker detects cycles, determines which stages are ready and which are
    blocked by a failure upstream.
    """

    def __init__(self, pipeline: PipelineDefinition) -> None:
        self.pipeline_id = pipeline.id
        self.dependencies: dict[int, set[int]] = {
            index: set(stage.depends_on) for index, stage in enumerate(pipeline.stages)
        }
        self.status: dict[int, StageStatus] = {index: StageStatus.PENDING for index in self.dependencies}

    def validate_dependencies(self) -> bool:
        """Check for circular dependencies and invalid references.

        Raises:
            PipelineCycleError: If a cycle or an unknown stage index is found
        """

        def has_cycle(index: int, visited: set[int], rec_stack: set[int]) -> bool:
            visited.add(index)
            rec_stack.add(index)

            for dep in self.dependencies[index]:
                if dep not in self.dependencies:
                    raise PipelineCycleError(
                        f"Pipeline '{self.pipeline_id}': stage {index} depends on unknown stage {dep}"
                    )
                if dep not in visited:
                    if has_cycle(dep, visited, rec_stack):
                        return True
                elif dep in rec_stack:
                    log.error("circular_dependency_detected", pipeline_id=self.pipeline_id, stage=index, dependency=dep)
                    return True

            rec_stack.remove(index)
            return False

        visited: set[int] = set()
        for index in self.dependencies:
            if index not in visited and has_cycle(index, visited, set()):
                raise PipelineCycleError(f"Pipeline '{self.pipeline_id}' has a dependency cycle involving stage {index}")

        log.debug("dependencies_validated", pipeline_id=self.pipeline_id, stage_count=len(self.dependencies))
        return True

    def get_execution_order(self) -> list[list[int]]:
        """Stage indices grouped into waves that can run in parallel.

        Example:
            For [A, B(A), C(A), D(B, C)]: ``[[0], [1, 2], [3]]``
        """
        self.validate_dependencies()

        waves: list[list[int]] = []
        done: set[int] = set()
        remaining = set(self.dependencies)

        while remaining:
            wave = sorted(i for i in remaining if self.dependencies[i] <= done)
            waves.append(wave)
            done.update(wave)
            remaining -= set(wave)

        return waves

    def get_ready_stages(self) -> list[int]:
        """Pending stages whose dependencies have all completed."""
        return sorted(
            index
            for index, status in self.status.items()
            if status == StageStatus.PENDING
            and all(self.status[dep] == StageStatus.COMPLETED for dep in self.dependencies[index])
        )

    def get_blocked_stages(self) -> dict[int, int]:
        """Pending stages with a failed or skipped upstream stage.

        Returns:
            Mapping of blocked stage to the first offending dependency
        """
        blocked: dict[int, int] = {}
        for index, status in self.status.items():
            if status != StageStatus.PENDING:
                continue
            for dep in sorted(self.dependencies[index]):
                if self.status[dep] in (StageStatus.FAILED, StageStatus.SKIPPED):
                    blocked[index] = dep
                    break
        return blocked

    def mark(self, index: int, status: StageStatus) -> None:
        self.status[index] = status

    def has_pending_stages(self) -> bool:
        return any(status == StageStatus.PENDING for status in self.status.values())

    def get_summary(self) -> dict[str, int]:
        summary = {str(status): 0 for status in StageStatus}
        for status in self.status.values():
            summary[str(status)] += 1
        return summary
