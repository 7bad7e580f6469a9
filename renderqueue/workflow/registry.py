"""
Workflow registry.

A workflow maps each resting status of a job to the step that moves it on.
The table is static and validated once when the registry is built, so a
broken edge is reported at startup instead of stranding jobs at runtime.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass

from renderqueue.constants import (
    TERMINAL_STATUSES,
    WEBHOOK_HOLD_PROGRESS,
    WEBHOOK_HOLD_STATUS,
    Capability,
    JobStatus,
)
from renderqueue.db.models import is_ready_status
from renderqueue.exceptions import WorkflowConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkflowStep:
    """
    One state of a workflow.

    Attributes:
        process: Capability invoked while the job is in this state. Its
            value is written to the job status while the step runs.
        success: Status written when the processor returns.
        failure: Status written on a recoverable failure. Defaults to the
            status the job had before the attempt (retry in place).
        increment_failure_counter: Whether a recoverable failure advances
            the retry counter and backoff.
        success_progress: Progress recorded together with the success edge.
    """

    process: Capability
    success: str
    failure: str | None = None
    increment_failure_counter: bool = True
    success_progress: float | None = None

    def failure_target(self, pre_status: str) -> str:
        return self.failure if self.failure is not None else pre_status


Workflow = Mapping[str, WorkflowStep]


def _image_workflow() -> dict[str, WorkflowStep]:
    return {
        JobStatus.PENDING: WorkflowStep(Capability.GENERATE, "ready-for-tagging"),
        "ready-for-tagging": WorkflowStep(Capability.TAG, "ready-for-uploading"),
        "ready-for-uploading": WorkflowStep(
            Capability.UPLOAD,
            WEBHOOK_HOLD_STATUS,
            success_progress=WEBHOOK_HOLD_PROGRESS,
        ),
        WEBHOOK_HOLD_STATUS: WorkflowStep(Capability.WEBHOOK, JobStatus.COMPLETED),
    }


def _noop_workflow() -> dict[str, WorkflowStep]:
    return {
        JobStatus.PENDING: WorkflowStep(
            Capability.NOOP,
            JobStatus.COMPLETED,
            failure=JobStatus.COMPLETED,
        ),
    }


WORKFLOWS: dict[str, dict[str, WorkflowStep]] = {
    "txt2img": _image_workflow(),
    "img2img": _image_workflow(),
    "asset-download": {
        JobStatus.PENDING: WorkflowStep(
            Capability.DOWNLOAD_ASSET,
            WEBHOOK_HOLD_STATUS,
            success_progress=WEBHOOK_HOLD_PROGRESS,
        ),
        WEBHOOK_HOLD_STATUS: WorkflowStep(Capability.WEBHOOK, JobStatus.COMPLETED),
    },
    "noop": _noop_workflow(),
    # Captioning jobs are accepted and completed; captions are produced elsewhere
    "florence": _noop_workflow(),
}


class WorkflowRegistry:
    """
    Resolves (workflow, status) pairs to steps and steps to processors.

    Validation at construction checks that:
    - every step names a capability with a registered processor
    - every state key is a ready status ("pending" or "ready-for-*")
    - every success/failure edge targets a terminal status or a state of
      the same workflow
    """

    def __init__(
        self,
        workflows: Mapping[str, Workflow] | None = None,
        processors: Mapping[str, object] | None = None,
    ):
        """
        Build and validate the registry.

        Args:
            workflows: Workflow table. Defaults to the built-in WORKFLOWS.
            processors: Capability name to processor. Defaults to every
                processor registered by ``renderqueue.processors``.

        Raises:
            WorkflowConfigurationError: If the table is inconsistent.
        """
        if processors is None:
            from renderqueue.processors import get_registered_processors

            processors = get_registered_processors()

        self._workflows = {
            name: dict(steps) for name, steps in (workflows or WORKFLOWS).items()
        }
        self._processors = dict(processors)
        self._validate()

        logger.info(
            "Workflow registry ready",
            extra={"workflows": sorted(self._workflows)}
        )

    def _validate(self) -> None:
        for name, steps in self._workflows.items():
            if not steps:
                raise WorkflowConfigurationError(
                    f"Workflow {name!r} has no steps", workflow=name
                )
            for state, step in steps.items():
                if not is_ready_status(state):
                    raise WorkflowConfigurationError(
                        f"Workflow {name!r} state {state!r} is not a ready status",
                        workflow=name,
                        status=state,
                    )
                if str(step.process) not in self._processors:
                    raise WorkflowConfigurationError(
                        f"Workflow {name!r} state {state!r} uses unknown "
                        f"capability {step.process!r}",
                        workflow=name,
                        status=state,
                    )
                targets = [step.success]
                if step.failure is not None:
                    targets.append(step.failure)
                for target in targets:
                    if target not in TERMINAL_STATUSES and target not in steps:
                        raise WorkflowConfigurationError(
                            f"Workflow {name!r} state {state!r} targets "
                            f"unknown state {target!r}",
                            workflow=name,
                            status=state,
                        )

    def has_workflow(self, workflow: str) -> bool:
        return workflow in self._workflows

    def workflow_names(self) -> list[str]:
        return sorted(self._workflows)

    def resolve(self, workflow: str, status: str) -> WorkflowStep:
        """
        Find the step to run for a job.

        Raises:
            WorkflowConfigurationError: For an unknown workflow or a status
                the workflow has no entry for.
        """
        steps = self._workflows.get(workflow)
        if steps is None:
            raise WorkflowConfigurationError(
                f"Unknown workflow {workflow!r}", workflow=workflow, status=status
            )
        step = steps.get(status)
        if step is None:
            raise WorkflowConfigurationError(
                f"Workflow {workflow!r} has no step for status {status!r}",
                workflow=workflow,
                status=status,
            )
        return step

    def get_processor(self, capability: str):
        """
        Processor bound to a capability name.

        Raises:
            WorkflowConfigurationError: If nothing is registered for it.
        """
        processor = self._processors.get(capability)
        if processor is None:
            raise WorkflowConfigurationError(f"Unknown capability {capability!r}")
        return processor
