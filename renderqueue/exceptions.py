"""
Exception types shared by the store, the workflow registry and processors.

Processors signal failure by raising. Anything other than
``UnrecoverableError`` is treated by the worker loop as a transient,
retryable failure.
"""


class ProcessorError(Exception):
    """Recoverable processor failure; the job is retried after backoff."""


class UnrecoverableError(ProcessorError):
    """The job's input or state makes success impossible; fail it immediately."""


class WorkflowConfigurationError(Exception):
    """
    A job cannot be mapped to an executable step.

    Raised for an unknown workflow key, an unknown (workflow, status) pair or
    an unknown capability name. Fatal for the affected job.
    """

    def __init__(self, message: str, workflow: str | None = None, status: str | None = None):
        self.workflow = workflow
        self.status = status
        super().__init__(message)


class InvalidJobError(ValueError):
    """A job cannot be created or updated as requested."""


class BackendError(ProcessorError):
    """An upstream HTTP service answered with an error status."""

    def __init__(self, message: str, status_code: int | None = None, body: str | None = None):
        self.status_code = status_code
        self.body = body
        detail = f"{message}: {body[:500]}" if body else message
        super().__init__(detail)
