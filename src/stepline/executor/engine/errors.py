"""Error taxonomy for the step pipeline.

Only configuration problems are raised out of the engine. Step failures,
timeouts and retry exhaustion are recorded as step outcomes; background task
failures are caught at the drain point and kept as notes.
"""


class PipelineConfigError(ValueError):
    """The pipeline document is malformed or references something unknown."""

    def __init__(self, message: str, location: str = ""):
        self.location = location
        super().__init__(f"{location}: {message}" if location else message)


class ConditionSyntaxError(PipelineConfigError):
    """A condition expression could not be parsed."""


class BackgroundTaskError(RuntimeError):
    """The background task failed to start, exited badly or left no output."""


class StepFailure(RuntimeError):
    """A step exited non-zero."""

    def __init__(self, step: str, exit_code: int):
        self.step = step
        self.exit_code = exit_code
        super().__init__(f"{step} exited with {exit_code}")


class StepTimeout(StepFailure):
    """A step exceeded its own timeout or the run deadline."""


class RetryExhausted(StepFailure):
    """Every attempt of a retried step failed."""

    def __init__(self, step: str, exit_code: int, attempts: int):
        self.attempts = attempts
        super().__init__(step, exit_code)
