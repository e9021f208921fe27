"""Custom exceptions for taskwatch."""


class TaskwatchError(Exception):
    """Base exception for all taskwatch errors."""
    pass


class TaskError(TaskwatchError):
    """A unit of work reported that it did not succeed."""
    pass


class TaskFailedError(TaskError):
    """Ordinary task failure. The run ends as failed; watching continues."""
    pass


class TaskFatalError(TaskError):
    """Unrecoverable task failure, logged with a distinguished fatal marker."""
    pass


class BatchSealedError(TaskwatchError):
    """A change was added to a batch that has already been sealed."""
    pass


class EngineError(TaskwatchError):
    """Error related to the watch engine lifecycle."""
    pass


class EngineNotRunningError(EngineError):
    """The engine is not running."""
    pass


class EngineAlreadyRunningError(EngineError):
    """The engine is already running."""
    pass
