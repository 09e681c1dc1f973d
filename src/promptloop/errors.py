"""Custom exception types for the promptloop evaluation engine."""


class OperationAborted(Exception):
    """Raised when the run's cancellation token has been triggered.

    This is raised when:
    - ``Orchestrator.stop()`` is called while a run is in flight
    - A capability call is still pending when the token fires
    - A conversation loop starts a new turn after cancellation

    It unwinds the whole run. Handlers that degrade a failure into an empty
    value must re-raise it instead of swallowing it.
    """

    def __init__(self, message: str = "Operation aborted"):
        super().__init__(message)


class ModelNotResolvedError(Exception):
    """Raised when neither the test pair nor the run config names a model."""

    pass


class EmptyConversationError(Exception):
    """Raised when a conversation loop is seeded with no messages at all.

    Examples:
        * Valid:
            - run(user_message="hi", initial_messages=[])
            - run(user_message="", initial_messages=[<tool message>])

        * Raises EmptyConversationError:
            - run(user_message="", initial_messages=[])
    """

    pass


class SuiteLoadError(Exception):
    """Raised when a suite source cannot be parsed or validated."""

    pass
