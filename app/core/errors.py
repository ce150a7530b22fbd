"""Error kinds raised while building, running and aggregating analyses."""


class AnalysisError(Exception):
    """Base class for every orchestrator error."""

    kind = "AnalysisError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BuildError(AnalysisError):
    """Query construction from params failed; nothing was persisted."""

    kind = "BuildError"


class QueryError(AnalysisError):
    """A single query could not produce rows."""

    kind = "QueryError"


class SubmissionError(QueryError):
    """The integration rejected or could not accept the query."""

    kind = "SubmissionError"


class ExecutionError(QueryError):
    """The query ran but the warehouse reported a failure."""

    kind = "ExecutionError"


class QueryTimeoutError(QueryError):
    """Polling exceeded the configured timeout."""

    kind = "TimeoutError"


class TransformError(AnalysisError):
    """The result transform rejected otherwise successful raw results."""

    kind = "TransformError"


class AnalysisConflictError(AnalysisError):
    kind = "Conflict"

    def __init__(self, target_key: str, existing_id: str):
        super().__init__(
            f"Analysis {existing_id} is already in progress for {target_key}"
        )
        self.target_key = target_key
        self.existing_id = existing_id


class AnalysisNotFoundError(AnalysisError):
    kind = "NotFound"

    def __init__(self, analysis_id: str):
        super().__init__(f"Analysis {analysis_id} not found")
        self.analysis_id = analysis_id


class DatasourceNotFoundError(AnalysisError):
    kind = "NotFound"

    def __init__(self, datasource_id: str):
        super().__init__(f"Data source {datasource_id} not found")
        self.datasource_id = datasource_id
