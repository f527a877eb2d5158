# src/dynamic_data_agent/core/errors.py

class AgentError(Exception):
    """Base class for every error raised by the query engine and the agent loop."""


class ValidationError(AgentError):
    """Raised before any I/O when a request carries an unsafe identifier or a malformed shape."""


class UnsupportedOperatorError(ValidationError):
    def __init__(self, operator):
        super().__init__(f"Unsupported operator: {operator}")
        self.operator = operator


class AuthError(AgentError):
    """No owner could be resolved for the request."""
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class QueryExecutionError(AgentError):
    """The data store rejected or failed a query. Carries the store's own message."""


class ToolDispatchError(AgentError):
    """Unknown tool name or unusable tool arguments."""
    def __init__(self, message: str, tool_name: str = None):
        super().__init__(message)
        self.tool_name = tool_name


class LLMBackendError(AgentError):
    """The language model backend could not produce a reply."""
