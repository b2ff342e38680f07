"""Custom exceptions for aido."""


class AidoError(Exception):
    """Base exception for aido."""

    pass


class ConfigError(AidoError):
    """Bad configuration, tool or recipe definitions. Fatal at load time."""

    pass


class DuplicateToolError(ConfigError):
    """Two tools were registered under the same name."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool already registered: {tool_name}")
        self.tool_name = tool_name


class RecipeError(ConfigError):
    """Recipe-related errors."""

    pass


class RecipeNotFoundError(RecipeError):
    """Recipe file does not exist."""

    def __init__(self, name: str):
        super().__init__(f"Recipe '{name}' not found")
        self.name = name


class RecipeFormatError(RecipeError):
    """Recipe file could not be parsed."""

    pass


class UnknownRecipeToolError(RecipeError):
    """Recipe allows a tool the registry does not provide."""

    def __init__(self, recipe_name: str, tool_name: str, reason: str = "unknown tool"):
        super().__init__(f"Recipe '{recipe_name}' allows {reason}: {tool_name}")
        self.recipe_name = recipe_name
        self.tool_name = tool_name


class TransportError(AidoError):
    """Chat completion service unreachable or returned garbage."""

    pass


class LLMAPIError(TransportError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ToolError(AidoError):
    """Tool errors. Recovered in-loop and reported to the model."""

    kind = "ToolError"

    def __init__(self, tool_name: str, message: str):
        super().__init__(message)
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    kind = "NotFound"

    def __init__(self, tool_name: str):
        super().__init__(tool_name, f"Tool not found: {tool_name}")


class PermissionDeniedError(ToolError):
    """Tool is not on the active allow-list."""

    kind = "PermissionDenied"

    def __init__(self, tool_name: str, reason: str = "not permitted in this conversation"):
        super().__init__(tool_name, f"Tool '{tool_name}' denied: {reason}")
        self.reason = reason


class ConfirmationDeniedError(ToolError):
    """User declined to run the tool."""

    kind = "ConfirmationDenied"

    def __init__(self, tool_name: str):
        super().__init__(tool_name, f"User declined to run tool '{tool_name}'")


class ToolArgumentError(ToolError):
    """Tool arguments failed validation."""

    kind = "ToolArgumentError"

    def __init__(self, tool_name: str, message: str):
        super().__init__(tool_name, f"Invalid arguments for tool '{tool_name}': {message}")


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    kind = "ToolExecutionError"

    def __init__(self, tool_name: str, message: str):
        super().__init__(tool_name, f"Tool '{tool_name}' failed: {message}")


class ConversationError(AidoError):
    """Conversation store errors."""

    pass


class ConversationNotFoundError(ConversationError):
    """Conversation not found."""

    def __init__(self, conversation_id: str | None = None):
        if conversation_id:
            message = f"Conversation not found: {conversation_id}"
        else:
            message = "No conversation to continue"
        super().__init__(message)
        self.conversation_id = conversation_id


class ConcurrentUpdateError(ConversationError):
    """Another writer appended to the conversation first."""

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation {conversation_id} was modified by another process")
        self.conversation_id = conversation_id


class InvalidMessageError(ConversationError):
    """Message would break conversation invariants."""

    pass


class TurnLimitExceededError(AidoError):
    """Model kept requesting tools past the configured bound."""

    def __init__(self, max_turns: int):
        super().__init__(f"Turn limit exceeded: {max_turns} tool-call round-trips")
        self.max_turns = max_turns
