"""
Exception types for the classification pipeline
"""


class StackSignalError(Exception):
    """Base class for pipeline errors"""


class ConfigError(StackSignalError, ValueError):
    """Invalid or missing configuration, raised at startup only"""


class ClassificationError(StackSignalError):
    """Transient failure talking to the classification service (timeout, transport, 5xx)"""


class BudgetExceededError(StackSignalError):
    """Monthly LLM budget is spent and classification is paused"""
