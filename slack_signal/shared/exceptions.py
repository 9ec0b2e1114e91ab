__all__ = (
    "SlackSignalError",
    "ConfigurationError",
    "AuthenticationError",
    "APIConnectionError",
    "SendMessageError",
)


class SlackSignalError(Exception):
    """Base error"""


class ConfigurationError(SlackSignalError):
    """Configuration error"""


class AuthenticationError(SlackSignalError):
    """Authentication error"""


class APIConnectionError(SlackSignalError):
    """API connection error"""


class SendMessageError(SlackSignalError):
    """Outbound Slack message could not be delivered"""
