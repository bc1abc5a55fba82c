# Shared utilities package
from .config import Settings, get_settings
from .errors import APIError, ConfigurationError
from .response_utils import api_error_response, error_response, success_response

__all__ = [
    "Settings",
    "get_settings",
    "APIError",
    "ConfigurationError",
    "api_error_response",
    "error_response",
    "success_response",
]
