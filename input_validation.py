#!/usr/bin/env python3
"""
Validation Module for BUNNY Garage

Provides:
- The error hierarchy shared by the adapter, the workflow and the CLI
- User input validation (prompts, refinement text)
- Response and log sanitization
- Schema validation for persisted connection records
"""

import re
import unicodedata
from typing import Any, Dict, Optional


# Error hierarchy
class BunnyError(Exception):
    """Base exception for all BUNNY Garage errors."""

    pass


class ValidationError(BunnyError):
    """Raised when an operation's preconditions are not met."""

    pass


class AssignmentError(BunnyError):
    """Raised when a stage is due to run but its role has no provider bound."""

    def __init__(self, message: str, role_id: Optional[str] = None):
        super().__init__(message)
        self.role_id = role_id


class ProviderError(BunnyError):
    """Raised on a transport failure or a non-success response from a provider."""

    def __init__(
        self,
        message: str,
        provider_id: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.provider_id = provider_id
        self.status_code = status_code


class CredentialMissingError(BunnyError):
    """Raised when a provider has no stored credential at call time."""

    def __init__(self, provider_id: str):
        super().__init__(f"API key not found for {provider_id}")
        self.provider_id = provider_id


# Regex patterns for sanitization
ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*[a-zA-Z]")
CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x08\x0B-\x0C\x0E-\x1F\x7F]")
# Same set minus ESC, for text whose ANSI sequences are kept
CONTROL_CHAR_NO_ESC_PATTERN = re.compile(r"[\x00-\x08\x0B-\x0C\x0E-\x1A\x1C-\x1F\x7F]")

CONNECTION_STATUSES = ("connected", "connecting", "disconnected", "error")


def validate_prompt(
    prompt: Optional[str], field: str = "Prompt", max_length: Optional[int] = None
) -> str:
    """
    Validate user-supplied text.

    Args:
        prompt: Text to validate
        field: Name used in error messages
        max_length: Optional maximum length after stripping

    Returns:
        The stripped, NFC-normalized text

    Raises:
        ValidationError: If the text is blank, too long or contains null bytes
    """
    if not isinstance(prompt, str) or not prompt.strip():
        raise ValidationError(f"{field} must be a non-empty string")

    prompt = prompt.strip()

    if max_length is not None and len(prompt) > max_length:
        raise ValidationError(f"{field} too long (maximum {max_length} characters)")

    if "\0" in prompt:
        raise ValidationError(f"{field} contains null bytes")

    return unicodedata.normalize("NFC", prompt)


def sanitize_ai_response(content: str, strip_ansi: bool = True) -> str:
    """
    Clean AI response content before printing it to a terminal.

    Unlike prompt validation this never raises: null bytes and control
    characters are dropped, ANSI escapes removed if requested.
    """
    if not content:
        return ""

    # Preserve newlines and tabs
    if strip_ansi:
        content = ANSI_ESCAPE_PATTERN.sub("", content)
        content = CONTROL_CHAR_PATTERN.sub("", content)
    else:
        content = CONTROL_CHAR_NO_ESC_PATTERN.sub("", content)

    return unicodedata.normalize("NFC", content)


def sanitize_log_message(message: str, max_length: int = 1000) -> str:
    """
    Sanitize log message to prevent log injection.

    Args:
        message: Log message to sanitize
        max_length: Maximum message length

    Returns:
        Sanitized single-line message
    """
    if not message:
        return ""

    message = ANSI_ESCAPE_PATTERN.sub("", message)
    message = CONTROL_CHAR_PATTERN.sub("", message)

    # Replace newlines to prevent log splitting
    message = message.replace("\n", " ").replace("\r", " ")

    if len(message) > max_length:
        message = message[:max_length] + "... (truncated)"

    return message


def validate_connection_record(data: Dict[str, Any]) -> bool:
    """
    Validate a persisted connection record.

    Args:
        data: Record loaded from the connection store

    Returns:
        True if valid

    Raises:
        ValidationError: If the record has the wrong shape
    """
    if not isinstance(data, dict):
        raise ValidationError(
            f"Connection record must be a dictionary, got {type(data).__name__}"
        )

    if "status" not in data:
        raise ValidationError("Missing required field: status")

    if data["status"] not in CONNECTION_STATUSES:
        raise ValidationError(
            f"Invalid status '{data['status']}'. Must be one of: {list(CONNECTION_STATUSES)}"
        )

    for field in ("api_key", "model"):
        if data.get(field) is not None and not isinstance(data[field], str):
            raise ValidationError(f"{field} must be a string or None")

    return True
