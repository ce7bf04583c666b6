"""Input checks applied before any network call."""

from __future__ import annotations

import re

MAX_MESSAGE_LENGTH = 1000

_EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_USERNAME_RE = re.compile(r"^[a-zA-Z0-9_]+$")


class ValidationError(ValueError):
    pass


def validate_message(text: str | None) -> str:
    if not text or not text.strip():
        raise ValidationError("Message cannot be empty")
    text = text.strip()
    if len(text) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message is too long (max {MAX_MESSAGE_LENGTH} characters)")
    return text


def validate_email(value: str | None) -> str:
    if not value:
        raise ValidationError("Email is required")
    if not _EMAIL_RE.match(value):
        raise ValidationError("Please enter a valid email")
    return value


def validate_username(value: str | None) -> str:
    if not value:
        raise ValidationError("Username is required")
    if len(value) < 3:
        raise ValidationError("Username must be at least 3 characters")
    if len(value) > 20:
        raise ValidationError("Username must be less than 20 characters")
    if not _USERNAME_RE.match(value):
        raise ValidationError("Username can only contain letters, numbers, and underscores")
    return value


def validate_full_name(value: str | None) -> str:
    if not value:
        raise ValidationError("Full name is required")
    if len(value) < 2:
        raise ValidationError("Name must be at least 2 characters")
    if len(value) > 50:
        raise ValidationError("Name must be less than 50 characters")
    return value
