"""Utility modules for the ATP runtime, including log sanitization."""

__all__: list[str] = []
