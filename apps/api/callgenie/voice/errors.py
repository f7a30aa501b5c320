from __future__ import annotations


class VoiceProviderError(Exception):
    """Raised when the voice provider rejects a request or cannot be reached."""

    def __init__(self, operation: str, message: str, status_code: int | None = None) -> None:
        self.operation = operation
        self.status_code = status_code
        super().__init__(message)


class VoiceProviderConfigError(VoiceProviderError):
    """Raised when provider credentials are missing from the settings."""

    def __init__(self, operation: str, setting: str) -> None:
        self.setting = setting
        super().__init__(operation, f"{setting} is not set")
