from __future__ import annotations


class IntegrationDisabledError(RuntimeError):
    pass


class IntegrationMisconfiguredError(RuntimeError):
    pass


class ProviderError(RuntimeError):
    """A processor call failed; nothing should be recorded locally."""

    def __init__(self, code: str, message: str = "", *, status: int | None = None):
        super().__init__(f"{code}:{message}" if message else code)
        self.code = code
        self.message = message
        self.status = status


class WebhookSignatureError(ValueError):
    pass
