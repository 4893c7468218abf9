from __future__ import annotations


class DomainError(Exception):
    """Refused operation with a user-facing message and an HTTP status."""

    status = 400

    def __init__(self, message: str, *, status: int | None = None, error: str | None = None):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = int(status)
        self.error = error or self.__class__.__name__

    def to_payload(self) -> dict:
        return {"ok": False, "error": self.error, "message": self.message}


class InventoryError(DomainError):
    pass


class OfferError(DomainError):
    pass


class OrderError(DomainError):
    pass


class EscrowError(DomainError):
    status = 409


class RefundError(DomainError):
    status = 409


class DisputeError(DomainError):
    pass


class ContentBlockedError(DomainError):
    status = 422

    def __init__(self, message: str, *, detections: list | None = None, action: str = "none", status: int | None = None):
        super().__init__(message, status=status, error="CONTENT_BLOCKED")
        self.detections = list(detections or [])
        self.action = action

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload["detections"] = [d.to_dict() for d in self.detections]
        payload["enforcement"] = self.action
        return payload
