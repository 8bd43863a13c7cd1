class BundleBoxError(Exception):
    """Base error carrying a stable machine-readable kind and an HTTP status."""

    kind = "error"
    status_code = 500
    default_message = "Unexpected server error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.message}


class ValidationError(BundleBoxError):
    kind = "validation_error"
    status_code = 400
    default_message = "Invalid upload"

    def __init__(self, message: str | None = None, filename: str | None = None):
        self.filename = filename
        super().__init__(message)


class VirusError(BundleBoxError):
    kind = "virus_detected"
    status_code = 422

    def __init__(self, filename: str, signature: str | None = None):
        self.filename = filename
        self.signature = signature
        super().__init__(f"File contains malicious content: {filename}")


class NotFoundError(BundleBoxError):
    kind = "not_found"
    status_code = 404
    default_message = "File not found"


class ExpiredError(BundleBoxError):
    kind = "expired"
    status_code = 410
    default_message = "Link expired"


class LimitExceededError(BundleBoxError):
    kind = "limit_exceeded"
    status_code = 410
    default_message = "Download limit reached"


class PasswordRequiredError(BundleBoxError):
    kind = "password_required"
    status_code = 401
    default_message = "Password required"

    def to_dict(self) -> dict:
        return {**super().to_dict(), "requires_password": True}


class AuthFailedError(BundleBoxError):
    kind = "auth_failed"
    status_code = 403
    default_message = "Invalid credentials"


class StorageFailure(BundleBoxError):
    kind = "storage_unavailable"
    status_code = 503
    default_message = "Storage temporarily unavailable, please retry"


class CorruptArchiveError(BundleBoxError):
    kind = "corrupt_archive"
    status_code = 500
    default_message = "Stored archive could not be decrypted"
