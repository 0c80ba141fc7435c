class StorefrontError(Exception):
    """Base error carrying a stable machine-readable kind and an HTTP status."""

    kind = "storefront_error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"error": self.kind, "message": self.message}


class ValidationError(StorefrontError):
    kind = "validation_error"
    status_code = 400


class NotFoundError(StorefrontError):
    kind = "not_found"
    status_code = 404


class ConflictError(StorefrontError):
    kind = "conflict"
    status_code = 409


class ExternalServiceError(StorefrontError):
    kind = "external_service_error"
    status_code = 502
