# errors.py


class OrderingError(Exception):
    http_status = 400

    def __init__(self, message, entity=None, entity_id=None):
        super().__init__(message)
        self.message = message
        self.entity = entity
        self.entity_id = entity_id

    def to_dict(self):
        return {"success": False, "error": self.message}


class ValidationError(OrderingError):
    http_status = 400


class NotFoundError(OrderingError):
    http_status = 404


class AuthorizationError(OrderingError):
    http_status = 403


class ConflictError(OrderingError):
    http_status = 409


class SecurityError(OrderingError):
    """Gateway signature did not match; nothing was touched."""
    http_status = 400


class StoreError(OrderingError):
    """Persistence failure. The unit of work was rolled back, so the caller may retry."""
    http_status = 503
