"""
Error taxonomy shared by the pages, the admin dispatcher and the adapters
around the external identity/storage services.

Every error carries a user-facing message. Pages flash it, the JSON admin
endpoint returns it as {"error": message} with the matching status code.
"""


class AppError(Exception):
    status_code = 500
    default_message = "Something went wrong."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthenticated(AppError):
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(AppError):
    status_code = 403
    default_message = "Forbidden"


class ValidationError(AppError):
    status_code = 400
    default_message = "Invalid input."


class NotFound(AppError):
    status_code = 404
    default_message = "Not found."


class UpstreamError(AppError):
    status_code = 502
    default_message = "The service is unavailable right now. Please try again."
