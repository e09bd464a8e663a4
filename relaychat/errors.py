from fastapi import status


class ChatError(Exception):
    """Base for domain failures; carries the HTTP status the API answers with."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class BadRequest(ChatError):
    status_code = status.HTTP_400_BAD_REQUEST


class Forbidden(ChatError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFound(ChatError):
    status_code = status.HTTP_404_NOT_FOUND


class PayloadTooLarge(ChatError):
    status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
