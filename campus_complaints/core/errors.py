from fastapi import status


class ComplaintSystemError(Exception):
    """
    Base class for errors raised by the service and policy layers
    """
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ComplaintSystemError):
    status_code = status.HTTP_400_BAD_REQUEST


class AuthorizationError(ComplaintSystemError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(ComplaintSystemError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(ComplaintSystemError):
    status_code = status.HTTP_409_CONFLICT


class RemoteError(ComplaintSystemError):
    """
    A collaborator outside the process (blob store, email provider) failed
    """
    status_code = status.HTTP_502_BAD_GATEWAY
