from typing import Optional


class MessengerError(Exception):
    """Base class for every error raised by the messenger package."""


class NotAuthenticatedError(MessengerError):
    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)
        self.message = message


class RemoteError(MessengerError):
    """The data service or the update feed reported a failure."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class PartialCreationError(RemoteError):
    """A chat row was inserted but its participants were not.

    ``rolled_back`` tells whether the orphaned chat was deleted again.
    """

    def __init__(self, message: str, chat_id: str, rolled_back: bool):
        super().__init__(message)
        self.chat_id = chat_id
        self.rolled_back = rolled_back
