class InvalidChannelReferenceError(ValueError):
    pass


class InvalidTimezoneError(ValueError):
    pass


class ChannelNotFoundError(Exception):
    pass


class ChannelCreationDateError(Exception):
    pass


class YouTubeTimeoutError(Exception):
    pass


class RequestCancelledError(Exception):
    pass


class YouTubeApiError(Exception):
    def __init__(self, status_code: int | None, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message

    @property
    def is_quota(self) -> bool:
        return self.status_code in {403, 429}
