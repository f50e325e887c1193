class ClipBotError(Exception):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self._message = message

    @property
    def message(self) -> str:
        return self._message


# Bad user input, reported before anything is touched
class ValidationError(ClipBotError):
    pass


# Unsupported URL, file type or size
class InvalidSourceError(ValidationError):
    pass


class ClipExistsError(ValidationError):
    def __init__(self, name: str) -> None:
        super().__init__(f'A sound with the name "{name}" already exists!')
        self.name = name


# Network or disk failure while fetching media
class TransferError(ClipBotError):
    pass


# Something went wrong inside a voice session
class VoiceSessionError(ClipBotError):
    pass


class InvalidTransitionError(VoiceSessionError):
    def __init__(self, current, requested) -> None:
        super().__init__(
            f"Cannot move voice session from {current.name} to {requested.name}"
        )
        self.current = current
        self.requested = requested
