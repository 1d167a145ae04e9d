"""Errors raised while relocating an archive."""


class RelocationError(RuntimeError):
    """Raised when a relocation run must abort.

    :ivar entry_name: Archive entry being processed, if any.
    :ivar stage: Processing stage (``read``, ``manifest``, ``service``, ``class``, ``write``).
    """

    def __init__(self, message: str, *, entry_name: str | None = None, stage: str | None = None) -> None:
        self.entry_name: str | None = entry_name
        self.stage: str | None = stage
        details: list[str] = []
        if stage is not None:
            details.append(f"stage={stage}")
        if entry_name is not None:
            details.append(f"entry={entry_name}")
        if len(details) > 0:
            message = f"{message} ({', '.join(details)})"
        super().__init__(message)


class MalformedInputError(RelocationError):
    """Raised when the input archive or one of its entries cannot be parsed."""


class IOFailureError(RelocationError):
    """Raised when reading the input or writing the output fails."""
