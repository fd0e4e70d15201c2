"""Exceptions raised by ledgercat."""


class LedgercatError(Exception):
    """Base class for ledgercat errors."""


class StatementParseError(LedgercatError):
    """A statement could not be parsed at all."""


class UnreadableWorkbookError(StatementParseError):
    """The buffer is not a readable spreadsheet."""


class MissingHeaderError(StatementParseError):
    """Required header columns were not found in the statement."""

    def __init__(self, missing: list[str]):
        super().__init__(f"Missing required header column(s): {', '.join(missing)}")
        self.missing = missing


class InvalidOverrideScopeError(LedgercatError):
    """A merchant override was requested that cannot be scoped."""


class CallbackPayloadError(LedgercatError):
    """A programmatically delivered batch is malformed."""


class InvalidSignatureError(LedgercatError):
    """A callback body failed HMAC verification."""


class NotFoundError(LedgercatError):
    """A referenced transaction or category does not exist."""
