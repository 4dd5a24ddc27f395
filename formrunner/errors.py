class FormRunnerError(Exception):
    """Base class for errors raised by the run pipeline."""


class ParseError(FormRunnerError):
    """The target document could not be turned into a field list."""


class InvalidUrlError(ParseError):
    pass


class MissingPayloadError(ParseError):
    pass


class NoFieldsError(ParseError):
    pass


class MalformedPayloadError(ParseError):
    """A positional accessor hit an out-of-range index or an unexpected type."""


class GenerationError(FormRunnerError):
    """The content provider failed after its attempt budget."""


class TransportError(FormRunnerError):
    """Network failure or unusable HTTP status while talking to the target."""


class NotFoundError(FormRunnerError):
    pass
