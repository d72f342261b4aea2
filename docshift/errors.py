"""
Error taxonomy shared by the tool adapters, the page assembly engine and the
request handlers.

Only the handlers turn these into HTTP responses; everything below them
raises and lets the request boundary decide.
"""


class GatewayError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(GatewayError):
    """Bad upload type, missing parameter or malformed operation list."""

    status_code = 400


class DocumentLoadError(ValidationError):
    """Upload could not be parsed as a PDF."""


class ToolFailed(GatewayError):
    """External tool exited non-zero, timed out, or produced no output."""


class AssemblyFailed(GatewayError):
    """Output document serialized to nothing or could not be written."""


class InvalidPageReference(GatewayError):
    status_code = 400

    def __init__(self, index: int, page_count: int):
        super().__init__(f"Page index {index} is out of range for a {page_count}-page document")
        self.index = index
        self.page_count = page_count
