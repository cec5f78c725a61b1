"""Error definitions for the knox storage client."""

import httpx


class KnoxError(Exception):
    """Base class for every error raised by knox.

    Attributes:
        message: Human-readable error description.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(KnoxError):
    """A required credential or bucket is missing, or the config is invalid."""


class TransportError(KnoxError):
    """The HTTP call could not be completed at the connection level."""


class UploadTimeoutError(KnoxError):
    """A caller-supplied multipart deadline expired."""

    def __init__(self, timeout: float, upload_id: str = "") -> None:
        super().__init__(f"Multipart upload did not finish within {timeout} seconds.")
        self.timeout = timeout
        self.upload_id = upload_id


# -- Service responses --------------------------------------------------------


class ResponseError(KnoxError):
    """The storage service answered with a non-success status.

    Attributes:
        status_code: The HTTP status returned by the service.
        code: The service error code (e.g. "NoSuchKey"), or "" when the body
            carries none.
        response: The httpx response, body already read.
    """

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        code: str = "",
        response: httpx.Response | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.response = response

    @classmethod
    def from_response(cls, response: httpx.Response, **kwargs):
        """Build an error from a failed response, pulling the service code out of its body."""
        body = response.text if response.content else ""
        code = extract_element(body, "Code")
        detail = extract_element(body, "Message") or response.reason_phrase
        message = f"{response.request.method} {response.request.url.path} failed with {response.status_code}"
        if code:
            message += f" ({code})"
        if detail:
            message += f": {detail}"
        return cls(message, status_code=response.status_code, code=code, response=response, **kwargs)


class UploadInitiationError(ResponseError):
    """The multipart initiate call failed or returned no upload id."""


class PartUploadError(ResponseError):
    """A single part PUT of a multipart upload failed."""

    def __init__(self, message: str, part_number: int = 0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.part_number = part_number


class CompletionError(ResponseError):
    """The multipart completion POST failed."""


def extract_element(body: str, name: str) -> str:
    """Return the text between the first ``<name>`` and ``</name>`` markers.

    Args:
        body: A response body.
        name: Element name without angle brackets.

    Returns:
        The enclosed text, or "" when either marker is missing.
    """
    start_tag = f"<{name}>"
    end_tag = f"</{name}>"
    start = body.find(start_tag)
    if start == -1:
        return ""
    start += len(start_tag)
    end = body.find(end_tag, start)
    if end == -1:
        return ""
    return body[start:end]
